"""
Admission control for inbound chat messages.

Runs three cheap checks, in order, before any model or tool work:

1. Sliding-window rate limit per caller identity (shared counter store).
2. Bot / automation heuristics on the request metadata.
3. Prompt-injection screening of the raw text.

The first failing check decides the block reason. A blocked message is never
forwarded to the model and never echoed back.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..errors import BlockReason
from ..services.config_provider import DEFAULT_AUTOMATION_USER_AGENTS, ConfigProvider
from ..services.crud import CrudStore

logger = logging.getLogger(__name__)

RATE_LIMIT_KEY_PREFIX = "rl:chat:"

INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(ignore|disregard|forget|override|bypass)\s+(all\s+(of\s+)?)?(your|the\s+system|(the\s+)?(previous|prior|above|earlier))\b.{0,20}\b(instructions?|prompts?|rules|directions|guidelines)\b",
        r"\b(reveal|show|print|repeat|output|leak)\b.{0,30}\b(system|hidden|initial|original)\s+(prompt|instructions?|message)\b",
        r"\byou are (now|no longer)\s+(an?\s+|the\s+|my\s+)?(\w+\s+){0,2}(dan|ai|assistant|chatbot|model|admin|developer|unrestricted|unfiltered|jailbroken|bound|restricted)\b",
        r"\b(pretend|act|behave)\b.{0,15}\b(to be|as if|as an?|like an?)\b.{0,30}\b(unrestricted|jailbroken|developer mode|dan|admin|root|different (ai|assistant|model))\b",
        r"\bjail\s?break\b",
        r"\bdeveloper mode\b",
        r"<\|?(im_start|im_end|system|endoftext)\|?>",
        r"\[/?(inst|sys)\]",
        r"^\s*#{2,}\s*(system|instruction)s?\b",
        r"\bnew (system )?instructions?\s*:",
        r"\b(begin|end)\s+(system|admin)\s+(prompt|override)\b",
    )
]


@dataclass(frozen=True)
class CallerContext:
    """Who is asking: resolved identity plus the request metadata the heuristics need."""

    identity: str
    ip: str = "unknown"
    user_agent: Optional[str] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[BlockReason] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: BlockReason) -> "Decision":
        return cls(allowed=False, reason=reason)


def matches_injection(raw_input: str) -> bool:
    """Return True if the text carries a known instruction-override signature."""
    return any(p.search(raw_input) for p in INJECTION_PATTERNS)


def looks_automated(
    user_agent: Optional[str],
    signatures: Sequence[str] = DEFAULT_AUTOMATION_USER_AGENTS,
    block_missing: bool = True,
) -> bool:
    """Return True if the User-Agent matches an automation signature.

    Args:
        user_agent: Raw header value, or None when the header was absent.
        signatures: Regular-expression fragments, matched case-insensitively.
        block_missing: Whether an absent or blank header counts as automated.
    """
    if not user_agent or not user_agent.strip():
        return block_missing
    if not signatures:
        return False
    return re.search("|".join(signatures), user_agent, re.IGNORECASE) is not None


class SecurityGate:
    """Per-request admission control. See the module docstring for the check order."""

    def __init__(
        self,
        counters: CrudStore,
        config: ConfigProvider,
        fail_closed: bool = False,
    ) -> None:
        self._counters = counters
        self._config = config
        self._fail_closed = fail_closed

    async def admit(
        self,
        caller: CallerContext,
        raw_input: str,
        session_message_count: int = 0,
    ) -> Decision:
        """Decide whether one inbound message may proceed to the orchestrator.

        Args:
            caller: Resolved identity and request metadata.
            raw_input: The message text exactly as received.
            session_message_count: User messages already in the session.

        Returns:
            The first failing check's block decision, or an allow decision.
        """
        cfg = await self._config.get()

        hits = await self._counters.window_hit(
            f"{RATE_LIMIT_KEY_PREFIX}{caller.identity}", cfg.rate_limit_window_seconds
        )
        if hits is None:
            if self._fail_closed:
                logger.warning("Rate limiting fail-closed (counter store unavailable)")
                return Decision.block(BlockReason.RATE_LIMITED)
            logger.debug("Rate limiting skipped (counter store unavailable)")
        elif hits > cfg.rate_limit_max_requests:
            logger.warning(
                "Rate limit exceeded: identity=%s count=%d limit=%d",
                caller.identity,
                hits,
                cfg.rate_limit_max_requests,
            )
            return Decision.block(BlockReason.RATE_LIMITED)

        if looks_automated(caller.user_agent, cfg.automation_user_agents, cfg.block_missing_user_agent):
            logger.warning("Suspected automation: identity=%s ip=%s", caller.identity, caller.ip)
            return Decision.block(BlockReason.SUSPECTED_ABUSE)
        if session_message_count >= cfg.session_message_limit:
            logger.warning(
                "Session message limit reached: identity=%s messages=%d",
                caller.identity,
                session_message_count,
            )
            return Decision.block(BlockReason.SUSPECTED_ABUSE)

        if len(raw_input) > cfg.max_input_chars or matches_injection(raw_input):
            logger.warning("Unsafe input blocked: identity=%s length=%d", caller.identity, len(raw_input))
            return Decision.block(BlockReason.UNSAFE_INPUT)

        return Decision.allow()
