import logging
import time
from typing import Callable

from ..errors import BudgetExceeded
from ..models import Session, TokenUsage
from ..services.config_provider import ModelPrice, RuntimeConfig
from ..services.crud import CrudStore

logger = logging.getLogger(__name__)

BUDGET_KEY_PREFIX = "budget:"


def estimate_cost(usage: TokenUsage, price: ModelPrice) -> float:
    """USD for one call. Cached input tokens are billed at the cached rate."""
    uncached = max(0, usage.input_tokens - usage.cached_tokens)
    return (
        uncached * price.input
        + usage.cached_tokens * price.cached_input
        + usage.output_tokens * price.output
    ) / 1_000_000


class CostAccountant:
    """Token and cost bookkeeping for sessions and caller identities.

    ``Session.usage`` and ``Session.estimated_cost`` are lifetime totals and
    only grow. The ceilings are enforced on rolling ledgers in the shared
    counter store, one bucket per budget period for the session and one for
    the identity, so a session that hit its ceiling is usable again once the
    period rolls over.
    """

    def __init__(self, counters: CrudStore, clock: Callable[[], float] = time.time) -> None:
        self._counters = counters
        self._clock = clock

    def _bucket(self, cfg: RuntimeConfig) -> int:
        return int(self._clock() // max(1, cfg.identity_budget_period_seconds))

    def session_key(self, session_id: str, cfg: RuntimeConfig) -> str:
        """Counter-store key of the session's ledger for the current period."""
        return f"{BUDGET_KEY_PREFIX}session:{session_id}:{self._bucket(cfg)}"

    def identity_key(self, identity: str, cfg: RuntimeConfig) -> str:
        """Counter-store key of the identity's ledger for the current period."""
        return f"{BUDGET_KEY_PREFIX}identity:{identity}:{self._bucket(cfg)}"

    async def check(self, session: Session, cfg: RuntimeConfig) -> None:
        """Raise ``BudgetExceeded`` if the next model call would start over a ceiling.

        Args:
            session: The session about to call the model.
            cfg: Current runtime config (ceilings and budget period).

        Raises:
            BudgetExceeded: The session or identity ledger for this period is
                at or over its ceiling.
        """
        spent = await self._counters.get_float(self.session_key(session.session_id, cfg))
        if spent >= cfg.session_cost_ceiling:
            logger.warning(
                "Session budget reached: session_id=%s cost=%.6f ceiling=%.6f",
                session.session_id,
                spent,
                cfg.session_cost_ceiling,
            )
            raise BudgetExceeded(f"session {session.session_id} at {spent:.6f}")

        if cfg.identity_cost_ceiling is None or not session.identity:
            return
        spent = await self._counters.get_float(self.identity_key(session.identity, cfg))
        if spent >= cfg.identity_cost_ceiling:
            logger.warning("Identity budget reached: identity=%s cost=%.6f", session.identity, spent)
            raise BudgetExceeded(f"identity {session.identity} at {spent:.6f}")

    async def record(self, session: Session, usage: TokenUsage, cfg: RuntimeConfig) -> float:
        """Add one completed call to the session totals and the period ledgers.

        Args:
            session: Session the call was made for; its totals are updated in place.
            usage: Token counts reported for the call.
            cfg: Current runtime config (price table and budget period).

        Returns:
            The estimated cost of the call in USD.
        """
        price = cfg.price_table.get(cfg.model)
        if price is None:
            logger.warning("No price configured for model %s; cost recorded as 0", cfg.model)
            cost = 0.0
        else:
            cost = estimate_cost(usage, price)

        session.usage = session.usage + usage
        session.estimated_cost += cost

        if cost <= 0:
            return cost
        await self._counters.incr_float(
            self.session_key(session.session_id, cfg),
            cost,
            ttl_seconds=cfg.identity_budget_period_seconds,
        )
        if session.identity:
            await self._counters.incr_float(
                self.identity_key(session.identity, cfg),
                cost,
                ttl_seconds=cfg.identity_budget_period_seconds,
            )
        return cost
