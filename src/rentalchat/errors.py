"""Engine error taxonomy.

Every error that can cross the streaming boundary is an ``EngineError``. The
``kind`` is the wire identifier used in ``error`` events and ``public_message``
is the only text a caller ever sees; internal detail stays in the logs.
"""

from enum import Enum


class EngineError(Exception):
    kind = "internal_error"
    public_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail


class BlockReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    SUSPECTED_ABUSE = "suspected_abuse"
    UNSAFE_INPUT = "unsafe_input"


_REFUSALS = {
    BlockReason.RATE_LIMITED: "You're sending messages too quickly. Please wait a moment and try again.",
    BlockReason.SUSPECTED_ABUSE: "We couldn't process this request.",
    BlockReason.UNSAFE_INPUT: "I can only help with finding and booking a rental car.",
}


class SecurityBlocked(EngineError):
    kind = "security_blocked"

    def __init__(self, reason: BlockReason, detail: str = "") -> None:
        super().__init__(detail or reason.value)
        self.reason = reason

    @property
    def public_message(self) -> str:  # type: ignore[override]
        return _REFUSALS[self.reason]


class ModelTimeout(EngineError):
    kind = "model_timeout"
    public_message = "The assistant took too long to respond. Please try again."
    retryable = True


class UpstreamProviderError(EngineError):
    kind = "upstream_error"
    public_message = "The assistant is temporarily unavailable. Please try again."
    retryable = True


class ToolExecutionFailed(EngineError):
    kind = "tool_failed"
    public_message = "A lookup failed."


class ValidationFailed(EngineError):
    kind = "validation_failed"
    public_message = "That request couldn't be processed."


class BudgetExceeded(EngineError):
    kind = "budget_exceeded"
    public_message = "This conversation has reached its usage limit. Please try again later."


class SessionBusy(EngineError):
    kind = "session_busy"
    public_message = "A previous message is still being answered."


class SessionClosed(EngineError):
    kind = "session_closed"
    public_message = "This conversation has ended. Start a new one to make another booking."


class IterationLimitExceeded(EngineError):
    kind = "iteration_limit"
    public_message = "I couldn't finish that request. Could you rephrase it?"


class SessionNotFound(EngineError):
    kind = "session_not_found"
    public_message = "No conversation with that id."
