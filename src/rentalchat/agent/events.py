"""Typed events streamed to the caller during a turn.

Every event serializes to ``{"type": <name>, ...fields}``; transports wrap that
dict in a websocket message or an SSE frame.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from ..errors import EngineError


@dataclass(frozen=True)
class TextDelta:
    content: str
    type = "text_delta"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "content": self.content}


@dataclass(frozen=True)
class ToolCallStarted:
    call_id: str
    name: str
    args: Dict[str, Any]
    type = "tool_call"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "id": self.call_id, "name": self.name, "args": self.args}


@dataclass(frozen=True)
class ToolCallFinished:
    call_id: str
    name: str
    result: Dict[str, Any]
    is_error: bool = False
    type = "tool_result"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "id": self.call_id,
            "name": self.name,
            "result": self.result,
            "is_error": self.is_error,
        }


@dataclass(frozen=True)
class ReasoningEngaged:
    complexity: float
    effort: str
    type = "reasoning"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "complexity": round(self.complexity, 2), "effort": self.effort}


@dataclass(frozen=True)
class TurnComplete:
    session: Dict[str, Any]
    suggestions: List[str] = field(default_factory=list)
    relaxed: List[str] = field(default_factory=list)
    quote: Optional[Dict[str, Any]] = None
    transitions: List[str] = field(default_factory=list)
    type = "turn_complete"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "session": self.session,
            "suggestions": self.suggestions,
            "relaxed": self.relaxed,
            "quote": self.quote,
            "transitions": self.transitions,
        }


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str
    type = "error"

    @classmethod
    def from_error(cls, error: EngineError) -> "ErrorEvent":
        return cls(kind=error.kind, message=error.public_message)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "kind": self.kind, "message": self.message}


TurnEvent = Union[TextDelta, ToolCallStarted, ToolCallFinished, ReasoningEngaged, TurnComplete, ErrorEvent]

TERMINAL_EVENTS = (TurnComplete, ErrorEvent)
