from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingState(str, Enum):
    """Where a booking conversation stands. See ``agent.state_machine`` for the edges."""

    INIT = "init"
    GATHERING = "gathering"
    SEARCHING = "searching"
    PRESENTING = "presenting"
    CONFIRMING = "confirming"
    VERIFYING = "verifying"
    AWAITING_PAYMENT = "awaiting_payment"
    BOOKED = "booked"
    ABANDONED = "abandoned"

    @property
    def terminal(self) -> bool:
        return self in (BookingState.BOOKED, BookingState.ABANDONED)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    name: str
    result: Dict[str, Any] = field(default_factory=dict)
    is_error: bool = False


@dataclass(frozen=True)
class Turn:
    """One immutable unit of conversation."""

    role: Role
    content: str = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_results: Tuple[ToolCallResult, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    partial: bool = False


@dataclass
class Slots:
    """Booking criteria extracted from the conversation. Every field is optional."""

    location: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    vehicle_category: Optional[str] = None
    budget_ceiling: Optional[float] = None
    no_deposit: Optional[bool] = None

    def merged(self, other: "Slots") -> "Slots":
        """Return a copy where every field set on ``other`` wins."""
        updates = {
            f.name: getattr(other, f.name)
            for f in fields(other)
            if getattr(other, f.name) is not None
        }
        return replace(self, **updates)

    def has_minimum(self) -> bool:
        return bool(self.location and self.start_date and self.end_date)

    def filled(self) -> List[str]:
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]

    def rental_days(self) -> int:
        if not self.start_date or not self.end_date:
            return 0
        return max(1, (self.end_date - self.start_date).days)


@dataclass(frozen=True)
class VehicleCandidate:
    vehicle_id: str
    title: str
    category: str
    location: str
    daily_rate: float
    deposit_amount: float
    available_from: date
    available_until: date
    distance_miles: Optional[float] = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
        )

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class Session:
    """Per-session booking state: append-only turns plus derived slots and candidates."""

    session_id: str
    identity: Optional[str] = None
    state: BookingState = BookingState.INIT
    turns: List[Turn] = field(default_factory=list)
    slots: Slots = field(default_factory=Slots)
    candidates: List[VehicleCandidate] = field(default_factory=list)
    selected_vehicle_id: Optional[str] = None
    relaxation_level: Optional[int] = None
    relaxed: List[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    estimated_cost: float = 0.0
    verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)

    def append_turn(self, turn: Turn) -> None:
        self.turns.append(turn)
        self.last_activity_at = turn.created_at

    def call_ids(self) -> Set[str]:
        return {call.call_id for turn in self.turns for call in turn.tool_calls}

    def user_turn_count(self) -> int:
        return sum(1 for turn in self.turns if turn.role is Role.USER)

    def candidate(self, vehicle_id: str) -> Optional[VehicleCandidate]:
        for vehicle in self.candidates:
            if vehicle.vehicle_id == vehicle_id:
                return vehicle
        return None
