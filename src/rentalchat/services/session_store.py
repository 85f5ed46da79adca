import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..errors import ValidationFailed
from ..models import (
    BookingState,
    Role,
    Session,
    Slots,
    TokenUsage,
    ToolCallRequest,
    ToolCallResult,
    Turn,
    VehicleCandidate,
)
from .crud import CrudStore

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"
SESSION_INDEX_KEY = "sessions:index"


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _turn_to_dict(turn: Turn) -> Dict[str, Any]:
    return {
        "role": turn.role.value,
        "content": turn.content,
        "tool_calls": [
            {"id": c.call_id, "name": c.name, "arguments": c.arguments}
            for c in turn.tool_calls
        ],
        "tool_results": [
            {"id": r.call_id, "name": r.name, "result": r.result, "is_error": r.is_error}
            for r in turn.tool_results
        ],
        "created_at": turn.created_at.isoformat(),
        "partial": turn.partial,
    }


def _dict_to_turn(data: Dict[str, Any]) -> Turn:
    return Turn(
        role=Role(data["role"]),
        content=data.get("content", ""),
        tool_calls=tuple(
            ToolCallRequest(call_id=c["id"], name=c["name"], arguments=c.get("arguments", {}))
            for c in data.get("tool_calls", [])
        ),
        tool_results=tuple(
            ToolCallResult(
                call_id=r["id"],
                name=r["name"],
                result=r.get("result", {}),
                is_error=bool(r.get("is_error", False)),
            )
            for r in data.get("tool_results", [])
        ),
        created_at=datetime.fromisoformat(data["created_at"]),
        partial=bool(data.get("partial", False)),
    )


def slots_to_dict(slots: Slots) -> Dict[str, Any]:
    return {
        "location": slots.location,
        "start_date": slots.start_date.isoformat() if slots.start_date else None,
        "end_date": slots.end_date.isoformat() if slots.end_date else None,
        "vehicle_category": slots.vehicle_category,
        "budget_ceiling": slots.budget_ceiling,
        "no_deposit": slots.no_deposit,
    }


def _dict_to_slots(data: Dict[str, Any]) -> Slots:
    return Slots(
        location=data.get("location"),
        start_date=_date(data.get("start_date")),
        end_date=_date(data.get("end_date")),
        vehicle_category=data.get("vehicle_category"),
        budget_ceiling=data.get("budget_ceiling"),
        no_deposit=data.get("no_deposit"),
    )


def candidate_to_dict(vehicle: VehicleCandidate) -> Dict[str, Any]:
    return {
        "vehicle_id": vehicle.vehicle_id,
        "title": vehicle.title,
        "category": vehicle.category,
        "location": vehicle.location,
        "daily_rate": vehicle.daily_rate,
        "deposit_amount": vehicle.deposit_amount,
        "available_from": vehicle.available_from.isoformat(),
        "available_until": vehicle.available_until.isoformat(),
        "distance_miles": vehicle.distance_miles,
    }


def dict_to_candidate(data: Dict[str, Any]) -> VehicleCandidate:
    return VehicleCandidate(
        vehicle_id=str(data["vehicle_id"]),
        title=str(data["title"]),
        category=str(data["category"]),
        location=str(data["location"]),
        daily_rate=float(data["daily_rate"]),
        deposit_amount=float(data.get("deposit_amount", 0.0)),
        available_from=date.fromisoformat(data["available_from"]),
        available_until=date.fromisoformat(data["available_until"]),
        distance_miles=data.get("distance_miles"),
    )


def session_to_dict(session: Session) -> Dict[str, Any]:
    """Serialize Session to a JSON-serializable dict."""
    return {
        "session_id": session.session_id,
        "identity": session.identity,
        "state": session.state.value,
        "turns": [_turn_to_dict(t) for t in session.turns],
        "slots": slots_to_dict(session.slots),
        "candidates": [candidate_to_dict(v) for v in session.candidates],
        "selected_vehicle_id": session.selected_vehicle_id,
        "relaxation_level": session.relaxation_level,
        "relaxed": list(session.relaxed),
        "usage": {
            "input_tokens": session.usage.input_tokens,
            "output_tokens": session.usage.output_tokens,
            "cached_tokens": session.usage.cached_tokens,
            "reasoning_tokens": session.usage.reasoning_tokens,
        },
        "estimated_cost": session.estimated_cost,
        "verified": session.verified,
        "created_at": session.created_at.isoformat(),
        "last_activity_at": session.last_activity_at.isoformat(),
    }


def dict_to_session(data: Dict[str, Any]) -> Session:
    """Build Session from a dict (e.g. from Redis)."""
    usage = data.get("usage", {})
    return Session(
        session_id=data["session_id"],
        identity=data.get("identity"),
        state=BookingState(data.get("state", BookingState.INIT.value)),
        turns=[_dict_to_turn(t) for t in data.get("turns", [])],
        slots=_dict_to_slots(data.get("slots", {})),
        candidates=[dict_to_candidate(v) for v in data.get("candidates", [])],
        selected_vehicle_id=data.get("selected_vehicle_id"),
        relaxation_level=data.get("relaxation_level"),
        relaxed=[str(d) for d in data.get("relaxed", [])],
        usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            cached_tokens=int(usage.get("cached_tokens", 0)),
            reasoning_tokens=int(usage.get("reasoning_tokens", 0)),
        ),
        estimated_cost=float(data.get("estimated_cost", 0.0)),
        verified=bool(data.get("verified", False)),
        created_at=datetime.fromisoformat(data["created_at"]),
        last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
    )


class SessionStore:
    """Persists booking sessions as JSON documents with TTL, keyed by session id.

    Turns are append-only: a save whose turn list does not extend the stored
    one is rejected with ``ValidationFailed``.
    """

    def __init__(self, crud: CrudStore, ttl_seconds: int) -> None:
        self._crud = crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    async def _load_raw(self, session_id: str) -> Dict[str, Any] | None:
        raw = await self._crud.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def load(self, session_id: str) -> Session | None:
        """Load the session, or None if missing or unreadable."""
        data = await self._load_raw(session_id)
        if data is None:
            return None
        try:
            return dict_to_session(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            return None

    async def save(self, session: Session) -> bool:
        """Persist the session with TTL. Returns True on success."""
        data = session_to_dict(session)
        stored = await self._load_raw(session.session_id)
        if stored is not None:
            previous: List[Dict[str, Any]] = stored.get("turns", [])
            if data["turns"][: len(previous)] != previous:
                raise ValidationFailed(
                    f"session {session.session_id}: stored turns are not a prefix of the new turns"
                )
        try:
            payload = json.dumps(data)
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", session.session_id, e)
            raise ValidationFailed(f"session {session.session_id} is not serializable") from e
        ok = await self._crud.set(self._key(session.session_id), payload, ttl_seconds=self._ttl)
        if ok and stored is None:
            await self._crud.add_member(SESSION_INDEX_KEY, session.session_id)
        return ok

    async def list_session_ids(self) -> List[str]:
        """Ids in the session index, sorted.

        The index can still name sessions whose documents have expired; callers
        that find one should drop it with ``forget``.

        Returns:
            Sorted session ids.
        """
        return sorted(await self._crud.members(SESSION_INDEX_KEY))

    async def forget(self, session_id: str) -> bool:
        """Remove a session id from the index. The document itself is left to its TTL."""
        return await self._crud.remove_member(SESSION_INDEX_KEY, session_id)
