import json
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from ..booking.intent import describe_relaxation
from ..models import BookingState, Role, Slots, Turn, VehicleCandidate
from ..services.config_provider import RuntimeConfig

AMBIGUITY_RE = re.compile(r"\b(or|maybe|not sure|either|compare|versus|vs\.?|depends|which is better)\b", re.IGNORECASE)


def complexity_score(text: str, constraint_count: int) -> float:
    """Rough 0..1 score of how much thinking a request needs."""
    score = 0.0
    if len(text) > 200:
        score += 0.3
    score += min(0.4, 0.2 * len(AMBIGUITY_RE.findall(text)))
    if constraint_count >= 3:
        score += 0.3
    if text.count("?") > 1:
        score += 0.1
    return min(1.0, score)


@dataclass(frozen=True)
class ReasoningPlan:
    enabled: bool
    complexity: float
    effort: Optional[str] = None


def plan_reasoning(text: str, constraint_count: int, cfg: RuntimeConfig) -> ReasoningPlan:
    complexity = complexity_score(text, constraint_count)
    enabled = (
        cfg.flags.extended_reasoning_enabled
        and cfg.model in cfg.reasoning_models
        and complexity >= cfg.reasoning_threshold
    )
    return ReasoningPlan(enabled=enabled, complexity=complexity, effort=cfg.reasoning_effort if enabled else None)


def _describe_slots(slots: Slots) -> List[str]:
    lines = []
    if slots.location:
        lines.append(f"- Pickup location: {slots.location}")
    if slots.start_date and slots.end_date:
        lines.append(
            f"- Dates: {slots.start_date.isoformat()} to {slots.end_date.isoformat()} "
            f"({slots.rental_days()} day(s))"
        )
    elif slots.start_date:
        lines.append(f"- Start date: {slots.start_date.isoformat()} (return date unknown)")
    if slots.vehicle_category:
        lines.append(f"- Vehicle type: {slots.vehicle_category}")
    if slots.budget_ceiling is not None:
        lines.append(f"- Budget: up to ${slots.budget_ceiling:g}/day")
    if slots.no_deposit:
        lines.append("- Prefers no security deposit")
    return lines


def _describe_candidates(candidates: Sequence[VehicleCandidate], selected: Optional[str]) -> List[str]:
    lines = []
    for i, v in enumerate(candidates, 1):
        marker = " (selected)" if v.vehicle_id == selected else ""
        deposit = "no deposit" if v.deposit_amount <= 0 else f"${v.deposit_amount:g} deposit"
        lines.append(
            f"{i}. [id:{v.vehicle_id}] {v.title}, {v.category}, ${v.daily_rate:g}/day, {deposit}{marker}"
        )
    return lines


def build_system_prompt(
    base_prompt: str,
    *,
    state: BookingState,
    slots: Slots,
    candidates: Sequence[VehicleCandidate],
    selected_vehicle_id: Optional[str],
    relaxed: Sequence[str],
    today: date,
    reasoning: Optional[ReasoningPlan] = None,
    reasoning_preamble: str = "",
    hints: Optional[Dict[str, Any]] = None,
) -> str:
    """Static instructions followed by what is known about this booking so far."""
    parts: List[str] = []
    if reasoning is not None and reasoning.enabled:
        parts.append(reasoning_preamble)
    parts.append(base_prompt)

    parts.append(f"\n## Current booking\n- Today: {today.isoformat()}\n- Stage: {state.value}")
    slot_lines = _describe_slots(slots)
    parts.append("\n".join(slot_lines) if slot_lines else "- Nothing collected yet")
    missing = [name for name, value in (("location", slots.location), ("dates", slots.end_date)) if not value]
    if missing:
        parts.append(f"- Still needed before searching: {', '.join(missing)}")

    if hints:
        guesses = ", ".join(f"{k}={v}" for k, v in sorted(hints.items()))
        parts.append(f"- Possible but unconfirmed: {guesses}. Confirm with the renter before using.")

    if candidates:
        parts.append("\n## Current results")
        parts.extend(_describe_candidates(candidates, selected_vehicle_id))
        if relaxed:
            loosened = describe_relaxation(list(relaxed))
            parts.append(f"These results were found after loosening: {loosened}. Tell the renter.")
    return "\n".join(parts)


def trim_history(turns: Sequence[Turn], max_turns: int) -> List[Turn]:
    """Most recent turns, at most ``max_turns``, always starting on a user turn."""
    if max_turns <= 0 or len(turns) <= max_turns:
        return list(turns)
    start = len(turns) - max_turns
    for i in range(start, len(turns)):
        if turns[i].role is Role.USER:
            return list(turns[i:])
    for i in range(start - 1, -1, -1):
        if turns[i].role is Role.USER:
            return list(turns[i:])
    return list(turns[start:])


def turn_to_messages(turn: Turn) -> List[Dict[str, Any]]:
    if turn.role is Role.USER:
        return [{"role": "user", "content": turn.content}]
    if turn.role is Role.TOOL:
        return [
            {
                "role": "tool",
                "tool_call_id": r.call_id,
                "content": json.dumps(r.result, default=str),
            }
            for r in turn.tool_results
        ]
    message: Dict[str, Any] = {"role": "assistant", "content": turn.content or None}
    if turn.tool_calls:
        message["tool_calls"] = [
            {
                "id": c.call_id,
                "type": "function",
                "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
            }
            for c in turn.tool_calls
        ]
    elif not turn.content:
        return []
    return [message]


def build_messages(system_prompt: str, turns: Sequence[Turn], max_turns: int) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for turn in trim_history(turns, max_turns):
        messages.extend(turn_to_messages(turn))
    return messages
