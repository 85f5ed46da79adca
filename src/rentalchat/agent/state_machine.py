from dataclasses import dataclass
from typing import Dict, List

from ..errors import ValidationFailed
from ..models import BookingState

S = BookingState

# Allowed edges. Presenting and Confirming may go back to Searching when the
# renter changes criteria and a new search replaces the candidates.
TRANSITIONS: Dict[BookingState, List[BookingState]] = {
    S.INIT: [S.GATHERING, S.ABANDONED],
    S.GATHERING: [S.SEARCHING, S.ABANDONED],
    S.SEARCHING: [S.PRESENTING, S.GATHERING, S.ABANDONED],
    S.PRESENTING: [S.CONFIRMING, S.SEARCHING, S.ABANDONED],
    S.CONFIRMING: [S.VERIFYING, S.AWAITING_PAYMENT, S.SEARCHING, S.ABANDONED],
    S.VERIFYING: [S.AWAITING_PAYMENT, S.ABANDONED],
    S.AWAITING_PAYMENT: [S.BOOKED, S.ABANDONED],
    S.BOOKED: [],
    S.ABANDONED: [],
}


def is_valid_transition(current: BookingState, target: BookingState) -> bool:
    return target in TRANSITIONS.get(current, [])


def transition(current: BookingState, target: BookingState) -> BookingState:
    if not is_valid_transition(current, target):
        raise ValidationFailed(f"invalid transition {current.value} -> {target.value}")
    return target


@dataclass(frozen=True)
class TurnSignals:
    """What happened during a turn, as far as the state machine cares."""

    user_message: bool = True
    has_minimum_slots: bool = False
    searched: bool = False
    has_candidates: bool = False
    selected: bool = False
    selection_changed: bool = False
    verified: bool = False


def advance(state: BookingState, signals: TurnSignals) -> List[BookingState]:
    """Apply one turn's signals and return the path of states visited, starting with ``state``.

    Several edges can fire in one turn (Gathering -> Searching -> Presenting).
    Each signal is consumed at most once, so a search that comes back empty
    ends the turn in Gathering instead of looping.
    """
    path = [state]
    if state.terminal:
        return path

    def step(target: BookingState) -> None:
        path.append(transition(path[-1], target))

    search_pending = signals.searched

    if path[-1] is S.INIT and signals.user_message:
        step(S.GATHERING)
    if path[-1] in (S.PRESENTING, S.CONFIRMING) and search_pending:
        step(S.SEARCHING)
    if path[-1] is S.GATHERING and signals.has_minimum_slots:
        step(S.SEARCHING)
    if path[-1] is S.SEARCHING and search_pending:
        search_pending = False
        step(S.PRESENTING if signals.has_candidates else S.GATHERING)
    if path[-1] is S.PRESENTING and signals.selected:
        step(S.CONFIRMING)
    # The renter has to see the quote for a selection before it moves on.
    if path[-1] is S.CONFIRMING and state is S.CONFIRMING and not signals.selection_changed:
        step(S.AWAITING_PAYMENT if signals.verified else S.VERIFYING)
    if path[-1] is S.VERIFYING and signals.verified:
        step(S.AWAITING_PAYMENT)
    return path
