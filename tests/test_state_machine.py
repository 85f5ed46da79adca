import pytest

from rentalchat.agent.state_machine import TRANSITIONS, TurnSignals, advance, is_valid_transition, transition
from rentalchat.errors import ValidationFailed
from rentalchat.models import BookingState as S


def _path(state: S, **signals) -> list:
    return [s.value for s in advance(state, TurnSignals(**signals))]


def test_every_state_has_an_entry() -> None:
    assert set(TRANSITIONS) == set(S)
    assert TRANSITIONS[S.BOOKED] == [] and TRANSITIONS[S.ABANDONED] == []


@pytest.mark.parametrize("state", [s for s in S if not s.terminal])
def test_any_live_state_can_be_abandoned(state: S) -> None:
    assert is_valid_transition(state, S.ABANDONED)


def test_invalid_transition_raises() -> None:
    with pytest.raises(ValidationFailed):
        transition(S.GATHERING, S.BOOKED)


def test_first_message_without_criteria() -> None:
    assert _path(S.INIT) == ["init", "gathering"]


def test_first_message_with_search_that_finds_cars() -> None:
    path = _path(S.INIT, has_minimum_slots=True, searched=True, has_candidates=True)
    assert path == ["init", "gathering", "searching", "presenting"]


def test_empty_search_returns_to_gathering_once() -> None:
    path = _path(S.GATHERING, has_minimum_slots=True, searched=True, has_candidates=False)
    assert path == ["gathering", "searching", "gathering"]


def test_minimum_slots_without_search_waits_in_searching() -> None:
    assert _path(S.GATHERING, has_minimum_slots=True) == ["gathering", "searching"]


def test_selection_moves_to_confirming() -> None:
    assert _path(S.PRESENTING, selected=True, selection_changed=True) == ["presenting", "confirming"]


def test_new_search_while_presenting() -> None:
    path = _path(S.PRESENTING, has_minimum_slots=True, searched=True, has_candidates=True)
    assert path == ["presenting", "searching", "presenting"]


def test_confirmation_needs_a_second_turn() -> None:
    path = _path(S.PRESENTING, selected=True, selection_changed=True, verified=True)
    assert path[-1] == "confirming"


@pytest.mark.parametrize(
    "verified, expected",
    [(False, ["confirming", "verifying"]), (True, ["confirming", "awaiting_payment"])],
)
def test_confirming_goes_to_verification_or_payment(verified: bool, expected: list) -> None:
    assert _path(S.CONFIRMING, selected=True, verified=verified) == expected


def test_changed_selection_stays_in_confirming() -> None:
    assert _path(S.CONFIRMING, selected=True, selection_changed=True) == ["confirming"]


def test_verifying_waits_for_external_verification() -> None:
    assert _path(S.VERIFYING) == ["verifying"]
    assert _path(S.VERIFYING, verified=True) == ["verifying", "awaiting_payment"]


@pytest.mark.parametrize("state", [S.BOOKED, S.ABANDONED])
def test_terminal_states_do_not_move(state: S) -> None:
    assert _path(state, has_minimum_slots=True, searched=True, has_candidates=True) == [state.value]


def test_every_path_step_is_a_valid_edge() -> None:
    path = advance(S.INIT, TurnSignals(has_minimum_slots=True, searched=True, has_candidates=True, selected=True))
    for current, target in zip(path, path[1:]):
        assert is_valid_transition(current, target)
