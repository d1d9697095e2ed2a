from __future__ import annotations

import pytest

from fleetrobot.domain import IllegalTransition, State
from fleetrobot.tests.fakes import make_record


@pytest.mark.parametrize(
    "source, target",
    [
        (State.NEW, State.WAITING),
        (State.WAITING, State.MOVING),
        (State.MOVING, State.FINISHED),
        (State.BLOCKED, State.RETRY),
        (State.FINISHED, State.CONFIRMED),
        (State.FINISHED, State.CANCEL),
        (State.CANCEL, State.CANCELED),
        (State.CONFIRMED, State.REPEAT),
        (State.FAILED, State.DELETE),
    ],
)
def test_allowed_transitions(source: State, target: State) -> None:
    record = make_record(state=source)

    record.transition(target, "ok")

    assert record.state == target
    assert record.changed is True


@pytest.mark.parametrize(
    "source, target",
    [
        (State.FAILED, State.FINISHED),
        (State.NEW, State.CONFIRMED),
        (State.WAITING, State.CANCELED),
        (State.DELETE, State.REPEAT),
        (State.FINISHED, State.NEW),
    ],
)
def test_illegal_transitions_raise(source: State, target: State) -> None:
    record = make_record(state=source)

    with pytest.raises(IllegalTransition):
        record.transition(target, "nope")
    assert record.state == source


def test_same_state_only_updates_the_message() -> None:
    record = make_record(state=State.DELETE)

    record.transition(State.DELETE, "still gone")

    assert record.message == "still gone"
    assert record.changed is True


def test_repeating_state_and_message_is_not_a_change() -> None:
    record = make_record(state=State.WAITING, message="Date not open yet")

    record.transition(State.WAITING, "Date not open yet")

    assert record.changed is False
