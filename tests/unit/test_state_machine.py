import pytest

from supportdesk.domain.enums import ConversationStatus, TransitionAction
from supportdesk.domain.exceptions import InvalidConversationTransition
from supportdesk.domain.state_machine import ConversationLifecycle


def test_waiting_to_assigned_transition() -> None:
    next_state = ConversationLifecycle.transition(
        ConversationStatus.WAITING, TransitionAction.ASSIGN
    )
    assert next_state == ConversationStatus.ASSIGNED


@pytest.mark.parametrize(
    "current",
    [ConversationStatus.WAITING, ConversationStatus.OPEN, ConversationStatus.ASSIGNED],
)
def test_close_from_any_open_state(current: ConversationStatus) -> None:
    assert (
        ConversationLifecycle.transition(current, TransitionAction.CLOSE)
        == ConversationStatus.CLOSED
    )


def test_reopen_returns_to_waiting() -> None:
    next_state = ConversationLifecycle.transition(
        ConversationStatus.CLOSED, TransitionAction.REOPEN
    )
    assert next_state == ConversationStatus.WAITING


def test_transfer_keeps_assigned() -> None:
    next_state = ConversationLifecycle.transition(
        ConversationStatus.ASSIGNED, TransitionAction.TRANSFER
    )
    assert next_state == ConversationStatus.ASSIGNED


@pytest.mark.parametrize(
    ("current", "action"),
    [
        (ConversationStatus.CLOSED, TransitionAction.CLOSE),
        (ConversationStatus.CLOSED, TransitionAction.ASSIGN),
        (ConversationStatus.ASSIGNED, TransitionAction.ASSIGN),
        (ConversationStatus.WAITING, TransitionAction.REOPEN),
        (ConversationStatus.WAITING, TransitionAction.TRANSFER),
        (ConversationStatus.OPEN, TransitionAction.ASSIGN),
    ],
)
def test_invalid_transition_raises(
    current: ConversationStatus, action: TransitionAction
) -> None:
    with pytest.raises(InvalidConversationTransition) as exc_info:
        ConversationLifecycle.transition(current, action)

    assert exc_info.value.current == current
    assert exc_info.value.action == action
    assert not ConversationLifecycle.can_apply(current, action)


def test_closed_is_read_only() -> None:
    assert ConversationLifecycle.is_read_only(ConversationStatus.CLOSED)
    assert not ConversationLifecycle.is_read_only(ConversationStatus.WAITING)


def test_only_waiting_holds_queue_position() -> None:
    assert ConversationLifecycle.holds_queue_position(ConversationStatus.WAITING)
    assert not ConversationLifecycle.holds_queue_position(ConversationStatus.ASSIGNED)
    assert not ConversationLifecycle.holds_queue_position(ConversationStatus.CLOSED)


def test_auto_assign_rules() -> None:
    assert ConversationLifecycle.should_auto_assign(ConversationStatus.WAITING, True)
    assert not ConversationLifecycle.should_auto_assign(ConversationStatus.WAITING, False)
    assert not ConversationLifecycle.should_auto_assign(ConversationStatus.ASSIGNED, True)
