from supportdesk.domain.enums import ConversationStatus, TransitionAction
from supportdesk.domain.exceptions import InvalidConversationTransition


class ConversationLifecycle:
    """State machine for conversation lifecycle: waiting -> assigned -> closed (-> waiting)."""

    _allowed_transitions: dict[tuple[ConversationStatus, TransitionAction], ConversationStatus] = {
        (ConversationStatus.WAITING, TransitionAction.ASSIGN): ConversationStatus.ASSIGNED,
        (ConversationStatus.WAITING, TransitionAction.CLOSE): ConversationStatus.CLOSED,
        (ConversationStatus.OPEN, TransitionAction.CLOSE): ConversationStatus.CLOSED,
        (ConversationStatus.ASSIGNED, TransitionAction.CLOSE): ConversationStatus.CLOSED,
        (ConversationStatus.CLOSED, TransitionAction.REOPEN): ConversationStatus.WAITING,
        (ConversationStatus.ASSIGNED, TransitionAction.TRANSFER): ConversationStatus.ASSIGNED,
    }

    @classmethod
    def transition(cls, current: ConversationStatus, action: TransitionAction) -> ConversationStatus:
        next_state = cls._allowed_transitions.get((current, action))
        if not next_state:
            raise InvalidConversationTransition(current=current, action=action)
        return next_state

    @classmethod
    def can_apply(cls, current: ConversationStatus, action: TransitionAction) -> bool:
        return (current, action) in cls._allowed_transitions

    @staticmethod
    def is_read_only(status: ConversationStatus) -> bool:
        return status == ConversationStatus.CLOSED

    @staticmethod
    def holds_queue_position(status: ConversationStatus) -> bool:
        return status == ConversationStatus.WAITING

    @staticmethod
    def should_auto_assign(status: ConversationStatus, sender_is_agent: bool) -> bool:
        return sender_is_agent and status == ConversationStatus.WAITING
