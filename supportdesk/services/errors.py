from uuid import UUID


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: UUID | str) -> None:
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class MessageNotFoundError(LookupError):
    def __init__(self, message_id: UUID | str) -> None:
        super().__init__(f"Message '{message_id}' not found")
        self.message_id = message_id


class ConversationClosedError(ValueError):
    def __init__(self, conversation_id: UUID) -> None:
        super().__init__(f"Conversation '{conversation_id}' is closed and read-only")
        self.conversation_id = conversation_id


class MessageValidationError(ValueError):
    pass


class MessageEditForbiddenError(PermissionError):
    def __init__(self, message_id: UUID, user_id: UUID | None) -> None:
        super().__init__(f"User '{user_id}' can only modify their own messages")
        self.message_id = message_id
        self.user_id = user_id


class ActorForbiddenError(PermissionError):
    def __init__(self, detail: str = "Actor is not allowed to perform this operation") -> None:
        super().__init__(detail)

