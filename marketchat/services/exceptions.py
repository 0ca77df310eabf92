class ChatError(Exception):
    """Base class for conversation/message rule violations."""

    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InvalidParticipant(ChatError):
    status_code = 400


class EmptyContent(ChatError):
    status_code = 400


class MessageTooLong(ChatError):
    status_code = 400


class NotParticipant(ChatError):
    status_code = 403


class NotOwner(ChatError):
    status_code = 403


class NotFound(ChatError):
    status_code = 404
