class ChatError(Exception):
    """Base class for errors raised by the conversation and message core.

    ``status_code`` is the HTTP status the API layer answers with; ``detail``
    is the message shown to the client.
    """

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(ChatError):
    status_code = 404


class Forbidden(ChatError):
    status_code = 403


class InvalidOperation(ChatError):
    status_code = 400


class Conflict(ChatError):
    status_code = 409


class InvalidArgument(ChatError):
    status_code = 400


InvalidInput = InvalidArgument


class ConcurrencyError(ChatError):
    """A record kept changing underneath us and every retry lost the race."""

    status_code = 409
