"""
Typed failure outcomes raised by the chat core.

The HTTP layer maps every ChatError to a JSON error body with the
error's status code; nothing below the routes knows about HTTP.
"""


class ChatError(Exception):
    """Base class for expected, client-visible failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(ChatError):
    """Missing or malformed input, rejected before any mutation."""

    status_code = 400


class AuthenticationFailed(ChatError):
    status_code = 401


class AccessDenied(ChatError):
    """Caller is not allowed to touch the chat or message."""

    status_code = 403


class NotFound(ChatError):
    status_code = 404


class DependencyFailed(ChatError):
    """An external collaborator failed while doing the primary operation."""

    status_code = 502
