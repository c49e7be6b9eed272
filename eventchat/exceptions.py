"""
Exception hierarchy shared by the store, the chat session and the dispatcher.

Store-side errors (NotFoundError, PermissionDeniedError, InvalidRequestError) are
raised by the repository functions in storage.py and translated to HTTP status
codes by the routes. The HTTP client maps those status codes back to the same
classes, so a ChatSession sees the same exception whether it talks to the
service over HTTP or to an in-process store.
"""

from typing import Optional


class EventChatError(Exception):
    """Base class for all eventchat errors."""


class StoreError(EventChatError):
    """A remote store call failed (transport error or rejected request)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(StoreError):
    """The referenced conversation, message or record does not exist."""

    def __init__(self, message: str):
        super().__init__(message, status_code=404)


class PermissionDeniedError(StoreError):
    """The caller's identity is not allowed to perform the operation."""

    def __init__(self, message: str):
        super().__init__(message, status_code=403)


class InvalidRequestError(StoreError):
    """The request was well-formed but violates a domain rule."""

    def __init__(self, message: str):
        super().__init__(message, status_code=422)


class SendFailedError(EventChatError):
    """
    An optimistic send was rolled back.

    Carries the original text so the caller can offer a manual resend.
    """

    def __init__(self, text: str, cause: Optional[BaseException] = None):
        super().__init__(f"Message could not be sent: {cause}")
        self.text = text
        self.cause = cause


class ReactionFailedError(EventChatError):
    """An optimistic reaction toggle was reverted."""

    def __init__(self, message_id: int, emoji: str, cause: Optional[BaseException] = None):
        super().__init__(f"Reaction {emoji} on message {message_id} failed: {cause}")
        self.message_id = message_id
        self.emoji = emoji
        self.cause = cause


class SessionClosedError(EventChatError):
    """The chat session was closed or never opened."""


class PushTransportError(EventChatError):
    """The push gateway call itself failed (non-2xx, timeout, connection error)."""
