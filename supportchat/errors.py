"""
Exception types raised by the supportchat engine.

None of these is fatal to the engine: callers catch them, surface a notice
and keep the session store in its last-known-good state.
"""
from typing import Optional


class SupportChatError(Exception):
    """Base class for all supportchat failures."""


class TransportError(SupportChatError):
    """Raised when a REST call fails at the network level. Never retried."""

    def __init__(self, method: str, path: str, cause: Exception) -> None:
        self.method = method
        self.path = path
        self.cause = cause
        super().__init__(f"{method} {path} failed: {type(cause).__name__}: {cause}")


class ApiError(SupportChatError):
    """Raised when the backend answers with a non-2xx status."""

    def __init__(self, status_code: int, detail: Optional[str], path: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        self.path = path
        super().__init__(f"HTTP {status_code} on {path or 'request'}: {detail or 'no detail'}")


class AuthorizationError(ApiError):
    """The backend refused the action (claim already taken, not the claimant, ...).

    Callers must reconcile with the backend instead of retrying.
    """


class ChatValidationError(SupportChatError):
    """Raised before any network call when an action is invalid locally."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class AttachmentTooLarge(ChatValidationError):
    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Attachment is {size} bytes; the limit is {limit} bytes")


class ActionNotPermitted(ChatValidationError):
    """The action is gated off by the chat's current status or claimant."""

    def __init__(self, action: str, status: Optional[str], detail: str = "") -> None:
        self.action = action
        self.status = status
        msg = f"'{action}' not permitted while chat is {status or 'not loaded'}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class ChannelError(SupportChatError):
    """Raised when the push channel cannot be opened or a signal cannot be sent."""

    def __init__(self, action: str, cause: Optional[Exception] = None) -> None:
        self.action = action
        self.cause = cause
        msg = f"channel {action} failed"
        if cause is not None:
            msg = f"{msg}: {type(cause).__name__}: {cause}"
        super().__init__(msg)
