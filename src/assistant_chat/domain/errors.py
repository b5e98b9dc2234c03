"""Error taxonomy for the conversation core.

Quota and input errors end the current turn and are shown to the user as-is.
Completion and storage failures end the current turn with a generic, retryable
message; the detailed reason stays in the logs.
"""

from enum import Enum
from typing import Optional

RETRYABLE_MESSAGE = "Failed to send message. Please try again."


class LimitKind(str, Enum):
    MESSAGES = "messages"
    TOKENS = "tokens"


class ChatError(Exception):
    """Base class for all errors surfaced by the chat core."""

    retryable = False

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    @property
    def user_message(self) -> str:
        return RETRYABLE_MESSAGE if self.retryable else self.reason


class QuotaDenied(ChatError):
    """Raised when a user's usage is at or above the limit of their tier."""

    def __init__(self, limit_kind: LimitKind, reason: str) -> None:
        super().__init__(reason)
        self.limit_kind = limit_kind


class CompletionFailure(ChatError):
    """Raised when the remote completion call fails."""

    retryable = True


class StorageFailure(ChatError):
    """Raised when a store operation fails."""

    retryable = True

    def __init__(self, operation: str, reason: Optional[str] = None) -> None:
        super().__init__(reason or f"Storage operation '{operation}' failed")
        self.operation = operation


class InvalidInput(ChatError):
    pass


class SessionBusy(InvalidInput):
    """Raised when a command needs an idle session and an exchange is running."""

    def __init__(self, state: str) -> None:
        super().__init__(f"Another message is still being processed (state: {state})")
        self.state = state


class PermissionDenied(ChatError):
    pass
