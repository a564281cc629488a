"""Exception hierarchy for the streaming conversation client."""

from typing import Optional

SIGN_IN_MESSAGE = "Please sign in to use the AI assistant."
SESSION_EXPIRED_MESSAGE = "Please sign in again to continue using the AI assistant."
DEFAULT_FAILURE_MESSAGE = "Failed to get response from AI assistant"


class ChatStreamError(Exception):
    """Base exception for all conversation client errors."""


class AuthenticationError(ChatStreamError):
    """No valid session, or the backend rejected the credential (401/403)."""

    def __init__(self, message: str = SIGN_IN_MESSAGE, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransportError(ChatStreamError):
    """Network failure, timeout or non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class IncompleteStreamError(TransportError):
    """The stream closed before a terminal ``complete`` event arrived."""

    def __init__(self, message: str = "Stream ended before the response completed"):
        super().__init__(message)


class StreamReportedError(ChatStreamError):
    """The backend sent an explicit ``error`` event."""


class ConversationCreationError(ChatStreamError):
    """A conversation could not be created for the stage."""

    def __init__(self, stage_id: str, reason: str):
        self.stage_id = stage_id
        self.reason = reason
        super().__init__(f"Failed to initialize conversation: {reason}")


class StoreError(ChatStreamError):
    """A conversation history store query or write failed."""


class RecoveryError(ChatStreamError):
    """Persisted state could not be queried while recovering."""

    def __init__(self, conversation_id: str, reason: str):
        self.conversation_id = conversation_id
        self.reason = reason
        super().__init__(f"Failed to recover conversation {conversation_id}: {reason}")


class AttemptAborted(ChatStreamError):
    """An attempt was superseded or cancelled by the user; never shown."""
