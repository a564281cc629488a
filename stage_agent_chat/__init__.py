"""
Stage Agent Chat

Client for the streaming conversation protocol of the planning wizard's
AI assistant.

Features:
- Incremental parsing of the agent's ``data:`` event stream
- Retry with exponential backoff (1s, 2s, 4s) and abortable attempts
- Per-stage conversation state machine with observer snapshots
- Recovery of interrupted conversations from persisted tokens
- Hosted (PostgREST) and embedded (DuckDB) conversation history stores
"""

__version__ = "0.1.0"

# Core exports
from .config import Config
from .middleware import (
    ConversationSession,
    SessionCallbacks,
    create_conversation_session,
    AutoFillRequested,
    StageCompleted,
    TurnOutcome,
    TurnResult,
)
from .backend import RemoteChatBackend, ConversationStore, AgentTransport
from .storage import DuckDBStorage
from .recovery import RecoveryManager
from .retry import AbortSignal, RetryController, RetryPolicy
from .stream_parser import (
    StreamParser,
    parse_event_stream,
    ContentEvent,
    CompleteEvent,
    ErrorEvent,
    PingEvent,
)
from .errors import (
    ChatStreamError,
    AuthenticationError,
    TransportError,
    IncompleteStreamError,
    StreamReportedError,
    ConversationCreationError,
    StoreError,
    RecoveryError,
)
from .models import (
    Conversation,
    ConversationStatus,
    ChatMessage,
    MessageType,
    ResponseToken,
    TokenType,
    CompleteResponse,
    RecoveryResult,
    StageContext,
    ConversationClientState,
    SessionPhase,
)

__all__ = [
    # Configuration
    "Config",
    # Conversation session
    "ConversationSession",
    "SessionCallbacks",
    "create_conversation_session",  # Factory function (recommended)
    "AutoFillRequested",
    "StageCompleted",
    "TurnOutcome",
    "TurnResult",
    # History stores and transport
    "RemoteChatBackend",
    "ConversationStore",
    "AgentTransport",
    "DuckDBStorage",
    # Recovery and retry
    "RecoveryManager",
    "AbortSignal",
    "RetryController",
    "RetryPolicy",
    # Stream parsing
    "StreamParser",
    "parse_event_stream",
    "ContentEvent",
    "CompleteEvent",
    "ErrorEvent",
    "PingEvent",
    # Errors
    "ChatStreamError",
    "AuthenticationError",
    "TransportError",
    "IncompleteStreamError",
    "StreamReportedError",
    "ConversationCreationError",
    "StoreError",
    "RecoveryError",
    # Data types
    "Conversation",
    "ConversationStatus",
    "ChatMessage",
    "MessageType",
    "ResponseToken",
    "TokenType",
    "CompleteResponse",
    "RecoveryResult",
    "StageContext",
    "ConversationClientState",
    "SessionPhase",
    # Version
    "__version__",
]
