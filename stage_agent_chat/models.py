"""Data models for the streaming conversation protocol."""

from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import json
import uuid
from pydantic import BaseModel, Field, field_validator


class ConversationStatus(Enum):
    """Backend-owned lifecycle status of a conversation."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageType(Enum):
    """Author of a visible history message."""

    USER = "user"
    ASSISTANT = "assistant"


class TokenType(Enum):
    """Kinds of persisted response tokens."""

    CONTENT = "content"
    SUGGESTION = "suggestion"
    AUTOFILL = "autofill"
    COMPLETE = "complete"


class SessionPhase(Enum):
    """Phases of the conversation state machine."""

    IDLE = "idle"
    CREATING_CONVERSATION = "creating_conversation"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"


def _parse_json(v, default):
    if v is None:
        return default
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return default
    return v


class Conversation(BaseModel):
    """One logical agent exchange scoped to a wizard stage."""

    id: str
    stage_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    def parse_metadata(cls, v):
        """Parse JSON strings to dictionaries for metadata."""
        return _parse_json(v, {})

    @property
    def is_active(self) -> bool:
        return self.status == ConversationStatus.ACTIVE


class ChatMessage(BaseModel):
    """One user or assistant turn in the visible history."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    type: MessageType
    suggestions: Optional[List[str]] = None
    auto_fill_data: Optional[Dict[str, Any]] = None
    is_complete: Optional[bool] = None


class ResponseToken(BaseModel):
    """An indexed snapshot of a streamed assistant response.

    Content tokens are cumulative: each one holds the whole response text
    produced so far, not a delta.
    """

    token_index: int
    token_content: str
    token_type: TokenType = TokenType.CONTENT
    created_at: Optional[datetime] = None

    @property
    def is_content(self) -> bool:
        return self.token_type == TokenType.CONTENT


class CompleteResponse(BaseModel):
    """Terminal, fully-assembled record of one assistant turn."""

    full_content: str = ""
    suggestions: List[str] = Field(default_factory=list)
    auto_fill_data: Dict[str, Any] = Field(default_factory=dict)
    stage_complete: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)
    is_complete: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("suggestions", mode="before")
    def parse_suggestions(cls, v):
        """Ensure suggestions is always a list, parsing from JSON if needed."""
        return _parse_json(v, []) or []

    @field_validator("auto_fill_data", "context", mode="before")
    def parse_json_fields(cls, v):
        """Parse JSON strings to dictionaries."""
        return _parse_json(v, {}) or {}

    @field_validator("full_content", mode="before")
    def parse_full_content(cls, v):
        return v or ""


class RecoveryResult(BaseModel):
    """Outcome of reconstructing a conversation's latest known state."""

    success: bool
    content: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)
    auto_fill_data: Dict[str, Any] = Field(default_factory=dict)
    stage_complete: bool = False
    is_complete: bool = False
    error: Optional[str] = None


class RecoveryStatus(BaseModel):
    """Diagnostic snapshot of what the store holds for a conversation."""

    conversation_exists: bool
    conversation_status: Optional[ConversationStatus] = None
    token_count: int = 0
    is_complete: bool = False
    last_token_index: int = -1


class IncrementalTokens(BaseModel):
    """Tokens persisted after a known index, with the latest content snapshot."""

    tokens: List[ResponseToken] = Field(default_factory=list)
    latest_content: str = ""
    has_new_tokens: bool = False


class IntegrityReport(BaseModel):
    """Result of checking a conversation's persisted tokens for problems."""

    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    can_recover: bool = False


class ResumeOptions(BaseModel):
    """Parameters sent with a resumption request."""

    last_token_index: int = -1
    resume_streaming: bool = True


class StageContext(BaseModel):
    """Wizard stage data sent alongside every agent request."""

    stage_id: str
    current_stage_data: Dict[str, Any] = Field(default_factory=dict)
    all_stage_data: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "stageId": self.stage_id,
            "currentStageData": self.current_stage_data,
            "allStageData": self.all_stage_data,
        }


class ConversationClientState(BaseModel):
    """In-memory state owned by one conversation session."""

    is_loading: bool = False
    error: Optional[str] = None
    content: str = ""
    suggestions: List[str] = Field(default_factory=list)
    auto_fill_data: Dict[str, Any] = Field(default_factory=dict)
    is_complete: bool = False
    conversation_id: Optional[str] = None
    history_messages: List[ChatMessage] = Field(default_factory=list)
    phase: SessionPhase = SessionPhase.IDLE

    @property
    def is_streaming(self) -> bool:
        return self.is_loading and bool(self.content)

    def snapshot(self) -> "ConversationClientState":
        """Deep copy handed to observers so they cannot mutate session state."""
        return self.model_copy(deep=True)
