"""Conversation state machine and its application adapters."""

from typing import Any, Callable, Dict, Optional

from .conversation_session import (
    AutoFillRequested,
    ConversationSession,
    DomainEvent,
    StageCompleted,
    TurnOutcome,
    TurnResult,
)
from .callbacks import SessionCallbacks
from ..backend import RemoteChatBackend
from ..config import Config
from ..models import StageContext
from ..recovery import RecoveryManager


def create_conversation_session(
    stage_id: str,
    config: Optional[Config] = None,
    backend: Optional[RemoteChatBackend] = None,
    current_stage_data: Optional[Dict[str, Any]] = None,
    all_stage_data: Optional[Dict[str, Any]] = None,
    on_auto_fill: Optional[Callable[[Dict[str, Any]], None]] = None,
    on_stage_complete: Optional[Callable[[], None]] = None,
) -> ConversationSession:
    """Factory function wiring a session to the hosted backend.

    The same backend serves as agent transport and as the store for the
    recovery manager. Callbacks, when given, are attached through
    ``SessionCallbacks``.

    Args:
        stage_id: Wizard stage the conversation belongs to
        config: Application configuration (loads from env if not provided)
        backend: Optional backend instance (created from config if not provided)
        current_stage_data: Data entered so far for this stage
        all_stage_data: Data of every stage, sent as context
        on_auto_fill: Called with auto-fill data when a turn completes
        on_stage_complete: Called when the agent marks the stage complete

    Returns:
        A ready ConversationSession

    Example:
        session = create_conversation_session("ideation-discovery")
        result = await session.send_message("Build a todo app")
    """
    if config is None:
        config = Config.from_env()
    if backend is None:
        backend = RemoteChatBackend(config)

    session = ConversationSession(
        transport=backend,
        stage_context=StageContext(
            stage_id=stage_id,
            current_stage_data=current_stage_data or {},
            all_stage_data=all_stage_data or {},
        ),
        recovery=RecoveryManager.from_config(config, store=backend, transport=backend),
        config=config,
    )
    if on_auto_fill or on_stage_complete:
        SessionCallbacks(on_auto_fill, on_stage_complete).attach(session)
    return session


__all__ = [
    "ConversationSession",
    "SessionCallbacks",
    "create_conversation_session",
    "AutoFillRequested",
    "StageCompleted",
    "DomainEvent",
    "TurnOutcome",
    "TurnResult",
]
