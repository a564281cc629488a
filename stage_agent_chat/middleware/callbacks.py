"""Adapter from session domain events to application callbacks."""

import logging
from typing import Any, Callable, Dict, Optional

from .conversation_session import (
    AutoFillRequested,
    ConversationSession,
    DomainEvent,
    StageCompleted,
)

logger = logging.getLogger(__name__)


class SessionCallbacks:
    """Routes ``AutoFillRequested`` to ``on_auto_fill`` and ``StageCompleted``
    to ``on_stage_complete``.

    Keeps UI callbacks out of the session: attach it to a session and it is
    invoked for each event the session emits.
    """

    def __init__(
        self,
        on_auto_fill: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_stage_complete: Optional[Callable[[], None]] = None,
    ):
        self.on_auto_fill = on_auto_fill
        self.on_stage_complete = on_stage_complete

    def __call__(self, event: DomainEvent) -> None:
        if isinstance(event, AutoFillRequested):
            if self.on_auto_fill:
                self.on_auto_fill(event.data)
        elif isinstance(event, StageCompleted):
            if self.on_stage_complete:
                self.on_stage_complete()
        else:
            logger.debug(f"No callback for event {type(event).__name__}")

    def attach(self, session: ConversationSession) -> Callable[[], None]:
        """Start receiving the session's events; returns a detach callable."""
        return session.add_event_handler(self)
