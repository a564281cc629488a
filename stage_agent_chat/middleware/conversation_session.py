"""Conversation state machine for one stage's chat with the planning agent.

A session owns the client state of a single conversation: it creates the
conversation lazily, streams the agent's response through the retry
controller, applies parsed events in arrival order and reports the outcome
of each turn. At most one attempt is in flight per session; starting a new
one aborts the previous attempt, and an aborted attempt never touches
session state again.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from ..backend import AgentTransport
from ..config import Config
from ..errors import (
    AttemptAborted,
    AuthenticationError,
    ConversationCreationError,
    DEFAULT_FAILURE_MESSAGE,
    IncompleteStreamError,
    SIGN_IN_MESSAGE,
    StreamReportedError,
)
from ..models import (
    ChatMessage,
    ConversationClientState,
    MessageType,
    RecoveryResult,
    SessionPhase,
    StageContext,
)
from ..recovery import RecoveryManager
from ..retry import AbortSignal, RetryController, RetryPolicy
from ..stream_parser import (
    CompleteEvent,
    ContentEvent,
    ErrorEvent,
    PingEvent,
    parse_event_stream,
)

logger = logging.getLogger(__name__)


@dataclass
class AutoFillRequested:
    """The agent produced structured data for the current stage's fields."""
    data: Dict[str, Any]


@dataclass
class StageCompleted:
    """The agent considers the current stage finished."""
    stage_id: str
    go_to_stage_id: Optional[str] = None


DomainEvent = Union[AutoFillRequested, StageCompleted]
StateListener = Callable[[ConversationClientState], None]
EventHandler = Callable[[DomainEvent], None]


class TurnOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RESTORED = "restored"  # state rebuilt from the store, nothing left to stream
    RECOVERY_FAILED = "recovery_failed"


@dataclass
class TurnResult:
    """What happened to one send or resume operation."""
    outcome: TurnOutcome
    events: List[DomainEvent] = field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0
    recovery: Optional[RecoveryResult] = None


@dataclass
class _Turn:
    signal: AbortSignal
    events: List[DomainEvent] = field(default_factory=list)
    completed: bool = False


@dataclass
class _ActiveAttempt:
    signal: AbortSignal
    task: "asyncio.Future"


class ConversationSession:
    """State machine for one conversation (one wizard stage session).

    Phases: IDLE -> CREATING_CONVERSATION -> STREAMING -> COMPLETE | ERRORED.
    Retries re-enter CREATING_CONVERSATION/STREAMING; cancellation returns
    to IDLE without an error.
    """

    def __init__(
        self,
        transport: AgentTransport,
        stage_context: StageContext,
        recovery: Optional[RecoveryManager] = None,
        config: Optional[Config] = None,
        credential_provider: Optional[Callable[[], Optional[str]]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the session.

        Args:
            transport: Creates conversations and streams agent responses
            stage_context: Stage id and stage data sent with every request
            recovery: Optional recovery manager used on retries and by ``resume``
            config: Application configuration (defaults to ``Config()``)
            credential_provider: Returns the bearer credential, or None when
                signed out. Defaults to ``config.credential``.
            retry_policy: Overrides the policy derived from ``config``
            sleep: Backoff sleep, replaceable in tests
        """
        self.config = config or Config()
        self.transport = transport
        self.stage_context = stage_context
        self.recovery = recovery
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self._credential_provider = credential_provider or (lambda: self.config.credential)
        self._sleep = sleep

        self.state = ConversationClientState()
        self._listeners: List[StateListener] = []
        self._event_handlers: List[EventHandler] = []
        self._active: Optional[_ActiveAttempt] = None
        self._last_user_message: Optional[str] = None
        self._completed_turns = 0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self.state.is_streaming

    @property
    def is_busy(self) -> bool:
        return self._active is not None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener for state snapshots; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_event_handler(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for domain events emitted on completion."""
        self._event_handlers.append(handler)

        def remove() -> None:
            if handler in self._event_handlers:
                self._event_handlers.remove(handler)

        return remove

    def _update(self, signal: Optional[AbortSignal], **changes: Any) -> bool:
        """Apply state changes unless the owning attempt was aborted."""
        if signal is not None and signal.aborted:
            return False
        for name, value in changes.items():
            setattr(self.state, name, value)
        self._notify()
        return True

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.exception(f"State listener failed: {e}")

    def _emit(self, turn: _Turn, event: DomainEvent) -> None:
        if turn.signal.aborted:
            return
        turn.events.append(event)
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.exception(f"Event handler failed for {type(event).__name__}: {e}")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def send_message(self, user_message: str) -> TurnResult:
        """Send a user message and stream the agent's reply into the state.

        Any attempt still in flight is cancelled first. Without a credential
        the call fails immediately with the sign-in error and no network
        traffic.
        """
        self.cancel("superseded by a new message")
        self._last_user_message = user_message

        if not self._credential_provider():
            self._update(
                None,
                is_loading=False,
                error=SIGN_IN_MESSAGE,
                content="",
                suggestions=[],
                auto_fill_data={},
                is_complete=False,
                phase=SessionPhase.ERRORED,
            )
            return TurnResult(outcome=TurnOutcome.FAILED, error=SIGN_IN_MESSAGE)

        return await self._run_exclusive(lambda signal: self._run_send(user_message, signal))

    async def retry(self) -> Optional[TurnResult]:
        """Clear the error and re-send the last user message, if there was one."""
        self.clear_error()
        if self._last_user_message is None:
            return None
        return await self.send_message(self._last_user_message)

    def clear_error(self) -> None:
        if self.state.error is not None:
            self._update(None, error=None)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Abort the in-flight attempt and any pending retry.

        Returns True if something was cancelled. Never sets an error.
        """
        active = self._active
        if active is None:
            return False
        self._active = None
        active.signal.abort(reason)
        if not active.task.done():
            active.task.cancel()
        logger.debug(f"Request aborted: {reason}")
        self._update(None, is_loading=False, phase=SessionPhase.IDLE)
        return True

    def close(self) -> None:
        """Stop all work for this session (navigation away / unmount)."""
        self.cancel("session closed")

    async def resume(
        self, conversation_id: str, user_message: str = ""
    ) -> TurnResult:
        """Adopt an existing conversation after a reload or disconnect.

        Rebuilds the last known state from the store. If the conversation is
        still active and has no complete response, the stream is resumed
        from the last stored token.
        """
        if self.recovery is None:
            raise RuntimeError("resume requires a recovery manager")

        self.cancel("resuming conversation")
        self._update(None, conversation_id=conversation_id, error=None)
        return await self._run_exclusive(
            lambda signal: self._run_resume(conversation_id, user_message, signal)
        )

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _run_exclusive(
        self, body: Callable[[AbortSignal], Awaitable[TurnResult]]
    ) -> TurnResult:
        signal = AbortSignal()
        task = asyncio.ensure_future(body(signal))
        active = _ActiveAttempt(signal=signal, task=task)
        self._active = active
        try:
            return await task
        except AttemptAborted:
            return TurnResult(outcome=TurnOutcome.CANCELLED)
        except asyncio.CancelledError:
            if signal.aborted:
                return TurnResult(outcome=TurnOutcome.CANCELLED)
            # The caller itself was cancelled
            signal.abort("caller cancelled")
            if self._active is active:
                self._update(None, is_loading=False, phase=SessionPhase.IDLE)
            raise
        finally:
            if self._active is active:
                self._active = None

    async def _run_send(self, user_message: str, signal: AbortSignal) -> TurnResult:
        self._update(
            signal,
            is_loading=True,
            error=None,
            content="",
            suggestions=[],
            auto_fill_data={},
            is_complete=False,
        )

        turn = _Turn(signal=signal)
        controller = RetryController(self.retry_policy, signal, sleep=self._sleep)

        async def attempt(number: int) -> None:
            await self._send_attempt(user_message, turn, number)

        try:
            await controller.run(attempt)
        except AttemptAborted:
            return TurnResult(outcome=TurnOutcome.CANCELLED, attempts=controller.attempt)
        except Exception as e:
            message = self._user_facing_error(e)
            logger.error(f"Turn failed after {controller.attempt} attempt(s): {e}")
            self._update(signal, is_loading=False, error=message, phase=SessionPhase.ERRORED)
            return TurnResult(
                outcome=TurnOutcome.FAILED, error=message, attempts=controller.attempt
            )

        if signal.aborted:
            return TurnResult(outcome=TurnOutcome.CANCELLED, attempts=controller.attempt)

        history = self.state.history_messages + [
            ChatMessage(content=user_message, type=MessageType.USER)
        ]
        self._update(
            signal,
            history_messages=history,
            is_loading=False,
            phase=SessionPhase.COMPLETE,
        )
        self._completed_turns += 1
        return TurnResult(
            outcome=TurnOutcome.COMPLETED, events=turn.events, attempts=controller.attempt
        )

    async def _send_attempt(self, user_message: str, turn: _Turn, number: int) -> None:
        signal = turn.signal
        conversation_id = await self._ensure_conversation(signal)

        stream: Optional[AsyncIterator[bytes]] = None
        if number > 1 and self._should_recover_on_retry():
            recovered = await self.recovery.recover_conversation(conversation_id)
            signal.raise_if_aborted()
            if recovered.success and recovered.is_complete:
                logger.info("Recovery successful, using stored complete response")
                self._apply_recovered(turn, recovered)
                return
            if recovered.success and recovered.content:
                self._update(signal, content=recovered.content)
                stream = await self.recovery.resume_streaming(
                    conversation_id, self.stage_context, user_message
                )

        if stream is None:
            if number > 1:
                self._update(signal, content="")
            stream = self.transport.stream_agent_response(
                conversation_id, self.stage_context, user_message
            )

        self._update(signal, phase=SessionPhase.STREAMING)
        await self._consume(stream, turn)

    def _should_recover_on_retry(self) -> bool:
        # The store keeps one complete response per conversation, so after
        # the first finished turn it may belong to an earlier message.
        return (
            self.recovery is not None
            and self.config.recover_on_retry
            and self._completed_turns == 0
        )

    async def _ensure_conversation(self, signal: AbortSignal) -> str:
        if self.state.conversation_id:
            return self.state.conversation_id

        self._update(signal, phase=SessionPhase.CREATING_CONVERSATION)
        metadata = {
            "currentStageData": self.stage_context.current_stage_data,
            "allStageData": self.stage_context.all_stage_data,
        }
        try:
            conversation = await self.transport.create_conversation(
                self.stage_context.stage_id, metadata
            )
        except (AuthenticationError, ConversationCreationError):
            raise
        except Exception as e:
            logger.error(f"Failed to create conversation: {e}")
            raise ConversationCreationError(self.stage_context.stage_id, str(e)) from e

        signal.raise_if_aborted()
        self._update(signal, conversation_id=conversation.id)
        logger.debug(f"Created conversation {conversation.id}")
        return conversation.id

    async def _consume(self, stream: AsyncIterator[bytes], turn: _Turn) -> None:
        """Apply parsed events in arrival order until the stream closes."""
        signal = turn.signal
        saw_complete = False

        async with aclosing(parse_event_stream(stream)) as events:
            async for event in events:
                signal.raise_if_aborted()

                if isinstance(event, PingEvent):
                    continue
                if saw_complete:
                    logger.debug(f"Ignoring {type(event).__name__} received after completion")
                    continue

                if isinstance(event, ContentEvent):
                    self._update(signal, content=event.content)
                elif isinstance(event, CompleteEvent):
                    saw_complete = True
                    self._apply_complete(turn, event)
                elif isinstance(event, ErrorEvent):
                    raise StreamReportedError(event.message)

        signal.raise_if_aborted()
        if not saw_complete:
            raise IncompleteStreamError()

    def _apply_complete(self, turn: _Turn, event: CompleteEvent) -> None:
        changes: Dict[str, Any] = {
            "suggestions": list(event.suggestions),
            "auto_fill_data": dict(event.auto_fill_data),
            "is_complete": True,
        }
        if event.content is not None:
            changes["content"] = event.content
        if not self._update(turn.signal, **changes):
            return
        self._finish_turn(turn, event.auto_fill_data, event.stage_complete, event.go_to_stage_id)

    def _apply_recovered(self, turn: _Turn, recovered: RecoveryResult) -> None:
        if not self._update(
            turn.signal,
            content=recovered.content or "",
            suggestions=list(recovered.suggestions),
            auto_fill_data=dict(recovered.auto_fill_data),
            is_complete=recovered.is_complete,
        ):
            return
        if recovered.is_complete:
            self._finish_turn(turn, recovered.auto_fill_data, recovered.stage_complete, None)

    def _finish_turn(
        self,
        turn: _Turn,
        auto_fill_data: Dict[str, Any],
        stage_complete: bool,
        go_to_stage_id: Optional[str],
    ) -> None:
        # Side effects fire once per turn, after is_complete is set
        if turn.completed:
            return
        turn.completed = True
        if auto_fill_data:
            self._emit(turn, AutoFillRequested(data=dict(auto_fill_data)))
        if stage_complete:
            self._emit(
                turn,
                StageCompleted(
                    stage_id=self.stage_context.stage_id, go_to_stage_id=go_to_stage_id
                ),
            )

    async def _run_resume(
        self, conversation_id: str, user_message: str, signal: AbortSignal
    ) -> TurnResult:
        needs_recovery = await self.recovery.needs_recovery(conversation_id)
        recovered = await self.recovery.recover_conversation(conversation_id)
        signal.raise_if_aborted()

        if not recovered.success:
            logger.warning(f"Recovery failed for {conversation_id}: {recovered.error}")
            return TurnResult(
                outcome=TurnOutcome.RECOVERY_FAILED,
                error=recovered.error,
                recovery=recovered,
            )

        self._update(
            signal,
            content=recovered.content or "",
            suggestions=list(recovered.suggestions),
            auto_fill_data=dict(recovered.auto_fill_data),
            is_complete=recovered.is_complete,
        )

        if recovered.is_complete or not needs_recovery:
            if recovered.is_complete:
                self._append_assistant_message(signal, recovered)
                self._completed_turns += 1
            self._update(
                signal,
                is_loading=False,
                phase=SessionPhase.COMPLETE if recovered.is_complete else SessionPhase.IDLE,
            )
            return TurnResult(outcome=TurnOutcome.RESTORED, recovery=recovered)

        self._update(signal, is_loading=True, phase=SessionPhase.STREAMING)
        turn = _Turn(signal=signal)
        controller = RetryController(self.retry_policy, signal, sleep=self._sleep)

        async def attempt(number: int) -> None:
            stream = await self.recovery.resume_streaming(
                conversation_id, self.stage_context, user_message
            )
            await self._consume(stream, turn)

        try:
            await controller.run(attempt)
        except AttemptAborted:
            return TurnResult(
                outcome=TurnOutcome.CANCELLED, attempts=controller.attempt, recovery=recovered
            )
        except Exception as e:
            message = self._user_facing_error(e)
            self._update(signal, is_loading=False, error=message, phase=SessionPhase.ERRORED)
            return TurnResult(
                outcome=TurnOutcome.FAILED,
                error=message,
                attempts=controller.attempt,
                recovery=recovered,
            )

        self._append_assistant_message(signal, None)
        self._update(signal, is_loading=False, phase=SessionPhase.COMPLETE)
        self._completed_turns += 1
        return TurnResult(
            outcome=TurnOutcome.COMPLETED,
            events=turn.events,
            attempts=controller.attempt,
            recovery=recovered,
        )

    def _append_assistant_message(
        self, signal: AbortSignal, recovered: Optional[RecoveryResult]
    ) -> None:
        if recovered is not None:
            content = recovered.content or ""
            suggestions = list(recovered.suggestions)
            auto_fill = dict(recovered.auto_fill_data)
        else:
            content = self.state.content
            suggestions = list(self.state.suggestions)
            auto_fill = dict(self.state.auto_fill_data)

        message = ChatMessage(
            content=content,
            type=MessageType.ASSISTANT,
            suggestions=suggestions,
            auto_fill_data=auto_fill,
            is_complete=True,
        )
        self._update(signal, history_messages=self.state.history_messages + [message])

    @staticmethod
    def _user_facing_error(error: BaseException) -> str:
        if isinstance(error, AuthenticationError):
            return str(error) or SIGN_IN_MESSAGE
        return str(error) or DEFAULT_FAILURE_MESSAGE
