"""Reconstruction and resumption of interrupted conversations.

Stored content tokens are cumulative snapshots of the response, not
deltas. The latest content is therefore the content-typed token with the
highest ``token_index``; concatenating tokens would duplicate text.
"""

import logging
from typing import AsyncIterator, List, Optional

from .backend import AgentTransport, ConversationStore
from .config import Config
from .errors import RecoveryError
from .models import (
    ConversationStatus,
    IncrementalTokens,
    IntegrityReport,
    RecoveryResult,
    RecoveryStatus,
    ResponseToken,
    ResumeOptions,
    StageContext,
)

logger = logging.getLogger(__name__)

DEFAULT_RESUME_TIMEOUT_SECONDS = 120.0


def latest_content(tokens: List[ResponseToken]) -> str:
    """Content of the highest-index content token, whatever the input order."""
    content_tokens = sorted(
        (t for t in tokens if t.is_content), key=lambda t: t.token_index
    )
    return content_tokens[-1].token_content if content_tokens else ""


def find_index_gaps(tokens: List[ResponseToken]) -> List[str]:
    indexes = sorted(t.token_index for t in tokens)
    return [
        f"Token sequence gap between {prev} and {cur}"
        for prev, cur in zip(indexes, indexes[1:])
        if cur != prev + 1
    ]


class RecoveryManager:
    """Rebuilds the best known state of a conversation from the history store."""

    def __init__(
        self,
        store: ConversationStore,
        transport: Optional[AgentTransport] = None,
        resume_timeout_seconds: float = DEFAULT_RESUME_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.transport = transport
        self.resume_timeout_seconds = resume_timeout_seconds

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: ConversationStore,
        transport: Optional[AgentTransport] = None,
    ) -> "RecoveryManager":
        return cls(store, transport, resume_timeout_seconds=config.resume_timeout_seconds)

    async def recover_conversation(self, conversation_id: str) -> RecoveryResult:
        """Reconstruct the latest known state without replaying the request.

        A stored complete response wins outright. Otherwise the newest content
        token is used. An existing conversation with nothing stored yet is an
        empty, incomplete success. Query failures are reported as
        ``success=False`` rather than raised.
        """
        try:
            logger.info(f"Attempting to recover conversation {conversation_id}")

            conversation = await self._query(
                conversation_id, self.store.get_conversation, conversation_id
            )
            if conversation is None:
                logger.info(f"Conversation {conversation_id} not found")
                return RecoveryResult(success=False, error="Conversation not found")

            complete = await self._query(
                conversation_id, self.store.get_complete_response, conversation_id
            )
            if complete is not None and complete.is_complete:
                logger.info("Complete response found, returning it")
                return RecoveryResult(
                    success=True,
                    content=complete.full_content,
                    suggestions=list(complete.suggestions),
                    auto_fill_data=dict(complete.auto_fill_data),
                    stage_complete=complete.stage_complete,
                    is_complete=True,
                )

            tokens = await self._query(
                conversation_id, self.store.get_tokens_after_index, conversation_id, -1
            )
            content = latest_content(tokens)
            if content:
                logger.info(f"Content reconstructed from {len(tokens)} tokens")
            else:
                logger.info("Conversation exists but no content found")
            return RecoveryResult(success=True, content=content, is_complete=False)

        except RecoveryError as e:
            logger.error(str(e))
            return RecoveryResult(success=False, error=e.reason)

    async def needs_recovery(self, conversation_id: str) -> bool:
        """True only while the conversation is active and has no complete response."""
        try:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                return False
            if conversation.status != ConversationStatus.ACTIVE:
                return False
            complete = await self.store.get_complete_response(conversation_id)
            return not (complete is not None and complete.is_complete)
        except Exception as e:
            logger.error(f"Failed to check recovery status: {e}")
            return False

    async def resume_streaming(
        self,
        conversation_id: str,
        stage_context: StageContext,
        user_message: str = "",
    ) -> AsyncIterator[bytes]:
        """Re-open the agent stream after the last token the store holds.

        The request carries ``lastTokenIndex`` and ``resumeStreaming`` and is
        bounded by the longer resume timeout.
        """
        if self.transport is None:
            raise RuntimeError("resume_streaming requires an agent transport")

        last_token_index = await self.store.get_last_token_index(conversation_id)
        logger.info(f"Resuming streaming from token index: {last_token_index}")
        return self.transport.stream_agent_response(
            conversation_id,
            stage_context,
            user_message,
            resume_options=ResumeOptions(last_token_index=last_token_index),
            timeout=self.resume_timeout_seconds,
        )

    async def get_recovery_status(self, conversation_id: str) -> RecoveryStatus:
        try:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                return RecoveryStatus(conversation_exists=False)

            complete = await self.store.get_complete_response(conversation_id)
            last_token_index = await self.store.get_last_token_index(conversation_id)
            tokens = await self.store.get_tokens_after_index(conversation_id, -1)

            status = RecoveryStatus(
                conversation_exists=True,
                conversation_status=conversation.status,
                token_count=len(tokens),
                is_complete=bool(complete and complete.is_complete),
                last_token_index=last_token_index,
            )
            logger.debug(f"Recovery status for {conversation_id}: {status}")
            return status
        except Exception as e:
            logger.error(f"Failed to get recovery status: {e}")
            return RecoveryStatus(conversation_exists=False)

    async def get_incremental_tokens(
        self, conversation_id: str, last_token_index: int = -1
    ) -> IncrementalTokens:
        """Tokens persisted after ``last_token_index`` plus the newest content."""
        try:
            tokens = await self.store.get_tokens_after_index(
                conversation_id, last_token_index
            )
        except Exception as e:
            logger.error(f"Failed to get incremental tokens: {e}")
            return IncrementalTokens()

        return IncrementalTokens(
            tokens=tokens,
            latest_content=latest_content(tokens),
            has_new_tokens=len(tokens) > 0,
        )

    async def validate_conversation_integrity(
        self, conversation_id: str
    ) -> IntegrityReport:
        """Report missing tokens and index gaps.

        Gaps are listed as issues but do not stop recovery, which still
        selects the highest index.
        """
        issues: List[str] = []
        try:
            conversation = await self.store.get_conversation(conversation_id)
            if conversation is None:
                return IntegrityReport(
                    is_valid=False, issues=["Conversation not found"], can_recover=False
                )

            tokens = await self.store.get_tokens_after_index(conversation_id, -1)
            if not tokens:
                issues.append("No tokens found")
            issues.extend(find_index_gaps(tokens))

            can_recover = conversation.status == ConversationStatus.ACTIVE or (
                conversation.status == ConversationStatus.FAILED and len(tokens) > 0
            )
            return IntegrityReport(
                is_valid=not issues, issues=issues, can_recover=can_recover
            )
        except Exception as e:
            issues.append(f"Validation error: {e}")
            return IntegrityReport(is_valid=False, issues=issues, can_recover=False)

    async def cleanup_failed_conversations(self, days_old: int = 30) -> int:
        """Remove finished conversations older than ``days_old`` days."""
        try:
            logger.info("Cleaning up old conversations...")
            removed = await self.store.cleanup_old_conversations(days_old)
            logger.info(f"Cleanup completed, {removed} conversations removed")
            return removed
        except Exception as e:
            logger.error(f"Failed to cleanup conversations: {e}")
            return 0

    async def _query(self, conversation_id: str, method, *args):
        try:
            return await method(*args)
        except Exception as e:
            raise RecoveryError(conversation_id, str(e)) from e
