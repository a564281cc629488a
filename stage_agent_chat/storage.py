"""DuckDB-backed conversation history store.

Mirrors the hosted store's three tables so recovery, diagnostics and the
CLI can run against a local database file (or ``:memory:`` in tests).
"""

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any

import duckdb

from .db_utils import get_db_connection, _init_schema
from .errors import StoreError
from .models import (
    CompleteResponse,
    Conversation,
    ConversationStatus,
    ResponseToken,
)

logger = logging.getLogger(__name__)

_CONVERSATION_COLUMNS = "id, user_id, stage_id, status, created_at, updated_at, metadata"
_RESPONSE_COLUMNS = (
    "full_content, suggestions, auto_fill_data, stage_complete, context, "
    "is_complete, created_at, updated_at"
)


class DuckDBStorage:
    """DuckDB storage implementation for conversations, tokens and responses."""

    def __init__(self, db_path: str):
        """Initialize storage with database path.

        Args:
            db_path: Path to the DuckDB database file, or ":memory:" for in-memory
        """
        self.db_path = db_path
        self._is_memory_db = db_path == ":memory:"
        self._persistent_conn = None

        if self._is_memory_db:
            self._persistent_conn = duckdb.connect(db_path)
            _init_schema(self._persistent_conn)
        else:
            with get_db_connection(self.db_path, init_schema=True):
                pass

    @contextmanager
    def _get_connection(self):
        """Get appropriate database connection with proper cleanup."""
        if self._is_memory_db:
            if self._persistent_conn is None:
                raise StoreError("Storage has been closed")
            yield self._persistent_conn
        else:
            with get_db_connection(self.db_path, init_schema=False) as conn:
                yield conn

    def close(self):
        """Close persistent connection if exists."""
        if self._persistent_conn:
            self._persistent_conn.close()
            self._persistent_conn = None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(
        self,
        stage_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> Conversation:
        """Create a new active conversation for a stage."""
        conversation_id = str(uuid.uuid4())
        now = datetime.now()
        with self._get_connection() as conn:
            conn.execute(
                f"""
                INSERT INTO chat_conversations ({_CONVERSATION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    user_id,
                    stage_id,
                    ConversationStatus.ACTIVE.value,
                    now,
                    now,
                    json.dumps(metadata or {}),
                ),
            )
        logger.debug(f"Created conversation {conversation_id} for stage {stage_id}")
        return Conversation(
            id=conversation_id,
            user_id=user_id,
            stage_id=stage_id,
            status=ConversationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            metadata=metadata or {},
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Get a conversation by ID, or None if it does not exist."""
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()
        return self._row_to_conversation(row) if row else None

    async def update_conversation_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> bool:
        """Set a conversation's status. Returns False if it does not exist."""
        with self._get_connection() as conn:
            exists = conn.execute(
                "SELECT 1 FROM chat_conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if not exists:
                return False
            conn.execute(
                "UPDATE chat_conversations SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, datetime.now(), conversation_id),
            )
        return True

    async def list_conversations(
        self, stage_id: Optional[str] = None, limit: Optional[int] = None
    ) -> List[Conversation]:
        """List conversations, newest first."""
        query = f"SELECT {_CONVERSATION_COLUMNS} FROM chat_conversations"
        params: List[Any] = []
        if stage_id:
            query += " WHERE stage_id = ?"
            params.append(stage_id)
        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_conversation(row) for row in rows]

    async def cleanup_old_conversations(self, days_old: int = 30) -> int:
        """Delete finished conversations older than ``days_old`` days.

        Active conversations are never removed. Returns the number of
        conversations deleted.
        """
        cutoff = datetime.now() - timedelta(days=days_old)
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT id FROM chat_conversations
                WHERE created_at < ? AND status IN ('completed', 'failed')
                """,
                (cutoff,),
            ).fetchall()
            ids = [row[0] for row in rows]
            for conversation_id in ids:
                conn.execute(
                    "DELETE FROM chat_response_tokens WHERE conversation_id = ?",
                    (conversation_id,),
                )
                conn.execute(
                    "DELETE FROM chat_responses WHERE conversation_id = ?",
                    (conversation_id,),
                )
                conn.execute(
                    "DELETE FROM chat_conversations WHERE id = ?", (conversation_id,)
                )

        if ids:
            logger.info(f"Cleaned up {len(ids)} conversations older than {days_old} days")
        return len(ids)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def save_response_tokens(
        self, conversation_id: str, tokens: List[ResponseToken]
    ) -> None:
        """Upsert tokens keyed by ``(conversation_id, token_index)``."""
        if not tokens:
            return
        with self._get_connection() as conn:
            for token in tokens:
                conn.execute(
                    """
                    INSERT INTO chat_response_tokens
                        (conversation_id, token_index, token_content, token_type, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT (conversation_id, token_index) DO UPDATE SET
                        token_content = excluded.token_content,
                        token_type = excluded.token_type
                    """,
                    (
                        conversation_id,
                        token.token_index,
                        token.token_content,
                        token.token_type.value,
                        token.created_at or datetime.now(),
                    ),
                )

    async def get_tokens_after_index(
        self, conversation_id: str, last_token_index: int = -1
    ) -> List[ResponseToken]:
        """Get tokens with index greater than ``last_token_index``, ascending."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT token_index, token_content, token_type, created_at
                FROM chat_response_tokens
                WHERE conversation_id = ? AND token_index > ?
                ORDER BY token_index ASC
                """,
                (conversation_id, last_token_index),
            ).fetchall()
        return [
            ResponseToken(
                token_index=row[0],
                token_content=row[1],
                token_type=row[2],
                created_at=row[3],
            )
            for row in rows
        ]

    async def get_last_token_index(self, conversation_id: str) -> int:
        """Highest stored token index, or -1 when nothing was saved yet."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(token_index) FROM chat_response_tokens WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row or row[0] is None:
            return -1
        return row[0]

    # ------------------------------------------------------------------
    # Complete responses
    # ------------------------------------------------------------------

    async def save_complete_response(
        self, conversation_id: str, response: CompleteResponse
    ) -> CompleteResponse:
        """Store the terminal response for a conversation (marks it complete)."""
        now = datetime.now()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO chat_responses
                    (conversation_id, full_content, suggestions, auto_fill_data,
                     stage_complete, context, is_complete, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, TRUE, ?, ?)
                ON CONFLICT (conversation_id) DO UPDATE SET
                    full_content = excluded.full_content,
                    suggestions = excluded.suggestions,
                    auto_fill_data = excluded.auto_fill_data,
                    stage_complete = excluded.stage_complete,
                    context = excluded.context,
                    is_complete = TRUE,
                    updated_at = excluded.updated_at
                """,
                (
                    conversation_id,
                    response.full_content,
                    json.dumps(response.suggestions),
                    json.dumps(response.auto_fill_data),
                    response.stage_complete,
                    json.dumps(response.context),
                    now,
                    now,
                ),
            )
        saved = await self.get_complete_response(conversation_id)
        if saved is None:
            raise StoreError(f"Failed to save complete response for {conversation_id}")
        return saved

    async def get_complete_response(
        self, conversation_id: str
    ) -> Optional[CompleteResponse]:
        """Get the stored complete response, if any."""
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {_RESPONSE_COLUMNS} FROM chat_responses WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
        if not row:
            return None
        return CompleteResponse(
            full_content=row[0],
            suggestions=row[1],
            auto_fill_data=row[2],
            stage_complete=bool(row[3]),
            context=row[4],
            is_complete=bool(row[5]),
            created_at=row[6],
            updated_at=row[7],
        )

    async def is_conversation_complete(self, conversation_id: str) -> bool:
        response = await self.get_complete_response(conversation_id)
        return bool(response and response.is_complete)

    def _row_to_conversation(self, row) -> Conversation:
        return Conversation(
            id=row[0],
            user_id=row[1],
            stage_id=row[2],
            status=ConversationStatus(row[3]),
            created_at=row[4],
            updated_at=row[5],
            metadata=row[6],
        )
