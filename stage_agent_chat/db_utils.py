import logging
import time
from contextlib import contextmanager

import duckdb


logger = logging.getLogger(__name__)

LOCK_RETRY_DELAYS = (0.05, 0.1, 0.25, 0.5)


@contextmanager
def get_db_connection(db_path: str, init_schema: bool = False) -> duckdb.DuckDBPyConnection:
    """Yield a DuckDB connection to a history file, closing it afterwards.

    A file held by another process is retried a few times with short waits
    before the lock error is raised.
    """
    for delay in (*LOCK_RETRY_DELAYS, None):
        try:
            connection = duckdb.connect(db_path)
            break
        except duckdb.IOException as e:
            if delay is None:
                logger.error(f"History database {db_path} is still locked: {e}")
                raise
            logger.warning(f"History database locked, retrying in {delay}s")
            time.sleep(delay)

    try:
        if init_schema:
            _init_schema(connection)
        yield connection
    finally:
        connection.close()


def _init_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Initialize the conversation history schema."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS chat_conversations (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            stage_id TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'completed', 'failed')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            metadata JSON
        )
    """)

    # Tokens are cumulative snapshots, one row per (conversation, index)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS chat_response_tokens (
            conversation_id TEXT NOT NULL,
            token_index INTEGER NOT NULL,
            token_content TEXT NOT NULL,
            token_type TEXT NOT NULL DEFAULT 'content'
                CHECK (token_type IN ('content', 'suggestion', 'autofill', 'complete')),
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (conversation_id, token_index)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS chat_responses (
            conversation_id TEXT PRIMARY KEY,
            full_content TEXT,
            suggestions JSON,
            auto_fill_data JSON,
            stage_complete BOOLEAN DEFAULT FALSE,
            context JSON,
            is_complete BOOLEAN DEFAULT FALSE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_chat_conversations_stage_id ON chat_conversations(stage_id)"
    )

    logger.debug("Database schema initialized")
