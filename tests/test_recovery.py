"""Tests for conversation recovery."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from stage_agent_chat.config import Config
from stage_agent_chat.models import (
    CompleteResponse,
    ConversationStatus,
    ResponseToken,
    StageContext,
    TokenType,
)
from stage_agent_chat.recovery import RecoveryManager, find_index_gaps, latest_content
from stage_agent_chat.storage import DuckDBStorage


@pytest.fixture
def storage():
    storage = DuckDBStorage(":memory:")
    yield storage
    storage.close()


@pytest.fixture
def manager(storage):
    return RecoveryManager(storage)


async def conversation_with_tokens(storage, *contents, status=None):
    conversation = await storage.create_conversation("ideation-discovery")
    await storage.save_response_tokens(
        conversation.id,
        [ResponseToken(token_index=i, token_content=c) for i, c in enumerate(contents)],
    )
    if status is not None:
        await storage.update_conversation_status(conversation.id, status)
    return conversation


def test_latest_content_uses_highest_index_in_any_order():
    tokens = [
        ResponseToken(token_index=2, token_content="Hello world"),
        ResponseToken(token_index=0, token_content="He"),
        ResponseToken(token_index=3, token_content="tip", token_type=TokenType.SUGGESTION),
        ResponseToken(token_index=1, token_content="Hello"),
    ]
    assert latest_content(tokens) == "Hello world"
    assert latest_content([]) == ""


def test_find_index_gaps():
    tokens = [ResponseToken(token_index=i, token_content="x") for i in (0, 1, 4, 5, 7)]
    assert find_index_gaps(tokens) == [
        "Token sequence gap between 1 and 4",
        "Token sequence gap between 5 and 7",
    ]


@pytest.mark.asyncio
async def test_recover_from_tokens(storage, manager):
    conversation = await conversation_with_tokens(storage, "Hello", "Hello world")

    result = await manager.recover_conversation(conversation.id)

    assert result.success is True
    assert result.content == "Hello world"
    assert result.is_complete is False


@pytest.mark.asyncio
async def test_complete_response_wins_over_tokens(storage, manager):
    conversation = await conversation_with_tokens(storage, "Draft", "Draft plan")
    await storage.save_complete_response(
        conversation.id,
        CompleteResponse(
            full_content="Final plan",
            suggestions=["Refine scope"],
            auto_fill_data={"title": "Todo app"},
            stage_complete=True,
        ),
    )

    result = await manager.recover_conversation(conversation.id)

    assert result.success is True
    assert result.is_complete is True
    assert result.content == "Final plan"
    assert result.suggestions == ["Refine scope"]
    assert result.auto_fill_data == {"title": "Todo app"}
    assert result.stage_complete is True


@pytest.mark.asyncio
async def test_complete_response_skips_token_query():
    store = MagicMock()
    store.get_conversation = AsyncMock(return_value=MagicMock(status=ConversationStatus.ACTIVE))
    store.get_complete_response = AsyncMock(
        return_value=CompleteResponse(full_content="Done", is_complete=True)
    )
    store.get_tokens_after_index = AsyncMock()

    result = await RecoveryManager(store).recover_conversation("c1")

    assert result.content == "Done"
    store.get_tokens_after_index.assert_not_called()


@pytest.mark.asyncio
async def test_recover_without_tokens_is_empty_success(storage, manager):
    conversation = await storage.create_conversation("stage-a")

    result = await manager.recover_conversation(conversation.id)

    assert result.success is True
    assert result.content == ""
    assert result.is_complete is False


@pytest.mark.asyncio
async def test_recover_missing_conversation(manager):
    result = await manager.recover_conversation("missing")

    assert result.success is False
    assert result.error == "Conversation not found"


@pytest.mark.asyncio
async def test_recover_is_idempotent(storage, manager):
    conversation = await conversation_with_tokens(storage, "A", "AB", "ABC")

    first = await manager.recover_conversation(conversation.id)
    second = await manager.recover_conversation(conversation.id)

    assert first == second


@pytest.mark.asyncio
async def test_store_failure_gives_unsuccessful_result():
    store = MagicMock()
    store.get_conversation = AsyncMock(side_effect=RuntimeError("database unavailable"))

    result = await RecoveryManager(store).recover_conversation("c1")

    assert result.success is False
    assert "database unavailable" in result.error


@pytest.mark.asyncio
async def test_needs_recovery(storage, manager):
    active = await conversation_with_tokens(storage, "Hi")
    completed = await conversation_with_tokens(
        storage, "Hi", status=ConversationStatus.COMPLETED
    )
    answered = await conversation_with_tokens(storage, "Hi")
    await storage.save_complete_response(answered.id, CompleteResponse(full_content="Hi"))

    assert await manager.needs_recovery(active.id) is True
    assert await manager.needs_recovery(completed.id) is False
    assert await manager.needs_recovery(answered.id) is False
    assert await manager.needs_recovery("missing") is False


@pytest.mark.asyncio
async def test_needs_recovery_false_on_error():
    store = MagicMock()
    store.get_conversation = AsyncMock(side_effect=RuntimeError("boom"))
    assert await RecoveryManager(store).needs_recovery("c1") is False


@pytest.mark.asyncio
async def test_resume_streaming_sends_last_token_index(storage):
    conversation = await conversation_with_tokens(storage, "Hello", "Hello wor")

    async def body():
        yield b'data: {"type": "content", "content": "Hello world"}\n\n'

    transport = MagicMock()
    transport.stream_agent_response = MagicMock(return_value=body())
    manager = RecoveryManager.from_config(
        Config(resume_timeout_seconds=120.0), storage, transport
    )
    stage = StageContext(stage_id="ideation-discovery")

    stream = await manager.resume_streaming(conversation.id, stage, "Build a todo app")
    chunks = [chunk async for chunk in stream]

    assert chunks == [b'data: {"type": "content", "content": "Hello world"}\n\n']
    args, kwargs = transport.stream_agent_response.call_args
    assert args == (conversation.id, stage, "Build a todo app")
    assert kwargs["resume_options"].last_token_index == 1
    assert kwargs["resume_options"].resume_streaming is True
    assert kwargs["timeout"] == 120.0


@pytest.mark.asyncio
async def test_resume_streaming_requires_transport(storage, manager):
    with pytest.raises(RuntimeError):
        await manager.resume_streaming("c1", StageContext(stage_id="s"))


@pytest.mark.asyncio
async def test_get_recovery_status(storage, manager):
    conversation = await conversation_with_tokens(storage, "a", "ab", "abc")

    status = await manager.get_recovery_status(conversation.id)

    assert status.conversation_exists is True
    assert status.conversation_status == ConversationStatus.ACTIVE
    assert status.token_count == 3
    assert status.last_token_index == 2
    assert status.is_complete is False

    missing = await manager.get_recovery_status("missing")
    assert missing.conversation_exists is False


@pytest.mark.asyncio
async def test_get_incremental_tokens(storage, manager):
    conversation = await conversation_with_tokens(storage, "a", "ab", "abc")

    incremental = await manager.get_incremental_tokens(conversation.id, 0)
    assert incremental.has_new_tokens is True
    assert [t.token_index for t in incremental.tokens] == [1, 2]
    assert incremental.latest_content == "abc"

    nothing_new = await manager.get_incremental_tokens(conversation.id, 2)
    assert nothing_new.has_new_tokens is False
    assert nothing_new.latest_content == ""


@pytest.mark.asyncio
async def test_validate_integrity_reports_gaps_but_recovers(storage, manager):
    conversation = await storage.create_conversation("stage-a")
    await storage.save_response_tokens(
        conversation.id,
        [
            ResponseToken(token_index=0, token_content="Hel"),
            ResponseToken(token_index=3, token_content="Hello there"),
        ],
    )

    report = await manager.validate_conversation_integrity(conversation.id)
    assert report.is_valid is False
    assert report.issues == ["Token sequence gap between 0 and 3"]
    assert report.can_recover is True

    result = await manager.recover_conversation(conversation.id)
    assert result.content == "Hello there"


@pytest.mark.asyncio
async def test_validate_integrity_without_tokens(storage, manager):
    failed = await storage.create_conversation("stage-a")
    await storage.update_conversation_status(failed.id, ConversationStatus.FAILED)

    report = await manager.validate_conversation_integrity(failed.id)

    assert report.issues == ["No tokens found"]
    assert report.can_recover is False

    missing = await manager.validate_conversation_integrity("missing")
    assert missing.issues == ["Conversation not found"]


@pytest.mark.asyncio
async def test_cleanup_failed_conversations_delegates_to_store():
    store = MagicMock()
    store.cleanup_old_conversations = AsyncMock(return_value=3)

    assert await RecoveryManager(store).cleanup_failed_conversations(7) == 3
    store.cleanup_old_conversations.assert_awaited_once_with(7)

    store.cleanup_old_conversations = AsyncMock(side_effect=RuntimeError("boom"))
    assert await RecoveryManager(store).cleanup_failed_conversations() == 0
