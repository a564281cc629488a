"""Tests for the httpx backend client."""

import asyncio
import json

import httpx
import pytest

from stage_agent_chat.backend import AgentTransport, ConversationStore, RemoteChatBackend
from stage_agent_chat.config import Config
from stage_agent_chat.errors import (
    AuthenticationError,
    ConversationCreationError,
    SESSION_EXPIRED_MESSAGE,
    SIGN_IN_MESSAGE,
    StoreError,
    TransportError,
)
from stage_agent_chat.middleware import ConversationSession, TurnOutcome
from stage_agent_chat.models import (
    ConversationStatus,
    ResumeOptions,
    StageContext,
    TokenType,
)

BASE_URL = "https://project.supabase.co"


def make_config(**overrides):
    values = dict(backend_url=BASE_URL, api_key="anon-key", access_token="user-jwt")
    values.update(overrides)
    return Config(**values)


def make_backend(handler, **overrides):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteChatBackend(make_config(**overrides), client=client)


async def body_chunks(*chunks, delay=0.0):
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


async def read_all(stream):
    return b"".join([chunk async for chunk in stream])


def test_requires_backend_configuration():
    with pytest.raises(ValueError):
        RemoteChatBackend(Config())


def test_implements_store_and_transport_protocols():
    backend = make_backend(lambda request: httpx.Response(200))
    assert isinstance(backend, ConversationStore)
    assert isinstance(backend, AgentTransport)


@pytest.mark.asyncio
async def test_stream_agent_response_request_and_chunks():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(
            200,
            content=body_chunks(
                b'data: {"type": "content", "content": "Hel',
                b'lo"}\n\n',
            ),
        )

    backend = make_backend(handler)
    stage = StageContext(stage_id="ideation-discovery", current_stage_data={"idea": "todo"})

    data = await read_all(
        backend.stream_agent_response("conv-1", stage, "Build a todo app")
    )

    assert data == b'data: {"type": "content", "content": "Hello"}\n\n'
    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == "/functions/v1/agent-prompt"
    assert request.headers["authorization"] == "Bearer user-jwt"
    assert request.headers["apikey"] == "anon-key"

    body = json.loads(request.content)
    assert body["stageId"] == "ideation-discovery"
    assert body["currentStageData"] == {"idea": "todo"}
    assert body["allStageData"] == {}
    assert body["userMessage"] == "Build a todo app"
    assert body["conversationId"] == "conv-1"
    assert body["memory"] == {}
    assert body["conversationHistory"] == []
    assert "lastTokenIndex" not in body
    assert "resumeStreaming" not in body


@pytest.mark.asyncio
async def test_stream_agent_response_sends_resume_fields():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, content=b"")

    backend = make_backend(handler)
    await read_all(
        backend.stream_agent_response(
            "conv-1",
            StageContext(stage_id="s"),
            "",
            resume_options=ResumeOptions(last_token_index=41),
            timeout=120.0,
        )
    )

    assert bodies[0]["lastTokenIndex"] == 41
    assert bodies[0]["resumeStreaming"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [401, 403])
async def test_stream_auth_status_raises_authentication_error(status_code):
    backend = make_backend(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(AuthenticationError) as exc_info:
        await read_all(backend.stream_agent_response("c", StageContext(stage_id="s"), "hi"))

    assert str(exc_info.value) == SESSION_EXPIRED_MESSAGE
    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_stream_server_error_raises_transport_error():
    backend = make_backend(lambda request: httpx.Response(500, text="agent crashed"))

    with pytest.raises(TransportError) as exc_info:
        await read_all(backend.stream_agent_response("c", StageContext(stage_id="s"), "hi"))

    assert exc_info.value.status_code == 500
    assert "agent crashed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_stream_network_error_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = make_backend(handler)

    with pytest.raises(TransportError, match="Network error"):
        await read_all(backend.stream_agent_response("c", StageContext(stage_id="s"), "hi"))


@pytest.mark.asyncio
async def test_stream_timeout_raises_transport_error():
    backend = make_backend(
        lambda request: httpx.Response(200, content=body_chunks(b"data: {}\n\n", delay=1.0))
    )

    with pytest.raises(TransportError, match="timed out"):
        await read_all(
            backend.stream_agent_response(
                "c", StageContext(stage_id="s"), "hi", timeout=0.05
            )
        )


@pytest.mark.asyncio
async def test_resume_timeout_covers_waiting_for_headers():
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"")

    backend = make_backend(handler)
    stream = backend.stream_agent_response(
        "c",
        StageContext(stage_id="s"),
        "",
        resume_options=ResumeOptions(last_token_index=1),
        timeout=0.2,
    )

    with pytest.raises(TransportError, match="timed out"):
        await asyncio.wait_for(read_all(stream), 2.0)


@pytest.mark.asyncio
async def test_stream_without_credential_makes_no_request():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200)

    backend = make_backend(handler, access_token=None)

    with pytest.raises(AuthenticationError, match=SIGN_IN_MESSAGE):
        await read_all(backend.stream_agent_response("c", StageContext(stage_id="s"), "hi"))

    assert requests == []


@pytest.mark.asyncio
async def test_create_conversation():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(
            201,
            json=[
                {
                    "id": "conv-42",
                    "stage_id": "ideation-discovery",
                    "status": "active",
                    "user_id": "user-1",
                    "metadata": {"currentStageData": {}},
                }
            ],
        )

    backend = make_backend(handler)

    conversation = await backend.create_conversation(
        "ideation-discovery", {"currentStageData": {}}
    )

    assert conversation.id == "conv-42"
    assert conversation.status == ConversationStatus.ACTIVE
    request = requests[0]
    assert request.url.path == "/rest/v1/chat_conversations"
    assert request.headers["prefer"] == "return=representation"
    body = json.loads(request.content)
    assert body["stage_id"] == "ideation-discovery"
    assert body["status"] == "active"
    assert body["metadata"]["currentStageData"] == {}
    assert "timestamp" in body["metadata"]


@pytest.mark.asyncio
async def test_create_conversation_failure():
    backend = make_backend(lambda request: httpx.Response(500, text="db down"))

    with pytest.raises(ConversationCreationError, match="Failed to initialize conversation"):
        await backend.create_conversation("s")


@pytest.mark.asyncio
async def test_create_conversation_rejected_credential():
    backend = make_backend(lambda request: httpx.Response(401))

    with pytest.raises(AuthenticationError):
        await backend.create_conversation("s")


@pytest.mark.asyncio
async def test_get_tokens_after_index():
    params = []

    def handler(request):
        params.append(dict(request.url.params))
        return httpx.Response(
            200,
            json=[
                {"token_index": 3, "token_content": "Hello", "token_type": "content"},
                {"token_index": 4, "token_content": "Try this", "token_type": "suggestion"},
            ],
        )

    backend = make_backend(handler)

    tokens = await backend.get_tokens_after_index("conv-1", 2)

    assert [t.token_index for t in tokens] == [3, 4]
    assert tokens[1].token_type == TokenType.SUGGESTION
    assert params[0]["conversation_id"] == "eq.conv-1"
    assert params[0]["token_index"] == "gt.2"
    assert params[0]["order"] == "token_index.asc"


@pytest.mark.asyncio
async def test_get_last_token_index():
    responses = [[], [{"token_index": 7}]]
    backend = make_backend(lambda request: httpx.Response(200, json=responses.pop(0)))

    assert await backend.get_last_token_index("conv-1") == -1
    assert await backend.get_last_token_index("conv-1") == 7


@pytest.mark.asyncio
async def test_get_complete_response_parses_json_strings():
    backend = make_backend(
        lambda request: httpx.Response(
            200,
            json=[
                {
                    "full_content": "Plan",
                    "suggestions": '["One", "Two"]',
                    "auto_fill_data": '{"title": "Todo"}',
                    "stage_complete": True,
                    "context": None,
                    "is_complete": True,
                }
            ],
        )
    )

    response = await backend.get_complete_response("conv-1")

    assert response.suggestions == ["One", "Two"]
    assert response.auto_fill_data == {"title": "Todo"}
    assert response.context == {}
    assert await backend.is_conversation_complete("conv-1") is True


@pytest.mark.asyncio
async def test_get_conversation_missing_returns_none():
    backend = make_backend(lambda request: httpx.Response(200, json=[]))
    assert await backend.get_conversation("missing") is None


@pytest.mark.asyncio
async def test_store_query_failure_raises_store_error():
    backend = make_backend(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(StoreError):
        await backend.get_conversation("conv-1")


@pytest.mark.asyncio
async def test_cleanup_old_conversations():
    params = []

    def handler(request):
        params.append(dict(request.url.params))
        return httpx.Response(200, json=[{"id": "a"}, {"id": "b"}])

    backend = make_backend(handler)

    assert await backend.cleanup_old_conversations(7) == 2
    assert params[0]["status"] == "in.(completed,failed)"
    assert params[0]["created_at"].startswith("lt.")


@pytest.mark.asyncio
async def test_session_over_http_backend():
    """Full turn: conversation creation, streamed reply, completion."""

    def handler(request):
        if request.url.path == "/rest/v1/chat_conversations":
            return httpx.Response(
                201, json=[{"id": "conv-7", "stage_id": "ideation-discovery"}]
            )
        frames = [
            b'data: {"type": "content", "content": "Here is"}\n\n',
            b'data: {"type": "content", "content": "Here is a plan"}\n\n',
            b'data: {"type": "complete", "suggestions": ["Next step"], "autoFillData": {}}\n\n',
        ]
        return httpx.Response(200, content=body_chunks(*frames))

    backend = make_backend(handler)
    session = ConversationSession(
        transport=backend,
        stage_context=StageContext(stage_id="ideation-discovery"),
        config=backend.config,
    )

    result = await session.send_message("Build a todo app")

    assert result.outcome == TurnOutcome.COMPLETED
    assert session.state.conversation_id == "conv-7"
    assert session.state.content == "Here is a plan"
    assert session.state.suggestions == ["Next step"]
    await backend.aclose()
