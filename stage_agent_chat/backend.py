"""HTTP client for the hosted conversation history store and agent function.

The store is exposed as PostgREST tables under ``/rest/v1`` and the agent
as a streaming edge function under ``/functions/v1``.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

import httpx

from .config import Config
from .errors import (
    AuthenticationError,
    ConversationCreationError,
    SESSION_EXPIRED_MESSAGE,
    SIGN_IN_MESSAGE,
    StoreError,
    TransportError,
)
from .models import (
    CompleteResponse,
    Conversation,
    ConversationStatus,
    ResponseToken,
    ResumeOptions,
    StageContext,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    """Read side of the conversation history store used by recovery."""

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def get_tokens_after_index(
        self, conversation_id: str, last_token_index: int = -1
    ) -> List[ResponseToken]: ...

    async def get_last_token_index(self, conversation_id: str) -> int: ...

    async def get_complete_response(
        self, conversation_id: str
    ) -> Optional[CompleteResponse]: ...

    async def cleanup_old_conversations(self, days_old: int = 30) -> int: ...


@runtime_checkable
class AgentTransport(Protocol):
    """Creates conversations and opens streamed agent responses."""

    async def create_conversation(
        self, stage_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Conversation: ...

    def stream_agent_response(
        self,
        conversation_id: str,
        stage_context: StageContext,
        user_message: str,
        resume_options: Optional[ResumeOptions] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[bytes]: ...


def _status_error(status_code: int, message: str) -> Exception:
    if status_code in (401, 403):
        return AuthenticationError(SESSION_EXPIRED_MESSAGE, status_code=status_code)
    return TransportError(message, status_code=status_code)


class RemoteChatBackend:
    """httpx implementation of both ``ConversationStore`` and ``AgentTransport``."""

    def __init__(
        self,
        config: Config,
        client: Optional[httpx.AsyncClient] = None,
        credential_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        """Initialize the backend client.

        Args:
            config: Application configuration (backend URL, keys, timeouts)
            client: Optional preconfigured client, e.g. with a mock transport
            credential_provider: Returns the current bearer credential or None
                when no user is signed in. Defaults to ``config.credential``.
        """
        if not config.backend_url or not config.api_key:
            raise ValueError("Missing backend configuration (SUPABASE_URL / SUPABASE_ANON_KEY)")

        self.config = config
        self.base_url = config.backend_url.rstrip("/")
        self._credential_provider = credential_provider or (lambda: config.credential)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout_seconds)
        )

    async def __aenter__(self) -> "RemoteChatBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, require_credential: bool = False) -> Dict[str, str]:
        credential = self._credential_provider()
        if require_credential and not credential:
            raise AuthenticationError(SIGN_IN_MESSAGE)
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {credential or self.config.api_key}",
            "apikey": self.config.api_key,
        }

    async def _rest(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = self._headers()
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}/rest/v1/{table}",
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {table} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(SESSION_EXPIRED_MESSAGE, status_code=response.status_code)
        if response.status_code >= 400:
            raise StoreError(f"{method} {table} failed: {response.status_code} - {response.text}")
        if not response.content:
            return []
        return response.json()

    # ------------------------------------------------------------------
    # AgentTransport
    # ------------------------------------------------------------------

    async def create_conversation(
        self, stage_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Conversation:
        """Create an active conversation for ``stage_id`` (requires a session)."""
        headers = self._headers(require_credential=True)
        headers["Prefer"] = "return=representation"
        body = {
            "stage_id": stage_id,
            "status": ConversationStatus.ACTIVE.value,
            "metadata": {**(metadata or {}), "timestamp": datetime.now().isoformat()},
        }
        try:
            response = await self._client.post(
                f"{self.base_url}/rest/v1/chat_conversations",
                json=body,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to create conversation: {e}")
            raise ConversationCreationError(stage_id, str(e)) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(SESSION_EXPIRED_MESSAGE, status_code=response.status_code)
        if response.status_code >= 400:
            logger.error(f"Failed to create conversation: {response.status_code}")
            raise ConversationCreationError(stage_id, f"status {response.status_code}")

        rows = response.json()
        row = rows[0] if isinstance(rows, list) else rows
        if not row or "id" not in row:
            raise ConversationCreationError(stage_id, "no conversation returned")
        return Conversation.model_validate(row)

    async def stream_agent_response(
        self,
        conversation_id: str,
        stage_context: StageContext,
        user_message: str,
        resume_options: Optional[ResumeOptions] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[bytes]:
        """POST to the agent function and yield raw body chunks as they arrive.

        ``timeout`` bounds the whole request, headers and body included.
        """
        headers = self._headers(require_credential=True)
        body: Dict[str, Any] = {
            **stage_context.to_payload(),
            "userMessage": user_message,
            "conversationId": conversation_id,
            "memory": {},
            "conversationHistory": [],
        }
        if resume_options is not None:
            body["lastTokenIndex"] = resume_options.last_token_index
            body["resumeStreaming"] = resume_options.resume_streaming

        url = f"{self.base_url}/functions/v1/{self.config.agent_function}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        def remaining() -> Optional[float]:
            if deadline is None:
                return None
            left = deadline - loop.time()
            if left <= 0:
                raise TransportError(f"Request timed out after {timeout}s")
            return left

        request = self._client.build_request(
            "POST",
            url,
            json=body,
            headers=headers,
            timeout=httpx.Timeout(timeout) if timeout else httpx.USE_CLIENT_DEFAULT,
        )
        try:
            response = await asyncio.wait_for(
                self._client.send(request, stream=True), remaining()
            )
            try:
                if response.status_code >= 400:
                    error_body = await asyncio.wait_for(response.aread(), remaining())
                    error_text = error_body.decode("utf-8", errors="replace")
                    raise _status_error(
                        response.status_code,
                        f"Agent function failed: {response.status_code} - {error_text or 'Unknown error'}",
                    )

                chunks = response.aiter_bytes()
                while True:
                    try:
                        chunk = await asyncio.wait_for(chunks.__anext__(), remaining())
                    except StopAsyncIteration:
                        break
                    yield chunk
            finally:
                await response.aclose()
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request timed out after {timeout}s") from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

    # ------------------------------------------------------------------
    # ConversationStore
    # ------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = await self._rest(
            "GET",
            "chat_conversations",
            params={"id": f"eq.{conversation_id}", "select": "*"},
        )
        if not rows:
            return None
        return Conversation.model_validate(rows[0])

    async def update_conversation_status(
        self, conversation_id: str, status: ConversationStatus
    ) -> bool:
        rows = await self._rest(
            "PATCH",
            "chat_conversations",
            params={"id": f"eq.{conversation_id}"},
            json_body={"status": status.value},
            prefer="return=representation",
        )
        return bool(rows)

    async def get_tokens_after_index(
        self, conversation_id: str, last_token_index: int = -1
    ) -> List[ResponseToken]:
        rows = await self._rest(
            "GET",
            "chat_response_tokens",
            params={
                "conversation_id": f"eq.{conversation_id}",
                "token_index": f"gt.{last_token_index}",
                "order": "token_index.asc",
                "select": "token_index,token_content,token_type,created_at",
            },
        )
        return [ResponseToken.model_validate(row) for row in rows]

    async def get_last_token_index(self, conversation_id: str) -> int:
        rows = await self._rest(
            "GET",
            "chat_response_tokens",
            params={
                "conversation_id": f"eq.{conversation_id}",
                "order": "token_index.desc",
                "limit": "1",
                "select": "token_index",
            },
        )
        if not rows:
            return -1
        return int(rows[0]["token_index"])

    async def get_complete_response(
        self, conversation_id: str
    ) -> Optional[CompleteResponse]:
        rows = await self._rest(
            "GET",
            "chat_responses",
            params={"conversation_id": f"eq.{conversation_id}", "select": "*"},
        )
        if not rows:
            return None
        return CompleteResponse.model_validate(rows[0])

    async def is_conversation_complete(self, conversation_id: str) -> bool:
        response = await self.get_complete_response(conversation_id)
        return bool(response and response.is_complete)

    async def cleanup_old_conversations(self, days_old: int = 30) -> int:
        cutoff = datetime.now() - timedelta(days=days_old)
        rows = await self._rest(
            "DELETE",
            "chat_conversations",
            params={
                "created_at": f"lt.{cutoff.isoformat()}",
                "status": "in.(completed,failed)",
            },
            prefer="return=representation",
        )
        return len(rows)
