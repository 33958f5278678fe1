"""HTTP client for the streaming server.

JSON endpoints answer ``{"ok": bool, "data": ...}`` and raise
:class:`ApiError` on failure.  The two stream endpoints return the raw
streaming :class:`httpx.Response`; callers own closing it.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tether.conversation import Conversation

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:3002/api"
SESSION_HEADER = "X-Session-Id"

_DEFAULT_TIMEOUT = 30.0


class ApiError(Exception):
    """Raised when a JSON endpoint fails or is unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteSessionDescriptor(BaseModel):
    """A server-held stream session, as listed by ``GET /stream/sessions``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    conversation_id: str = Field(alias="conversationId")
    status: str
    stream_complete: bool = Field(default=False, alias="streamComplete")
    buffered_events: int = Field(default=0, alias="bufferedEvents")


class StreamApi:
    """Thin async wrapper over the server's stream and conversation routes.

    Args:
        base_url: Server API root.  Defaults to ``$TETHER_BASE_URL`` or
            ``http://localhost:3002/api``.
        auth_token: Bearer token.  Defaults to ``$TETHER_AUTH_TOKEN``.
        timeout: Timeout for JSON requests and for connecting streams.
            Stream reads never time out.
        transport: Optional httpx transport (tests use
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        base_url: str | None = None,
        auth_token: str | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not base_url:
            base_url = os.getenv("TETHER_BASE_URL", DEFAULT_BASE_URL)
        if not auth_token:
            auth_token = os.getenv("TETHER_AUTH_TOKEN")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> StreamApi:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _headers(self, session_id: str | None = None) -> dict[str, str]:
        headers = {}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if session_id:
            headers[SESSION_HEADER] = session_id
        return headers

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def send(
        self, conversation_id: str, content: str, session_id: str | None = None,
    ) -> httpx.Response:
        """``POST /stream/{id}``; returns the unread streaming response."""
        request = self.client.build_request(
            "POST", f"/stream/{conversation_id}",
            json={"content": content},
            headers=self._headers(session_id),
            timeout=httpx.Timeout(self.timeout, read=None),
        )
        return await self.client.send(request, stream=True)

    async def reconnect(self, session_id: str) -> httpx.Response:
        """``GET /stream/reconnect/{session_id}``; replays buffered events."""
        request = self.client.build_request(
            "GET", f"/stream/reconnect/{session_id}",
            headers=self._headers(),
            timeout=httpx.Timeout(self.timeout, read=None),
        )
        return await self.client.send(request, stream=True)

    # ------------------------------------------------------------------
    # JSON endpoints
    # ------------------------------------------------------------------

    async def _request(
        self, method: str, path: str,
        session_id: str | None = None, **kwargs: Any,
    ) -> Any:
        try:
            response = await self.client.request(
                method, path, headers=self._headers(session_id), **kwargs,
            )
        except httpx.HTTPError as e:
            raise ApiError(f"Cannot connect to server: {e}") from e

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            if response.is_success:
                raise ApiError("Server returned non-JSON response", response.status_code)
            raise ApiError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from {path}: {e}", response.status_code) from e
        if not response.is_success or (isinstance(body, dict) and body.get("ok") is False):
            error = body.get("error") if isinstance(body, dict) else None
            raise ApiError(error or f"HTTP {response.status_code}", response.status_code)
        return body.get("data") if isinstance(body, dict) else body

    async def cancel(self, conversation_id: str, session_id: str) -> None:
        await self._request(
            "POST", f"/stream/{conversation_id}/cancel", session_id=session_id,
        )

    async def sessions(self) -> list[RemoteSessionDescriptor]:
        data = await self._request("GET", "/stream/sessions")
        if data is None:
            return []
        if not isinstance(data, list):
            raise ApiError(f"Expected a session list, got {type(data).__name__}")
        try:
            return [RemoteSessionDescriptor.model_validate(s) for s in data]
        except ValidationError as e:
            raise ApiError(f"Malformed session list: {e}") from e

    async def nudge(self, conversation_id: str, session_id: str, content: str) -> Any:
        return await self._request(
            "POST", f"/stream/{conversation_id}/nudge",
            session_id=session_id, json={"content": content},
        )

    async def answer_question(
        self, conversation_id: str, session_id: str,
        tool_call_id: str, answers: dict[str, str],
    ) -> Any:
        return await self._request(
            "POST", f"/stream/{conversation_id}/answer",
            session_id=session_id,
            json={"toolCallId": tool_call_id, "answers": answers},
        )

    async def get_conversation(self, conversation_id: str) -> Conversation:
        data = await self._request("GET", f"/conversations/{conversation_id}")
        if not data:
            raise ApiError(f"Conversation {conversation_id} not found")
        return Conversation.model_validate(data)

    async def summarize(self, conversation_id: str) -> Any:
        return await self._request("POST", f"/conversations/{conversation_id}/summarize")

    async def snapshot(
        self, path: str, conversation_id: str | None = None,
        reason: str | None = None, message_id: str | None = None,
    ) -> Any:
        return await self._request("POST", "/git/snapshot", json={
            "path": path,
            "conversationId": conversation_id,
            "reason": reason,
            "messageId": message_id,
        })

    async def extract_memories(
        self, workspace_path: str, messages: list[dict[str, str]],
    ) -> Any:
        return await self._request("POST", "/workspace-memory/extract", json={
            "workspacePath": workspace_path,
            "messages": messages,
        })
