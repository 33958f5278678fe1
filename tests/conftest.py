import json
import re
from collections.abc import Callable

import httpx
import pytest
import pytest_asyncio

from tether.api import StreamApi
from tether.client import StreamClient
from tether.conversation import Conversation
from tether.sse import format_event

BASE_URL = "http://tether.test"


# ---------------------------------------------------------------------------
# Frame builders
# ---------------------------------------------------------------------------

def frame(event_type: str, **fields) -> bytes:
    """One SSE frame for an event of *event_type*."""
    return format_event({"type": event_type, **fields}).encode()


def text_turn(text: str, message_id: str = "msg-1") -> list[bytes]:
    """Frames for a complete single-text-block assistant turn."""
    return [
        frame("message_start", message={"id": message_id, "role": "assistant"}),
        frame("content_block_start", index=0, content_block={"type": "text", "text": ""}),
        frame("content_block_delta", index=0, delta={"type": "text_delta", "text": text}),
        frame("content_block_stop", index=0),
        frame("message_stop"),
    ]


def stream_response(
    *chunks: bytes, status: int = 200, headers: dict | None = None,
) -> httpx.Response:
    """A response whose body arrives as the given chunks."""
    async def body():
        for chunk in chunks:
            yield chunk
    return httpx.Response(status, headers=headers, content=body())


def ok(data=None) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "data": data})


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------

Handler = Callable[[httpx.Request], httpx.Response]


class FakeServer:
    """Serves canned responses and records every request.

    Routes map ``(method, path)`` to a handler.  Conversations added
    with :meth:`add_conversation` are served from
    ``GET /conversations/{id}``; the side-effect endpoints answer
    ``{"ok": true}`` unless overridden.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], Handler] = {}
        self.conversations: dict[str, dict] = {}

    def route(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method, path)] = handler

    def add_conversation(self, conversation_id: str, **fields) -> dict:
        data = {"id": conversation_id, "messages": [], **fields}
        self.conversations[conversation_id] = data
        return data

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method and r.url.path == path
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key in self.routes:
            return self.routes[key](request)
        if request.method == "GET" and (
            m := re.fullmatch(r"/conversations/([^/]+)", request.url.path)
        ):
            data = self.conversations.get(m.group(1))
            if data is None:
                return httpx.Response(404, json={"ok": False, "error": "Not found"})
            return ok(data)
        if request.method == "POST" and re.fullmatch(
            r"/(git/snapshot|workspace-memory/extract|"
            r"conversations/[^/]+/summarize|stream/[^/]+/(cancel|nudge|answer))",
            request.url.path,
        ):
            return ok({})
        return httpx.Response(404, json={"ok": False, "error": "No route"})


def request_json(request: httpx.Request) -> dict:
    return json.loads(request.content)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_api(server):
    def _make(**kwargs):
        return StreamApi(
            base_url=BASE_URL,
            transport=httpx.MockTransport(server.handler),
            **kwargs,
        )
    return _make


@pytest_asyncio.fixture
async def client(make_api):
    c = StreamClient(make_api())
    yield c
    await c.aclose()


@pytest.fixture
def open_conversation(server, client):
    """Register a conversation on the server and display it."""
    def _open(conversation_id: str = "c1", **fields) -> Conversation:
        data = server.add_conversation(conversation_id, **fields)
        return client.conversations.set_active(Conversation.model_validate(data))
    return _open


@pytest.fixture
def recorded_events(client):
    """Every event applied to the client's session, in order."""
    events = []
    client.session.subscribe(
        lambda session, event: events.append(event) if event is not None else None
    )
    return events
