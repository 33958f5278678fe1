from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections.abc import Awaitable

import httpx

from tether.api import SESSION_HEADER, ApiError, StreamApi
from tether.conversation import Conversation, ConversationStore
from tether.events import ErrorKind, MessageStopEvent, error_event, parse_event
from tether.instrumentation import record_error, record_session, stream_span
from tether.message import Message, MessageRole, TextBlock
from tether.session import CancelHandle, StreamAborted, StreamSession, StreamStatus
from tether.sse import iter_payloads
from tether.streaming import ContentAccumulator, resolve_pending

logger = logging.getLogger(__name__)

# Statuses that carry no body by definition.
_NO_BODY_STATUSES = frozenset({204, 205})

MEMORY_WINDOW = 10
SUMMARY_MIN_MESSAGES = 4


class StreamOrchestrator:
    """Sends a message and streams the reply into its conversation.

    The conversation a stream writes to is captured when the call
    starts and passed along explicitly; switching the displayed
    conversation mid-stream never redirects output.

    Failures never propagate out of :meth:`send_and_stream`; they show
    up as ``error`` events on :attr:`session`.  Side effects that are
    allowed to fail (pre-turn snapshot, memory extraction, summaries,
    server-side cancel) run as background tasks whose errors are only
    logged.

    Args:
        api: Server client.
        conversations: Conversation store; a new one backed by *api*
            by default.
        session: Stream session; a fresh one by default.
    """

    def __init__(
        self,
        api: StreamApi,
        conversations: ConversationStore | None = None,
        session: StreamSession | None = None,
    ):
        self.api = api
        self.conversations = conversations or ConversationStore(api)
        self.session = session or StreamSession()
        self._background: set[asyncio.Task] = set()

    async def send_and_stream(self, conversation_id: str, text: str) -> None:
        """Send *text* to *conversation_id* and stream the reply."""
        handle = self.session.begin(conversation_id)
        acc = ContentAccumulator(self.session, handle)

        target = self.conversations.active
        if target is None or target.id != conversation_id:
            acc.apply(error_event(ErrorKind.STATE, "Target conversation not active"))
            return

        async with stream_span("send", conversation_id) as span:
            try:
                await self._send(target, text, handle, acc, span)
            except Exception as e:
                if isinstance(e, StreamAborted) and e.handle is handle:
                    logger.info(f"Stream for {conversation_id} aborted: {e}")
                    acc.apply(MessageStopEvent(synthetic=True))
                    return
                message = str(e) or type(e).__name__
                logger.warning(f"Stream for {conversation_id} failed: {message}")
                record_error(span, ErrorKind.NETWORK.value, message)
                acc.apply(error_event(ErrorKind.NETWORK, message))

    async def _send(
        self, target: Conversation, text: str,
        handle: CancelHandle, acc: ContentAccumulator, span,
    ) -> None:
        # Generated up front so the snapshot can point at the reply.
        assistant_id = str(uuid.uuid4())
        if target.workspace_path:
            self.spawn(
                self.api.snapshot(target.workspace_path, target.id, "pre-agent", assistant_id),
                "pre-turn snapshot",
            )
        self.conversations.add_message_to(target, Message(
            role=MessageRole.USER, content=[TextBlock(text=text)],
        ))

        response = await handle.guard(
            self.api.send(target.id, text, self.session.session_id)
        )
        try:
            if not response.is_success:
                message = await http_error_message(response)
                record_error(span, ErrorKind.HTTP.value, message)
                acc.apply(error_event(ErrorKind.HTTP, message))
                return
            if session_id := response.headers.get(SESSION_HEADER):
                self.session.set_session_id(session_id)
            if not has_body(response):
                record_error(span, ErrorKind.NO_BODY.value, "No response body")
                acc.apply(error_event(ErrorKind.NO_BODY, "No response body"))
                return
            self.conversations.add_message_to(target, Message(
                id=assistant_id, role=MessageRole.ASSISTANT, model=target.model,
            ))
            applied = await self.pump(response, target, handle, acc)
            record_session(span, self.session.session_id, applied)
        finally:
            await response.aclose()

        await self.finish(target, acc)
        self._after_turn(target)

    async def pump(
        self, response: httpx.Response, target: Conversation,
        handle: CancelHandle, acc: ContentAccumulator,
    ) -> int:
        """Decode *response* and apply its events in arrival order.

        Marks the session ``streaming`` before the first read; each
        applied event is synced into *target* before the next read.
        Returns the number of events applied.
        """
        if self.session.cancel_handle is handle:
            self.session.set_status(StreamStatus.STREAMING)
        applied = 0
        payloads = iter_payloads(handle.guarded(response.aiter_bytes()))
        try:
            async for payload in payloads:
                try:
                    event = parse_event(payload)
                except ValueError as e:
                    logger.warning(f"Dropping malformed payload {payload[:200]!r}: {e}")
                    continue
                if event is None:
                    continue
                try:
                    accepted = acc.apply(event)
                except (ValueError, TypeError, AttributeError) as e:
                    # Wire values of the wrong type; pydantic errors are ValueErrors.
                    logger.warning(f"Dropping {event.type} event that could not be applied: {e}")
                    continue
                if accepted:
                    self.conversations.update_last_assistant_message_in(target, acc.sync())
                    applied += 1
        except httpx.RemoteProtocolError as e:
            # Connection dropped before the final frame; treated as end of stream.
            logger.info(f"Stream closed early: {e}")
        finally:
            await payloads.aclose()
        return applied

    async def finish(self, target: Conversation, acc: ContentAccumulator) -> None:
        """Close out a stream whose transport has ended.

        Applies one synthetic ``message_stop`` if no stop was seen,
        then reloads *target* from the server.
        """
        if acc.owns_session and self.session.is_active:
            acc.apply(MessageStopEvent(synthetic=True))
        try:
            await self.conversations.reload_by_id(target.id)
        except ApiError as e:
            logger.warning(f"Could not reload conversation {target.id}: {e}")

    def _after_turn(self, target: Conversation) -> None:
        if target.workspace_path:
            recent = [
                {"role": m.role.value, "content": m.text}
                for m in target.messages[-MEMORY_WINDOW:]
            ]
            if recent:
                self.spawn(
                    self.api.extract_memories(target.workspace_path, recent),
                    "memory extraction",
                )
        if len(target.messages) >= SUMMARY_MIN_MESSAGES:
            self.spawn(self.api.summarize(target.id), "conversation summary")

    # ------------------------------------------------------------------
    # Side channel
    # ------------------------------------------------------------------

    def cancel_stream(self, conversation_id: str) -> None:
        """Abort the active stream and ask the server to stop its work."""
        session_id = self.session.session_id
        self.session.cancel()
        if session_id:
            self.spawn(self.api.cancel(conversation_id, session_id), "server-side cancel")

    async def nudge(self, conversation_id: str, text: str):
        """Queue *text* for the running turn."""
        if not self.session.session_id:
            logger.warning("No stream session to nudge")
            return None
        return await self.api.nudge(conversation_id, self.session.session_id, text)

    async def answer_question(
        self, conversation_id: str, tool_call_id: str, answers: dict[str, str],
    ):
        if not self.session.session_id:
            logger.warning("No stream session to answer")
            return None
        result = await self.api.answer_question(
            conversation_id, self.session.session_id, tool_call_id, answers,
        )
        self.resolve_approval(tool_call_id)
        return result

    def resolve_approval(self, tool_call_id: str) -> None:
        resolve_pending(self.session, tool_call_id)
        self.session.notify()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, work: Awaitable, what: str) -> asyncio.Task:
        """Run *work* detached; its failure is logged and dropped."""
        task = asyncio.ensure_future(work)
        self._background.add(task)
        task.add_done_callback(functools.partial(self._reap, what))
        return task

    def _reap(self, what: str, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.warning(f"{what} failed: {exc}")

    async def drain(self) -> None:
        """Wait for outstanding background tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


async def http_error_message(response: httpx.Response) -> str:
    """Best message for a failed stream response.

    Tries the JSON ``error`` field, then the body text, then the bare
    status code.
    """
    fallback = f"HTTP {response.status_code}"
    try:
        await response.aread()
    except httpx.HTTPError:
        return fallback
    try:
        body = response.json()
    except ValueError:
        try:
            return response.text[:300] or fallback
        except (UnicodeDecodeError, LookupError):
            return fallback
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return fallback


def has_body(response: httpx.Response) -> bool:
    return response.status_code not in _NO_BODY_STATUSES
