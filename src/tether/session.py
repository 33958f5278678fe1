"""Stream session state machine and cooperative cancellation."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field, PrivateAttr

from tether.message import ContentBlock

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXHAUSTED = object()


class StreamStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    TOOL_PENDING = "tool_pending"
    DONE = "done"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({
    StreamStatus.CONNECTING,
    StreamStatus.STREAMING,
    StreamStatus.RECONNECTING,
})


class StreamAborted(Exception):
    """Raised by a read once its :class:`CancelHandle` is signalled."""

    def __init__(self, handle: "CancelHandle"):
        super().__init__(handle.reason or "stream aborted")
        self.handle = handle


class CancelHandle:
    """One-shot cancellation signal for a single stream attempt.

    Reads wrapped with :meth:`guard` race the signal: a chunk that is
    already delivered is returned, otherwise the pending read is
    cancelled and :class:`StreamAborted` is raised.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StreamAborted(self)
        read = asyncio.ensure_future(awaitable)
        signal = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait(
                {read, signal}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            signal.cancel()
            if not read.done():
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read
        if read.cancelled():
            raise StreamAborted(self)
        return read.result()

    async def guarded(self, chunks: AsyncIterable[T]) -> AsyncIterator[T]:
        """Iterate *chunks*, stopping with :class:`StreamAborted` once signalled."""
        iterator = aiter(chunks)
        while True:
            item = await self.guard(_next_or_exhausted(iterator))
            if item is _EXHAUSTED:
                return
            yield item


async def _next_or_exhausted(iterator):
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EXHAUSTED


class PendingApproval(BaseModel):
    tool_call_id: str
    tool_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    description: str = ""


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


Listener = Callable[["StreamSession", Any], None]


class StreamSession(BaseModel):
    """State of the current stream attempt.

    ``session_id`` is the server-issued token for cancel, nudge and
    answer calls.  ``content_blocks`` only grows or is mutated in place
    while a stream runs; a failed or aborted stream leaves it as is.

    Listeners registered with :meth:`subscribe` are called with
    ``(session, event)`` after every applied event and status change.
    """

    model_config = {"arbitrary_types_allowed": True}

    conversation_id: str | None = None
    session_id: str | None = None
    status: StreamStatus = StreamStatus.IDLE
    content_blocks: list[ContentBlock] = Field(default_factory=list)
    error: str | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    pending_approvals: list[PendingApproval] = Field(default_factory=list)
    reconnecting: bool = False

    _cancel_handle: CancelHandle | None = PrivateAttr(default=None)
    _listeners: list[Listener] = PrivateAttr(default_factory=list)

    @property
    def cancel_handle(self) -> CancelHandle | None:
        return self._cancel_handle

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def begin(
        self,
        conversation_id: str,
        status: StreamStatus = StreamStatus.CONNECTING,
    ) -> CancelHandle:
        """Start a new attempt and return its cancellation handle.

        The previous handle, if any, is signalled and discarded.
        """
        if self._cancel_handle is not None:
            self._cancel_handle.cancel("superseded")
        self._cancel_handle = CancelHandle()
        self.conversation_id = conversation_id
        self.content_blocks = []
        self.error = None
        self.pending_approvals = []
        self.token_usage = TokenUsage()
        self.set_status(status)
        return self._cancel_handle

    def set_session_id(self, session_id: str) -> None:
        self.session_id = session_id
        logger.info(f"Stream session id: {session_id}")

    def set_status(self, status: StreamStatus, event: Any = None) -> None:
        self.status = status
        self.notify(event)

    def cancel(self) -> None:
        """Signal the active handle and return to ``idle``."""
        if self._cancel_handle is not None:
            self._cancel_handle.cancel()
            self._cancel_handle = None
        self.set_status(StreamStatus.IDLE)

    def reset(self) -> bool:
        """Clear all stream state and signal any running stream.

        Refused while a reconnect is being set up or a stream is
        connecting, so unrelated callers cannot wipe state that is
        about to be rebuilt.  Returns whether the reset happened.
        """
        if self.reconnecting or self.status in (
            StreamStatus.CONNECTING, StreamStatus.RECONNECTING,
        ):
            logger.debug("Ignoring reset while a stream is being set up")
            return False
        if self._cancel_handle is not None:
            self._cancel_handle.cancel("reset")
        self._cancel_handle = None
        self.conversation_id = None
        self.content_blocks = []
        self.error = None
        self.pending_approvals = []
        self.set_status(StreamStatus.IDLE)
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, event: Any = None) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, event)
            except Exception as e:
                logger.warning(f"Stream listener {listener!r} raised: {e}")
