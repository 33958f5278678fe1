"""Resume a server-held stream after the client restarts."""

from __future__ import annotations

import logging

from tether.api import ApiError, RemoteSessionDescriptor
from tether.events import MessageStopEvent
from tether.instrumentation import record_error, record_session, stream_span
from tether.message import Message, MessageRole
from tether.orchestrator import StreamOrchestrator, has_body
from tether.session import CancelHandle, StreamAborted, StreamStatus
from tether.streaming import ContentAccumulator

logger = logging.getLogger(__name__)


def select_session(
    sessions: list[RemoteSessionDescriptor],
    conversation_id: str | None = None,
) -> RemoteSessionDescriptor | None:
    """Pick the session worth re-attaching to.

    A running session wins, even with nothing buffered yet.  Otherwise
    a finished session that still has unconsumed events is chosen so
    output produced while the client was away is not lost.  A finished
    session with an empty buffer has nothing left to replay.

    Args:
        sessions: Sessions listed by the server.
        conversation_id: When given, finished sessions only qualify if
            they belong to this conversation.
    """
    for s in sessions:
        if s.status == "running" or (s.buffered_events > 0 and not s.stream_complete):
            return s
    for s in sessions:
        if not (s.stream_complete and s.buffered_events > 0):
            continue
        if conversation_id is None or s.conversation_id == conversation_id:
            return s
    return None


class ReconnectionManager:
    """Re-attaches to an in-flight or just-finished server stream.

    Uses the orchestrator's session, conversation store and decode
    loop, so a resumed stream behaves exactly like a fresh one once
    bytes arrive.
    """

    def __init__(self, orchestrator: StreamOrchestrator):
        self.orchestrator = orchestrator

    @property
    def session(self):
        return self.orchestrator.session

    async def reconnect_active_stream(
        self, conversation_id: str | None = None,
    ) -> str | None:
        """Resume the best server-held stream.

        Returns the resumed conversation id, or ``None`` when there was
        nothing to resume or reconnection failed.
        """
        # Set before the first await so concurrent resets back off.
        self.session.reconnecting = True
        try:
            try:
                sessions = await self.orchestrator.api.sessions()
            except ApiError as e:
                logger.info(f"Could not list stream sessions: {e}")
                return None
            target = select_session(sessions, conversation_id)
            if target is None:
                return None

            logger.info(
                f"Reconnecting to session {target.id} "
                f"for conversation {target.conversation_id}"
            )
            handle = self.session.begin(target.conversation_id, StreamStatus.RECONNECTING)
            self.session.set_session_id(target.id)
            acc = ContentAccumulator(self.session, handle)

            async with stream_span("reconnect", target.conversation_id) as span:
                try:
                    return await self._resume(target, handle, acc, span)
                except StreamAborted:
                    acc.apply(MessageStopEvent(synthetic=True))
                    return None
                except Exception as e:
                    logger.error(f"Reconnection to session {target.id} failed: {e}")
                    record_error(span, "reconnect_error", str(e))
                    if self.session.is_active:
                        acc.apply(MessageStopEvent(synthetic=True))
                    return None
        finally:
            self.session.reconnecting = False

    async def _resume(
        self, target: RemoteSessionDescriptor,
        handle: CancelHandle, acc: ContentAccumulator, span,
    ) -> str | None:
        orchestrator = self.orchestrator
        try:
            fetched = await orchestrator.api.get_conversation(target.conversation_id)
        except ApiError as e:
            logger.warning(f"Could not load conversation {target.conversation_id}: {e}")
            acc.apply(MessageStopEvent(synthetic=True))
            return None
        conversation = orchestrator.conversations.set_active(fetched)

        response = await handle.guard(orchestrator.api.reconnect(target.id))
        try:
            if not response.is_success or not has_body(response):
                logger.warning(
                    f"Reconnect to session {target.id} returned HTTP {response.status_code}"
                )
                acc.apply(MessageStopEvent(synthetic=True))
                return None
            orchestrator.conversations.add_message_to(conversation, Message(
                role=MessageRole.ASSISTANT, model=conversation.model,
            ))
            applied = await orchestrator.pump(response, conversation, handle, acc)
            record_session(span, target.id, applied)
        finally:
            await response.aclose()

        await orchestrator.finish(conversation, acc)
        return target.conversation_id
