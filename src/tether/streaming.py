"""Event dispatch into the in-progress message.

The :class:`ContentAccumulator` applies :class:`~tether.events.StreamEvent`
objects to a :class:`~tether.session.StreamSession`, building the ordered
list of content blocks and driving the session status.
"""

from __future__ import annotations

import json
import logging

from tether.events import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ErrorEvent,
    MessageDeltaEvent,
    MessageStartEvent,
    MessageStopEvent,
    StreamEvent,
    ToolApprovalRequestEvent,
    ToolResultEvent,
    ToolUseEvent,
    UserQuestionRequestEvent,
)
from tether.message import (
    ContentBlock,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from tether.session import (
    ACTIVE_STATUSES,
    CancelHandle,
    PendingApproval,
    StreamSession,
    StreamStatus,
)

logger = logging.getLogger(__name__)


class ContentAccumulator:
    """Applies events for one stream attempt.

    Block indices are scoped to the current ``message_start``: each
    ``content_block_start`` records where its index landed in the flat
    block list, so sub-agent messages that restart at index 0 and
    out-of-band tool results never shift earlier blocks.

    An accumulator stops touching the session once another attempt
    has superseded its cancel handle.
    """

    def __init__(self, session: StreamSession, handle: CancelHandle):
        self.session = session
        self.handle = handle
        self._positions: dict[int, int] = {}
        self._parent_id: str | None = None
        self._partial_json: dict[int, str] = {}

    @property
    def owns_session(self) -> bool:
        current = self.session.cancel_handle
        return current is self.handle or current is None

    def apply(self, event: StreamEvent) -> bool:
        """Apply *event*; returns ``False`` if the session moved on."""
        if not self.owns_session:
            logger.debug(f"Dropping {event.type} from a superseded stream")
            return False
        handler = getattr(self, f"_on_{event.type}", None)
        if handler is not None:
            handler(event)
        self.session.notify(event)
        return True

    def sync(self) -> list[ContentBlock]:
        """Snapshot of the current blocks, safe to store elsewhere."""
        return [b.model_copy(deep=True) for b in self.session.content_blocks]

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_message_start(self, event: MessageStartEvent) -> None:
        self.session.status = StreamStatus.STREAMING
        self._positions = {}
        self._partial_json = {}
        self._parent_id = event.parent_tool_use_id

    def _on_content_block_start(self, event: ContentBlockStartEvent) -> None:
        parent = event.parent_tool_use_id or self._parent_id
        if event.block_type == "text":
            block = TextBlock(text=event.text, parent_tool_use_id=parent)
        elif event.block_type == "thinking":
            block = ThinkingBlock(thinking=event.text, parent_tool_use_id=parent)
        elif event.block_type == "tool_use":
            block = ToolUseBlock(
                id=event.block_id or "", name=event.name or "",
                parent_tool_use_id=parent,
            )
        else:
            logger.debug(f"Ignoring content block of type {event.block_type!r}")
            return
        self._positions[event.index] = len(self.session.content_blocks)
        self.session.content_blocks.append(block)

    def _on_content_block_delta(self, event: ContentBlockDeltaEvent) -> None:
        position = self._positions.get(event.index)
        if position is None:
            logger.warning(f"Delta for unknown block index {event.index}")
            return
        block = self.session.content_blocks[position]
        if event.delta_type == "text_delta" and isinstance(block, TextBlock):
            block.text += event.text
        elif event.delta_type == "thinking_delta" and isinstance(block, ThinkingBlock):
            block.thinking += event.text
        elif event.delta_type == "input_json_delta" and isinstance(block, ToolUseBlock):
            # Servers send either fragments or the whole document so far.
            fragment = event.partial_json or ""
            partial = self._partial_json.get(event.index, "") + fragment
            self._partial_json[event.index] = partial
            for candidate in (partial, fragment):
                parsed = _json_object(candidate)
                if parsed is not None:
                    block.input = parsed
                    self._partial_json[event.index] = candidate
                    break

    def _on_message_delta(self, event: MessageDeltaEvent) -> None:
        usage = self.session.token_usage
        if event.input_tokens is not None:
            usage.input = event.input_tokens
        if event.output_tokens is not None:
            usage.output = event.output_tokens

    def _on_message_stop(self, event: MessageStopEvent) -> None:
        # A cancelled (idle) or failed session keeps its status.
        if self.session.status in ACTIVE_STATUSES or (
            not event.synthetic and self.session.status == StreamStatus.TOOL_PENDING
        ):
            self.session.status = StreamStatus.DONE

    def _on_tool_use(self, event: ToolUseEvent) -> None:
        existing = self._find_tool_use(event.tool_call_id)
        if existing is not None:
            existing.input = event.input
            return
        self.session.content_blocks.append(ToolUseBlock(
            id=event.tool_call_id, name=event.tool_name, input=event.input,
            parent_tool_use_id=self._parent_id,
        ))

    def _on_tool_result(self, event: ToolResultEvent) -> None:
        blocks = self.session.content_blocks
        if self._find_tool_use(event.tool_call_id) is None:
            logger.warning(f"Result for unknown tool call {event.tool_call_id}")
        else:
            result = ToolResultBlock(
                tool_call_id=event.tool_call_id,
                result=event.result,
                is_error=event.is_error,
            )
            for i, block in enumerate(blocks):
                if isinstance(block, ToolResultBlock) and block.tool_call_id == event.tool_call_id:
                    blocks[i] = result
                    break
            else:
                blocks.append(result)
        resolve_pending(self.session, event.tool_call_id)

    def _on_tool_approval_request(self, event: ToolApprovalRequestEvent) -> None:
        self.session.pending_approvals.append(PendingApproval(
            tool_call_id=event.tool_call_id,
            tool_name=event.tool_name,
            input=event.input,
            description=event.description,
        ))
        self.session.status = StreamStatus.TOOL_PENDING

    def _on_user_question_request(self, event: UserQuestionRequestEvent) -> None:
        self.session.pending_approvals.append(PendingApproval(
            tool_call_id=event.tool_call_id, tool_name="AskUserQuestion",
            input={"questions": event.questions},
        ))
        self.session.status = StreamStatus.TOOL_PENDING

    def _on_error(self, event: ErrorEvent) -> None:
        self.session.status = StreamStatus.ERROR
        self.session.error = event.message

    # ------------------------------------------------------------------

    def _find_tool_use(self, tool_call_id: str) -> ToolUseBlock | None:
        for block in reversed(self.session.content_blocks):
            if isinstance(block, ToolUseBlock) and block.id == tool_call_id:
                return block
        return None


def _json_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def resolve_pending(session: StreamSession, tool_call_id: str) -> None:
    """Drop a pending approval; resume streaming once none remain."""
    session.pending_approvals = [
        a for a in session.pending_approvals if a.tool_call_id != tool_call_id
    ]
    if not session.pending_approvals and session.status == StreamStatus.TOOL_PENDING:
        session.status = StreamStatus.STREAMING
