"""Stream events received from the server.

Each ``data:`` payload on the wire is a JSON object tagged by ``type``.
:func:`parse_event` turns one payload into the matching
:class:`StreamEvent` subclass.  Tags this client does not know about
return ``None`` so newer servers never break older clients.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    STATE = "state_error"
    HTTP = "http_error"
    NO_BODY = "no_body"
    NETWORK = "network_error"


@dataclass
class StreamEvent:
    """Base for all streaming events."""

    type: str = ""


@dataclass
class MessageStartEvent(StreamEvent):
    """Opens a new index space for content blocks."""

    type: str = "message_start"
    message_id: str | None = None
    model: str | None = None
    parent_tool_use_id: str | None = None


@dataclass
class ContentBlockStartEvent(StreamEvent):
    """Declares block ``index``.

    ``block_type`` is one of ``"text"``, ``"thinking"``,
    ``"tool_use"``.
    """

    type: str = "content_block_start"
    index: int = 0
    block_type: str = ""
    block_id: str | None = None
    name: str | None = None
    text: str = ""
    parent_tool_use_id: str | None = None


@dataclass
class ContentBlockDeltaEvent(StreamEvent):
    type: str = "content_block_delta"
    index: int = 0
    delta_type: str = ""
    text: str = ""
    partial_json: str | None = None


@dataclass
class ContentBlockStopEvent(StreamEvent):
    type: str = "content_block_stop"
    index: int = 0


@dataclass
class MessageDeltaEvent(StreamEvent):
    type: str = "message_delta"
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class MessageStopEvent(StreamEvent):
    """Terminates active streaming, observed or synthesized."""

    type: str = "message_stop"
    synthetic: bool = False


@dataclass
class ToolUseEvent(StreamEvent):
    """A tool invocation announced outside a content block."""

    type: str = "tool_use"
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict = field(default_factory=dict)


@dataclass
class ToolResultEvent(StreamEvent):
    """Result for a previously announced tool call, keyed by id."""

    type: str = "tool_result"
    tool_call_id: str = ""
    result: str = ""
    is_error: bool = False
    duration: float | None = None
    tool_name: str | None = None


@dataclass
class ToolApprovalRequestEvent(StreamEvent):
    type: str = "tool_approval_request"
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict = field(default_factory=dict)
    description: str = ""


@dataclass
class UserQuestionRequestEvent(StreamEvent):
    type: str = "user_question_request"
    tool_call_id: str = ""
    questions: list = field(default_factory=list)


@dataclass
class ErrorEvent(StreamEvent):
    type: str = "error"
    kind: str = ""
    message: str = ""


@dataclass
class PingEvent(StreamEvent):
    type: str = "ping"


def error_event(kind: ErrorKind, message: str) -> ErrorEvent:
    return ErrorEvent(kind=kind.value, message=message)


def _message_start(data: dict) -> MessageStartEvent:
    message = data.get("message") or {}
    return MessageStartEvent(
        message_id=message.get("id"),
        model=message.get("model"),
        parent_tool_use_id=data.get("parent_tool_use_id"),
    )


def _block_start(data: dict) -> ContentBlockStartEvent:
    block = data["content_block"]
    return ContentBlockStartEvent(
        index=int(data["index"]),
        block_type=block["type"],
        block_id=block.get("id"),
        name=block.get("name"),
        text=block.get("text") or block.get("thinking") or "",
        parent_tool_use_id=data.get("parent_tool_use_id"),
    )


def _block_delta(data: dict) -> ContentBlockDeltaEvent:
    delta = data["delta"]
    return ContentBlockDeltaEvent(
        index=int(data["index"]),
        delta_type=delta["type"],
        text=delta.get("text") or delta.get("thinking") or "",
        partial_json=delta.get("partial_json"),
    )


def _message_delta(data: dict) -> MessageDeltaEvent:
    usage = data.get("usage") or {}
    return MessageDeltaEvent(
        stop_reason=(data.get("delta") or {}).get("stop_reason"),
        input_tokens=usage.get("input_tokens"),
        output_tokens=usage.get("output_tokens"),
    )


def _tool_use(data: dict) -> ToolUseEvent:
    return ToolUseEvent(
        tool_call_id=data.get("toolCallId") or data.get("id") or "",
        tool_name=data.get("toolName") or data.get("name") or "",
        input=data.get("input") or {},
    )


def _tool_result(data: dict) -> ToolResultEvent:
    return ToolResultEvent(
        tool_call_id=data.get("toolCallId") or data["tool_call_id"],
        result=data.get("result") or "",
        is_error=bool(data.get("isError", False)),
        duration=data.get("duration"),
        tool_name=data.get("toolName"),
    )


def _approval(data: dict) -> ToolApprovalRequestEvent:
    return ToolApprovalRequestEvent(
        tool_call_id=data["toolCallId"],
        tool_name=data.get("toolName", ""),
        input=data.get("input") or {},
        description=data.get("description", ""),
    )


def _error(data: dict) -> ErrorEvent:
    error = data.get("error") or {}
    return ErrorEvent(
        kind=error.get("type", ""), message=error.get("message", "")
    )


_PARSERS = {
    "message_start": _message_start,
    "content_block_start": _block_start,
    "content_block_delta": _block_delta,
    "content_block_stop": lambda d: ContentBlockStopEvent(index=int(d.get("index", 0))),
    "message_delta": _message_delta,
    "message_stop": lambda d: MessageStopEvent(),
    "tool_use": _tool_use,
    "tool_use_start": _tool_use,
    "tool_result": _tool_result,
    "tool_approval_request": _approval,
    "user_question_request": lambda d: UserQuestionRequestEvent(
        tool_call_id=d["toolCallId"], questions=d.get("questions") or [],
    ),
    "error": _error,
    "ping": lambda d: PingEvent(),
}


def parse_event(payload: str) -> StreamEvent | None:
    """Parse one ``data:`` payload.

    Returns ``None`` for unknown tags.

    Raises:
        ValueError: If the payload is not a JSON object with a string
            ``type``, or a known event has missing or mistyped fields.
    """
    data: Any = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    tag = data.get("type")
    if not isinstance(tag, str):
        raise ValueError(f"event type must be a string, got {tag!r}")
    parser = _PARSERS.get(tag)
    if parser is None:
        logger.debug(f"Ignoring unknown event type: {tag!r}")
        return None
    try:
        return parser(data)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"malformed {tag} event: {e!r}") from e
