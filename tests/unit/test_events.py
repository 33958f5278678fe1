import json

import pytest

from tether.events import (
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ErrorEvent,
    ErrorKind,
    MessageDeltaEvent,
    MessageStartEvent,
    MessageStopEvent,
    PingEvent,
    ToolApprovalRequestEvent,
    ToolResultEvent,
    ToolUseEvent,
    error_event,
    parse_event,
)


def parse(**data):
    return parse_event(json.dumps(data))


class TestParseEvent:
    def test_message_start(self):
        event = parse(
            type="message_start",
            message={"id": "m1", "role": "assistant", "model": "opus"},
            parent_tool_use_id="tu_1",
        )
        assert event == MessageStartEvent(message_id="m1", model="opus", parent_tool_use_id="tu_1")

    def test_content_block_start_thinking(self):
        event = parse(
            type="content_block_start", index=1,
            content_block={"type": "thinking", "thinking": "hmm"},
        )
        assert isinstance(event, ContentBlockStartEvent)
        assert (event.index, event.block_type, event.text) == (1, "thinking", "hmm")

    def test_content_block_start_tool_use(self):
        event = parse(
            type="content_block_start", index=2,
            content_block={"type": "tool_use", "id": "tu_1", "name": "Read"},
        )
        assert (event.block_id, event.name) == ("tu_1", "Read")

    def test_content_block_delta(self):
        event = parse(
            type="content_block_delta", index=0,
            delta={"type": "input_json_delta", "partial_json": '{"a"'},
        )
        assert event == ContentBlockDeltaEvent(
            index=0, delta_type="input_json_delta", partial_json='{"a"',
        )

    def test_message_delta_usage(self):
        event = parse(
            type="message_delta", delta={"stop_reason": "end_turn"},
            usage={"input_tokens": 10, "output_tokens": 3},
        )
        assert event == MessageDeltaEvent(stop_reason="end_turn", input_tokens=10, output_tokens=3)

    def test_message_stop_is_not_synthetic(self):
        assert parse(type="message_stop") == MessageStopEvent(synthetic=False)

    def test_tool_use_and_alias(self):
        for tag in ("tool_use", "tool_use_start"):
            event = parse(type=tag, toolCallId="tu_1", toolName="Bash", input={"cmd": "ls"})
            assert event == ToolUseEvent(tool_call_id="tu_1", tool_name="Bash", input={"cmd": "ls"})

    def test_tool_result(self):
        event = parse(type="tool_result", toolCallId="tu_1", result="ok", isError=True)
        assert event == ToolResultEvent(tool_call_id="tu_1", result="ok", is_error=True)

    def test_tool_approval_request(self):
        event = parse(
            type="tool_approval_request", toolCallId="tu_1",
            toolName="Bash", input={}, description="run ls",
        )
        assert isinstance(event, ToolApprovalRequestEvent)
        assert event.description == "run ls"

    def test_error(self):
        event = parse(type="error", error={"type": "overloaded", "message": "busy"})
        assert event == ErrorEvent(kind="overloaded", message="busy")

    def test_ping(self):
        assert parse(type="ping") == PingEvent()

    def test_unknown_type_is_ignored(self):
        assert parse(type="story_update", story={}) is None

    @pytest.mark.parametrize("data", [
        {"nothing": "here"},
        {"type": ["message_start"]},
        {"type": 3},
    ], ids=["missing", "list", "number"])
    def test_non_string_type_raises(self, data):
        with pytest.raises(ValueError, match="event type"):
            parse_event(json.dumps(data))

    @pytest.mark.parametrize("data", [
        {"type": "error", "error": "boom"},
        {"type": "message_start", "message": "x"},
        {"type": "message_delta", "usage": [1, 2]},
    ], ids=["error-string", "message-string", "usage-list"])
    def test_wrong_shapes_raise_value_error(self, data):
        with pytest.raises(ValueError, match=f"malformed {data['type']}"):
            parse_event(json.dumps(data))

    def test_invalid_json_raises(self):
        with pytest.raises(ValueError):
            parse_event("{not json")

    def test_non_object_raises(self):
        with pytest.raises(ValueError, match="JSON object"):
            parse_event("[1, 2]")

    def test_missing_fields_raise(self):
        with pytest.raises(ValueError, match="content_block_delta"):
            parse(type="content_block_delta", index=0)


def test_error_event_uses_kind_value():
    assert error_event(ErrorKind.NO_BODY, "x") == ErrorEvent(kind="no_body", message="x")
