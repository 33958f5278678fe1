from tether.message import (
    Message,
    MessageRole,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)


def test_plain_string_content_becomes_text_block():
    msg = Message(role=MessageRole.USER, content="hello")
    assert msg.content == [TextBlock(text="hello")]
    assert msg.text == "hello"


def test_blocks_validate_from_wire_aliases():
    msg = Message.model_validate({
        "id": "m1",
        "role": "assistant",
        "content": [
            {"type": "text", "text": "Looking", "parentToolUseId": "tu_0"},
            {"type": "tool_use", "id": "tu_1", "name": "Read", "input": {"path": "a.py"}},
            {"type": "tool_result", "toolCallId": "tu_1", "result": "x", "isError": True},
        ],
    })
    assert msg.role == MessageRole.ASSISTANT
    assert msg.content[0].parent_tool_use_id == "tu_0"
    assert isinstance(msg.content[1], ToolUseBlock)
    assert msg.content[2] == ToolResultBlock(tool_call_id="tu_1", result="x", is_error=True)


def test_role_serializes_as_value():
    dumped = Message(role=MessageRole.USER, content="hi").model_dump()
    assert dumped["role"] == "user"


def test_text_joins_only_text_blocks():
    msg = Message(
        role=MessageRole.ASSISTANT,
        content=[
            TextBlock(text="one"),
            ToolUseBlock(id="tu_1", name="Bash"),
            TextBlock(text="two"),
        ],
    )
    assert msg.text == "one\ntwo"


def test_ids_and_timestamps_are_generated():
    a = Message(role=MessageRole.USER)
    b = Message(role=MessageRole.USER)
    assert a.id != b.id
    assert a.timestamp > 0
