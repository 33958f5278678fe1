import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class _Block(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str = ""
    parent_tool_use_id: str | None = Field(default=None, alias="parentToolUseId")


class ThinkingBlock(_Block):
    type: Literal["thinking"] = "thinking"
    thinking: str = ""
    parent_tool_use_id: str | None = Field(default=None, alias="parentToolUseId")


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    id: str = ""
    name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    parent_tool_use_id: str | None = Field(default=None, alias="parentToolUseId")


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str = Field(alias="toolCallId")
    result: str = ""
    is_error: bool = Field(default=False, alias="isError")


ContentBlock = Annotated[
    Union[TextBlock, ThinkingBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]


class Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: MessageRole
    content: list[ContentBlock] = Field(default_factory=list)
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    model: str | None = None

    @field_validator("content", mode="before")
    @classmethod
    def coerce_plain_text(cls, value):
        if isinstance(value, str):
            return [{"type": "text", "text": value}]
        return value

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @property
    def text(self) -> str:
        """Concatenated text of the message's text blocks."""
        return "\n".join(
            b.text for b in self.content if isinstance(b, TextBlock)
        )
