"""In-memory conversation store.

Holds the conversations the client knows about and which one is
currently displayed.  Stream code never asks the store "what is active
now?" mid-stream; it captures the target :class:`Conversation` at stream
start and passes that object to the ``*_in`` methods.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from tether.message import ContentBlock, Message, MessageRole

if TYPE_CHECKING:
    from tether.api import StreamApi

logger = logging.getLogger(__name__)


class Conversation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str | None = None
    model: str | None = None
    workspace_path: str | None = Field(default=None, alias="workspacePath")
    messages: list[Message] = Field(default_factory=list)


class ConversationStore:
    """Conversations by id plus the one the user is looking at.

    Args:
        api: Used by :meth:`reload_by_id` to fetch authoritative state.
    """

    def __init__(self, api: StreamApi | None = None):
        self.api = api
        self.conversations: dict[str, Conversation] = {}
        self.active: Conversation | None = None

    def set_active(self, conversation: Conversation) -> Conversation:
        stored = self.conversations.setdefault(conversation.id, conversation)
        if stored is not conversation:
            _replace_contents(stored, conversation)
        self.active = stored
        return stored

    def get(self, conversation_id: str) -> Conversation | None:
        return self.conversations.get(conversation_id)

    def add_message_to(self, conversation: Conversation, message: Message) -> None:
        conversation.messages.append(message)

    def update_last_assistant_message_in(
        self, conversation: Conversation, content: list[ContentBlock],
    ) -> None:
        """Overwrite the content of the newest assistant message."""
        for message in reversed(conversation.messages):
            if message.role == MessageRole.ASSISTANT:
                message.content = content
                return
        logger.debug(f"No assistant message to update in {conversation.id}")

    async def reload_by_id(self, conversation_id: str) -> Conversation | None:
        """Refresh a conversation from the server in place.

        Objects already handed out (for example a stream's captured
        target) see the refreshed messages.
        """
        if self.api is None:
            return self.get(conversation_id)
        fresh = await self.api.get_conversation(conversation_id)
        stored = self.conversations.setdefault(conversation_id, fresh)
        if stored is not fresh:
            _replace_contents(stored, fresh)
        if self.active is not None and self.active.id == conversation_id \
                and self.active is not stored:
            _replace_contents(self.active, fresh)
        return stored


def _replace_contents(target: Conversation, source: Conversation) -> None:
    source = source.model_copy(deep=True)
    for name in Conversation.model_fields:
        setattr(target, name, getattr(source, name))
