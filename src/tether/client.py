from tether.api import StreamApi
from tether.conversation import ConversationStore
from tether.orchestrator import StreamOrchestrator
from tether.reconnect import ReconnectionManager
from tether.session import StreamSession


class StreamClient:
    """Entry point for sending, cancelling and resuming streams.

    One client drives at most one active stream.  Progress is observed
    through :attr:`session` (poll it, or :meth:`StreamSession.subscribe`),
    never through return values.

    Example::

        async with StreamClient(StreamApi("http://localhost:3002/api")) as client:
            resumed = await client.reconnect_active_stream()
            if resumed is None:
                client.conversations.set_active(
                    await client.api.get_conversation("c1")
                )
                await client.send_and_stream("c1", "Hello")
            print(client.session.status, client.session.content_blocks)

    Args:
        api: Server client; built from the environment by default.
        conversations: Conversation store.
        session: Stream session.
    """

    def __init__(
        self,
        api: StreamApi | None = None,
        conversations: ConversationStore | None = None,
        session: StreamSession | None = None,
    ):
        self.api = api or StreamApi()
        self.orchestrator = StreamOrchestrator(self.api, conversations, session)
        self.reconnector = ReconnectionManager(self.orchestrator)

    @property
    def session(self) -> StreamSession:
        return self.orchestrator.session

    @property
    def conversations(self) -> ConversationStore:
        return self.orchestrator.conversations

    async def send_and_stream(self, conversation_id: str, text: str) -> None:
        await self.orchestrator.send_and_stream(conversation_id, text)

    def cancel_stream(self, conversation_id: str) -> None:
        self.orchestrator.cancel_stream(conversation_id)

    async def reconnect_active_stream(
        self, conversation_id: str | None = None,
    ) -> str | None:
        return await self.reconnector.reconnect_active_stream(conversation_id)

    async def nudge(self, conversation_id: str, text: str):
        return await self.orchestrator.nudge(conversation_id, text)

    async def answer_question(
        self, conversation_id: str, tool_call_id: str, answers: dict[str, str],
    ):
        return await self.orchestrator.answer_question(conversation_id, tool_call_id, answers)

    def resolve_approval(self, tool_call_id: str) -> None:
        self.orchestrator.resolve_approval(tool_call_id)

    async def aclose(self) -> None:
        await self.orchestrator.drain()
        await self.api.aclose()

    async def __aenter__(self) -> "StreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
