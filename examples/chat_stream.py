"""Terminal chat against a streaming server, printing text as it arrives.

Demonstrates:

- Resuming a stream left running by a previous client run

- Following progress through ``StreamSession.subscribe``

- OpenTelemetry tracing with ConsoleSpanExporter

Usage:
    Add TETHER_BASE_URL=... (and TETHER_AUTH_TOKEN=... if needed) to .env, then:
    uv run --env-file=.env examples/chat_stream.py <conversation-id>
"""

import asyncio
import sys

from tether.client import StreamClient
from tether.events import ContentBlockDeltaEvent, ErrorEvent, StreamEvent
from tether.instrumentation import instrument, uninstrument
from tether.session import StreamSession


def print_progress(session: StreamSession, event: StreamEvent | None) -> None:
    if isinstance(event, ContentBlockDeltaEvent) and event.delta_type == "text_delta":
        print(event.text, end="", flush=True)
    elif isinstance(event, ErrorEvent):
        print(f"\n[{event.kind}] {event.message}")


async def main(conversation_id: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor, ConsoleSpanExporter

    tracer_provider = TracerProvider(
        resource=Resource({SERVICE_NAME: "tether-chat"})
    )
    tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tracer_provider)

    instrument()
    async with StreamClient() as client:
        client.session.subscribe(print_progress)

        resumed = await client.reconnect_active_stream(conversation_id)
        if resumed is not None:
            print(f"\n(resumed stream for {resumed})\n")

        client.conversations.set_active(
            await client.api.get_conversation(conversation_id)
        )

        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break
            print("Assistant: ", end="")
            await client.send_and_stream(conversation_id, user_input)
            print(f"\n({client.session.status.value})\n")

    uninstrument()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1]))
