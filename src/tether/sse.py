"""Server-Sent Events framing for streaming responses."""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator

DATA_PREFIX = "data: "


class SSEDecoder:
    """Splits a byte stream into ``data:`` payloads.

    Bytes are decoded with an incremental UTF-8 decoder so characters
    split across chunks survive.  Text after the last newline is kept
    until the next chunk (or :meth:`flush`) completes it.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        """Consume *chunk* and return the payloads it completes."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [p for p in map(_payload, lines) if p]

    def flush(self) -> list[str]:
        """Return the payload of an unterminated final line, if any."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        payload = _payload(tail)
        return [payload] if payload else []


def _payload(line: str) -> str | None:
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip() or None


async def iter_payloads(
    chunks: AsyncIterable[bytes],
) -> AsyncIterator[str]:
    """Yield payloads from an async byte-chunk iterator."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield payload
    for payload in decoder.flush():
        yield payload


def format_event(data: dict) -> str:
    """Render one event as an SSE frame."""
    return f"{DATA_PREFIX}{json.dumps(data)}\n\n"
