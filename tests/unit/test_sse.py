"""Unit tests for SSE framing."""

import json

import pytest
from hypothesis import given
from hypothesis import strategies as st

from tether.sse import SSEDecoder, format_event, iter_payloads


def decode(chunks: list[bytes]) -> list[str]:
    decoder = SSEDecoder()
    payloads = []
    for chunk in chunks:
        payloads.extend(decoder.feed(chunk))
    payloads.extend(decoder.flush())
    return payloads


SCENARIO = b'data: {"type":"message_start"}\n\ndata: {"type":"message_stop"}\n\n'

MIXED = (
    ': keep-alive\n'
    'retry: 1000\n'
    'event: delta\n'
    'data: {"type":"content_block_delta","delta":{"text":"café ☕ \U0001f600"}}\n'
    '\n'
    'data: {"type":"ping"}\r\n'
    '\r\n'
    'data: {"type":"message_stop"}\n\n'
).encode("utf-8")


class TestSSEDecoder:
    def test_two_event_scenario(self):
        assert decode([SCENARIO]) == [
            '{"type":"message_start"}',
            '{"type":"message_stop"}',
        ]

    @pytest.mark.parametrize("body", [SCENARIO, MIXED])
    def test_every_two_way_split_gives_same_payloads(self, body):
        expected = decode([body])
        for offset in range(len(body) + 1):
            assert decode([body[:offset], body[offset:]]) == expected, offset

    def test_byte_at_a_time(self):
        assert decode([bytes([b]) for b in MIXED]) == decode([MIXED])

    def test_multibyte_characters_split_across_chunks(self):
        payloads = decode([bytes([b]) for b in MIXED])
        assert json.loads(payloads[0])["delta"]["text"] == "café ☕ \U0001f600"

    def test_non_data_lines_dropped(self):
        assert decode([b":comment\nretry: 1000\nevent: x\ndata: {\"type\":\"ping\"}\n\n"]) == [
            '{"type":"ping"}',
        ]

    def test_crlf_line_endings(self):
        assert decode([b'data: {"a":1}\r\n\r\n']) == ['{"a":1}']

    def test_empty_data_lines_skipped(self):
        assert decode([b"data: \ndata:    \n\n"]) == []

    def test_trailing_payload_flushed_at_close(self):
        decoder = SSEDecoder()
        assert decoder.feed(b'data: {"type":"message_stop"}') == []
        assert decoder.flush() == ['{"type":"message_stop"}']

    def test_flush_is_empty_after_terminated_stream(self):
        decoder = SSEDecoder()
        decoder.feed(SCENARIO)
        assert decoder.flush() == []

    def test_prefix_requires_space(self):
        assert decode([b'data:{"a":1}\n']) == []


@given(st.lists(st.integers(min_value=0, max_value=len(MIXED)), max_size=12))
def test_arbitrary_multi_way_splits(offsets):
    cuts = sorted(set(offsets))
    bounds = [0, *cuts, len(MIXED)]
    chunks = [MIXED[a:b] for a, b in zip(bounds, bounds[1:])]
    assert decode(chunks) == decode([MIXED])


class TestIterPayloads:
    @pytest.mark.asyncio
    async def test_yields_payloads_from_async_chunks(self):
        async def chunks():
            yield b'data: {"type":"pi'
            yield b'ng"}\n\ndata: {"type":"message_stop"}'

        assert [p async for p in iter_payloads(chunks())] == [
            '{"type":"ping"}',
            '{"type":"message_stop"}',
        ]


def test_format_event_round_trips_through_decoder():
    frame = format_event({"type": "ping"})
    assert frame.endswith("\n\n")
    assert decode([frame.encode()]) == ['{"type": "ping"}']
