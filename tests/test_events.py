"""Tests for scholar/events.py: event-stream framing."""

import asyncio
import json

import pytest

from scholar.events import (
    EventStreamDecoder,
    decode_stream,
    encode_done,
    encode_event,
    encode_stream,
)
from scholar.models import StreamEvent


def test_encode_content_event():
    frame = encode_event(StreamEvent(content="Hello"))
    assert frame.startswith(b"data: ")
    assert frame.endswith(b"\n\n")
    assert json.loads(frame[len(b"data: "):]) == {"content": "Hello", "done": False}


def test_encode_completion_marker_is_done_token():
    assert encode_event(StreamEvent.completion()) == b"data: [DONE]\n\n"
    assert encode_done() == b"data: [DONE]\n\n"


def test_encode_error_event_keeps_type_and_details():
    event = StreamEvent(
        error="Cannot connect", type="connectivity_error", details={"step": "health_check"}
    )
    payload = json.loads(encode_event(event)[len(b"data: "):])
    assert payload["error"] == "Cannot connect"
    assert payload["type"] == "connectivity_error"
    assert payload["details"] == {"step": "health_check"}
    assert "content" not in payload


def test_encode_stream():
    async def events():
        yield StreamEvent(content="a")
        yield StreamEvent.completion()

    async def scenario():
        return [frame async for frame in encode_stream(events())]

    frames = asyncio.run(scenario())
    assert len(frames) == 2
    assert frames[-1] == b"data: [DONE]\n\n"


def test_decode_stream_reverses_framing():
    events = [
        StreamEvent(content="Das Blatt "),
        StreamEvent(content="zeigt Zellen über ältere Geräte."),
        StreamEvent.completion(),
    ]
    body = b"".join(encode_event(e) for e in events)
    assert decode_stream([body]) == events


def test_decoder_handles_arbitrary_chunk_boundaries():
    """Frames and multi-byte UTF-8 sequences may be split anywhere."""
    body = encode_event(StreamEvent(content="café naïve €")) + encode_done()
    chunks = [body[i:i + 3] for i in range(0, len(body), 3)]
    events = decode_stream(chunks)
    assert events == [StreamEvent(content="café naïve €"), StreamEvent.completion()]


def test_decoder_emits_events_as_soon_as_delimiter_arrives():
    decoder = EventStreamDecoder()
    assert decoder.feed(b'data: {"content": "a"}') == []
    assert decoder.feed(b"\n\n") == [StreamEvent(content="a")]
    assert not decoder.finished
    assert decoder.feed(b"data: [DONE]\n\n") == [StreamEvent.completion()]
    assert decoder.finished


def test_decoder_accepts_crlf_and_comments():
    body = b': keep-alive\r\n\r\ndata: {"content": "x"}\r\n\r\ndata: [DONE]\r\n\r\n'
    assert decode_stream([body]) == [StreamEvent(content="x"), StreamEvent.completion()]


def test_decoder_joins_crlf_split_across_chunks():
    decoder = EventStreamDecoder()
    assert decoder.feed(b'data: {"content": "x"}\r') == []
    assert decoder.feed(b"\n\r\ndata: [DONE]\r") == [StreamEvent(content="x")]
    assert decoder.feed(b"\n\r\n") == [StreamEvent.completion()]
    decoder.close()


def test_decoder_rejects_frame_without_data_field():
    with pytest.raises(ValueError, match="without data field"):
        decode_stream([b"event: message\n\n"])


def test_decoder_rejects_invalid_payload():
    with pytest.raises(ValueError):
        decode_stream([b"data: {not json}\n\n"])


def test_decoder_rejects_frames_after_done():
    with pytest.raises(ValueError, match="after stream terminator"):
        decode_stream([encode_done() + encode_event(StreamEvent(content="late"))])


def test_decoder_rejects_incomplete_tail():
    with pytest.raises(ValueError, match="Incomplete frame"):
        decode_stream([b'data: {"content": "cut'])
