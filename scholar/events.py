"""Event-stream framing between the orchestrator and its readers.

Framing rules:

* one JSON-encoded ``StreamEvent`` per frame, written as ``data: <json>``;
* frames are separated by a blank line (``\\n\\n``);
* the stream ends with the literal frame ``data: [DONE]``, which maps to the
  completion marker ``StreamEvent(done=True)``.

``EventStreamDecoder`` is incremental: chunks may split frames (and UTF-8
sequences) anywhere, and complete events are returned as soon as their
delimiter arrives.
"""

import codecs
from collections.abc import AsyncIterator, Iterable

from scholar.models import StreamEvent

DONE_TOKEN = "[DONE]"
_DATA_FIELD = "data:"
_DELIMITER = "\n\n"


def encode_event(event: StreamEvent) -> bytes:
    """Frame one event; the completion marker is written as the literal token."""
    if event.is_completion:
        return encode_done()
    payload = event.model_dump_json(exclude_none=True)
    return f"{_DATA_FIELD} {payload}{_DELIMITER}".encode("utf-8")


def encode_done() -> bytes:
    return f"{_DATA_FIELD} {DONE_TOKEN}{_DELIMITER}".encode("utf-8")


async def encode_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[bytes]:
    """Frame every event of an async stream (used as an HTTP response body)."""
    async for event in events:
        yield encode_event(event)


class EventStreamDecoder:
    """Incremental decoder for the framing above.

    Raises:
        ValueError: for a frame without a ``data:`` field, a payload that is not
            a valid event, or any frame after the terminal token.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self.finished = False

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        # Normalise after joining: a CRLF pair can straddle two chunks.
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")

        events: list[StreamEvent] = []
        while _DELIMITER in self._buffer:
            frame, self._buffer = self._buffer.split(_DELIMITER, 1)
            event = self._decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def _decode_frame(self, frame: str) -> StreamEvent | None:
        data_lines = []
        for line in frame.split("\n"):
            if not line or line.startswith(":"):
                continue
            if not line.startswith(_DATA_FIELD):
                raise ValueError(f"Frame without data field: {frame!r}")
            data_lines.append(line[len(_DATA_FIELD):].removeprefix(" "))
        if not data_lines:
            return None
        if self.finished:
            raise ValueError(f"Frame after stream terminator: {frame!r}")

        payload = "\n".join(data_lines)
        if payload == DONE_TOKEN:
            self.finished = True
            return StreamEvent.completion()
        return StreamEvent.model_validate_json(payload)

    def close(self) -> None:
        """Verify that no partial frame is left in the buffer."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        if tail.strip():
            raise ValueError(f"Incomplete frame at end of stream: {tail!r}")


def decode_stream(chunks: Iterable[bytes | str]) -> list[StreamEvent]:
    """Decode a complete stream in one go."""
    decoder = EventStreamDecoder()
    events: list[StreamEvent] = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    decoder.close()
    return events
