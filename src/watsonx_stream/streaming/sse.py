"""Line-level Server-Sent Events parsing.

Only two kinds of lines matter to the backend protocol:

* ``data: <json>`` -- one chunk of model output
* ``event: error`` -- the *next* data line carries an error body instead
  of a chunk

Everything else (blank lines, ``id:``, ``retry:``, comments, other event
names) is ignored so that minor formatting variations on the server side
do not break streams.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from watsonx_stream.errors import SSEProtocolError

DATA_PREFIX = "data:"
EVENT_PREFIX = "event:"
ERROR_EVENT = "error"
DONE_SENTINEL = "[DONE]"


class EventKind(enum.Enum):
    DATA = "data"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One decoded unit from the wire."""

    kind: EventKind
    payload: str

    @property
    def is_error(self) -> bool:
        return self.kind is EventKind.ERROR


class SSELineParser:
    """Turns lines into ``StreamEvent`` objects, at most one per line.

    Not thread-safe; one parser belongs to one stream.
    """

    def __init__(self) -> None:
        self._pending_error = False

    @property
    def pending_error(self) -> bool:
        return self._pending_error

    def feed(self, line: str | None) -> StreamEvent | None:
        """Parse a single line.

        Raises ``SSEProtocolError`` when an ``event: error`` marker is not
        followed by a data line.
        """
        if line is None:
            return None
        line = line.rstrip("\r\n")
        if not line.strip():
            return None

        if line.startswith(DATA_PREFIX):
            payload = line[len(DATA_PREFIX):]
            if payload.startswith(" "):
                payload = payload[1:]
            if self._pending_error:
                self._pending_error = False
                return StreamEvent(EventKind.ERROR, payload)
            if payload.strip() == DONE_SENTINEL:
                return None
            return StreamEvent(EventKind.DATA, payload)

        if self._pending_error:
            self._pending_error = False
            raise SSEProtocolError(
                f"Expected a data line after 'event: error', got {line!r}"
            )

        if line.startswith(EVENT_PREFIX):
            if line[len(EVENT_PREFIX):].strip() == ERROR_EVENT:
                self._pending_error = True
        return None

    def finish(self) -> None:
        """Signal end of stream; a dangling error marker is a violation."""
        if self._pending_error:
            self._pending_error = False
            raise SSEProtocolError("Stream ended after 'event: error' without a data line")
