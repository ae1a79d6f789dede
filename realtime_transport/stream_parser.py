# =============================================================================
# Realtime Transport -- Event Stream Parsing
# =============================================================================
#
# Line-oriented parsing of the push-stream wire format.  Both stream sources
# (line-decoded and raw byte chunks) feed the same parser, so framing only
# differs in how bytes become lines.
# =============================================================================

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

from .constants import (
    DEFAULT_MESSAGE_TYPE,
    STREAM_PREFIX_DATA,
    STREAM_PREFIX_EVENT,
    STREAM_PREFIX_ID,
    STREAM_PREFIX_RETRY,
)


class LineBuffer:
    """Reassembles lines from arbitrary chunks.

    A trailing partial line is held until the next chunk completes it.
    Multi-byte UTF-8 sequences split across chunks are decoded correctly.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes | str) -> list[str]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]


@dataclass(frozen=True, slots=True)
class StreamField:
    """A parsed ``data``, ``id`` or ``retry`` line.

    ``event_type`` is the name from a preceding ``event:`` line, if any.
    """

    name: str
    value: Any
    event_type: str | None = None


class EventStreamParser:
    """Stateful per-connection line parser.

    ``event:`` lines are remembered and attached to the next ``data:`` line.
    Blank lines, comments and unknown fields produce nothing.
    """

    def __init__(self) -> None:
        self._event_type: str | None = None

    def reset(self) -> None:
        self._event_type = None

    def parse_line(self, line: str) -> StreamField | None:
        if line.startswith(STREAM_PREFIX_DATA):
            event_type, self._event_type = self._event_type, None
            return StreamField("data", line[len(STREAM_PREFIX_DATA):], event_type)
        if line.startswith(STREAM_PREFIX_EVENT):
            self._event_type = line[len(STREAM_PREFIX_EVENT):]
            return None
        if line.startswith(STREAM_PREFIX_ID):
            return StreamField("id", line[len(STREAM_PREFIX_ID):])
        if line.startswith(STREAM_PREFIX_RETRY):
            try:
                retry = int(line[len(STREAM_PREFIX_RETRY):])
            except ValueError:
                return None
            return StreamField("retry", retry) if retry >= 0 else None
        return None


def decode_payload(data: str, event_type: str | None = None) -> dict[str, Any]:
    """Turn a ``data:`` payload into a message dict.

    JSON objects keep their own string ``type``; otherwise the event name
    (or ``"message"``) is used.  Non-object JSON and non-JSON text become
    the ``data`` of a message of that type.
    """
    fallback = event_type or DEFAULT_MESSAGE_TYPE
    try:
        parsed = json.loads(data)
    except ValueError:
        return {"type": fallback, "data": data}

    if isinstance(parsed, dict):
        message = dict(parsed)
        if not isinstance(message.get("type"), str):
            message["type"] = fallback
        return message
    return {"type": fallback, "data": parsed}
