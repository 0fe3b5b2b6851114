"""
text/event-stream parsing for the admin client.

Implements the standard framing: `event:`, `data:` (multi-line, joined
with newlines), `id:`, `retry:`, `:` comments, and dispatch on a blank
line. An event without `event:` is a `message`.
"""

import json
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

import requests


@dataclass(frozen=True)
class ServerSentEvent:
    event: str
    data: str
    id: Optional[str] = None
    retry: Optional[int] = None

    def json(self) -> Any:
        return json.loads(self.data) if self.data else None


def parse_events(lines: Iterable[str]) -> Iterator[ServerSentEvent]:
    event = ""
    data: list[str] = []
    last_id: Optional[str] = None
    retry: Optional[int] = None

    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if data:
                yield ServerSentEvent(event or "message", "\n".join(data), last_id, retry)
            event, data, retry = "", [], None
            continue
        if line.startswith(":"):
            continue

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
        elif field == "id":
            if "\0" not in value:
                last_id = value
        elif field == "retry":
            if value.isdigit():
                retry = int(value)
        # unknown fields are ignored


class EventStream:
    """An open streaming response, iterated as ServerSentEvents.

    close() may be called from another thread to unblock a reader.
    """

    def __init__(self, response: requests.Response):
        self.response = response
        self.closed = False
        if response.encoding is None:
            response.encoding = "utf-8"

    def __iter__(self) -> Iterator[ServerSentEvent]:
        # chunk_size=None: hand over data as it arrives instead of waiting for 512 bytes
        return parse_events(self.response.iter_lines(chunk_size=None, decode_unicode=True))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.response.close()

    def __enter__(self) -> "EventStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
