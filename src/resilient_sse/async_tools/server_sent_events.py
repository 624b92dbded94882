# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import dataclasses
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

MAX_RETRY_MS = 2**31 - 1


@dataclass
class ServerSentEvent:
    event: str | None = None
    data: str | None = None
    id: str | None = None
    retry: int | None = None
    comment: str | None = None


@dataclass
class StreamContinuity:
    """State that outlives a single connection.

    The parser for each connection writes into the same instance, so the last
    event ID and the reconnection delay announced by the server carry over to
    the next connection attempt.
    """

    last_event_id: str | None = None
    reconnect_delay_ms: int | None = None


@dataclass
class EventRecordParser:
    """Turns the lines of one event stream into `ServerSentEvent`s.

    Implements the field handling of
    https://html.spec.whatwg.org/multipage/server-sent-events.html#event-stream-interpretation
    with one difference: a blank line always produces an event, even when no
    `data` field was received.
    """

    continuity: StreamContinuity = dataclasses.field(default_factory=StreamContinuity)

    _data: list[str] = dataclasses.field(init=False, default_factory=list)
    _comments: list[str] = dataclasses.field(init=False, default_factory=list)
    _event: str | None = dataclasses.field(init=False, default=None)
    _retry: int | None = dataclasses.field(init=False, default=None)

    def process_line(self, line: str) -> ServerSentEvent | None:
        """Consumes one line, without its terminator.

        Returns the finished event when `line` is blank, otherwise None.
        """
        if len(line) == 0:
            return self._dispatch()

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            # IDs containing NULL are ignored entirely.
            if "\0" not in value:
                self.continuity.last_event_id = value or None
        elif field == "retry":
            # Values that don't fit a signed 32-bit int are malformed.
            if value.isascii() and value.isdigit() and len(value) <= 10:
                retry = int(value)
                if retry <= MAX_RETRY_MS:
                    self._retry = retry
                    self.continuity.reconnect_delay_ms = retry
        elif field == "":
            self._comments.append(value)
        return None

    def _dispatch(self) -> ServerSentEvent:
        event = ServerSentEvent(
            event=self._event,
            data="\n".join(self._data) if self._data else None,
            id=self.continuity.last_event_id,
            retry=self._retry,
            comment="\n".join(self._comments) if self._comments else None,
        )
        self._data.clear()
        self._comments.clear()
        self._event = None
        self._retry = None
        return event


async def parse_event_stream(
    lines: AsyncIterable[str],
    continuity: StreamContinuity | None = None,
) -> AsyncIterator[ServerSentEvent]:
    """Parses a whole stream of lines, yielding each event as soon as it is complete."""
    parser = EventRecordParser(continuity or StreamContinuity())

    async for line in lines:
        event = parser.process_line(line)
        if event is not None:
            yield event

    # No need to flush the parser now, as the specification states:
    #   Once the end of the file is reached, any pending data must be discarded.
    #   (If the file ends in the middle of an event, before the final empty line,
    #   the incomplete event is not dispatched.)
