# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import asyncio
import contextlib
import dataclasses
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from types import TracebackType

from resilient_sse.async_tools.server_sent_events import (
    MAX_RETRY_MS,
    EventRecordParser,
    ServerSentEvent,
    StreamContinuity,
)
from resilient_sse.errors import (
    ConnectFailed,
    EventStreamError,
    InvalidContentType,
    RetryPolicyViolation,
    ServerError,
    StreamError,
)
from resilient_sse.http_settings import HttpSettings, RequestCustomization
from resilient_sse.retry import (
    RetryAfter,
    RetryContext,
    RetryPolicy,
    Stop,
    default_retry_policy,
)
from resilient_sse.transport import AiohttpTransport, EventStreamResponse, Transport

logger = logging.getLogger(__name__)

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    RETRYING = "retrying"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ConnectionOptions:
    """Everything that configures one event source connection.

    Arguments:
        on_event: Called with each complete event, in order, before the next
            line of the stream is read.
        on_connected: Called each time a stream is established.
        on_disconnected: Called once whenever an established stream ends.
        request_customization: Adjusts the URL and headers of every request.
        default_reconnect_delay_ms: Reconnection delay to report to the retry
            policy until the server sends a `retry:` field.
        retry_policy: Decides whether and when to reconnect.
        last_event_id: Event ID to resume from on the first request.
    """

    on_event: Callable[[ServerSentEvent], None] | None = None
    on_connected: Callable[[], None] | None = None
    on_disconnected: Callable[[], None] | None = None
    request_customization: RequestCustomization | None = None
    default_reconnect_delay_ms: int | None = None
    retry_policy: RetryPolicy = default_retry_policy
    last_event_id: str | None = None

    def __post_init__(self) -> None:
        if self.default_reconnect_delay_ms is not None:
            assert self.default_reconnect_delay_ms >= 0


class ConnectionController:
    """Runs the connect, stream, retry loop for one event source.

    Use `connect` rather than constructing this directly.
    """

    def __init__(self, url: str, options: ConnectionOptions, transport: Transport):
        self.url = url
        self.options = options
        self.transport = transport
        self.state = ConnectionState.IDLE
        self.continuity = StreamContinuity(
            last_event_id=options.last_event_id or None,
            reconnect_delay_ms=options.default_reconnect_delay_ms,
        )
        # Set while a stream is established.
        self.connected = asyncio.Event()
        self._cancelled = False

    def cancel(self) -> None:
        """Asks the loop to stop at its next suspension point.

        This only sets a flag: a read or retry wait that is already in
        progress keeps waiting. `EventSourceHandle.cancel` also cancels the
        task, which aborts it immediately.
        """
        self._cancelled = True

    async def run(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            logger.info("Event source %s cancelled", self.url)
        except RetryPolicyViolation as e:
            logger.error("Event source %s stopped: %s", self.url, e)
            raise
        finally:
            self.connected.clear()
            self._set_state(ConnectionState.TERMINATED)

    async def _run(self) -> None:
        attempt_index = 0
        is_first_attempt = True
        first_connection_failed = False

        while True:
            self._raise_if_cancelled()
            self._set_state(ConnectionState.CONNECTING)
            reached_stream, error = await self._attempt()

            if reached_stream:
                attempt_index = 0
            elif is_first_attempt:
                first_connection_failed = True
            is_first_attempt = False

            self._set_state(ConnectionState.DISCONNECTED)
            context = RetryContext(
                server_requested_delay_ms=self.continuity.reconnect_delay_ms,
                attempt_index=attempt_index,
                first_connection_failed=first_connection_failed,
                error=error,
            )
            decision = self.options.retry_policy(context)
            if isinstance(decision, Stop):
                logger.info("Retry policy stopped reconnecting to %s", self.url)
                return
            if not isinstance(decision, RetryAfter):
                raise RetryPolicyViolation(decision)

            self._set_state(ConnectionState.RETRYING)
            logger.debug("Reconnecting to %s in %d ms", self.url, decision.delay_ms)
            self._raise_if_cancelled()
            await asyncio.sleep(min(decision.delay_ms, MAX_RETRY_MS) / 1000)
            attempt_index += 1

    async def _attempt(self) -> tuple[bool, EventStreamError | None]:
        """Makes one connection attempt and consumes the stream if there is one.

        Returns whether a stream was established, and the error that ended
        the attempt, if any.
        """
        settings = self._http_settings()
        async with contextlib.AsyncExitStack() as stack:
            try:
                response = await stack.enter_async_context(
                    self.transport.open(settings.url, settings.headers)
                )
            except EventStreamError as e:
                logger.warning("Could not connect to %s: %s", self.url, e)
                return False, e
            except Exception as e:
                logger.warning("Could not connect to %s: %r", self.url, e)
                return False, ConnectFailed(e)

            error = _check_response(response)
            if error is not None:
                logger.warning("Rejected response from %s: %s", self.url, error)
                return False, error

            self._set_state(ConnectionState.STREAMING)
            logger.info("Connected to %s", self.url)
            self.connected.set()
            if self.options.on_connected is not None:
                self.options.on_connected()
            try:
                await self._stream(response)
            except StreamError as e:
                logger.warning("Stream from %s failed: %s", self.url, e)
                return True, e
            finally:
                self.connected.clear()
                logger.info("Disconnected from %s", self.url)
                if self.options.on_disconnected is not None:
                    self.options.on_disconnected()
            return True, None

    async def _stream(self, response: EventStreamResponse) -> None:
        parser = EventRecordParser(self.continuity)
        async with contextlib.aclosing(response.lines()) as lines:
            while True:
                self._raise_if_cancelled()
                try:
                    line = await anext(lines)
                except StopAsyncIteration:
                    return
                except Exception as e:
                    raise StreamError(e) from e

                event = parser.process_line(line)
                if event is not None and self.options.on_event is not None:
                    self.options.on_event(event)

    def _http_settings(self) -> HttpSettings:
        settings = HttpSettings(
            self.url,
            {"Accept": EVENT_STREAM_CONTENT_TYPE, "Cache-Control": "no-cache"},
        )
        if self.options.request_customization is not None:
            settings = self.options.request_customization(settings)

        headers = {
            name: value
            for name, value in settings.headers.items()
            if name.lower() != "last-event-id"
        }
        if self.continuity.last_event_id:
            headers["Last-Event-ID"] = self.continuity.last_event_id
        return dataclasses.replace(settings, headers=headers)

    def _raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError()

    def _set_state(self, state: ConnectionState) -> None:
        logger.debug(
            "Event source %s: %s -> %s", self.url, self.state.value, state.value
        )
        self.state = state


def _check_response(response: EventStreamResponse) -> EventStreamError | None:
    if response.status != 200:
        return ServerError(response.status)
    if response.content_type != EVENT_STREAM_CONTENT_TYPE:
        return InvalidContentType(response.content_type)
    return None


class EventSourceHandle:
    """Controls a running event source; returned by `connect`.

    Can be used as `async with connect(url, options) as handle: ...`, which
    cancels the event source and waits for it to finish on exit.
    """

    def __init__(self, controller: ConnectionController, task: asyncio.Task[None]):
        self._controller = controller
        self._task = task

    @property
    def state(self) -> ConnectionState:
        if self._task.done():
            return ConnectionState.TERMINATED
        return self._controller.state

    @property
    def last_event_id(self) -> str | None:
        return self._controller.continuity.last_event_id

    def cancel(self) -> None:
        """Stops the event source. No callbacks run after it has terminated."""
        self._controller.cancel()
        self._task.cancel()

    async def wait_connected(self) -> bool:
        """Waits until a stream is established.

        Returns False if the event source terminated before connecting.
        """
        connected = asyncio.ensure_future(self._controller.connected.wait())
        try:
            done, _ = await asyncio.wait(
                {connected, self._task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            connected.cancel()
        return connected in done

    async def wait_closed(self) -> None:
        """Waits until the event source terminates.

        Raises the error that terminated it, if it didn't stop normally.
        """
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return
        exception = self._task.exception()
        if exception is not None:
            raise exception

    async def __aenter__(self) -> "EventSourceHandle":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()
        await self.wait_closed()


def connect(
    url: str,
    options: ConnectionOptions | None = None,
    transport: Transport | None = None,
) -> EventSourceHandle:
    """Starts listening to the event stream at `url`.

    Must be called from a running event loop. Events are delivered through
    the callbacks in `options` until the retry policy stops or the returned
    handle is cancelled.
    """
    controller = ConnectionController(
        url, options or ConnectionOptions(), transport or AiohttpTransport()
    )
    task = asyncio.create_task(controller.run())
    return EventSourceHandle(controller, task)
