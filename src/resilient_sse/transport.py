# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import aiohttp

from resilient_sse.async_tools.asyncitertools import split_lines
from resilient_sse.errors import ConnectFailed

logger = logging.getLogger(__name__)

client_session: ContextVar[aiohttp.ClientSession] = ContextVar("client_session")

# Event streams stay open indefinitely, so aiohttp's default 5 minute total
# timeout would cut every connection short. Establishing the connection is
# still bounded.
CONNECT_TIMEOUT_S = 30
STREAM_TIMEOUT = aiohttp.ClientTimeout(
    total=None,
    connect=CONNECT_TIMEOUT_S,
    sock_connect=CONNECT_TIMEOUT_S,
    sock_read=None,
)


class EventStreamResponse(Protocol):
    @property
    def status(self) -> int:
        ...

    @property
    def content_type(self) -> str | None:
        """The media type of the body, without parameters such as charset."""
        ...

    def lines(self) -> AsyncGenerator[str, None]:
        """The body split into lines, without line terminators."""
        ...


class Transport(Protocol):
    def open(
        self, url: str, headers: Mapping[str, str]
    ) -> AbstractAsyncContextManager[EventStreamResponse]:
        """Sends a GET request and yields the response once its headers arrive.

        Raises `ConnectFailed` if no response could be obtained. The response
        is released when the context exits.
        """
        ...


@dataclass
class AiohttpEventStreamResponse:
    if TYPE_CHECKING:

        def _check_protocol(self) -> EventStreamResponse:
            return self

    response: aiohttp.ClientResponse

    @property
    def status(self) -> int:
        return self.response.status

    @property
    def content_type(self) -> str | None:
        return self.response.content_type

    def lines(self) -> AsyncGenerator[str, None]:
        # We use "utf-8" because
        # https://html.spec.whatwg.org/multipage/server-sent-events.html#event-stream-interpretation says:
        # > Streams must be decoded using the UTF-8 decode algorithm.
        return split_lines(self.response.content.iter_any(), "utf-8")


@dataclass(frozen=True)
class AiohttpTransport:
    """Opens event streams with aiohttp.

    Arguments:
        session: The session to send requests with. If None, the session in
            `client_session` is used; if that is unset too, every connection
            gets a session of its own.
        timeout: The timeout for each request. Defaults to no limit on
            the stream itself, with a bound on establishing the connection.
    """

    if TYPE_CHECKING:

        def _check_protocol(self) -> Transport:
            return self

    session: aiohttp.ClientSession | None = None
    timeout: aiohttp.ClientTimeout = STREAM_TIMEOUT

    @asynccontextmanager
    async def open(
        self, url: str, headers: Mapping[str, str]
    ) -> AsyncIterator[AiohttpEventStreamResponse]:
        async with contextlib.AsyncExitStack() as stack:
            session = self.session
            if session is None:
                session = client_session.get(None)
            if session is None:
                session = await stack.enter_async_context(aiohttp.ClientSession())

            try:
                response = await session.get(
                    url, headers=dict(headers), timeout=self.timeout
                )
            except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
                raise ConnectFailed(e) from e

            # An unread event stream can't go back into the connection pool.
            stack.callback(response.close)
            logger.debug(
                "GET %s returned %d (%s)", url, response.status, response.content_type
            )
            yield AiohttpEventStreamResponse(response)
