# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

from dataclasses import dataclass
from typing import Protocol, TypeAlias

from resilient_sse.errors import EventStreamError

DEFAULT_RECONNECT_DELAY_MS = 5000


@dataclass(frozen=True)
class RetryContext:
    """What a retry policy knows about the disconnection it is deciding on.

    Arguments:
        server_requested_delay_ms: The most recent `retry:` value sent by the
            server, or the configured default if the server never sent one.
        attempt_index: Number of consecutive attempts since the last
            successful connection.
        first_connection_failed: Whether the very first attempt of this
            session never got a stream.
        error: Why the connection ended; None for a clean end of stream.
    """

    server_requested_delay_ms: int | None
    attempt_index: int
    first_connection_failed: bool
    error: EventStreamError | None = None


@dataclass(frozen=True)
class RetryAfter:
    delay_ms: int

    def __post_init__(self) -> None:
        if self.delay_ms < 0:
            raise ValueError(f"Retry delay must not be negative: {self.delay_ms}")


@dataclass(frozen=True)
class Stop:
    pass


STOP = Stop()

RetryDecision: TypeAlias = RetryAfter | Stop


class RetryPolicy(Protocol):
    def __call__(self, context: RetryContext) -> RetryDecision:
        """Decides whether to reconnect, and after how long."""
        ...


def default_retry_policy(context: RetryContext) -> RetryDecision:
    """Reconnects after a clean end of stream; gives up on any failure."""
    if context.first_connection_failed or context.error is not None:
        return STOP
    if context.server_requested_delay_ms is None:
        return RetryAfter(DEFAULT_RECONNECT_DELAY_MS)
    return RetryAfter(context.server_requested_delay_ms)


def never_retry(context: RetryContext) -> RetryDecision:
    return STOP


@dataclass(frozen=True)
class ExponentialBackoff:
    """Retries failures with exponentially growing delays.

    A clean end of stream is retried after the server's requested delay,
    like `default_retry_policy`. Failures wait
    `initial_delay_ms * factor ** attempt_index`, capped at `max_delay_ms`.
    """

    initial_delay_ms: int = 1000
    factor: float = 2.0
    max_delay_ms: int = 30_000
    max_attempts: int | None = None
    retry_first_connection: bool = False

    def __post_init__(self) -> None:
        assert self.initial_delay_ms >= 0
        assert self.factor >= 1
        assert self.max_delay_ms >= self.initial_delay_ms

    def __call__(self, context: RetryContext) -> RetryDecision:
        if context.first_connection_failed and not self.retry_first_connection:
            return STOP
        if self.max_attempts is not None and context.attempt_index >= self.max_attempts:
            return STOP

        if context.error is None:
            if context.server_requested_delay_ms is None:
                return RetryAfter(DEFAULT_RECONNECT_DELAY_MS)
            return RetryAfter(context.server_requested_delay_ms)

        try:
            delay = min(
                self.initial_delay_ms * self.factor**context.attempt_index,
                self.max_delay_ms,
            )
        except OverflowError:
            delay = self.max_delay_ms
        return RetryAfter(round(delay))
