# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

from dataclasses import dataclass


class EventStreamError(Exception):
    """A connection attempt or an open stream failed.

    All subclasses are recoverable: the controller hands them to the retry
    policy instead of raising them to the caller.
    """


@dataclass(eq=False)
class ConnectFailed(EventStreamError):
    """The request could not be sent or no response arrived."""

    cause: BaseException

    def __str__(self) -> str:
        return f"Connection failed: {self.cause!r}"


@dataclass(eq=False)
class ServerError(EventStreamError):
    status_code: int

    def __str__(self) -> str:
        return f"Unexpected status code: {self.status_code}"


@dataclass(eq=False)
class InvalidContentType(EventStreamError):
    content_type: str | None

    def __str__(self) -> str:
        return f"Expected content type text/event-stream, got {self.content_type}"


@dataclass(eq=False)
class StreamError(EventStreamError):
    """Reading from an established stream failed."""

    cause: BaseException

    def __str__(self) -> str:
        return f"Stream interrupted: {self.cause!r}"


@dataclass(eq=False)
class RetryPolicyViolation(TypeError):
    """A retry policy returned something other than `RetryAfter` or `STOP`.

    This is a programming error, so the controller stops immediately.
    """

    decision: object

    def __str__(self) -> str:
        return f"Retry policy must return RetryAfter or STOP, got {self.decision!r}"
