#!/usr/bin/env python3
"""Error taxonomy shared across modules.

Every failure a conversion can produce is a ``ConversionError`` tagged with one
of two kinds:

- ``INVALID_INPUT``: the request cannot be serviced as given (missing or
  malformed feed URL).
- ``UPSTREAM``: everything after that point (connect, proxy handshake, non-2xx
  status, size limit, body read, document parse).

The underlying exception is chained as ``__cause__`` for diagnostics; callers
should only branch on ``kind`` and ``timed_out``.
"""

from asyncio import TimeoutError as AsyncTimeoutError
from typing import Optional

INVALID_INPUT = "invalid_input"
UPSTREAM = "upstream"


class ConversionError(Exception):
    """A classified conversion failure.

    Attributes:
        kind: ``INVALID_INPUT`` or ``UPSTREAM``.
    """

    def __init__(self, kind: str, message: str):
        if kind not in (INVALID_INPUT, UPSTREAM):
            raise ValueError(f"unknown error kind: {kind}")
        super().__init__(message)
        self.kind = kind

    @property
    def is_invalid_input(self) -> bool:
        return self.kind == INVALID_INPUT

    @property
    def is_upstream(self) -> bool:
        return self.kind == UPSTREAM

    @property
    def timed_out(self) -> bool:
        """True when a deadline expired somewhere in the cause chain."""
        seen = set()
        exc: Optional[BaseException] = self.__cause__
        while exc is not None and id(exc) not in seen:
            if isinstance(exc, (AsyncTimeoutError, TimeoutError)):
                return True
            seen.add(id(exc))
            exc = exc.__cause__ or exc.__context__
        return False


class UpstreamStatusError(ConversionError):
    """The feed server answered outside the 2xx range."""

    def __init__(self, status: int):
        super().__init__(UPSTREAM, f"upstream returned non-2xx status: HTTP {status}")
        self.status = status


class FeedTooLargeError(ConversionError):
    """The body exceeded the configured byte ceiling."""

    def __init__(self, limit: int):
        super().__init__(UPSTREAM, f"feed exceeds size limit: {limit} bytes")
        self.limit = limit


class FeedParseError(ConversionError):
    """The payload could not be parsed as RSS or Atom."""

    def __init__(self, detail: str):
        super().__init__(UPSTREAM, f"failed to parse feed: {detail}")


def invalid_input(message: str) -> ConversionError:
    return ConversionError(INVALID_INPUT, message)


def upstream(message: str) -> ConversionError:
    return ConversionError(UPSTREAM, message)


__all__ = [
    "INVALID_INPUT",
    "UPSTREAM",
    "ConversionError",
    "UpstreamStatusError",
    "FeedTooLargeError",
    "FeedParseError",
    "invalid_input",
    "upstream",
]
