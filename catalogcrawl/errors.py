"""
Error taxonomy and failure classification.

Fetch failures are carried as structured ``FetchError`` values (status code,
connectivity flag, payload-shape flag) and classified by a pure function, so
the retry policy never has to inspect free-form messages.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp


class ErrorType(Enum):
    """Failure classes with their own backoff curves."""
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    UNKNOWN = "UNKNOWN"


class CatalogError(Exception):
    """Base class for catalogcrawl errors."""


class ConfigError(CatalogError):
    """Invalid or unreadable configuration."""


class StructuralError(CatalogError):
    """A target-wide problem: abort the target's backlog, never retry."""


class FetchError(CatalogError):
    """
    A failed page fetch or parse.

    Args:
        message: Human readable description
        status: HTTP status code, if a response was received
        no_response: True when the request never produced a response
            (DNS failure, refused connection, timeout)
        malformed: True when a response arrived but its structured content
            could not be decoded
        retry_after: Seconds from a ``Retry-After`` header, if any
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        no_response: bool = False,
        malformed: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status = status
        self.no_response = no_response
        self.malformed = malformed
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return (
            f"FetchError({str(self)!r}, status={self.status}, "
            f"no_response={self.no_response}, malformed={self.malformed})"
        )


class ParseError(FetchError):
    """Structured content in a response was malformed."""

    def __init__(self, message: str, *, status: Optional[int] = 200):
        super().__init__(message, status=status, malformed=True)


def as_fetch_error(exc: BaseException) -> FetchError:
    """Normalize any exception raised by a fetch/parse operation."""
    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, aiohttp.ClientResponseError):
        return FetchError(str(exc), status=exc.status)
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ClientConnectionError, ConnectionError)):
        return FetchError(f"Connection Error: {exc}", no_response=True)
    if isinstance(exc, json.JSONDecodeError) or "JSON" in str(exc):
        return FetchError(f"Malformed content: {exc}", malformed=True)
    return FetchError(str(exc) or type(exc).__name__)


def classify_error(exc: BaseException) -> ErrorType:
    """
    Classify a failure.

    No response => NETWORK; 429 => RATE_LIMIT; >= 500 => SERVER_ERROR;
    malformed structured content => PARSE_ERROR; anything else => UNKNOWN.
    """
    err = as_fetch_error(exc)
    if err.no_response or (err.status is None and not err.malformed):
        return ErrorType.NETWORK
    if err.status == 429:
        return ErrorType.RATE_LIMIT
    if err.status is not None and err.status >= 500:
        return ErrorType.SERVER_ERROR
    if err.malformed:
        return ErrorType.PARSE_ERROR
    return ErrorType.UNKNOWN


@dataclass(frozen=True)
class ClassifiedError:
    """A failure together with its classification and the attempts spent."""
    error_type: ErrorType
    message: str
    attempts: int
    status: Optional[int] = None
    retry_after: Optional[float] = None
    exception: Optional[BaseException] = None

    @classmethod
    def from_exception(cls, exc: BaseException, attempts: int) -> "ClassifiedError":
        err = as_fetch_error(exc)
        return cls(
            error_type=classify_error(err),
            message=str(err),
            attempts=attempts,
            status=err.status,
            retry_after=err.retry_after,
            exception=exc,
        )
