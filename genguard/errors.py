"""Error taxonomy shared by the resilience components."""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx

# Lower-cased fragments of "<ExceptionType> <message>" that mark a transient failure.
TRANSIENT_SIGNATURES: tuple[str, ...] = (
    "timeout",
    "timed out",
    "econnrefused",
    "etimedout",
    "connection refused",
    "connection reset",
    "overloaded",
    "model_overload",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "resource exhausted",
    "service unavailable",
    "429",
    "503",
)

TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


class ErrorKind(str, Enum):
    """How a caller should react to a failure."""

    TRANSIENT = "transient"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class GenGuardError(Exception):
    """Base class for errors raised by genguard itself."""


class RetryCancelledError(GenGuardError):
    """The retry loop observed a cancellation signal."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        super().__init__(f"Operation cancelled after {attempts} attempt(s)")
        self.attempts = attempts
        self.last_error = last_error


class GenerationServiceError(GenGuardError):
    """The generation service answered with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is None:
            return message
        return f"HTTP {self.status_code}: {message}"


class AdmissionDeniedError(GenGuardError):
    """A request was refused by the admission controller."""

    def __init__(self, identifier: str, retry_after: float, tier: str | None = None) -> None:
        super().__init__(f"Rate limit exceeded for {identifier}; retry after {retry_after:.1f}s")
        self.identifier = identifier
        self.retry_after = retry_after
        self.tier = tier


def error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__} {exc}".lower()


def status_code_of(exc: BaseException) -> int | None:
    """Extract an HTTP-style status code from common exception shapes."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RetryCancelledError):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    code = status_code_of(exc)
    if code is not None:
        return code in TRANSIENT_STATUS_CODES
    text = error_text(exc)
    return any(signature in text for signature in TRANSIENT_SIGNATURES)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, (RetryCancelledError, asyncio.CancelledError)):
        return ErrorKind.CANCELLED
    if isinstance(exc, AdmissionDeniedError) or is_transient(exc):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL


__all__ = [
    "AdmissionDeniedError",
    "ErrorKind",
    "GenGuardError",
    "GenerationServiceError",
    "RetryCancelledError",
    "TRANSIENT_SIGNATURES",
    "TRANSIENT_STATUS_CODES",
    "classify_error",
    "error_text",
    "is_transient",
    "status_code_of",
]
