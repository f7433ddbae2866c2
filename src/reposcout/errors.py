"""
Errors - Exception hierarchy and the single failure classifier.

Every failure coming back from an external call (catalog or analysis
service) is mapped to exactly one ErrorKind by classify_error(). Downstream
code only ever looks at the resulting ClassifiedError; it never inspects
raw messages or status codes itself.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import aiohttp


class ErrorKind(Enum):
    """Closed taxonomy of external-call failures"""
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    UPSTREAM_ERROR = "upstream_error"
    UNKNOWN = "unknown"
    NOT_FOUND = "not_found"
    MISSING_INPUT = "missing_input"
    AUTH_ERROR = "auth_error"


_RETRYABLE = {
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.TIMEOUT: True,
    ErrorKind.NETWORK: True,
    ErrorKind.UPSTREAM_ERROR: True,
    ErrorKind.UNKNOWN: True,
    ErrorKind.NOT_FOUND: False,
    ErrorKind.MISSING_INPUT: False,
    ErrorKind.AUTH_ERROR: False,
}


@dataclass(frozen=True)
class ClassifiedError:
    """Result of classifying one failure"""
    kind: ErrorKind
    retryable: bool
    message: str

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "retryable": self.retryable,
            "message": self.message,
        }


class ReposcoutError(Exception):
    """Base exception for all reposcout errors"""
    pass


class ConfigError(ReposcoutError):
    """Raised when settings cannot be loaded or are invalid"""
    pass


class StoreUnavailableError(ReposcoutError):
    """Raised when the persistent store cannot be reached; fatal for the invocation"""
    pass


class BatchNotFoundError(ReposcoutError):
    """Raised when a batch id has no record"""

    def __init__(self, batch_id: str):
        super().__init__(f"Batch not found: {batch_id}")
        self.batch_id = batch_id


class ExternalCallError(ReposcoutError):
    """Failure returned by an external service, optionally with an HTTP status"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class CatalogError(ExternalCallError):
    """Raised when the repository catalog rejects or fails a request"""
    pass


class AnalysisError(ExternalCallError):
    """Raised when the analysis service rejects or fails a request"""
    pass


class AnalysisTimeoutError(AnalysisError):
    """Raised when an analysis call loses the race against its timeout"""
    pass


# Ordered: the first matching pattern wins
_MESSAGE_PATTERNS = [
    (ErrorKind.RATE_LIMIT, ("rate limit", "too many requests", "abuse detection")),
    (ErrorKind.TIMEOUT, ("timed out", "timeout")),
    (ErrorKind.AUTH_ERROR, ("unauthorized", "forbidden", "invalid api key", "authentication")),
    (ErrorKind.NOT_FOUND, ("not found",)),
    (ErrorKind.MISSING_INPUT, ("no readme", "no analyzable content", "missing input")),
    (ErrorKind.UPSTREAM_ERROR, ("overloaded", "internal server error", "bad gateway", "service unavailable")),
    (ErrorKind.NETWORK, ("connection", "network", "dns")),
]


def _kind_from_status(status: int) -> Optional[ErrorKind]:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if status == 422:
        return ErrorKind.MISSING_INPUT
    if status >= 500:
        return ErrorKind.UPSTREAM_ERROR
    return None


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Map a raw failure to its taxonomy entry.

    Checks, in order: timeout types, HTTP-like status codes, network
    exception types, then message patterns. Anything unrecognised is
    UNKNOWN, which is retryable.

    Args:
        error: The exception raised by the external call

    Returns:
        ClassifiedError with kind, retryable flag and a message
    """
    message = str(error) or error.__class__.__name__

    if isinstance(error, (AnalysisTimeoutError, asyncio.TimeoutError, TimeoutError)):
        kind = ErrorKind.TIMEOUT
    else:
        status = _status_of(error)
        kind = _kind_from_status(status) if status is not None else None

        if kind is None and isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
            kind = ErrorKind.NETWORK

        if kind is None:
            lowered = message.lower()
            for candidate, patterns in _MESSAGE_PATTERNS:
                if any(p in lowered for p in patterns):
                    kind = candidate
                    break

        if kind is None:
            kind = ErrorKind.UNKNOWN

    return ClassifiedError(kind=kind, retryable=_RETRYABLE[kind], message=message)


def is_retryable(kind: ErrorKind) -> bool:
    return _RETRYABLE[kind]
