"""Exception taxonomy for the query core.

Every failure that leaves :class:`~timebuddy.query.data_access.DataAccess` is
a :class:`NormalizedError` (or subclass) carrying a human ``context`` string,
an optional pseudo-HTTP status and the original exception. Transport errors
use 502/504 so callers can treat them like gateway failures.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any, Dict, Optional

import httpx


class NormalizedError(Exception):
    """Error with a stable shape for callers.

    Attributes
    ----------
    message: str
        Full message, prefixed with ``context`` once normalized.
    context: str
        Description of the failing operation (e.g., "Query execution failed").
    status_code: Optional[int]
        HTTP or pseudo-HTTP status.
    status_text: Optional[str]
        Reason phrase accompanying ``status_code``.
    original_error: Optional[BaseException]
        Root cause, preserved across re-normalization.
    """

    default_status: Optional[int] = None

    def __init__(
        self,
        message: str,
        *,
        context: str = "",
        status_code: Optional[int] = None,
        status_text: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context
        self.status_code = (
            status_code if status_code is not None else self.default_status
        )
        self.status_text = status_text
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON error bodies and CLI output."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "context": self.context,
            "status_code": self.status_code,
            "status_text": self.status_text,
        }


class ConfigurationError(NormalizedError):
    """Connection configuration is missing (no URL / datasource / auth)."""


class ValidationError(NormalizedError):
    """A required call argument is missing or empty."""

    default_status = 400


class TransportError(NormalizedError):
    """Timeout, abort, connection refused or unknown host."""

    default_status = 502


class BackendError(NormalizedError):
    """Non-2xx response from Grafana or the datasource behind it."""


class UnsupportedDatasourceError(NormalizedError):
    """Datasource type has no request builder."""


class UnknownSchemaTypeError(NormalizedError):
    """``get_schema`` was asked for a schema type it does not route."""


class RegexCompileError(NormalizedError):
    """A variable regex could not be compiled (soft failure)."""


_HOST_NOT_FOUND_MARKERS = (
    "enotfound",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "no address associated",
    "temporary failure in name resolution",
)


def _classify(error: BaseException) -> tuple[type[NormalizedError], int, str]:
    """Map a raw exception to (error class, status, status text)."""
    text = str(error).lower()
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return TransportError, 504, "Request timeout"
    if "etimedout" in text or "timed out" in text or "abort" in text:
        return TransportError, 504, "Request timeout"
    if isinstance(error, socket.gaierror) or any(
        marker in text for marker in _HOST_NOT_FOUND_MARKERS
    ):
        return TransportError, 502, "Host not found"
    if isinstance(error, (httpx.ConnectError, ConnectionRefusedError)) or (
        "econnrefused" in text or "connection refused" in text
    ):
        return TransportError, 502, "Connection refused"
    if isinstance(error, httpx.TransportError):
        return TransportError, 502, "Bad gateway"
    return NormalizedError, 500, "Internal error"


def standardize_error(error: BaseException, context: str) -> NormalizedError:
    """Normalize any failure into a :class:`NormalizedError`.

    Mapping
    -------
    - already normalized: class and status preserved, context re-prefixed
    - HTTP error response: status/statusText passed through
    - timeout or abort: 504
    - connection refused / host not found: 502
    - anything else: 500

    The returned message is always ``"<context>: <original message>"``.
    """
    if isinstance(error, NormalizedError):
        return type(error)(
            f"{context}: {error.message}",
            context=context,
            status_code=error.status_code,
            status_text=error.status_text,
            original_error=error.original_error or error,
        )
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return BackendError(
            f"{context}: {error}",
            context=context,
            status_code=response.status_code,
            status_text=response.reason_phrase,
            original_error=error,
        )
    cls, status, status_text = _classify(error)
    message = str(error) or status_text
    return cls(
        f"{context}: {message}",
        context=context,
        status_code=status,
        status_text=status_text,
        original_error=error,
    )
