"""
Partial results handling for fan-out operations that may partially fail.

Used when several independent backend calls are issued together (e.g.,
probing N candidate fields for recent data): each call gets its own timeout
so one slow call cannot stall the batch, and failures are collected instead
of aborting the whole operation.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional

import httpx

from ..errors import NormalizedError

logger = logging.getLogger(__name__)


@dataclass
class FailureInfo:
    """
    Information about a failed operation.

    Attributes
    ----------
    identifier : str
        Identifier for the failed operation (e.g., a field name)
    error : str
        Error message
    error_type : str
        Type of error (e.g., "timeout", "server_error", "parse_error")
    retryable : bool
        Whether the operation might succeed if retried
    """

    identifier: str
    error: str
    error_type: str
    retryable: bool = False


@dataclass
class PartialResult:
    """
    Result container for operations that may partially fail.

    Attributes
    ----------
    successes : Dict[str, Any]
        Results keyed by operation identifier, in submission order
    failures : List[FailureInfo]
        Information about failed operations
    """

    successes: Dict[str, Any] = field(default_factory=dict)
    failures: List[FailureInfo] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        """Calculate success rate (0.0-1.0)."""
        total = len(self.successes) + len(self.failures)
        if total == 0:
            return 0.0
        return len(self.successes) / total

    @property
    def all_succeeded(self) -> bool:
        """Check if all operations succeeded."""
        return len(self.failures) == 0 and len(self.successes) > 0

    @property
    def has_failures(self) -> bool:
        """Check if any operations failed."""
        return len(self.failures) > 0

    @property
    def all_failed(self) -> bool:
        """Check if all operations failed."""
        return len(self.successes) == 0 and len(self.failures) > 0


async def gather_partial(
    operations: Dict[str, Awaitable[Any]],
    operation_type: str = "operation",
    timeout_s: Optional[float] = None,
) -> PartialResult:
    """
    Execute async operations concurrently and collect partial results.

    Parameters
    ----------
    operations : Dict[str, Awaitable[Any]]
        Mapping of identifiers to awaitables
    operation_type : str
        Human-readable type of operation (for logging)
    timeout_s : float, optional
        Per-operation timeout; an operation exceeding it is recorded as a
        "timeout" failure

    Returns
    -------
    PartialResult
        Container with successes and failures
    """
    if not operations:
        return PartialResult()

    async def _bounded(op: Awaitable[Any]) -> Any:
        if timeout_s is None:
            return await op
        return await asyncio.wait_for(op, timeout=timeout_s)

    identifiers = list(operations.keys())
    completed = await asyncio.gather(
        *(_bounded(op) for op in operations.values()), return_exceptions=True
    )

    results = PartialResult()
    for identifier, result in zip(identifiers, completed):
        if isinstance(result, Exception):
            error_type = _classify_error(result)
            retryable = _is_retryable(error_type)
            results.failures.append(
                FailureInfo(
                    identifier=identifier,
                    error=str(result),
                    error_type=error_type,
                    retryable=retryable,
                )
            )
            logger.warning(
                f"partial_results.{operation_type}.failed",
                extra={
                    "identifier": identifier,
                    "error_type": error_type,
                    "retryable": retryable,
                    "error": str(result),
                },
            )
        elif isinstance(result, BaseException):
            raise result
        else:
            results.successes[identifier] = result

    logger.info(
        f"partial_results.{operation_type}.complete",
        extra={
            "total": len(operations),
            "successes": len(results.successes),
            "failures": len(results.failures),
            "success_rate": results.success_rate,
        },
    )
    return results


def _classify_error(exc: Exception) -> str:
    """Classify exception into error type."""
    status: Optional[int] = None
    if isinstance(exc, NormalizedError):
        status = exc.status_code
    elif isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)) or status == 504:
        return "timeout"
    if status == 502 or isinstance(exc, httpx.ConnectError):
        return "connection_error"
    if status is not None:
        if status >= 500:
            return "server_error"
        if status == 429:
            return "rate_limit"
        if status in (401, 403):
            return "auth_error"
        if status == 404:
            return "not_found"
        return "http_error"
    if isinstance(exc, ValueError):
        return "parse_error"
    return "unknown_error"


def _is_retryable(error_type: str) -> bool:
    """Determine if an error type is retryable."""
    return error_type in {"timeout", "connection_error", "server_error", "rate_limit"}


def format_failure_summary(
    result: PartialResult, operation_type: str = "operation"
) -> str:
    """
    Format a human-readable summary of partial result failures.

    Parameters
    ----------
    result : PartialResult
        The partial result to summarize
    operation_type : str
        Type of operation (for messaging)

    Returns
    -------
    str
        Formatted summary string
    """
    if not result.has_failures:
        return f"All {len(result.successes)} {operation_type}(s) succeeded."

    lines = [
        f"Partial results: {len(result.successes)} succeeded, "
        f"{len(result.failures)} failed ({result.success_rate:.1%} success rate)",
    ]

    failures_by_type: Dict[str, List[FailureInfo]] = {}
    for failure in result.failures:
        failures_by_type.setdefault(failure.error_type, []).append(failure)

    for error_type, failures in failures_by_type.items():
        retry_note = " (retryable)" if failures[0].retryable else " (not retryable)"
        lines.append(f"  - {len(failures)} {error_type}{retry_note}")
        identifiers = [f.identifier for f in failures[:3]]
        if len(failures) > 3:
            identifiers.append(f"... and {len(failures) - 3} more")
        lines.append(f"    Affected: {', '.join(identifiers)}")

    return "\n".join(lines)
