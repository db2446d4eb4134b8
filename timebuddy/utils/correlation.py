"""Correlation ID utilities for structured logging and wire request ids.

A per-call identifier lives in a ContextVar so that the transport, the
normalizer and any fan-out tasks spawned for one query log the same
``req_id``. The same identifier is sent to Grafana as the ``requestId``
query parameter of ``/api/ds/query``.
"""

from __future__ import annotations

import secrets
import string
from contextvars import ContextVar

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_ALPHABET = string.ascii_lowercase + string.digits


def set_request_id(request_id: str) -> None:
    """Set the current request correlation id in a context variable."""

    _request_id_var.set(request_id)


def get_request_id() -> str:
    """Return the current request correlation id, or empty string."""

    return _request_id_var.get()


def new_request_id(length: int = 9) -> str:
    """Generate a short base36 id, bind it to the context and return it."""

    request_id = "".join(secrets.choice(_ALPHABET) for _ in range(length))
    set_request_id(request_id)
    return request_id
