"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so ``import timebuddy`` resolves
regardless of the working directory pytest chooses, and provides a scripted
transport double shared by the data-access and variable tests.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional, Union


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

import pytest  # noqa: E402

from timebuddy.config.models import ConnectionConfig, RequestContext  # noqa: E402
from timebuddy.transport import RawResponse, TransportRequest  # noqa: E402
from timebuddy.utils.correlation import set_request_id  # noqa: E402

Reply = Union[RawResponse, BaseException, Any]


def frames_envelope(*frames: dict, ref_id: str = "A") -> dict:
    """Wrap frame dicts in the unified ``/api/ds/query`` response shape."""
    return {"results": {ref_id: {"status": 200, "frames": list(frames)}}}


def frame(names_types, columns, ref_id: Optional[str] = None) -> dict:
    """Build a frame dict from ``[(name, type), ...]`` and column lists."""
    schema: dict = {"fields": [{"name": n, "type": t} for n, t in names_types]}
    if ref_id is not None:
        schema["refId"] = ref_id
    return {"schema": schema, "data": {"values": columns}}


class FakeTransport:
    """Transport double returning scripted replies and recording requests.

    ``responder`` is called with each :class:`TransportRequest`; it may return
    a :class:`RawResponse`, a JSON-able payload (wrapped as a 200), or an
    exception instance to raise.
    """

    def __init__(self, responder: Union[Callable[[TransportRequest], Reply], Reply]):
        self._responder = responder
        self.requests: List[TransportRequest] = []
        self.closed = False

    async def send(self, req: TransportRequest) -> RawResponse:
        self.requests.append(req)
        reply = self._responder(req) if callable(self._responder) else self._responder
        if hasattr(reply, "__await__"):
            reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, RawResponse):
            return reply
        return RawResponse(200, "OK", {}, json.dumps(reply).encode("utf-8"))

    async def aclose(self) -> None:
        self.closed = True

    @property
    def bodies(self) -> List[Any]:
        return [r.body for r in self.requests]


@pytest.fixture
def connection() -> ConnectionConfig:
    return ConnectionConfig(
        url="https://grafana.example.com",
        token="secret-token",
        datasource_id="influx-uid",
        org_id="3",
    )


@pytest.fixture
def context(connection: ConnectionConfig) -> RequestContext:
    return RequestContext(connection_id="prod", connection=connection)


@pytest.fixture(autouse=True)
def reset_request_id():
    """Reset the correlation id before each test to avoid cross-test leakage."""
    set_request_id("")
    yield
