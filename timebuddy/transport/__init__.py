"""Transport strategy interface and factory.

A transport turns a :class:`TransportRequest` into a :class:`RawResponse`.
Three interchangeable strategies exist (embedded-process bridge, same-origin
proxy, direct HTTP); the host environment picks one once through
:func:`select_transport` and hands it to ``DataAccess``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

from ..config.models import ConnectionConfig, RequestContext, TransportMode

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000


@dataclass
class TransportRequest:
    """A single backend call.

    ``endpoint`` is a Grafana path such as ``/api/ds/query?ds_type=influxdb``.
    """

    method: str = "GET"
    endpoint: str = "/"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[None, str, Dict[str, Any], list] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class RawResponse:
    """Fetch-like response shared by all strategies."""

    def __init__(
        self,
        status: int,
        status_text: str = "",
        headers: Optional[Mapping[str, str]] = None,
        data: Any = None,
    ) -> None:
        self.status = status
        self.status_text = status_text
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self._data = data

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Return the parsed body; string bodies are decoded as JSON."""
        if isinstance(self._data, (bytes, bytearray)):
            return json.loads(self._data.decode("utf-8"))
        if isinstance(self._data, str):
            return json.loads(self._data) if self._data else None
        return self._data

    def text(self) -> str:
        if self._data is None:
            return ""
        if isinstance(self._data, (bytes, bytearray)):
            return self._data.decode("utf-8", errors="replace")
        if isinstance(self._data, str):
            return self._data
        return json.dumps(self._data)

    def __repr__(self) -> str:
        return f"RawResponse(status={self.status}, status_text={self.status_text!r})"


class Transport(Protocol):
    """Strategy protocol implemented by every transport."""

    async def send(self, req: TransportRequest) -> RawResponse:
        """Perform the call and return the response; raise on transport failure."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release pooled resources."""
        raise NotImplementedError


def encode_body(body: Any) -> Optional[str]:
    """Serialize dict/list bodies to JSON; pass strings unchanged."""
    if body is None:
        return None
    if isinstance(body, str):
        return body
    return json.dumps(body)


def build_headers(
    connection: ConnectionConfig,
    extra: Optional[Mapping[str, str]] = None,
    computed: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Merge caller headers under the computed ones.

    Caller-supplied headers are applied first so ``Authorization``, ``Accept``
    and any strategy-specific routing headers always win.
    """
    headers: Dict[str, str] = {"Content-Type": "application/json"}
    lowered = {k.lower() for k in (computed or {})}
    lowered.update({"authorization", "accept"})
    for key, value in (extra or {}).items():
        if key.lower() not in lowered and value is not None:
            headers[key] = value
    auth = connection.authorization()
    if auth:
        headers["Authorization"] = auth
    else:
        logger.warning("transport.headers.no_auth")
    headers["Accept"] = "application/json"
    headers.update(computed or {})
    return headers


def redact(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return headers safe for logging (auth values truncated)."""
    out: Dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in ("authorization", "x-proxy-config") and value:
            out[key] = value[:10] + "..."
        else:
            out[key] = value
    return out


BridgeCallable = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def select_transport(
    mode: Union[TransportMode, str],
    context: RequestContext,
    *,
    proxy_base_url: Optional[str] = None,
    bridge: Optional[BridgeCallable] = None,
) -> Transport:
    """Build the transport strategy for a runtime mode.

    Parameters
    ----------
    mode: TransportMode | str
        ``bridge``, ``proxy`` or ``direct``.
    context: RequestContext
        Connection the transport will talk to.
    proxy_base_url: Optional[str]
        Base URL of the local proxy (proxy mode).
    bridge: Optional[BridgeCallable]
        Host request function (bridge mode).
    """
    from .bridge import BridgeTransport
    from .http import DirectTransport, ProxyTransport

    mode = TransportMode(mode)
    if mode is TransportMode.BRIDGE:
        return BridgeTransport(context, bridge=bridge)
    if mode is TransportMode.PROXY:
        return ProxyTransport(context, base_url=proxy_base_url or "")
    return DirectTransport(context)


__all__ = [
    "RawResponse",
    "Transport",
    "TransportRequest",
    "build_headers",
    "encode_body",
    "redact",
    "select_transport",
]
