"""Embedded-process bridge transport.

When the query core runs inside a desktop host, the host performs the
network I/O on its side of an IPC boundary and exposes a single coroutine,
``grafana_request(options)``, that returns ``{status, statusText, headers,
data}``. This strategy adapts that object to :class:`RawResponse`.

A host failure comes back either as a raised exception or as a rejected
payload shaped like ``{status, statusText, error}``; both are normalized.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..config.models import RequestContext
from ..errors import TransportError, standardize_error
from ..utils.correlation import get_request_id
from . import BridgeCallable, RawResponse, TransportRequest, build_headers, encode_body

logger = logging.getLogger(__name__)


class BridgeFailure(Exception):
    """Failure object rejected by the host bridge."""

    def __init__(self, payload: Dict[str, Any]) -> None:
        self.payload = payload
        self.status = int(payload.get("status") or 500)
        self.status_text = str(payload.get("statusText") or "")
        super().__init__(
            payload.get("error") or self.status_text or "Bridge request failed"
        )


class BridgeTransport:
    """Transport that delegates I/O to a host-provided coroutine.

    Parameters
    ----------
    context: RequestContext
        Connection whose URL, auth and proxy settings are forwarded.
    bridge: Optional[BridgeCallable]
        ``async def grafana_request(options: dict) -> dict``. May be injected
        later via :meth:`inject_bridge_for_testing`.
    """

    error_context = "Bridge request failed"

    def __init__(
        self, context: RequestContext, bridge: Optional[BridgeCallable] = None
    ) -> None:
        self._context = context
        self._bridge = bridge

    def inject_bridge_for_testing(self, bridge: BridgeCallable) -> None:
        """Inject a fake host bridge (tests)."""
        self._bridge = bridge

    def _options(self, req: TransportRequest) -> Dict[str, Any]:
        conn = self._context.connection
        return {
            "grafanaUrl": conn.url,
            "path": req.endpoint,
            "method": req.method,
            "headers": build_headers(conn, req.headers),
            "body": encode_body(req.body),
            "timeout": req.timeout_ms,
            "proxyConfig": (
                conn.proxy_config.model_dump(exclude_none=True)
                if conn.proxy_config is not None
                else None
            ),
        }

    async def send(self, req: TransportRequest) -> RawResponse:
        """Invoke the host bridge, enforcing ``req.timeout_ms`` locally too."""
        if self._bridge is None:
            raise TransportError(
                f"{self.error_context}: no host bridge available",
                context=self.error_context,
                status_code=500,
                status_text="Bridge unavailable",
            )
        options = self._options(req)
        logger.debug(
            "transport.bridge.send",
            extra={
                "req_id": get_request_id(),
                "path": req.endpoint,
                "method": req.method,
                "has_proxy": options["proxyConfig"] is not None,
            },
        )
        try:
            result = await asyncio.wait_for(
                self._bridge(options), timeout=req.timeout_ms / 1000.0
            )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "transport.bridge.timeout",
                extra={"path": req.endpoint, "timeout_ms": req.timeout_ms},
            )
            raise standardize_error(exc, self.error_context) from exc
        except BridgeFailure as exc:
            raise TransportError(
                f"{self.error_context}: {exc}",
                context=self.error_context,
                status_code=exc.status,
                status_text=exc.status_text,
                original_error=exc,
            ) from exc
        except Exception as exc:
            # host IPC rejections surface as plain exceptions
            raise standardize_error(exc, self.error_context) from exc

        if not isinstance(result, dict):
            raise TransportError(
                f"{self.error_context}: unexpected bridge result "
                f"{type(result).__name__}",
                context=self.error_context,
                status_code=502,
                status_text="Bad gateway",
            )
        if "error" in result and "data" not in result:
            failure = BridgeFailure(result)
            raise TransportError(
                f"{self.error_context}: {failure}",
                context=self.error_context,
                status_code=failure.status,
                status_text=failure.status_text,
                original_error=failure,
            )
        return RawResponse(
            status=int(result.get("status", 0)),
            status_text=str(result.get("statusText", "")),
            headers=result.get("headers") or {},
            data=result.get("data"),
        )

    async def aclose(self) -> None:
        return None
