"""HTTP transports: same-origin proxy and direct Grafana access.

Both strategies share an ``httpx.AsyncClient`` per connection. The proxy
strategy talks to a local forwarding server (see
:mod:`timebuddy.server.proxy`) and tells it where to go through routing
headers; the direct strategy calls Grafana itself.

Timeouts are enforced by ``httpx`` and surface as a 504 ``TransportError``.
Non-2xx responses are returned, not raised: deciding what a backend error
means is the caller's job.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..config.models import RequestContext
from ..errors import standardize_error
from ..utils.correlation import get_request_id
from . import RawResponse, TransportRequest, build_headers, encode_body, redact

logger = logging.getLogger(__name__)


class _HttpTransport:
    """Common ``httpx`` plumbing for proxy and direct strategies.

    Parameters
    ----------
    context: RequestContext
        Connection used for auth and routing headers.
    base_url: str
        URL every endpoint is resolved against.
    """

    error_context = "HTTP request failed"
    uses_outbound_proxy = False

    def __init__(self, context: RequestContext, base_url: str) -> None:
        self._context = context
        self._base_url = base_url.rstrip("/")
        self._client: Optional[Any] = None
        logger.info(
            "transport.http.init",
            extra={"strategy": type(self).__name__, "base_url": self._base_url},
        )

    def inject_http_client_for_testing(self, client: Any) -> None:
        """Replace underlying HTTP client (testing only).

        The client must expose ``async def request(method, url, **kwargs)``.
        """
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            kwargs: Dict[str, Any] = {"base_url": self._base_url}
            proxy = self._context.connection.proxy_config
            if proxy is not None and self.uses_outbound_proxy:
                kwargs["proxy"] = proxy.url()
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    def _path(self, endpoint: str) -> str:
        return endpoint if endpoint.startswith("/") else "/" + endpoint

    def _routing_headers(self) -> Dict[str, str]:
        return {}

    async def send(self, req: TransportRequest) -> RawResponse:
        """Send ``req`` and wrap the reply as a :class:`RawResponse`."""
        headers = build_headers(
            self._context.connection, req.headers, self._routing_headers()
        )
        path = self._path(req.endpoint)
        logger.debug(
            "transport.http.send",
            extra={
                "req_id": get_request_id(),
                "strategy": type(self).__name__,
                "method": req.method,
                "path": path,
                "headers": redact(headers),
            },
        )
        try:
            resp = await self._get_client().request(
                req.method,
                path,
                headers=headers,
                content=encode_body(req.body),
                timeout=req.timeout_ms / 1000.0,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "transport.http.timeout",
                extra={
                    "path": path,
                    "timeout_ms": req.timeout_ms,
                    "hint": f"Request to {path} timed out after {req.timeout_ms}ms",
                },
            )
            raise standardize_error(exc, self.error_context) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "transport.http.error", extra={"path": path, "error": str(exc)}
            )
            raise standardize_error(exc, self.error_context) from exc
        logger.debug(
            "transport.http.response",
            extra={
                "req_id": get_request_id(),
                "path": path,
                "status_code": resp.status_code,
            },
        )
        return RawResponse(
            status=resp.status_code,
            status_text=resp.reason_phrase,
            headers=dict(resp.headers),
            data=resp.content,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class ProxyTransport(_HttpTransport):
    """Send through a local same-origin proxy.

    The endpoint is re-rooted under ``/api`` (``/api/ds/query`` becomes
    ``/api/ds/query`` on the proxy, ``/health`` becomes ``/api/health``) and
    the real Grafana target travels in ``X-Grafana-URL``.
    """

    error_context = "Proxy request failed"

    def __init__(self, context: RequestContext, base_url: str = "") -> None:
        super().__init__(context, base_url or "http://127.0.0.1:3000")

    def _path(self, endpoint: str) -> str:
        endpoint = super()._path(endpoint)
        if endpoint.startswith("/api/"):
            endpoint = endpoint[len("/api"):]
        return "/api" + endpoint

    def _routing_headers(self) -> Dict[str, str]:
        conn = self._context.connection
        headers = {
            "X-Grafana-URL": conn.url,
            "X-Grafana-Org-Id": conn.org_id or "1",
        }
        if conn.proxy_config is not None:
            headers["X-Proxy-Config"] = json.dumps(
                conn.proxy_config.model_dump(exclude_none=True)
            )
        return headers


class DirectTransport(_HttpTransport):
    """Call the Grafana URL directly with an ``Authorization`` header."""

    error_context = "Direct request failed"
    uses_outbound_proxy = True

    def __init__(self, context: RequestContext) -> None:
        super().__init__(context, context.connection.url)
