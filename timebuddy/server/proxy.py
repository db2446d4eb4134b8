"""Same-origin forwarding proxy for Grafana.

A browser-hosted client cannot call Grafana directly (CORS), so it sends
every request to this server under ``/api/...`` and names the real target in
the ``X-Grafana-URL`` header. The proxy forwards method, path, query string,
body and the relevant headers with ``httpx`` and relays the response.

Upstream failures are mapped to gateway statuses:

- connection refused, host not found: 502
- timeout: 504
- anything else: 500
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..__version__ import __version__
from ..config.models import EnvSettings, ProxyConfig
from ..errors import standardize_error
from ..observability import setup_logging
from ..utils.correlation import set_request_id

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[str]], httpx.AsyncClient]

_FORWARD_REQUEST_HEADERS = (
    "authorization",
    "content-type",
    "x-grafana-org-id",
    "x-dashboard-uid",
    "x-panel-id",
)
_FORWARD_RESPONSE_HEADERS = (
    "cache-control",
    "expires",
    "last-modified",
    "etag",
    "x-grafana-org-id",
    "x-frame-options",
)
_ERROR_DETAILS = {
    "Connection refused": (
        "Cannot connect to Grafana server. Check if the URL is correct and "
        "the server is running."
    ),
    "Host not found": "Cannot resolve Grafana hostname. Check if the URL is correct.",
    "Request timeout": "Request to Grafana server timed out.",
}


class HealthResponse(BaseModel):
    status: str
    version: str


class ProxyErrorResponse(BaseModel):
    """JSON body returned when the proxy itself cannot complete a call."""

    error: str
    message: str
    details: Optional[Any] = None


def _default_client_factory(settings: EnvSettings) -> ClientFactory:
    def _factory(proxy_url: Optional[str]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.proxy_timeout_seconds,
            verify=settings.proxy_verify_tls,
            proxy=proxy_url,
        )

    return _factory


def _outbound_proxy(raw: Optional[str]) -> Optional[str]:
    """Parse an ``X-Proxy-Config`` header into a proxy URL."""
    if not raw:
        return None
    try:
        return ProxyConfig.model_validate(json.loads(raw)).url()
    except (ValueError, PydanticValidationError):
        logger.warning("proxy.bad_proxy_config")
        return None


def _apply_cors(app: FastAPI, origins: str) -> None:
    """Enable CORS if origins are configured."""
    allow_origins = [o.strip() for o in origins.split(",") if o.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["GET", "PUT", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
        )


def _error(status: int, error: str, message: str, details: Any = None) -> JSONResponse:
    body = ProxyErrorResponse(error=error, message=message, details=details)
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))


def create_app(
    settings: Optional[EnvSettings] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """Create and configure the forwarding proxy application.

    Parameters
    ----------
    settings: Optional[EnvSettings]
        Settings; read from the environment when omitted.
    client_factory: Optional[ClientFactory]
        Builds the upstream ``httpx.AsyncClient`` for an optional outbound
        proxy URL. Tests pass a factory backed by ``httpx.MockTransport``.
    """
    settings = settings or EnvSettings()
    # Respect prior logging configuration from CLI; otherwise use env setting
    if not logging.getLogger().hasHandlers():
        setup_logging(settings.log_level)
    factory = client_factory or _default_client_factory(settings)
    clients: Dict[Optional[str], httpx.AsyncClient] = {}

    def _client(proxy_url: Optional[str]) -> httpx.AsyncClient:
        if proxy_url not in clients:
            clients[proxy_url] = factory(proxy_url)
        return clients[proxy_url]

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info("proxy.startup", extra={"version": __version__})
        try:
            yield
        finally:
            logger.info("proxy.shutdown")
            for client in clients.values():
                await client.aclose()
            clients.clear()

    app = FastAPI(title="Time Buddy Proxy", version=__version__, lifespan=lifespan)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception):  # noqa: D401
        # Avoid leaking internals; log server-side, return generic error
        logger.error("proxy.unhandled_exception", exc_info=exc)
        return _error(500, "Proxy error", "Internal error. See server logs.")

    _ = unhandled_exception_handler

    @app.get("/health", response_model=HealthResponse, summary="Liveness probe")
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", version=__version__)

    @app.api_route(
        "/api/{path:path}",
        methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        summary="Forward a Grafana API call",
    )
    async def forward(path: str, request: Request) -> Response:
        grafana_url = request.headers.get("x-grafana-url")
        if not grafana_url:
            return _error(400, "Missing X-Grafana-URL header", "Missing X-Grafana-URL header")
        set_request_id(request.query_params.get("requestId", ""))

        target = f"{grafana_url.rstrip('/')}/api/{path}"
        headers = {
            name: request.headers[name]
            for name in _FORWARD_REQUEST_HEADERS
            if name in request.headers
        }
        headers.setdefault("content-type", "application/json")
        headers["accept"] = "application/json"
        headers["user-agent"] = request.headers.get("user-agent", "timebuddy-proxy")
        body = await request.body()
        client = _client(_outbound_proxy(request.headers.get("x-proxy-config")))

        logger.info(
            "proxy.forward",
            extra={"method": request.method, "target": target},
        )
        try:
            upstream = await client.request(
                request.method,
                target,
                params=list(request.query_params.multi_items()),
                headers=headers,
                content=body or None,
            )
        except httpx.HTTPError as exc:
            err = standardize_error(exc, "Proxy error")
            logger.warning(
                "proxy.forward.failed",
                extra={
                    "target": target,
                    "status": err.status_code,
                    "error": str(exc),
                },
            )
            status_text = err.status_text or "Proxy error"
            return _error(
                err.status_code or 500,
                status_text,
                _ERROR_DETAILS.get(status_text, str(exc)),
            )

        if upstream.status_code >= 400:
            logger.info(
                "proxy.forward.upstream_error",
                extra={"target": target, "status": upstream.status_code},
            )
        passthrough = {
            name: upstream.headers[name]
            for name in _FORWARD_RESPONSE_HEADERS
            if name in upstream.headers
        }
        try:
            payload = upstream.json()
        except ValueError:
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                headers=passthrough,
                media_type=upstream.headers.get("content-type"),
            )
        return JSONResponse(
            status_code=upstream.status_code, content=payload, headers=passthrough
        )

    _apply_cors(app, settings.cors_origins)
    return app
