"""Config models and loader.

This module defines Pydantic models for file- and environment-based
configuration. JSON parsing prefers `orjson` when available for speed and
lower memory usage, but falls back to the Python standard library's `json`
module so minimal environments can still load a connections file.

A :class:`ConnectionConfig` describes one Grafana connection. Callers wrap it
in a :class:`RequestContext` and pass that explicitly to every transport and
data-access call; there is no process-wide "current connection".
"""

from __future__ import annotations

import base64
import json as _json
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

try:
    import orjson as _orjson_mod  # type: ignore[assignment]
except ImportError:  # pragma: no cover - optional dependency
    _orjson_mod = None  # type: ignore[assignment]
    _loads_orjson: Optional[Callable[[bytes], Any]] = None
else:

    def _loads_orjson(buf: bytes) -> Any:
        loader = getattr(_orjson_mod, "loads")  # type: ignore[assignment]
        return loader(buf)


from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.models import DatasourceType


class TransportMode(str, Enum):
    """Runtime environment that decides which transport strategy is used."""

    BRIDGE = "bridge"
    PROXY = "proxy"
    DIRECT = "direct"


class ProxyConfig(BaseModel):
    """Outbound HTTP proxy used to reach Grafana.

    Attributes
    ----------
    host: str
        Proxy host name.
    port: int
        Proxy port.
    protocol: str
        Proxy scheme, usually "http".
    username: Optional[str]
        Optional proxy user.
    password: Optional[str]
        Optional proxy password.
    """

    host: str
    port: int = Field(8080, ge=1, le=65535)
    protocol: str = "http"
    username: Optional[str] = None
    password: Optional[str] = None

    def url(self) -> str:
        """Return the proxy as a URL suitable for ``httpx`` ``proxy=``."""
        auth = ""
        if self.username:
            auth = self.username
            if self.password:
                auth += f":{self.password}"
            auth += "@"
        return f"{self.protocol}://{auth}{self.host}:{self.port}"


class ConnectionConfig(BaseModel):
    """Configuration for a single Grafana connection.

    Attributes
    ----------
    url: str
        Grafana base URL (e.g., "https://grafana.example.com").
    auth_header: Optional[str]
        Full ``Authorization`` header value. Derived from ``token`` or
        ``username``/``password`` when not supplied.
    datasource_id: Optional[str]
        Default datasource UID for this connection.
    datasource_type: Optional[DatasourceType]
        Type of the default datasource.
    org_id: str
        Grafana organization id sent as ``X-Grafana-Org-Id``.
    proxy_config: Optional[ProxyConfig]
        Outbound proxy, forwarded to the bridge/proxy transports.
    timeout_seconds: int
        Per-request timeout.
    """

    url: str = ""
    auth_header: Optional[str] = None
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    datasource_id: Optional[str] = None
    datasource_type: Optional[DatasourceType] = None
    org_id: str = "1"
    proxy_config: Optional[ProxyConfig] = None
    timeout_seconds: int = Field(30, ge=1)

    def authorization(self) -> Optional[str]:
        """Return the effective ``Authorization`` header value, if any."""
        if self.auth_header:
            return self.auth_header
        if self.token:
            return f"Bearer {self.token}"
        if self.username:
            raw = f"{self.username}:{self.password or ''}".encode("utf-8")
            return "Basic " + base64.b64encode(raw).decode("ascii")
        return None

    def is_configured(self) -> bool:
        """True when the connection can address a Grafana instance."""
        return bool(self.url) and bool(self.datasource_id or self.authorization())


class RequestContext(BaseModel):
    """Explicit per-call context replacing a global connection object."""

    connection_id: Optional[str] = None
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)


class AppConfig(BaseModel):
    """Top-level application configuration.

    Attributes
    ----------
    connections: Dict[str, ConnectionConfig]
        Mapping from logical connection id to connection settings.
    default_mode: TransportMode
        Transport strategy used when none is requested explicitly.
    proxy_base_url: str
        Base URL of the local same-origin proxy (proxy mode only).
    """

    connections: Dict[str, ConnectionConfig] = Field(default_factory=dict)
    default_mode: TransportMode = TransportMode.DIRECT
    proxy_base_url: str = "http://127.0.0.1:3000"

    def context_for(self, connection_id: str) -> RequestContext:
        """Build a :class:`RequestContext` for a configured connection."""
        return RequestContext(
            connection_id=connection_id, connection=self.connections[connection_id]
        )

    @staticmethod
    def load(path: Path) -> "AppConfig":
        """Load application config from a JSON file."""
        raw = path.read_bytes()
        if _loads_orjson is not None:
            data = _loads_orjson(raw)
        else:
            data = _json.loads(raw.decode("utf-8"))
        return AppConfig.model_validate(data)


class EnvSettings(BaseSettings):
    """Environment-driven settings and .env support.

    Attributes
    ----------
    log_level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    mode: TransportMode
        Transport strategy selected for this process.
    request_timeout_ms: int
        Default timeout applied to every transport call.
    schema_cache_ttl_seconds: int
        Lifetime of cached schema lists.
    variable_cache_ttl_seconds: int
        Lifetime of cached variable value sets.
    max_fields_to_check: int
        Upper bound on concurrent "recent data" probes.
    field_check_timeout_ms: int
        Timeout for each "recent data" probe.
    proxy_timeout_seconds: float
        Upstream timeout used by the forwarding proxy server.
    proxy_verify_tls: bool
        Verify Grafana TLS certificates in the forwarding proxy.
    cors_origins: str
        Comma-separated origins allowed to call the proxy (empty: none).
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="TIMEBUDDY_")

    log_level: str = Field("INFO")
    mode: TransportMode = Field(TransportMode.DIRECT)
    request_timeout_ms: int = Field(30000, ge=1)
    schema_cache_ttl_seconds: int = Field(24 * 60 * 60, ge=1)
    variable_cache_ttl_seconds: int = Field(24 * 60 * 60, ge=1)
    max_fields_to_check: int = Field(10, ge=1, le=100)
    field_check_timeout_ms: int = Field(5000, ge=1)
    proxy_timeout_seconds: float = Field(30.0, gt=0)
    proxy_verify_tls: bool = Field(True)
    cors_origins: str = Field("")
