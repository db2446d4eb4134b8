"""Unified data access layer.

:class:`DataAccess` is the orchestration surface of the query core: it
validates inputs, builds request bodies, dispatches them through the
transport strategy chosen at construction time, and normalizes both results
and failures. Every failure leaving this module is a
:class:`~timebuddy.errors.NormalizedError` with a ``context`` string.

Notes
-----
- The core never retries transparently.
- Empty schema payloads are returned as ``[]``; failed calls raise. Callers
  must treat the two differently.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import urlencode

from ..config.models import RequestContext
from ..domain.models import Datasource, DatasourceType, Frame, TimeRange
from ..errors import (
    BackendError,
    ConfigurationError,
    NormalizedError,
    UnknownSchemaTypeError,
    ValidationError,
    standardize_error,
)
from ..transport import DEFAULT_TIMEOUT_MS, RawResponse, Transport, TransportRequest
from ..utils.cache import Cache
from ..utils.correlation import get_request_id, new_request_id
from ..utils.partial_results import PartialResult, gather_partial
from . import normalizer
from .builder import QueryOptions, QueryRequestBuilder, extract_database

logger = logging.getLogger(__name__)

QUERY_ENDPOINT = "/api/ds/query"

SCHEMA_TYPES = (
    "databases",
    "retention_policies",
    "measurements",
    "fields",
    "tags",
    "tag_values",
    "metrics",
    "labels",
    "label_values",
)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '\\"') + '"'


class DataAccess:
    """Orchestrate builder, transport and normalizer for one connection.

    Parameters
    ----------
    context: RequestContext
        Connection the calls are made against.
    transport: Transport
        Strategy selected once by the host environment.
    builder: Optional[QueryRequestBuilder]
        Request body builder (a default instance when omitted).
    schema_cache: Optional[Cache]
        TTL cache for schema lists; pass ``None`` to create a private one.
    timeout_ms: int
        Default timeout for every transport call.
    """

    def __init__(
        self,
        context: RequestContext,
        transport: Transport,
        *,
        builder: Optional[QueryRequestBuilder] = None,
        schema_cache: Optional[Cache] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_fields_to_check: int = 10,
        field_check_timeout_ms: int = 5000,
    ) -> None:
        self.context = context
        self.transport = transport
        self.builder = builder or QueryRequestBuilder()
        self.schema_cache: Cache = schema_cache if schema_cache is not None else Cache()
        self.timeout_ms = timeout_ms
        self.max_fields_to_check = max_fields_to_check
        self.field_check_timeout_ms = field_check_timeout_ms

    # ------------------------------------------------------------------ errors

    @staticmethod
    def standardize_error(error: BaseException, context: str) -> NormalizedError:
        """Normalize ``error`` and prefix its message with ``context``."""
        return standardize_error(error, context)

    # ----------------------------------------------------------------- request

    async def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        """Send one call through the transport and return parsed JSON.

        Raises
        ------
        ConfigurationError
            If the connection has no URL or no datasource/auth.
        NormalizedError
            On transport failure, non-2xx status, or an ``error`` payload.
        """
        connection = self.context.connection
        if not connection.is_configured():
            raise ConfigurationError(
                "Grafana connection not configured. Please set up a connection first.",
                context="Request failed",
            )
        req = TransportRequest(
            method=method,
            endpoint=endpoint,
            headers=dict(headers or {}),
            body=body,
            timeout_ms=timeout_ms or self.timeout_ms,
        )
        try:
            response = await self.transport.send(req)
            return self._parse_response(response)
        except NormalizedError:
            raise
        except (ValueError, TypeError, OSError) as exc:
            raise self.standardize_error(exc, "Request failed") from exc

    @staticmethod
    def _parse_response(response: RawResponse) -> Any:
        if not response.ok:
            detail = ""
            try:
                payload = response.json()
                if isinstance(payload, dict):
                    detail = str(payload.get("error") or payload.get("message") or "")
            except ValueError:
                detail = response.text()[:500]
            message = detail or f"Request failed: {response.status} {response.status_text}"
            raise BackendError(
                message,
                context="Request failed",
                status_code=response.status,
                status_text=response.status_text,
            )
        data = response.json()
        if isinstance(data, dict):
            if data.get("error") and "results" not in data:
                raise BackendError(str(data["error"]), context="Request failed")
            if "data" in data and "results" not in data and "status" not in data:
                return data["data"]
        return data

    # ------------------------------------------------------------------- query

    async def execute_query(
        self,
        datasource: Optional[Datasource],
        query: str,
        options: Optional[QueryOptions] = None,
    ) -> Union[Dict[str, Any], List[Frame]]:
        """Run a query and return frames (or the raw envelope if ``raw``).

        Raises
        ------
        ValidationError
            If ``datasource`` or ``query`` is empty.
        NormalizedError
            Any other failure, with context ``"Query execution failed"``.
        """
        if datasource is None or not datasource.uid or not query or not query.strip():
            raise ValidationError(
                "Datasource ID and query are required",
                context="Query execution failed",
            )
        options = options or QueryOptions()

        try:
            body = self.builder.build(datasource, query, options)
            request_id = new_request_id()
            endpoint = f"{QUERY_ENDPOINT}?" + urlencode(
                {"ds_type": DatasourceType(datasource.type).value, "requestId": request_id}
            )
            logger.info(
                "data_access.query",
                extra={
                    "req_id": request_id,
                    "datasource": datasource.uid,
                    "ds_type": DatasourceType(datasource.type).value,
                    "database": options.database or extract_database(query),
                },
            )
            result = await self.request(
                endpoint,
                method="POST",
                body=body,
                headers=options.headers,
                timeout_ms=options.timeout_ms,
            )
            if options.raw:
                return result
            return normalizer.to_frames(result, datasource.type)
        except NormalizedError as exc:
            logger.warning(
                "data_access.query.failed",
                extra={"req_id": get_request_id(), "status": exc.status_code},
            )
            raise self.standardize_error(exc, "Query execution failed") from exc
        except (ValueError, TypeError, OSError) as exc:
            raise self.standardize_error(exc, "Query execution failed") from exc

    # ------------------------------------------------------------------ schema

    async def get_schema(
        self,
        datasource: Datasource,
        schema_type: str,
        *,
        database: Optional[str] = None,
        measurement: Optional[str] = None,
        tag: Optional[str] = None,
        metric: Optional[str] = None,
        label: Optional[str] = None,
        use_cache: bool = True,
    ) -> List[Any]:
        """Return a flat list of schema names for ``schema_type``.

        Raises
        ------
        UnknownSchemaTypeError
            If ``schema_type`` is not one of :data:`SCHEMA_TYPES`.
        ValidationError
            If a parameter required by the schema type is missing.
        """
        if schema_type not in SCHEMA_TYPES:
            raise UnknownSchemaTypeError(
                f"Unknown schema type: {schema_type}", context="Schema lookup failed"
            )
        if datasource is None or not datasource.uid:
            raise ValidationError(
                "Datasource ID and schema type are required",
                context="Schema lookup failed",
            )
        key = ":".join(
            [
                self.context.connection_id or "",
                datasource.uid,
                schema_type,
                database or "",
                measurement or "",
                tag or "",
                metric or "",
                label or "",
            ]
        )
        if use_cache:
            cached = self.schema_cache.get(key)
            if cached is not None:
                logger.debug("data_access.schema.cache_hit", extra={"key": key})
                return list(cached)

        handler = getattr(self, f"_schema_{schema_type}")
        values = await handler(
            datasource,
            database=database,
            measurement=measurement,
            tag=tag,
            metric=metric,
            label=label,
        )
        self.schema_cache.set(key, list(values))
        return values

    async def _influx_values(
        self, datasource: Datasource, query: str, database: Optional[str]
    ) -> List[Any]:
        result = await self.execute_query(
            datasource, query, QueryOptions(raw=True, database=database)
        )
        return normalizer.extract_influx_values(result)

    def _on(self, database: Optional[str]) -> str:
        return f" ON {_quote(database)}" if database else ""

    async def _schema_databases(self, datasource: Datasource, **_: Any) -> List[Any]:
        return await self._influx_values(datasource, "SHOW DATABASES", None)

    async def _schema_retention_policies(
        self, datasource: Datasource, database: Optional[str] = None, **_: Any
    ) -> List[Any]:
        query = "SHOW RETENTION POLICIES" + self._on(database)
        return await self._influx_values(datasource, query, database)

    async def _schema_measurements(
        self, datasource: Datasource, database: Optional[str] = None, **_: Any
    ) -> List[Any]:
        query = "SHOW MEASUREMENTS" + self._on(database)
        return await self._influx_values(datasource, query, database)

    def _require(self, **params: Optional[str]) -> None:
        missing = [name for name, value in params.items() if not value]
        if missing:
            raise ValidationError(
                f"Missing required parameter(s): {', '.join(missing)}",
                context="Schema lookup failed",
            )

    async def _schema_fields(
        self,
        datasource: Datasource,
        database: Optional[str] = None,
        measurement: Optional[str] = None,
        **_: Any,
    ) -> List[Any]:
        self._require(measurement=measurement)
        query = f"SHOW FIELD KEYS{self._on(database)} FROM {_quote(measurement)}"
        return await self._influx_values(datasource, query, database)

    async def _schema_tags(
        self,
        datasource: Datasource,
        database: Optional[str] = None,
        measurement: Optional[str] = None,
        **_: Any,
    ) -> List[Any]:
        self._require(measurement=measurement)
        query = f"SHOW TAG KEYS{self._on(database)} FROM {_quote(measurement)}"
        return await self._influx_values(datasource, query, database)

    async def _schema_tag_values(
        self,
        datasource: Datasource,
        database: Optional[str] = None,
        measurement: Optional[str] = None,
        tag: Optional[str] = None,
        **_: Any,
    ) -> List[Any]:
        self._require(tag=tag)
        query = "SHOW TAG VALUES" + self._on(database)
        if measurement:
            query += f" FROM {_quote(measurement)}"
        query += f" WITH KEY = {_quote(tag)}"
        result = await self.execute_query(
            datasource, query, QueryOptions(raw=True, database=database)
        )
        # Columns are (key, value); keep the value column of every frame.
        values: List[Any] = []
        for columns in normalizer.influx_frame_columns(result):
            if len(columns) > 1:
                values.extend(columns[1])
            elif columns:
                values.extend(v for v in columns[0] if v != tag)
        return sorted(str(v) for v in normalizer.dedupe(values))

    def _prom_base(self, datasource: Datasource) -> str:
        return f"/api/datasources/proxy/{datasource.proxy_id}/api/v1"

    async def _prometheus(self, endpoint: str) -> Any:
        try:
            return await self.request(endpoint)
        except NormalizedError as exc:
            raise self.standardize_error(exc, "Schema lookup failed") from exc

    async def _schema_metrics(self, datasource: Datasource, **_: Any) -> List[Any]:
        result = await self._prometheus(
            f"{self._prom_base(datasource)}/label/__name__/values"
        )
        return normalizer.extract_prometheus_values(result)

    async def _schema_labels(
        self, datasource: Datasource, metric: Optional[str] = None, **_: Any
    ) -> List[Any]:
        if not metric:
            return []
        params = urlencode({"match[]": metric})
        result = await self._prometheus(f"{self._prom_base(datasource)}/series?{params}")
        series = result.get("data") if isinstance(result, dict) else result
        keys: List[str] = []
        for item in series if isinstance(series, list) else []:
            if isinstance(item, dict):
                keys.extend(k for k in item if k != "__name__")
        return normalizer.dedupe(keys)

    async def _schema_label_values(
        self,
        datasource: Datasource,
        metric: Optional[str] = None,
        label: Optional[str] = None,
        **_: Any,
    ) -> List[Any]:
        self._require(label=label)
        if metric:
            params = urlencode({"match[]": metric})
            result = await self._prometheus(
                f"{self._prom_base(datasource)}/series?{params}"
            )
            series = result.get("data") if isinstance(result, dict) else result
            return normalizer.dedupe(
                item.get(label)
                for item in (series if isinstance(series, list) else [])
                if isinstance(item, dict)
            )
        result = await self._prometheus(
            f"{self._prom_base(datasource)}/label/{label}/values"
        )
        return normalizer.extract_prometheus_values(result)

    def invalidate_schema(self, datasource: Optional[Datasource] = None) -> int:
        """Drop cached schema for one datasource, or everything."""
        prefix = f"{self.context.connection_id or ''}:"
        if datasource is not None:
            prefix += f"{datasource.uid}:"
        return self.schema_cache.delete_prefix(prefix)

    # -------------------------------------------------------------- utilities

    async def get_datasource_type(self, datasource_uid: str) -> Optional[str]:
        """Look up a datasource's type from Grafana."""
        info = await self.request(f"/api/datasources/uid/{datasource_uid}")
        return info.get("type") if isinstance(info, dict) else None

    async def list_datasources(self) -> List[Datasource]:
        """Return the InfluxDB/Prometheus datasources visible to the connection."""
        items = await self.request("/api/datasources")
        out: List[Datasource] = []
        for item in items if isinstance(items, list) else []:
            try:
                ds_type = DatasourceType(str(item.get("type", "")).lower())
            except ValueError:
                continue
            out.append(
                Datasource(
                    uid=item.get("uid") or str(item.get("id")),
                    type=ds_type,
                    id=item.get("name"),
                    url=item.get("url"),
                    numeric_id=item.get("id"),
                )
            )
        return out

    def build_field_check_query(
        self, datasource: Datasource, measurement: str, field: str,
        retention_policy: Optional[str] = None,
    ) -> str:
        """Quick query that returns points when ``field`` has data in 24h."""
        if datasource.type == DatasourceType.PROMETHEUS:
            return f"{measurement}[1h]"
        source = _quote(measurement)
        if retention_policy:
            source = f"{_quote(retention_policy)}.{source}"
        return (
            f"SELECT mean({_quote(field)}) AS \"value\" FROM {source} "
            "WHERE time >= now() - 24h GROUP BY time(1h) fill(none) LIMIT 5"
        )

    async def check_fields_for_data(
        self,
        datasource: Datasource,
        measurement: str,
        fields: Sequence[str],
        *,
        retention_policy: Optional[str] = None,
        time_range: Optional[TimeRange] = None,
    ) -> PartialResult:
        """Probe up to ``max_fields_to_check`` fields concurrently.

        Each probe carries its own short timeout. ``successes`` maps the
        fields that returned at least one data point to their point count;
        probes that failed are listed in ``failures``.
        """
        to_check = list(fields)[: self.max_fields_to_check]
        if not to_check:
            return PartialResult()

        async def _probe(field: str) -> int:
            frames = await self.execute_query(
                datasource,
                self.build_field_check_query(
                    datasource, measurement, field, retention_policy
                ),
                QueryOptions(
                    time_range=time_range,
                    time_from_hours=24,
                    timeout_ms=self.field_check_timeout_ms,
                ),
            )
            return sum(frame.row_count for frame in frames)

        probed = await gather_partial(
            {field: _probe(field) for field in to_check},
            operation_type="field_data_check",
            timeout_s=self.field_check_timeout_ms / 1000.0,
        )
        probed.successes = {f: n for f, n in probed.successes.items() if n > 0}
        return probed

    async def aclose(self) -> None:
        await self.transport.aclose()
