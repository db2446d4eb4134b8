"""Request body construction for Grafana's ``/api/ds/query`` endpoint.

The builder is pure: it turns a datasource, query text and options into the
JSON body Grafana expects for either Prometheus (``expr``) or InfluxDB
(``query`` + ``rawQuery``). Time bounds are always epoch-millisecond strings.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from ..domain.models import Datasource, DatasourceType, QueryRequest, TimeRange
from ..errors import UnsupportedDatasourceError, ValidationError

DEFAULT_INTERVAL_MS = 15000
DEFAULT_MAX_DATA_POINTS = 300
FALLBACK_INTERVAL_MS = 10000

_ON_DATABASE_RE = re.compile(r'\bON\s+"([^"]+)"', re.IGNORECASE)
_FROM_TABLE_RE = re.compile(r'\bFROM\s+(?:"[^"]+"\.)*"([^"]+)"', re.IGNORECASE)
_INTERVAL_RE = re.compile(r"^(\d+)([smhd])$")
_LABEL_VALUES_RE = re.compile(r"label_values\s*\(\s*(?:(.+?)\s*,\s*)?(\w+)\s*\)")

_PROMETHEUS_PATTERNS = [
    re.compile(r"^\s*\w+\{.*\}"),
    re.compile(r"^\s*\w+\[.*\]"),
    re.compile(
        r"^\s*(sum|avg|max|min|count|rate|irate|increase|histogram_quantile"
        r"|predict_linear)\s*\(",
        re.IGNORECASE,
    ),
    re.compile(r"\sby\s*\(", re.IGNORECASE),
    re.compile(r"\swithout\s*\(", re.IGNORECASE),
    re.compile(r"\soffset\s+\d+[smhd]", re.IGNORECASE),
    re.compile(r"^\s*[a-zA-Z_:][a-zA-Z0-9_:]*\s*$"),
]

_UNIT_MS = {"s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000, "d": 24 * 60 * 60 * 1000}


@dataclass
class QueryOptions:
    """Per-call knobs for :meth:`QueryRequestBuilder.build`.

    ``time_range`` wins over ``time_from_hours``/``time_to_hours``.
    """

    time_range: Optional[TimeRange] = None
    time_from_hours: float = 1
    time_to_hours: float = 0
    instant: bool = False
    interval: Optional[str] = None
    interval_ms: Optional[int] = None
    max_data_points: int = DEFAULT_MAX_DATA_POINTS
    database: Optional[str] = None
    legend_format: str = ""
    format: str = "time_series"
    raw: bool = False
    timeout_ms: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)


def extract_database(query: str) -> Optional[str]:
    """Return the database named by an explicit ``ON "db"`` clause, if any."""
    match = _ON_DATABASE_RE.search(query or "")
    return match.group(1) if match else None


def extract_measurement(query: str) -> Optional[str]:
    """Return the table named by ``FROM "table"`` (last quoted segment)."""
    match = _FROM_TABLE_RE.search(query or "")
    return match.group(1) if match else None


def parse_interval(interval: Optional[str]) -> int:
    """Convert ``"30s"``, ``"5m"``, ``"1h"``, ``"2d"`` to milliseconds.

    Anything unparsable, zero or negative yields 10000 (10s).
    """
    if not interval or not isinstance(interval, str):
        return FALLBACK_INTERVAL_MS
    match = _INTERVAL_RE.match(interval.strip())
    if not match:
        return FALLBACK_INTERVAL_MS
    value = int(match.group(1))
    if value <= 0:
        return FALLBACK_INTERVAL_MS
    return value * _UNIT_MS[match.group(2)]


def is_prometheus_query(query: str) -> bool:
    """Heuristic: does ``query`` look like PromQL rather than InfluxQL?"""
    return any(p.search(query or "") for p in _PROMETHEUS_PATTERNS)


def ref_id_for(index: int) -> str:
    """Spreadsheet-style refId for a zero-based batch position (0 -> A, 26 -> AA)."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def _coerce_type(value: Union[DatasourceType, str, None]) -> DatasourceType:
    try:
        return DatasourceType(value)
    except ValueError as exc:
        raise UnsupportedDatasourceError(
            f"Unsupported datasource type: {value}",
            context="Query build failed",
        ) from exc


class QueryRequestBuilder:
    """Build backend-specific query bodies.

    Parameters
    ----------
    clock: callable
        Returns "now" in epoch milliseconds; injectable for tests.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock or (lambda: int(time.time() * 1000))

    def time_range(self, options: QueryOptions) -> TimeRange:
        if options.time_range is not None:
            return options.time_range
        return TimeRange.last_hours(
            options.time_from_hours, options.time_to_hours, now_ms=self._clock()
        )

    def build(
        self,
        datasource: Datasource,
        query_text: str,
        options: Optional[QueryOptions] = None,
        *,
        ref_id: str = "A",
    ) -> Dict[str, Any]:
        """Build the ``/api/ds/query`` body for a single query.

        Raises
        ------
        UnsupportedDatasourceError
            If ``datasource.type`` has no builder.
        """
        options = options or QueryOptions()
        ds_type = _coerce_type(datasource.type)
        body: Dict[str, Any] = {
            "queries": [self._query(datasource, ds_type, query_text, options, ref_id)]
        }
        body.update(self.time_range(options).wire())
        return body

    def build_batch(
        self,
        items: Iterable[tuple],
        options: Optional[QueryOptions] = None,
    ) -> Dict[str, Any]:
        """Build one body for several ``(datasource, query_text)`` pairs.

        RefIds are assigned ``A``, ``B``, ``C``... by position (``AA`` follows
        ``Z``); pairs with a missing datasource or empty query are skipped but
        keep their letter.
        """
        options = options or QueryOptions()
        queries: List[Dict[str, Any]] = []
        for index, (datasource, query_text) in enumerate(items):
            if datasource is None or not query_text:
                continue
            ds_type = _coerce_type(datasource.type)
            ref_id = ref_id_for(index)
            queries.append(self._query(datasource, ds_type, query_text, options, ref_id))
        body: Dict[str, Any] = {"queries": queries}
        body.update(self.time_range(options).wire())
        return body

    def describe(
        self,
        datasource: Datasource,
        query_text: str,
        options: Optional[QueryOptions] = None,
        ref_id: str = "A",
    ) -> QueryRequest:
        """Resolve one query into its backend-neutral :class:`QueryRequest`."""
        options = options or QueryOptions()
        ds_type = _coerce_type(datasource.type)
        interval_ms = options.interval_ms or DEFAULT_INTERVAL_MS
        if options.interval:
            interval_ms = parse_interval(options.interval)
        return QueryRequest(
            ref_id=ref_id,
            datasource_ref={"uid": datasource.uid, "type": ds_type.value},
            text=query_text,
            is_instant=bool(options.instant),
            max_points=options.max_data_points,
            interval_ms=interval_ms,
        )

    def _query(
        self,
        datasource: Datasource,
        ds_type: DatasourceType,
        query_text: str,
        options: QueryOptions,
        ref_id: str,
    ) -> Dict[str, Any]:
        request = self.describe(datasource, query_text, options, ref_id)
        query: Dict[str, Any] = {
            "refId": request.ref_id,
            "datasource": dict(request.datasource_ref),
        }
        if datasource.numeric_id is not None:
            query["datasourceId"] = datasource.numeric_id

        if ds_type is DatasourceType.PROMETHEUS:
            query.update(
                {
                    "expr": request.text,
                    "instant": request.is_instant,
                    "range": not request.is_instant,
                    "interval": options.interval or "",
                    "intervalMs": request.interval_ms,
                    "maxDataPoints": request.max_points,
                    "legendFormat": options.legend_format,
                    "format": options.format,
                }
            )
            return query

        query.update(
            {
                "query": request.text,
                "rawQuery": True,
                "resultFormat": "time_series",
                "intervalMs": request.interval_ms,
                "maxDataPoints": request.max_points,
            }
        )
        database = options.database or extract_database(query_text)
        if database:
            query["database"] = database
        return query

    def build_label_values_request(
        self, datasource: Datasource, query: str
    ) -> Dict[str, Any]:
        """Translate ``label_values([metric, ]label)`` into an HTTP API route.

        Returns a dict with ``endpoint``, ``params`` and (for the two-argument
        form) ``extract_label``.
        """
        match = _LABEL_VALUES_RE.search(query or "")
        if not match:
            raise ValidationError(
                "Invalid label_values query format", context="Query build failed"
            )
        metric, label = match.group(1), match.group(2)
        base = f"/api/datasources/proxy/{datasource.proxy_id}/api/v1"
        if metric:
            return {
                "endpoint": f"{base}/series",
                "params": {"match[]": metric},
                "extract_label": label,
            }
        return {"endpoint": f"{base}/label/{label}/values", "params": {}}


def merge_time_ranges(
    first: Optional[TimeRange], second: Optional[TimeRange]
) -> Optional[TimeRange]:
    """Return the smallest range covering both inputs."""
    if first is None:
        return second
    if second is None:
        return first
    return TimeRange(
        from_ms=min(first.from_ms, second.from_ms),
        to_ms=max(first.to_ms, second.to_ms),
    )


def validate_request(body: Dict[str, Any]) -> bool:
    """Check a built body for the fields Grafana requires.

    Raises
    ------
    ValidationError
        On the first missing element.
    """
    context = "Request validation failed"
    if not body:
        raise ValidationError("Request is required", context=context)
    if not body.get("from") or not body.get("to"):
        raise ValidationError("Time range (from/to) is required", context=context)
    queries = body.get("queries")
    if not isinstance(queries, list) or not queries:
        raise ValidationError("At least one query is required", context=context)
    for index, query in enumerate(queries):
        if not query.get("refId"):
            raise ValidationError(f"Query {index} is missing refId", context=context)
        if not (query.get("datasource") or {}).get("uid"):
            raise ValidationError(
                f"Query {index} is missing datasource", context=context
            )
        if not query.get("expr") and not query.get("query"):
            raise ValidationError(
                f"Query {index} is missing expression", context=context
            )
    return True
