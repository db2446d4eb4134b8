"""Convert backend payloads into the common Frame model.

Grafana's unified endpoint already answers with
``{"results": {"<refId>": {"frames": [...]}}}``; normalizing that means
validating the column-major invariants and exposing helpers that locate the
time column by type. Raw InfluxDB/Prometheus HTTP API payloads (used by the
schema helpers) are flattened into plain value lists instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import DatasourceType, FieldType, Frame
from ..errors import BackendError

logger = logging.getLogger(__name__)


def dedupe(values: Iterable[Any]) -> List[Any]:
    """Drop null/empty entries and duplicates, keeping first-seen order."""
    seen: set = set()
    out: List[Any] = []
    for value in values:
        if value is None or value == "":
            continue
        key = value if isinstance(value, (str, int, float, bool)) else repr(value)
        if key in seen:
            continue
        seen.add(key)
        out.append(value)
    return out


def _validate_frame(frame: Frame) -> Frame:
    values = frame.data.values
    fields = frame.fields
    if values and fields and len(values) != len(fields):
        raise BackendError(
            f"Frame has {len(fields)} fields but {len(values)} columns",
            context="Result normalization failed",
        )
    lengths = {len(column) for column in values}
    if len(lengths) > 1:
        raise BackendError(
            f"Frame columns have unequal lengths: {sorted(lengths)}",
            context="Result normalization failed",
        )
    return frame


def _coerce_frame(raw: Union[Frame, Dict[str, Any]], ref_id: Optional[str]) -> Frame:
    if isinstance(raw, Frame):
        return _validate_frame(raw)
    try:
        frame = Frame.model_validate(raw)
    except PydanticValidationError as exc:
        raise BackendError(
            f"Malformed frame: {exc.error_count()} validation error(s)",
            context="Result normalization failed",
            original_error=exc,
        ) from exc
    if frame.schema_.ref_id is None and ref_id is not None:
        frame.schema_.ref_id = ref_id
    return _validate_frame(frame)


def to_frames(
    raw: Any, backend_type: Union[DatasourceType, str, None] = None
) -> List[Frame]:
    """Normalize a query response to a flat list of frames.

    Accepts the unified ``{"results": {...}}`` envelope, a bare list of
    frame dicts, or frames that were already normalized (idempotent).
    A per-refId ``error`` in the envelope raises :class:`BackendError`.
    """
    if raw is None:
        return []
    if isinstance(raw, Frame):
        return [_validate_frame(raw)]
    if isinstance(raw, list):
        return [_coerce_frame(item, None) for item in raw]
    if not isinstance(raw, dict):
        raise BackendError(
            f"Unexpected response type: {type(raw).__name__}",
            context="Result normalization failed",
        )
    results = raw.get("results")
    if not isinstance(results, dict):
        if "schema" in raw or "data" in raw:
            return [_coerce_frame(raw, None)]
        logger.debug(
            "normalizer.no_results",
            extra={"backend": str(backend_type), "keys": list(raw.keys())},
        )
        return []

    frames: List[Frame] = []
    for ref_id, result in results.items():
        if not isinstance(result, dict):
            continue
        if result.get("error"):
            raise BackendError(
                f"Query {ref_id} failed: {result['error']}",
                context="Query execution failed",
                status_code=result.get("status"),
            )
        for raw_frame in result.get("frames") or []:
            frames.append(_coerce_frame(raw_frame, ref_id))
    return frames


def time_field_index(frame: Frame) -> Optional[int]:
    """Index of the first field typed ``time``, or None."""
    for index, field_def in enumerate(frame.fields):
        if field_def.type is FieldType.TIME:
            return index
    return None


def first_value_column(frame: Frame) -> List[Any]:
    """Values of the first non-time column (empty list when absent)."""
    fields = frame.fields
    for index, column in enumerate(frame.data.values):
        if index < len(fields) and fields[index].type is FieldType.TIME:
            continue
        return column
    return []


def frames_to_rows(frames: Iterable[Frame]) -> List[Dict[str, Any]]:
    """Flatten frames into row dicts keyed by field name (for tabular output)."""
    rows: List[Dict[str, Any]] = []
    for frame in frames:
        names = [f.name or f"field_{i}" for i, f in enumerate(frame.fields)]
        if not names:
            names = [f"field_{i}" for i in range(len(frame.data.values))]
        for row_index in range(frame.row_count):
            rows.append(
                {
                    name: column[row_index]
                    for name, column in zip(names, frame.data.values)
                }
            )
    return rows


def influx_frame_columns(raw: Any, ref_id: str = "A") -> List[List[Any]]:
    """Column lists of every frame under ``results[ref_id]``.

    Entries that are not shaped like frames are skipped, so a malformed
    envelope yields an empty list.
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("results"), dict):
        return []
    result = raw["results"].get(ref_id)
    if not isinstance(result, dict) or not isinstance(result.get("frames"), list):
        return []
    out: List[List[Any]] = []
    for frame in result["frames"]:
        if not isinstance(frame, dict) or not isinstance(frame.get("data"), dict):
            continue
        columns = frame["data"].get("values")
        if isinstance(columns, list):
            out.append([column for column in columns if isinstance(column, list)])
    return out


def extract_influx_values(raw: Any) -> List[Any]:
    """Flatten an InfluxDB schema response into a de-duplicated value list.

    Handles the unified envelope (first column of every ``A`` frame) and the
    legacy ``[{"series": [{"values": [[v, ...], ...]}]}]`` shape. Malformed
    or empty payloads give an empty list.
    """
    if isinstance(raw, dict) and isinstance(raw.get("results"), dict):
        values: List[Any] = []
        for columns in influx_frame_columns(raw):
            if columns:
                values.extend(columns[0])
        return dedupe(values)

    if isinstance(raw, dict) and isinstance(raw.get("results"), list):
        raw = raw["results"]
    if not isinstance(raw, list):
        return []
    values = []
    for statement in raw:
        if not isinstance(statement, dict) or not isinstance(statement.get("series"), list):
            continue
        for series in statement["series"]:
            if not isinstance(series, dict) or not isinstance(series.get("values"), list):
                continue
            for row in series["values"]:
                if isinstance(row, list) and row:
                    values.append(row[0])
    return dedupe(values)


def extract_prometheus_values(raw: Any) -> List[Any]:
    """Flatten a Prometheus HTTP API response into a de-duplicated list.

    Accepts ``{"status": "success", "data": [...]}``, a bare list, or a
    query result ``{"data": {"result": [{"values": [[ts, v], ...]}]}}``
    (the sample value is taken). Empty or malformed payloads give ``[]``.
    """
    data = raw.get("data") if isinstance(raw, dict) else raw
    if isinstance(data, list):
        return dedupe(data)
    if not isinstance(data, dict):
        return []
    values: List[Any] = []
    for series in data.get("result") or []:
        if not isinstance(series, dict):
            continue
        samples = series.get("values") or ([series["value"]] if "value" in series else [])
        for sample in samples:
            if isinstance(sample, list) and len(sample) > 1:
                values.append(sample[1])
    return dedupe(values)
