"""Canonical data model shared by the builder, normalizer and data access.

These Pydantic models describe datasources, time ranges and the columnar
Frame returned by Grafana's unified query endpoint. Keeping the model small
and stable lets the InfluxDB and Prometheus paths produce the same shape.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DatasourceType(str, Enum):
    """Backends the query core knows how to talk to."""

    PROMETHEUS = "prometheus"
    INFLUXDB = "influxdb"


class FieldType(str, Enum):
    """Grafana field types found in frame schemas."""

    TIME = "time"
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    OTHER = "other"


class Datasource(BaseModel):
    """A configured backend addressable by UID.

    Attributes
    ----------
    uid: str
        Grafana datasource UID used in query payloads.
    type: DatasourceType
        Backend type.
    id: Optional[str]
        Display identifier (name) if known.
    url: Optional[str]
        Backend URL as reported by Grafana.
    numeric_id: Optional[int]
        Legacy numeric id, required for ``/api/datasources/proxy/<id>`` routes.
    """

    model_config = ConfigDict(frozen=True)

    uid: str
    type: Union[DatasourceType, str]
    id: Optional[str] = None
    url: Optional[str] = None
    numeric_id: Optional[int] = None

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Any:
        # Unknown types are kept as plain strings; the builder rejects them.
        if isinstance(value, DatasourceType):
            return value
        try:
            return DatasourceType(str(value).lower())
        except ValueError:
            return value

    @property
    def proxy_id(self) -> str:
        """Identifier used in Grafana's datasource proxy routes."""
        return str(self.numeric_id) if self.numeric_id is not None else self.uid


class TimeRange(BaseModel):
    """Absolute time window in epoch milliseconds (``from_ms < to_ms``)."""

    from_ms: int
    to_ms: int

    @field_validator("from_ms", "to_ms", mode="before")
    @classmethod
    def _coerce_ms(cls, value: Any) -> int:
        if isinstance(value, str):
            return int(value.strip())
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.from_ms >= self.to_ms:
            raise ValueError("from_ms must be earlier than to_ms")
        return self

    @classmethod
    def last_hours(
        cls, from_hours: float = 1, to_hours: float = 0, now_ms: Optional[int] = None
    ) -> "TimeRange":
        """Build a window relative to ``now`` (``now - hours * 3600000``)."""
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        return cls(
            from_ms=now - int(from_hours * 3600000),
            to_ms=now - int(to_hours * 3600000),
        )

    def wire(self) -> Dict[str, str]:
        """Return the ``from``/``to`` pair as the wire format expects."""
        return {"from": str(self.from_ms), "to": str(self.to_ms)}


class QueryRequest(BaseModel):
    """One query of a batch sent to ``/api/ds/query``."""

    ref_id: str = "A"
    datasource_ref: Dict[str, str]
    text: str
    is_instant: bool = False
    max_points: int = 300
    interval_ms: int = 15000


class FieldDef(BaseModel):
    """Column descriptor inside a frame schema."""

    model_config = ConfigDict(extra="allow")

    name: str = ""
    type: FieldType = FieldType.OTHER

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value: Any) -> Any:
        try:
            return FieldType(value)
        except ValueError:
            return FieldType.OTHER


class FrameSchema(BaseModel):
    """Name/type list of a frame plus its owning refId."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    ref_id: Optional[str] = Field(None, alias="refId")
    name: Optional[str] = None
    fields: List[FieldDef] = Field(default_factory=list)


class FrameData(BaseModel):
    """Column-major values: ``values[i]`` belongs to ``schema.fields[i]``."""

    values: List[List[Any]] = Field(default_factory=list)


class Frame(BaseModel):
    """Columnar result unit.

    Invariants
    ----------
    - ``len(data.values) == len(schema.fields)``
    - every column has the same length
    - the time column is found by ``type``, never by position
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schema_: FrameSchema = Field(default_factory=FrameSchema, alias="schema")
    data: FrameData = Field(default_factory=FrameData)
    meta: Optional[Dict[str, Any]] = None

    @property
    def fields(self) -> List[FieldDef]:
        return self.schema_.fields

    @property
    def row_count(self) -> int:
        return len(self.data.values[0]) if self.data.values else 0

    def to_wire(self) -> Dict[str, Any]:
        """Dump back to Grafana's JSON frame shape."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
