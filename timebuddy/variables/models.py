"""Variable data model.

A variable value is either a bare string or a :class:`PairValue` carrying a
separate display text and substitution value. Code that needs one or the
other goes through :func:`value_of` / :func:`text_of` instead of checking
types inline.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import NormalizedError

NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class PairValue(BaseModel):
    """Value with distinct display text and substitution value."""

    model_config = ConfigDict(frozen=True)

    text: str
    value: str


VariableValue = Union[PairValue, str]


def value_of(item: VariableValue) -> str:
    """Value substituted into query text."""
    return item.value if isinstance(item, PairValue) else item


def text_of(item: VariableValue) -> str:
    """Text shown to the user and used for ordering."""
    return item.text if isinstance(item, PairValue) else item


def _coerce_value(item: Any) -> Any:
    if isinstance(item, dict) and "text" in item and "value" in item:
        return PairValue(text=str(item["text"]), value=str(item["value"]))
    return item


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Variable(BaseModel):
    """A named, connection-scoped query variable.

    Attributes
    ----------
    id: str
        Stable identifier.
    name: str
        Token name referenced as ``$name`` or ``${name}``.
    query: str
        Query whose first non-time column yields candidate values.
    regex: str
        Optional extractor applied to each candidate value.
    datasource_id: str
        UID of the datasource the query runs against.
    datasource_type: Optional[str]
        Backend type when known; looked up from Grafana otherwise.
    connection_id: Optional[str]
        Connection the variable belongs to.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    query: str
    regex: str = ""
    datasource_id: str
    datasource_name: Optional[str] = None
    datasource_type: Optional[str] = None
    datasource_numeric_id: Optional[int] = None
    connection_id: Optional[str] = None
    values: List[VariableValue] = Field(default_factory=list)
    selected_value: Optional[VariableValue] = None
    selected_values: List[VariableValue] = Field(default_factory=list)
    multi_select: bool = False
    last_updated: datetime = Field(default_factory=_now)
    error: Optional[str] = None
    loading: bool = False

    @field_validator("name", "query", "regex", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not NAME_RE.match(value):
            raise ValueError(
                "Variable name must start with a letter or underscore and "
                "contain only letters, numbers, and underscores"
            )
        return value

    @field_validator("values", "selected_values", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [_coerce_value(item) for item in value]
        return value

    @field_validator("selected_value", mode="before")
    @classmethod
    def _coerce_selected(cls, value: Any) -> Any:
        return _coerce_value(value)


@dataclass(frozen=True)
class ExtractResult:
    """Outcome of applying a variable regex to one raw value."""

    text: str
    value: str
    raw: str

    def as_value(self) -> VariableValue:
        """Collapse to a bare string when text and value coincide."""
        if self.text == self.value:
            return self.value
        return PairValue(text=self.text, value=self.value)


@dataclass
class LoadResult:
    """Values produced by a variable query plus any soft failure.

    ``soft_failure`` is set when the values were still usable but something
    went wrong along the way (e.g., the regex did not compile and raw values
    were returned instead).
    """

    values: List[VariableValue]
    soft_failure: Optional[NormalizedError] = None
