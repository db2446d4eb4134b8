"""Variable substitution and value loading.

Substitution runs in a fixed order:

1. built-ins (``$timeFilter``, ``$__interval``)
2. external dashboard variables (take priority)
3. user variables of the active connection (fallbacks)

Each variable is applied with a single compiled pattern and a function
replacement, so substituted values are never re-scanned or interpreted as
regex replacement syntax.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..domain.models import Datasource, DatasourceType, TimeRange
from ..errors import NormalizedError, RegexCompileError, ValidationError
from ..query import normalizer
from ..query.builder import QueryOptions
from ..query.data_access import DataAccess
from .extract import apply_regex, sort_key
from .models import LoadResult, Variable, value_of
from .store import VariableStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = "1m"
LOOKBACK_HOURS = 24
VARIABLE_MAX_DATA_POINTS = 1000

_TIME_FILTER_RE = re.compile(r"\$timeFilter\b")
_INTERVAL_RE = re.compile(r"\$__interval\b")
_BUILTINS = ("timeFilter", "__interval")


@dataclass
class SubstitutionContext:
    """Inputs for one substitution pass.

    Attributes
    ----------
    time_range: Optional[TimeRange]
        Window rendered by ``$timeFilter``; derived from the hour offsets
        when omitted.
    time_from_hours, time_to_hours: float
        Relative window (hours before now) used without ``time_range``.
    dashboard_refresh: Optional[str]
        Refresh interval of the selected dashboard (wins for ``$__interval``).
    tab_interval: Optional[str]
        Interval chosen in the active editor tab.
    external_vars: Mapping[str, str]
        Dashboard variables, applied before user variables.
    connection_id: Optional[str]
        Connection whose user variables apply.
    """

    time_range: Optional[TimeRange] = None
    time_from_hours: float = 1
    time_to_hours: float = 0
    dashboard_refresh: Optional[str] = None
    tab_interval: Optional[str] = None
    external_vars: Mapping[str, str] = field(default_factory=dict)
    connection_id: Optional[str] = None

    def interval(self) -> str:
        return self.dashboard_refresh or self.tab_interval or DEFAULT_INTERVAL

    def window(self) -> TimeRange:
        return self.time_range or TimeRange.last_hours(
            self.time_from_hours, self.time_to_hours
        )


def _token(name: str) -> str:
    escaped = re.escape(name)
    return rf"(?:\$\{{{escaped}\}}|\${escaped}\b)"


def _replace(pattern: "re.Pattern[str]", text: str, value: str) -> str:
    return pattern.sub(lambda _m: value, text)


def _regex_escape(value: str) -> str:
    return re.sub(r"[.*+?^${}()|\[\]\\]", lambda m: "\\" + m.group(0), value)


def _quote_literal(value: str) -> str:
    """InfluxQL single-quoted string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _multi_pattern(name: str) -> "re.Pattern[str]":
    token = _token(name)
    return re.compile(
        rf"(?P<regex>=~\s*/{token}/)"
        rf"|(?P<in>IN\s*\(\s*{token}\s*\))"
        rf"|(?P<plain>{token})"
    )


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class VariableEngine:
    """Substitute variables into query text and load their values.

    Parameters
    ----------
    data_access: DataAccess
        Used to run variable queries and resolve datasource types.
    store: Optional[VariableStore]
        Registry of user variables (a private one when omitted).
    """

    def __init__(
        self, data_access: DataAccess, store: Optional[VariableStore] = None
    ) -> None:
        self.data_access = data_access
        self.store = store or VariableStore()
        self._inflight: Dict[str, "asyncio.Task[bool]"] = {}

    # ------------------------------------------------------------ substitute

    def substitute(
        self, text: str, *, context: Optional[SubstitutionContext] = None
    ) -> str:
        """Resolve every known variable token in ``text``."""
        context = context or SubstitutionContext()
        window = context.window()
        result = _replace(
            _TIME_FILTER_RE,
            text,
            f"time >= {window.from_ms}ms and time <= {window.to_ms}ms",
        )
        result = _replace(_INTERVAL_RE, result, context.interval())

        for name, value in context.external_vars.items():
            if name in _BUILTINS:
                continue
            result = _replace(re.compile(_token(name)), result, str(value))

        connection_id = context.connection_id or self.data_access.context.connection_id
        for variable in self.store.list_for_connection(connection_id):
            result = self._apply_user_variable(result, variable)
        return result

    @staticmethod
    def _apply_user_variable(text: str, variable: Variable) -> str:
        if variable.multi_select and variable.selected_values:
            values = [value_of(v) for v in variable.selected_values]
            alternation = "|".join(_regex_escape(v) for v in values)
            quoted = ", ".join(_quote_literal(v) for v in values)

            def _multi(match: "re.Match[str]") -> str:
                if match.group("regex"):
                    return f"=~ /({alternation})/"
                if match.group("in"):
                    return f"IN ({quoted})"
                return ",".join(values)

            return _multi_pattern(variable.name).sub(_multi, text)
        if variable.selected_value:
            pattern = re.compile(_token(variable.name))
            return _replace(pattern, text, value_of(variable.selected_value))
        return text

    # ----------------------------------------------------------------- values

    async def _datasource_for(self, variable: Variable) -> Datasource:
        ds_type = variable.datasource_type
        if not ds_type:
            ds_type = await self.data_access.get_datasource_type(variable.datasource_id)
        if not ds_type:
            raise ValidationError(
                "Datasource not found or not connected",
                context="Variable query failed",
            )
        return Datasource(
            uid=variable.datasource_id,
            type=ds_type,
            id=variable.datasource_name,
            numeric_id=variable.datasource_numeric_id,
        )

    async def load_values(self, variable: Variable) -> LoadResult:
        """Run the variable query and turn its result into sorted values.

        Raises
        ------
        NormalizedError
            When the query itself fails. A bad regex is a soft failure
            reported on the returned :class:`LoadResult`.
        """
        datasource = await self._datasource_for(variable)
        frames = await self.data_access.execute_query(
            datasource,
            variable.query,
            QueryOptions(
                time_from_hours=LOOKBACK_HOURS,
                instant=datasource.type == DatasourceType.PROMETHEUS,
                max_data_points=VARIABLE_MAX_DATA_POINTS,
            ),
        )
        raw_values: List[str] = []
        for frame in frames:
            raw_values.extend(
                _stringify(v) for v in normalizer.first_value_column(frame) if v is not None
            )
        raw_values = normalizer.dedupe(raw_values)

        if not variable.regex:
            return LoadResult(values=sorted(raw_values, key=sort_key))
        try:
            return LoadResult(values=apply_regex(raw_values, variable.regex))
        except RegexCompileError as exc:
            logger.warning(
                "variables.regex.invalid",
                extra={"variable": variable.name, "error": exc.message},
            )
            return LoadResult(values=sorted(raw_values, key=sort_key), soft_failure=exc)

    async def refresh(self, variable_id: str) -> bool:
        """Reload a variable's values; concurrent calls share one load."""
        task = self._inflight.get(variable_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(variable_id))
            self._inflight[variable_id] = task
            task.add_done_callback(
                lambda done: self._inflight.pop(variable_id, None)
                if self._inflight.get(variable_id) is done
                else None
            )
        return await asyncio.shield(task)

    async def _refresh(self, variable_id: str) -> bool:
        variable = self.store.get(variable_id)
        variable.loading = True
        variable.error = None
        self.store.replace(variable)
        try:
            loaded = await self.load_values(variable)
        except NormalizedError as exc:
            if self._discarded(variable):
                return False
            variable.error = exc.message
            variable.loading = False
            self.store.replace(variable)
            logger.warning(
                "variables.refresh.failed",
                extra={"variable": variable.name, "error": exc.message},
            )
            return False
        if self._discarded(variable):
            return False
        variable.values = loaded.values
        variable.last_updated = datetime.now(timezone.utc)
        if not variable.selected_value and loaded.values:
            variable.selected_value = loaded.values[0]
        variable.loading = False
        self.store.replace(variable)
        logger.info(
            "variables.refresh.complete",
            extra={"variable": variable.name, "values": len(loaded.values)},
        )
        return True

    def _discarded(self, variable: Variable) -> bool:
        # the stored copy changed or vanished during the load
        if self.store.find(variable.id) is variable:
            return False
        logger.info("variables.refresh.discarded", extra={"variable": variable.name})
        return True

    async def refresh_all(self, connection_id: Optional[str] = None) -> Dict[str, bool]:
        """Refresh every variable of a connection concurrently."""
        connection_id = connection_id or self.data_access.context.connection_id
        variables = self.store.list_for_connection(connection_id)
        outcomes = await asyncio.gather(*(self.refresh(v.id) for v in variables))
        return {v.name: ok for v, ok in zip(variables, outcomes)}

