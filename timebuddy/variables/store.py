"""Connection-scoped variable registry.

Variables are kept in memory and mirrored into a :class:`~timebuddy.utils.cache.Cache`
under one key, so a host can restore them with :meth:`VariableStore.restore`.
Removing a connection purges its variables.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..utils.cache import Cache
from .models import Variable, VariableValue

logger = logging.getLogger(__name__)

STORE_KEY = "timebuddy.variables"


class VariableStore:
    """In-memory variable registry with cache-backed persistence."""

    def __init__(self, cache: Optional[Cache] = None, key: str = STORE_KEY) -> None:
        self._cache: Cache = cache if cache is not None else Cache()
        self._key = key
        self._variables: Dict[str, Variable] = {}

    def restore(self) -> int:
        """Reload variables from the cache; return how many were restored."""
        stored: List[Dict[str, Any]] = self._cache.get(self._key) or []
        self._variables = {}
        for raw in stored:
            variable = Variable.model_validate(raw)
            self._variables[variable.id] = variable
        return len(self._variables)

    def save(self) -> None:
        self._cache.set(
            self._key,
            [v.model_dump(mode="json") for v in self._variables.values()],
        )

    def _check_unique(self, variable: Variable, exclude_id: Optional[str] = None) -> None:
        for other in self._variables.values():
            if (
                other.name == variable.name
                and other.connection_id == variable.connection_id
                and other.id != exclude_id
            ):
                raise ValidationError(
                    "A variable with this name already exists for this connection.",
                    context="Variable save failed",
                )

    def add(self, variable: Variable) -> Variable:
        """Register ``variable``; names are unique per connection."""
        self._check_unique(variable)
        self._variables[variable.id] = variable
        self.save()
        logger.info(
            "variables.store.add",
            extra={"variable": variable.name, "connection_id": variable.connection_id},
        )
        return variable

    def update(self, variable_id: str, **changes: Any) -> Variable:
        """Apply ``changes`` to a variable and re-validate it."""
        current = self.get(variable_id)
        data = current.model_dump()
        data.update(changes)
        updated = Variable.model_validate(data)
        self._check_unique(updated, exclude_id=variable_id)
        self._variables[variable_id] = updated
        self.save()
        return updated

    def replace(self, variable: Variable) -> bool:
        """Store ``variable`` over its registered copy; unknown ids are refused."""
        if variable.id not in self._variables:
            return False
        self._variables[variable.id] = variable
        self.save()
        return True

    def remove(self, variable_id: str) -> bool:
        removed = self._variables.pop(variable_id, None) is not None
        if removed:
            self.save()
        return removed

    def get(self, variable_id: str) -> Variable:
        try:
            return self._variables[variable_id]
        except KeyError:
            raise ValidationError(
                f"Variable not found: {variable_id}", context="Variable lookup failed"
            ) from None

    def find(self, variable_id: str) -> Optional[Variable]:
        return self._variables.get(variable_id)

    def list_for_connection(self, connection_id: Optional[str]) -> List[Variable]:
        """Variables of one connection in insertion order (none for ``None``)."""
        if not connection_id:
            return []
        return [v for v in self._variables.values() if v.connection_id == connection_id]

    def purge_connection(self, connection_id: str) -> int:
        doomed = [
            vid for vid, v in self._variables.items() if v.connection_id == connection_id
        ]
        for vid in doomed:
            del self._variables[vid]
        if doomed:
            self.save()
            logger.info(
                "variables.store.purge",
                extra={"connection_id": connection_id, "removed": len(doomed)},
            )
        return len(doomed)

    def set_value(self, variable_id: str, value: Optional[VariableValue]) -> Variable:
        variable = self.get(variable_id)
        variable.selected_value = value
        self.save()
        return variable

    def set_values(self, variable_id: str, values: List[VariableValue]) -> Variable:
        variable = self.get(variable_id)
        variable.selected_values = list(values)
        self.save()
        return variable

    def toggle_multi_select(self, variable_id: str, enabled: bool) -> Variable:
        """Switch selection mode, carrying the current selection across."""
        variable = self.get(variable_id)
        variable.multi_select = enabled
        if enabled:
            variable.selected_values = (
                [variable.selected_value] if variable.selected_value else []
            )
        elif variable.selected_values:
            variable.selected_value = variable.selected_values[0]
        else:
            variable.selected_value = variable.values[0] if variable.values else None
        self.save()
        return variable

    def __len__(self) -> int:
        return len(self._variables)
