"""Tests for the connection-scoped variable store."""

from __future__ import annotations

import pytest

from timebuddy.errors import ValidationError
from timebuddy.utils.cache import Cache
from timebuddy.variables.models import PairValue, Variable
from timebuddy.variables.store import VariableStore


def _var(name: str, connection_id: str = "prod", **kwargs) -> Variable:
    return Variable(
        name=name,
        query="SHOW TAG VALUES WITH KEY = host",
        datasource_id="influx-uid",
        connection_id=connection_id,
        **kwargs,
    )


def test_names_are_unique_per_connection() -> None:
    store = VariableStore()
    store.add(_var("host"))
    store.add(_var("host", connection_id="staging"))
    with pytest.raises(ValidationError):
        store.add(_var("host"))


def test_update_revalidates_and_checks_duplicates() -> None:
    store = VariableStore()
    first = store.add(_var("host"))
    store.add(_var("region"))
    updated = store.update(first.id, regex="web-(.*)")
    assert updated.regex == "web-(.*)"
    with pytest.raises(ValidationError):
        store.update(first.id, name="region")


def test_list_and_purge_connection() -> None:
    store = VariableStore()
    store.add(_var("a"))
    store.add(_var("b"))
    store.add(_var("c", connection_id="staging"))

    assert [v.name for v in store.list_for_connection("prod")] == ["a", "b"]
    assert store.list_for_connection(None) == []
    assert store.purge_connection("prod") == 2
    assert [v.name for v in store.list_for_connection("staging")] == ["c"]
    assert len(store) == 1


def test_remove_and_missing_lookup() -> None:
    store = VariableStore()
    variable = store.add(_var("a"))
    assert store.remove(variable.id) is True
    assert store.remove(variable.id) is False
    assert store.find(variable.id) is None
    with pytest.raises(ValidationError):
        store.get(variable.id)


def test_selection_and_multi_select_toggle() -> None:
    store = VariableStore()
    variable = store.add(_var("host", values=["a", "b", "c"]))

    store.set_value(variable.id, "b")
    toggled = store.toggle_multi_select(variable.id, True)
    assert toggled.multi_select is True
    assert toggled.selected_values == ["b"]

    store.set_values(variable.id, ["c", "a"])
    back = store.toggle_multi_select(variable.id, False)
    assert back.selected_value == "c"


def test_toggle_off_without_selection_defaults_to_first_value() -> None:
    store = VariableStore()
    variable = store.add(_var("host", values=["x", "y"], multi_select=True))
    assert store.toggle_multi_select(variable.id, False).selected_value == "x"


def test_persistence_round_trip_through_cache() -> None:
    cache: Cache = Cache()
    store = VariableStore(cache)
    original = store.add(
        _var("host", values=[PairValue(text="Web", value="web-1"), "db-1"])
    )
    store.set_value(original.id, PairValue(text="Web", value="web-1"))

    restored = VariableStore(cache)
    assert restored.restore() == 1
    variable = restored.get(original.id)
    assert variable.values[0] == PairValue(text="Web", value="web-1")
    assert variable.selected_value == PairValue(text="Web", value="web-1")
    assert variable.values[1] == "db-1"


def test_replace_refuses_unknown_ids() -> None:
    store = VariableStore()
    variable = store.add(_var("host"))
    store.remove(variable.id)
    assert store.replace(variable) is False
    assert len(store) == 0
