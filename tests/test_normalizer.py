"""Tests for result normalization into frames and flat value lists."""

from __future__ import annotations

import pytest
from conftest import frame, frames_envelope

from timebuddy.domain.models import Frame
from timebuddy.errors import BackendError
from timebuddy.query.normalizer import (
    extract_influx_values,
    extract_prometheus_values,
    first_value_column,
    frames_to_rows,
    influx_frame_columns,
    time_field_index,
    to_frames,
)


def _cpu_frame() -> dict:
    return frame(
        [("host", "string"), ("Time", "time"), ("value", "number")],
        [["a", "b"], [1000, 2000], [0.5, 0.7]],
    )


def test_envelope_to_frames_fills_ref_id() -> None:
    frames = to_frames(frames_envelope(_cpu_frame(), ref_id="B"))
    assert len(frames) == 1
    assert frames[0].schema_.ref_id == "B"
    assert frames[0].row_count == 2


def test_to_frames_is_idempotent() -> None:
    once = to_frames(frames_envelope(_cpu_frame()))
    twice = to_frames(once)
    assert [f.to_wire() for f in twice] == [f.to_wire() for f in once]
    assert all(isinstance(f, Frame) for f in twice)


def test_empty_and_missing_results() -> None:
    assert to_frames(None) == []
    assert to_frames({"results": {"A": {"frames": []}}}) == []
    assert to_frames({"message": "nothing"}) == []


def test_per_ref_error_raises() -> None:
    with pytest.raises(BackendError) as excinfo:
        to_frames({"results": {"A": {"error": "bad query", "status": 400}}})
    assert "bad query" in excinfo.value.message
    assert excinfo.value.status_code == 400


def test_column_count_mismatch_raises() -> None:
    bad = frame([("Time", "time"), ("v", "number")], [[1, 2]])
    with pytest.raises(BackendError):
        to_frames(frames_envelope(bad))


def test_unequal_column_lengths_raise() -> None:
    bad = frame([("Time", "time"), ("v", "number")], [[1, 2], [3]])
    with pytest.raises(BackendError):
        to_frames(frames_envelope(bad))


def test_time_column_found_by_type_not_position() -> None:
    (f,) = to_frames(frames_envelope(_cpu_frame()))
    assert time_field_index(f) == 1
    assert first_value_column(f) == ["a", "b"]


def test_first_value_column_skips_leading_time() -> None:
    f = Frame.model_validate(frame([("Time", "time"), ("v", "number")], [[1], [9]]))
    assert first_value_column(f) == [9]
    assert time_field_index(Frame()) is None
    assert first_value_column(Frame()) == []


def test_unknown_field_type_maps_to_other() -> None:
    f = Frame.model_validate(frame([("x", "time.Duration")], [[1]]))
    assert f.fields[0].type.value == "other"


def test_frames_to_rows() -> None:
    rows = frames_to_rows(to_frames(frames_envelope(_cpu_frame())))
    assert rows == [
        {"host": "a", "Time": 1000, "value": 0.5},
        {"host": "b", "Time": 2000, "value": 0.7},
    ]


def test_extract_influx_values_from_frames() -> None:
    raw = frames_envelope(
        frame([("name", "string")], [["cpu", "mem", None, "cpu", ""]]),
        frame([("name", "string")], [["disk"]]),
    )
    assert extract_influx_values(raw) == ["cpu", "mem", "disk"]


def test_extract_influx_values_from_legacy_series() -> None:
    raw = [{"series": [{"values": [["telegraf"], ["_internal"], ["telegraf"]]}]}]
    assert extract_influx_values(raw) == ["telegraf", "_internal"]
    assert extract_influx_values({"results": [{"series": []}]}) == []
    assert extract_influx_values("garbage") == []


def test_influx_frame_columns_skip_malformed_entries() -> None:
    good = frame([("key", "string"), ("value", "string")], [["host"], ["web-1"]])
    raw = {"results": {"A": {"frames": ["junk", {"data": None}, good]}}}
    assert influx_frame_columns(raw) == [[["host"], ["web-1"]]]
    assert influx_frame_columns({"results": {"A": ["garbage"]}}) == []
    assert extract_influx_values({"results": {"A": ["garbage"]}}) == []


def test_extract_prometheus_values() -> None:
    assert extract_prometheus_values(
        {"status": "success", "data": ["up", "node_load1", "up"]}
    ) == ["up", "node_load1"]
    assert extract_prometheus_values(["a", None, "b"]) == ["a", "b"]
    assert extract_prometheus_values(
        {"data": {"result": [{"values": [[1, "3"], [2, "4"]]}, {"value": [3, "5"]}]}}
    ) == ["3", "4", "5"]
    assert extract_prometheus_values({"status": "success"}) == []
