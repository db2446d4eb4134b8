"""CLI argument parsing and error reporting."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from timebuddy.config.models import EnvSettings, TransportMode
from timebuddy.errors import ConfigurationError, ValidationError
from timebuddy.server import cli


def test_parser_query_defaults() -> None:
    args = cli.build_parser().parse_args(["query", "SELECT 1"])
    assert args.command == "query"
    assert args.from_hours == 1.0
    assert args.to_hours == 0.0
    assert args.var == []
    assert args.raw is False


def test_parser_rejects_unknown_schema_type() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["schema", "dashboards"])


def test_parse_vars() -> None:
    assert cli._parse_vars(["host=web-1", "q=a=b"]) == {"host": "web-1", "q": "a=b"}
    with pytest.raises(ValidationError):
        cli._parse_vars(["novalue"])


def test_missing_config_reports_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["query", "SELECT 1"]) == 1
    assert '"error": "ConfigurationError"' in capsys.readouterr().err


def test_unknown_connection_reports_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "connections.json"
    path.write_text(json.dumps({"connections": {"prod": {"url": "https://g", "token": "t"}}}))
    code = cli.main(["schema", "databases", "--config", str(path), "--connection", "qa"])
    assert code == 1
    assert "Unknown connection: qa" in capsys.readouterr().err


def test_bridge_mode_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "connections.json"
    path.write_text(json.dumps({"connections": {"prod": {"url": "https://g", "token": "t"}}}))
    args = cli.build_parser().parse_args(["query", "SELECT 1", "--config", str(path)])
    with pytest.raises(ConfigurationError) as excinfo:
        cli.build_data_access(args, EnvSettings(mode=TransportMode.BRIDGE))
    assert "Bridge mode" in excinfo.value.message


@pytest.mark.asyncio
async def test_direct_mode_wires_connection(tmp_path: Path) -> None:
    path = tmp_path / "connections.json"
    path.write_text(json.dumps({"connections": {"prod": {"url": "https://g", "token": "t"}}}))
    args = cli.build_parser().parse_args(["query", "SELECT 1", "--config", str(path)])
    access = cli.build_data_access(args, EnvSettings(mode=TransportMode.DIRECT))
    assert access.context.connection_id == "prod"
    assert access.context.connection.authorization() == "Bearer t"
    await access.aclose()


def test_unreadable_config(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["query", "SELECT 1", "--config", str(tmp_path / "missing.json")])
    assert code == 1
    assert "Cannot load" in capsys.readouterr().err
