"""Command-line interface for the query core.

Subcommands
-----------
query
    Substitute variables, execute a query and print frames (or the raw
    envelope) as JSON.
schema
    Print a schema list (databases, measurements, metrics, ...).
serve
    Run the same-origin forwarding proxy with uvicorn.

Usage
-----
    timebuddy query --config connections.json --connection prod \\
        --datasource influx-uid --type influxdb 'SELECT * FROM "cpu" WHERE $timeFilter'
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..config.models import AppConfig, EnvSettings, RequestContext, TransportMode
from ..domain.models import Datasource, Frame
from ..errors import ConfigurationError, NormalizedError, ValidationError
from ..observability import setup_logging
from ..query.builder import QueryOptions, is_prometheus_query
from ..query.data_access import SCHEMA_TYPES, DataAccess
from ..transport import select_transport
from ..utils.cache import Cache
from ..variables.engine import SubstitutionContext, VariableEngine


def _parse_vars(pairs: Sequence[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValidationError(
                f"Invalid --var {pair!r}; expected name=value",
                context="Argument parsing failed",
            )
        out[name] = value
    return out


def _load_config(args: argparse.Namespace) -> AppConfig:
    if not args.config:
        raise ConfigurationError("--config is required", context="Configuration failed")
    try:
        return AppConfig.load(Path(args.config))
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            f"Cannot load {args.config}: {exc}",
            context="Configuration failed",
            original_error=exc,
        ) from exc


def _context(cfg: AppConfig, connection_id: Optional[str]) -> RequestContext:
    connection_id = connection_id or next(iter(cfg.connections), None)
    if connection_id is None or connection_id not in cfg.connections:
        raise ConfigurationError(
            f"Unknown connection: {connection_id}", context="Configuration failed"
        )
    return cfg.context_for(connection_id)


def build_data_access(
    args: argparse.Namespace, settings: EnvSettings
) -> DataAccess:
    """Wire transport, cache and data access from CLI arguments."""
    cfg = _load_config(args)
    context = _context(cfg, args.connection)
    mode = TransportMode(args.mode or settings.mode)
    if mode is TransportMode.BRIDGE:
        raise ConfigurationError(
            "Bridge mode needs a host process and is not available from the CLI",
            context="Configuration failed",
        )
    transport = select_transport(mode, context, proxy_base_url=cfg.proxy_base_url)
    return DataAccess(
        context,
        transport,
        schema_cache=Cache(ttl_seconds=settings.schema_cache_ttl_seconds),
        timeout_ms=settings.request_timeout_ms,
        max_fields_to_check=settings.max_fields_to_check,
        field_check_timeout_ms=settings.field_check_timeout_ms,
    )


def _datasource(args: argparse.Namespace, access: DataAccess, query: str = "") -> Datasource:
    connection = access.context.connection
    uid = args.datasource or connection.datasource_id
    ds_type = args.type or connection.datasource_type
    if not ds_type:
        ds_type = "prometheus" if is_prometheus_query(query) else "influxdb"
    if not uid:
        raise ValidationError(
            "A datasource UID is required (--datasource or connection default)",
            context="Argument parsing failed",
        )
    return Datasource(uid=uid, type=ds_type)


def _dump(result: Any) -> str:
    if isinstance(result, list) and result and isinstance(result[0], Frame):
        result = [frame.to_wire() for frame in result]
    return json.dumps(result, indent=2, default=str)


async def _run_query(args: argparse.Namespace, settings: EnvSettings) -> Any:
    access = build_data_access(args, settings)
    try:
        engine = VariableEngine(access)
        text = engine.substitute(
            args.query,
            context=SubstitutionContext(
                time_from_hours=args.from_hours,
                time_to_hours=args.to_hours,
                tab_interval=args.interval,
                external_vars=_parse_vars(args.var),
                connection_id=access.context.connection_id,
            ),
        )
        datasource = _datasource(args, access, text)
        return await access.execute_query(
            datasource,
            text,
            QueryOptions(
                time_from_hours=args.from_hours,
                time_to_hours=args.to_hours,
                instant=args.instant,
                interval=args.interval,
                database=args.database,
                raw=args.raw,
            ),
        )
    finally:
        await access.aclose()


async def _run_schema(args: argparse.Namespace, settings: EnvSettings) -> List[Any]:
    access = build_data_access(args, settings)
    try:
        return await access.get_schema(
            _datasource(args, access),
            args.schema_type,
            database=args.database,
            measurement=args.measurement,
            tag=args.tag,
            metric=args.metric,
            label=args.label,
        )
    finally:
        await access.aclose()


def _serve(args: argparse.Namespace, settings: EnvSettings, level: str) -> None:
    # Lazy import uvicorn only for serve mode
    import importlib

    from .proxy import create_app

    uvicorn = importlib.import_module("uvicorn")
    uvicorn.run(
        create_app(settings),
        host=args.host,
        port=args.port,
        log_level=level.lower(),
    )


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="Path to JSON connections config")
    parser.add_argument("--connection", help="Connection id from the config")
    parser.add_argument(
        "--mode",
        choices=[TransportMode.DIRECT.value, TransportMode.PROXY.value],
        help="Transport mode (overrides environment)",
    )
    parser.add_argument("--datasource", help="Datasource UID")
    parser.add_argument(
        "--type", choices=["influxdb", "prometheus"], help="Datasource type"
    )
    parser.add_argument("--database", help="InfluxDB database")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="timebuddy", description="Time Buddy query core CLI"
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=[
            "CRITICAL",
            "ERROR",
            "WARNING",
            "INFO",
            "DEBUG",
        ],
        help="Logging level (overrides environment)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (once sets DEBUG)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    query = sub.add_parser("query", help="Execute a query and print JSON")
    _add_connection_args(query)
    query.add_argument("--from-hours", type=float, default=1.0)
    query.add_argument("--to-hours", type=float, default=0.0)
    query.add_argument("--interval", help="Value for $__interval (e.g. 5m)")
    query.add_argument("--instant", action="store_true", help="Prometheus instant query")
    query.add_argument("--raw", action="store_true", help="Print the raw envelope")
    query.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Variable value (repeatable)",
    )
    query.add_argument("query", help="Query text")

    schema = sub.add_parser("schema", help="Print a schema list")
    _add_connection_args(schema)
    schema.add_argument("schema_type", choices=list(SCHEMA_TYPES))
    schema.add_argument("--measurement")
    schema.add_argument("--tag")
    schema.add_argument("--metric")
    schema.add_argument("--label")

    serve = sub.add_parser("serve", help="Run the forwarding proxy")
    serve.add_argument(
        "--host", default="127.0.0.1", help="HTTP bind host (default 127.0.0.1)"
    )
    serve.add_argument("--port", type=int, default=3000, help="HTTP port")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """CLI entrypoint; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = EnvSettings()

    # Determine effective log level
    effective_level = args.log_level or (
        "DEBUG" if args.verbose > 0 else settings.log_level.upper()
    )
    # Apply early so subsequent imports use configured level
    setup_logging(effective_level)

    if args.command == "serve":
        _serve(args, settings, effective_level)
        return 0

    runner = _run_query if args.command == "query" else _run_schema
    try:
        result = asyncio.run(runner(args, settings))
    except NormalizedError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    print(_dump(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
