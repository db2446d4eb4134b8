"""DataAccess orchestration tests against a scripted transport."""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from conftest import FakeTransport, frame, frames_envelope

from timebuddy.config.models import ConnectionConfig, RequestContext
from timebuddy.domain.models import Datasource, Frame
from timebuddy.errors import (
    BackendError,
    ConfigurationError,
    TransportError,
    UnknownSchemaTypeError,
    ValidationError,
)
from timebuddy.query.builder import QueryOptions
from timebuddy.query.data_access import DataAccess
from timebuddy.transport import RawResponse
from timebuddy.transport.bridge import BridgeTransport
from timebuddy.utils.correlation import get_request_id

INFLUX = Datasource(uid="influx-uid", type="influxdb")
PROM = Datasource(uid="prom-uid", type="prometheus", numeric_id=12)


def _names(*names: str) -> dict:
    return frames_envelope(frame([("name", "string")], [list(names)]))


@pytest.mark.asyncio
async def test_execute_query_requires_datasource_and_query(context: RequestContext) -> None:
    access = DataAccess(context, FakeTransport({}))
    with pytest.raises(ValidationError) as excinfo:
        await access.execute_query(None, "SELECT 1")
    assert excinfo.value.status_code == 400
    with pytest.raises(ValidationError):
        await access.execute_query(INFLUX, "   ")
    with pytest.raises(ValidationError):
        await access.execute_query(Datasource(uid="", type="influxdb"), "SELECT 1")


@pytest.mark.asyncio
async def test_unconfigured_connection_raises_configuration_error() -> None:
    context = RequestContext(connection=ConnectionConfig())
    transport = FakeTransport({})
    access = DataAccess(context, transport)
    with pytest.raises(ConfigurationError) as excinfo:
        await access.execute_query(INFLUX, "SELECT 1")
    assert excinfo.value.message.startswith("Query execution failed: ")
    assert transport.requests == []


@pytest.mark.asyncio
async def test_execute_query_posts_to_unified_endpoint(context: RequestContext) -> None:
    reply = frames_envelope(
        frame([("Time", "time"), ("value", "number")], [[1000, 2000], [1.5, 2.5]])
    )
    transport = FakeTransport(reply)
    access = DataAccess(context, transport)

    frames = await access.execute_query(INFLUX, 'SELECT mean("v") FROM "cpu" ON "telegraf"')

    assert len(frames) == 1 and isinstance(frames[0], Frame)
    assert frames[0].data.values[1] == [1.5, 2.5]
    (req,) = transport.requests
    assert req.method == "POST"
    url = urlsplit(req.endpoint)
    assert url.path == "/api/ds/query"
    params = parse_qs(url.query)
    assert params["ds_type"] == ["influxdb"]
    assert params["requestId"] == [get_request_id()]
    assert req.body["queries"][0]["database"] == "telegraf"


@pytest.mark.asyncio
async def test_raw_option_returns_envelope(context: RequestContext) -> None:
    reply = _names("cpu")
    access = DataAccess(context, FakeTransport(reply))
    result = await access.execute_query(INFLUX, "SHOW MEASUREMENTS", QueryOptions(raw=True))
    assert result == reply


@pytest.mark.asyncio
async def test_non_2xx_becomes_backend_error(context: RequestContext) -> None:
    transport = FakeTransport(
        RawResponse(400, "Bad Request", data=b'{"message": "error parsing query"}')
    )
    access = DataAccess(context, transport)
    with pytest.raises(BackendError) as excinfo:
        await access.execute_query(INFLUX, "SELEC 1")
    err = excinfo.value
    assert err.status_code == 400
    assert err.status_text == "Bad Request"
    assert err.message == "Query execution failed: error parsing query"


@pytest.mark.asyncio
async def test_proxy_error_payload_raises(context: RequestContext) -> None:
    access = DataAccess(context, FakeTransport({"error": "Missing X-Grafana-URL header"}))
    with pytest.raises(BackendError):
        await access.request("/api/datasources")


@pytest.mark.asyncio
async def test_data_envelope_is_unwrapped(context: RequestContext) -> None:
    access = DataAccess(context, FakeTransport({"data": [1, 2]}))
    assert await access.request("/api/something") == [1, 2]


@pytest.mark.asyncio
async def test_transport_timeout_keeps_504(context: RequestContext) -> None:
    timeout = TransportError(
        "Direct request failed: timed out",
        context="Direct request failed",
        status_code=504,
        status_text="Request timeout",
    )
    access = DataAccess(context, FakeTransport(timeout))
    with pytest.raises(TransportError) as excinfo:
        await access.execute_query(INFLUX, "SELECT 1")
    assert excinfo.value.status_code == 504
    assert excinfo.value.context == "Query execution failed"


@pytest.mark.asyncio
async def test_unknown_schema_type(context: RequestContext) -> None:
    access = DataAccess(context, FakeTransport({}))
    with pytest.raises(UnknownSchemaTypeError):
        await access.get_schema(INFLUX, "dashboards")


@pytest.mark.asyncio
async def test_measurements_are_extracted_and_cached(context: RequestContext) -> None:
    transport = FakeTransport(_names("cpu", "mem", "cpu"))
    access = DataAccess(context, transport)

    first = await access.get_schema(INFLUX, "measurements", database="telegraf")
    second = await access.get_schema(INFLUX, "measurements", database="telegraf")

    assert first == second == ["cpu", "mem"]
    assert len(transport.requests) == 1
    query = transport.requests[0].body["queries"][0]
    assert query["query"] == 'SHOW MEASUREMENTS ON "telegraf"'
    assert query["database"] == "telegraf"

    assert access.invalidate_schema(INFLUX) == 1
    await access.get_schema(INFLUX, "measurements", database="telegraf")
    assert len(transport.requests) == 2


@pytest.mark.asyncio
async def test_schema_queries_per_type(context: RequestContext) -> None:
    transport = FakeTransport(_names("x"))
    access = DataAccess(context, transport)

    await access.get_schema(INFLUX, "databases")
    await access.get_schema(INFLUX, "retention_policies", database="db")
    await access.get_schema(INFLUX, "fields", database="db", measurement="cpu")
    await access.get_schema(INFLUX, "tags", measurement="cpu")

    sent = [r.body["queries"][0]["query"] for r in transport.requests]
    assert sent == [
        "SHOW DATABASES",
        'SHOW RETENTION POLICIES ON "db"',
        'SHOW FIELD KEYS ON "db" FROM "cpu"',
        'SHOW TAG KEYS FROM "cpu"',
    ]
    with pytest.raises(ValidationError):
        await access.get_schema(INFLUX, "fields")


@pytest.mark.asyncio
async def test_tag_values_use_value_column(context: RequestContext) -> None:
    reply = frames_envelope(
        frame([("key", "string"), ("value", "string")], [["host", "host"], ["web-2", "web-1"]])
    )
    transport = FakeTransport(reply)
    access = DataAccess(context, transport)
    values = await access.get_schema(INFLUX, "tag_values", measurement="cpu", tag="host")
    assert values == ["web-1", "web-2"]
    assert transport.requests[0].body["queries"][0]["query"] == (
        'SHOW TAG VALUES FROM "cpu" WITH KEY = "host"'
    )


@pytest.mark.asyncio
async def test_empty_schema_payload_is_empty_list(context: RequestContext) -> None:
    access = DataAccess(context, FakeTransport({"results": {"A": {"frames": []}}}))
    assert await access.get_schema(INFLUX, "databases") == []


@pytest.mark.asyncio
async def test_prometheus_schema_routes(context: RequestContext) -> None:
    def respond(req):
        if req.endpoint.endswith("/label/__name__/values"):
            return {"status": "success", "data": ["up", "node_load1"]}
        if "/series?" in req.endpoint:
            return {
                "status": "success",
                "data": [
                    {"__name__": "up", "job": "node", "instance": "a:9100"},
                    {"__name__": "up", "job": "api", "instance": "b:9100"},
                ],
            }
        if req.endpoint.endswith("/label/job/values"):
            return {"status": "success", "data": ["api", "node"]}
        return {"status": "success", "data": []}

    transport = FakeTransport(respond)
    access = DataAccess(context, transport)

    assert await access.get_schema(PROM, "metrics") == ["up", "node_load1"]
    assert await access.get_schema(PROM, "labels", metric="up") == ["job", "instance"]
    assert await access.get_schema(PROM, "label_values", label="job") == ["api", "node"]
    assert await access.get_schema(PROM, "label_values", metric="up", label="instance") == [
        "a:9100",
        "b:9100",
    ]
    assert await access.get_schema(PROM, "labels") == []

    endpoints = [r.endpoint for r in transport.requests]
    assert endpoints[0] == "/api/datasources/proxy/12/api/v1/label/__name__/values"
    assert endpoints[1] == "/api/datasources/proxy/12/api/v1/series?match%5B%5D=up"


@pytest.mark.asyncio
async def test_get_datasource_type(context: RequestContext) -> None:
    transport = FakeTransport({"uid": "abc", "type": "prometheus", "name": "Prom"})
    access = DataAccess(context, transport)
    assert await access.get_datasource_type("abc") == "prometheus"
    assert transport.requests[0].endpoint == "/api/datasources/uid/abc"


@pytest.mark.asyncio
async def test_list_datasources_keeps_supported_types(context: RequestContext) -> None:
    transport = FakeTransport(
        [
            {"id": 1, "uid": "i", "name": "Influx", "type": "influxdb"},
            {"id": 2, "uid": "l", "name": "Loki", "type": "loki"},
            {"id": 3, "uid": "p", "name": "Prom", "type": "prometheus"},
        ]
    )
    access = DataAccess(context, transport)
    sources = await access.list_datasources()
    assert [(d.uid, d.numeric_id) for d in sources] == [("i", 1), ("p", 3)]


@pytest.mark.asyncio
async def test_check_fields_for_data_collects_partial_results(context: RequestContext) -> None:
    async def respond(req):
        text = req.body["queries"][0]["query"]
        if '"slow"' in text:
            await asyncio.sleep(1)
        if '"broken"' in text:
            return RawResponse(500, "Internal Server Error", data=b"{}")
        if '"busy"' in text:
            return frames_envelope(
                frame([("Time", "time"), ("value", "number")], [[1, 2], [0.1, 0.2]])
            )
        return frames_envelope()

    transport = FakeTransport(respond)
    access = DataAccess(
        context, transport, max_fields_to_check=4, field_check_timeout_ms=50
    )
    result = await access.check_fields_for_data(
        INFLUX, "cpu", ["busy", "idle", "broken", "slow", "never-checked"]
    )

    assert result.successes == {"busy": 2}
    failed = {f.identifier: f.error_type for f in result.failures}
    assert failed == {"broken": "server_error", "slow": "timeout"}
    assert len(transport.requests) == 4
    sent = [r.body["queries"][0]["query"] for r in transport.requests]
    assert any('mean("busy")' in q for q in sent)


@pytest.mark.asyncio
async def test_aclose_closes_transport(context: RequestContext) -> None:
    transport = FakeTransport({})
    await DataAccess(context, transport).aclose()
    assert transport.closed


@pytest.mark.asyncio
async def test_caller_options_are_not_mutated(context: RequestContext) -> None:
    transport = FakeTransport(frames_envelope())
    access = DataAccess(context, transport)
    options = QueryOptions()

    await access.execute_query(INFLUX, 'SELECT * FROM "cpu" ON "db_one"', options)
    await access.execute_query(INFLUX, 'SELECT * FROM "cpu"', options)

    assert options.database is None
    first, second = (r.body["queries"][0] for r in transport.requests)
    assert first["database"] == "db_one"
    assert "database" not in second


@pytest.mark.asyncio
async def test_bridge_exception_surfaces_as_normalized_502(context: RequestContext) -> None:
    async def bridge(_options):
        raise Exception("connect ECONNREFUSED 10.0.0.1:3000")

    access = DataAccess(context, BridgeTransport(context, bridge=bridge))
    with pytest.raises(TransportError) as excinfo:
        await access.execute_query(INFLUX, "SELECT 1")
    assert excinfo.value.status_code == 502
    assert excinfo.value.context == "Query execution failed"


MALFORMED_INFLUX = [
    {"results": {"A": ["garbage"]}},
    {"results": {"A": {"frames": "garbage"}}},
    {"results": {"A": {"frames": ["garbage", {"data": "x"}, {"data": {"values": 3}}]}}},
    {"results": ["garbage", {"series": "x"}, {"series": ["y", {"values": "z"}]}]},
    "garbage",
]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", MALFORMED_INFLUX)
@pytest.mark.parametrize(
    "schema_type, params",
    [
        ("databases", {}),
        ("retention_policies", {"database": "db"}),
        ("measurements", {"database": "db"}),
        ("fields", {"measurement": "cpu"}),
        ("tags", {"measurement": "cpu"}),
        ("tag_values", {"measurement": "cpu", "tag": "host"}),
    ],
)
async def test_malformed_influx_schema_payloads_give_empty_list(
    context: RequestContext, payload, schema_type, params
) -> None:
    access = DataAccess(context, FakeTransport(payload))
    assert await access.get_schema(INFLUX, schema_type, **params) == []


MALFORMED_PROMETHEUS = [
    {"status": "success", "data": "garbage"},
    {"status": "success", "data": {"result": "garbage"}},
    {"status": "success"},
    "garbage",
]


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", MALFORMED_PROMETHEUS)
@pytest.mark.parametrize(
    "schema_type, params",
    [
        ("metrics", {}),
        ("labels", {"metric": "up"}),
        ("label_values", {"label": "job"}),
        ("label_values", {"metric": "up", "label": "job"}),
    ],
)
async def test_malformed_prometheus_schema_payloads_give_empty_list(
    context: RequestContext, payload, schema_type, params
) -> None:
    access = DataAccess(context, FakeTransport(payload))
    assert await access.get_schema(PROM, schema_type, **params) == []
