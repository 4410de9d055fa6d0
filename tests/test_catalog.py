"""
Tests for tool discovery and caching.

Run with:
$ pytest -q
"""

import httpx
import pytest

from mcpchat.config import McpServerConfig
from mcpchat.core.errors import CatalogFetchError
from mcpchat.core.schema import Transport
from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.catalog import ToolCatalog


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingServer:
    """MockTransport handler answering ``tools/list`` and counting requests."""

    def __init__(self, tools=None, status: int = 200) -> None:
        self.tools = tools if tools is not None else [{"name": "forecast"}]
        self.status = status
        self.requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.status != 200:
            return httpx.Response(self.status, text="nope")
        return httpx.Response(200, json={"tools": self.tools})


def _remote_catalog(server: CountingServer, clock: FakeClock | None = None, **kwargs):
    return ToolCatalog(
        servers={"weather": McpServerConfig(name="Weather", url="http://weather.test")},
        cache=ToolCache(ttl=60, timer=clock or FakeClock()),
        transport=httpx.MockTransport(server),
        retry_attempts=kwargs.pop("retry_attempts", 1),
        retry_delay_ms=0,
        sleep=lambda _: None,
        **kwargs,
    )


def test_internal_tools_are_prefixed(catalog) -> None:
    """Names carry the owning server id; routing metadata is kept."""

    tools = {t.name: t for t in catalog.list_all()}

    assert "sensor_readLatest" in tools
    tool = tools["sensor_readLatest"]
    assert tool.server_id == "sensor"
    assert tool.original_name == "readLatest"
    assert tool.transport is Transport.IN_PROCESS
    assert tool.parameter_schema["properties"]["limit"] == {"type": "integer"}


def test_function_schema_shape(catalog) -> None:
    """Definitions render in the OpenAI function-calling form."""

    schema = next(
        s for s in catalog.function_schemas() if s["function"]["name"] == "sensor_readLatest"
    )

    assert schema["type"] == "function"
    assert schema["function"]["description"] == "Return the latest sensor readings."
    assert schema["function"]["parameters"]["type"] == "object"


def test_remote_tools_are_fetched_once_within_ttl() -> None:
    """Repeated listings inside the TTL are served from the cache."""

    server = CountingServer()
    catalog = _remote_catalog(server, cache_enabled=True)

    first = catalog.list_all()
    second = catalog.list_all()

    assert [t.name for t in first] == [t.name for t in second] == ["weather_forecast"]
    assert first[0].transport is Transport.REMOTE_HTTP
    assert server.requests == 1


def test_invalidate_forces_refetch() -> None:
    """Clearing the cache makes the next listing hit the server again."""

    server = CountingServer()
    catalog = _remote_catalog(server, cache_enabled=True)

    catalog.list_all()
    catalog.invalidate()
    catalog.list_all()

    assert server.requests == 2


def test_cache_expires_after_ttl() -> None:
    """The fake clock drives expiry of the cached catalog."""

    server = CountingServer()
    clock = FakeClock()
    catalog = _remote_catalog(server, clock, cache_enabled=True)

    catalog.list_all()
    clock.now = 30
    catalog.list_all()
    assert server.requests == 1

    clock.now = 61
    catalog.list_all()
    assert server.requests == 2


def test_cache_disabled_always_fetches() -> None:
    server = CountingServer()
    catalog = _remote_catalog(server, cache_enabled=False)

    catalog.list_all()
    catalog.list_all()

    assert server.requests == 2
    assert not catalog.cache.has(catalog.cache_key)


def test_strict_mode_raises_on_server_error() -> None:
    """Without fail_silently a broken server fails the whole listing."""

    server = CountingServer(status=503)
    catalog = _remote_catalog(server, fail_silently=False, retry_attempts=2)

    with pytest.raises(CatalogFetchError, match="status 503") as info:
        catalog.list_all()
    assert info.value.server_id == "weather"
    assert server.requests == 2


def test_fail_silently_skips_broken_server(sensor_server) -> None:
    """A broken server contributes nothing; healthy ones still answer."""

    broken = CountingServer(status=500)
    catalog = ToolCatalog(
        servers={
            "sensor": McpServerConfig(type="internal"),
            "weather": McpServerConfig(url="http://weather.test"),
        },
        cache=ToolCache(ttl=60),
        fail_silently=True,
        retry_attempts=1,
        retry_delay_ms=0,
        transport=httpx.MockTransport(broken),
        sleep=lambda _: None,
    )

    names = [t.name for t in catalog.list_all()]

    assert "sensor_readLatest" in names
    assert not any(name.startswith("weather_") for name in names)
    status = catalog.status()
    assert status["servers"]["weather"]["last_error"].endswith("status 500")
    assert status["servers"]["sensor"]["tool_count"] == len(names)


def test_disabled_server_is_skipped() -> None:
    server = CountingServer()
    catalog = ToolCatalog(
        servers={"weather": McpServerConfig(url="http://weather.test", enabled=False)},
        cache=ToolCache(ttl=60),
        transport=httpx.MockTransport(server),
    )

    assert catalog.list_all() == []
    assert server.requests == 0


def test_malformed_listing_is_a_fetch_error() -> None:
    """A body without a ``tools`` list is rejected; unnamed entries are dropped."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"tools": "forecast"})

    catalog = ToolCatalog(
        servers={"weather": McpServerConfig(url="http://weather.test")},
        cache=ToolCache(ttl=60),
        fail_silently=False,
        transport=httpx.MockTransport(handler),
        retry_attempts=1,
    )
    with pytest.raises(CatalogFetchError, match="no 'tools' list"):
        catalog.list_all()

    server = CountingServer(tools=[{"description": "nameless"}, {"name": "radar"}])
    tools = _remote_catalog(server).list_all()
    assert [t.name for t in tools] == ["weather_radar"]
    assert tools[0].description == "No description available"
    assert tools[0].parameter_schema == {"type": "object", "properties": {}}


def test_external_server_without_url() -> None:
    catalog = ToolCatalog(
        servers={"weather": McpServerConfig()}, cache=ToolCache(ttl=60), fail_silently=False
    )

    with pytest.raises(CatalogFetchError, match="no 'url'"):
        catalog.list_all()


def test_get_by_prefixed_name(catalog) -> None:
    assert catalog.get("sensor_stats").original_name == "stats"
    assert catalog.get("stats") is None
