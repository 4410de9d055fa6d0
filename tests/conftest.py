"""Shared fixtures: an in-process ``sensor`` tool server and a loop wired around it."""

from typing import (
    Any,
    Callable,
    List,
    Sequence,
    Tuple,
)

import pytest
from helpers import ScriptedClient

from mcpchat.agent.notifier import BufferedNotifier
from mcpchat.agent.orchestrator import OrchestrationLoop
from mcpchat.agent.session_store import InMemorySessionStore
from mcpchat.config import McpServerConfig
from mcpchat.mcp.cache import ToolCache
from mcpchat.mcp.catalog import ToolCatalog
from mcpchat.mcp.invoker import ToolInvoker
from mcpchat.tools import (
    register_tool,
    unregister_server,
)

EXTRA_TOOLS = ("alpha", "beta", "gamma", "delta", "epsilon", "zeta")


def _named_tool(name: str) -> Callable[[], str]:
    def tool() -> str:
        """Return the tool's own name."""
        return name

    return tool


@pytest.fixture
def sensor_server() -> Any:
    """Register the ``sensor`` server; yields the list of ``limit`` values readLatest saw."""
    seen: List[int] = []

    @register_tool("sensor", "readLatest")
    def read_latest(limit: int = 5) -> str:
        """Return the latest sensor readings."""
        seen.append(limit)
        return f"{limit} readings: 21.5, 21.7"

    @register_tool("sensor", "explode")
    def explode() -> str:
        """Always fails."""
        raise RuntimeError("sensor offline")

    @register_tool("sensor", "stats")
    def stats(window: str = "1h") -> dict:
        """Aggregate statistics."""
        return {"window": window, "avg": 21.6}

    for name in EXTRA_TOOLS:
        register_tool("sensor", name)(_named_tool(name))

    yield seen
    unregister_server("sensor")


@pytest.fixture
def catalog(sensor_server: Any) -> ToolCatalog:
    return ToolCatalog(
        servers={"sensor": McpServerConfig(name="Sensor", type="internal")},
        cache=ToolCache(ttl=60),
        cache_enabled=True,
        key_prefix="test_tools_",
        fail_silently=False,
    )


@pytest.fixture
def empty_catalog() -> ToolCatalog:
    return ToolCatalog(servers={}, cache=ToolCache(ttl=60), fail_silently=False)


@pytest.fixture
def invoker(catalog: ToolCatalog) -> ToolInvoker:
    return ToolInvoker(catalog, retry_attempts=1, retry_delay_ms=0, sleep=lambda _: None)


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def events() -> BufferedNotifier:
    return BufferedNotifier()


@pytest.fixture
def make_loop(
    catalog: ToolCatalog, store: InMemorySessionStore, events: BufferedNotifier
) -> Callable[..., Tuple[OrchestrationLoop, ScriptedClient]]:
    """Factory building a loop over *script*; pass ``catalog=`` to override the tool set."""

    def factory(
        script: Sequence[Any], **kwargs: Any
    ) -> Tuple[OrchestrationLoop, ScriptedClient]:
        client = ScriptedClient(script)
        used_catalog = kwargs.pop("catalog", catalog)
        loop = OrchestrationLoop(
            catalog=used_catalog,
            invoker=ToolInvoker(
                used_catalog, retry_attempts=1, retry_delay_ms=0, sleep=lambda _: None
            ),
            client=client,
            session_store=store,
            notifier=events,
            system_prompt=kwargs.pop("system_prompt", "You are a test assistant."),
            **kwargs,
        )
        return loop, client

    return factory
