"""
MCP tool discovery.

:class:`ToolCatalog` fetches the tools offered by every enabled MCP server, prefixes their names
with the owning server id so they stay unique across providers, and caches the merged list.
Routing metadata (server id, original name, transport) travels with each definition so the
invoker can dispatch a call without another lookup.
"""

import logging
import time
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
)

import httpx

from mcpchat import tools as local_tools
from mcpchat.config import (
    McpServerConfig,
    settings,
)
from mcpchat.core.errors import (
    CatalogFetchError,
    ServerMisconfiguredError,
)
from mcpchat.core.retry import call_with_retries
from mcpchat.core.schema import (
    ToolDefinition,
    Transport,
)
from mcpchat.mcp.cache import ToolCache

logger = logging.getLogger(__name__)


class ToolCatalog:
    """Aggregated, cached set of tool definitions from all configured servers."""

    def __init__(
        self,
        servers: Mapping[str, McpServerConfig] | None = None,
        cache: ToolCache | None = None,
        *,
        cache_enabled: bool | None = None,
        key_prefix: str | None = None,
        fail_silently: bool | None = None,
        retry_attempts: int | None = None,
        retry_delay_ms: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.servers: Dict[str, McpServerConfig] = dict(
            servers if servers is not None else settings.MCP_SERVERS
        )
        self.cache = cache or ToolCache(ttl=settings.MCP_CACHE_TTL)
        self.cache_enabled = settings.MCP_CACHE_ENABLED if cache_enabled is None else cache_enabled
        self.key_prefix = settings.MCP_CACHE_KEY_PREFIX if key_prefix is None else key_prefix
        self.fail_silently = settings.MCP_FAIL_SILENTLY if fail_silently is None else fail_silently
        self.retry_attempts = (
            settings.MCP_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        )
        self.retry_delay_ms = (
            settings.MCP_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        )
        self._transport = transport
        self._sleep = sleep
        self._last_errors: Dict[str, str] = {}

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def cache_key(self) -> str:
        return f"{self.key_prefix}all"

    def list_all(self) -> List[ToolDefinition]:
        """
        Return the union of tools from every enabled server.

        Raises
        ------
        CatalogFetchError
            If a server fails and ``fail_silently`` is off.
        """
        if self.cache_enabled:
            cached = self.cache.get(self.cache_key)
            if cached is not None:
                logger.info("MCP tools loaded from cache")
                return list(cached)

        tools: List[ToolDefinition] = []
        for server_id, config in self.servers.items():
            if not config.enabled:
                continue
            try:
                tools.extend(self._fetch_from_server(server_id, config))
                self._last_errors.pop(server_id, None)
            except CatalogFetchError as exc:
                self._handle_server_error(server_id, exc)

        if self.cache_enabled:
            self.cache.put(self.cache_key, tools)
            logger.info("MCP tools cached (count=%d)", len(tools))
        return list(tools)

    def get(self, name: str) -> Optional[ToolDefinition]:
        """Look up a tool by its prefixed name."""
        for tool in self.list_all():
            if tool.name == name:
                return tool
        return None

    def invalidate(self) -> None:
        """Clear the cached catalog so the next :meth:`list_all` re-fetches."""
        self.cache.forget(self.cache_key)
        logger.info("MCP tools cache cleared")

    def function_schemas(self) -> List[Dict[str, Any]]:
        """Catalog in the OpenAI function-calling form expected by the completion endpoint."""
        return [tool.to_function_schema() for tool in self.list_all()]

    def status(self) -> Dict[str, Any]:
        """Per-server summary for the admin endpoint."""
        try:
            tools = self.list_all()
            error = None
        except CatalogFetchError as exc:
            tools = []
            error = exc.message
        counts: Dict[str, int] = {}
        for tool in tools:
            counts[tool.server_id] = counts.get(tool.server_id, 0) + 1
        return {
            "cache_enabled": self.cache_enabled,
            "cached": self.cache.has(self.cache_key),
            "total_tools": len(tools),
            "error": error,
            "servers": {
                server_id: {
                    "name": config.name or server_id,
                    "type": config.type,
                    "enabled": config.enabled,
                    "tool_count": counts.get(server_id, 0),
                    "last_error": self._last_errors.get(server_id),
                }
                for server_id, config in self.servers.items()
            },
        }

    # ------------------------------------------------------------------ #
    # Fetching
    # ------------------------------------------------------------------ #
    def _fetch_from_server(self, server_id: str, config: McpServerConfig) -> List[ToolDefinition]:
        if config.type == "internal":
            return self._fetch_from_internal_server(server_id)
        return self._fetch_from_external_server(server_id, config)

    def _fetch_from_internal_server(self, server_id: str) -> List[ToolDefinition]:
        if not local_tools.has_server(server_id):
            raise CatalogFetchError(server_id, "no in-process tools registered for this server")
        logger.info("Fetching tools from internal MCP server: %s", server_id)
        return self._transform(local_tools.list_tools(server_id), server_id, Transport.IN_PROCESS)

    def _fetch_from_external_server(
        self, server_id: str, config: McpServerConfig
    ) -> List[ToolDefinition]:
        if not config.url:
            raise CatalogFetchError(server_id, "external server has no 'url' configured")
        url = config.url.rstrip("/") + "/tools/list"
        logger.info("Fetching tools from external MCP server: %s (url=%s)", server_id, url)

        def fetch() -> httpx.Response:
            with httpx.Client(timeout=config.timeout, transport=self._transport) as client:
                resp = client.get(url)
                resp.raise_for_status()
                return resp

        try:
            resp = call_with_retries(
                fetch,
                attempts=self.retry_attempts,
                delay_ms=self.retry_delay_ms,
                retry_on=(httpx.HTTPError,),
                sleep=self._sleep,
                label=f"tools/list on {server_id}",
            )
        except httpx.HTTPStatusError as exc:
            raise CatalogFetchError(server_id, f"status {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise CatalogFetchError(server_id, str(exc) or type(exc).__name__) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise CatalogFetchError(server_id, f"invalid JSON: {exc}") from exc
        tools = data.get("tools", []) if isinstance(data, dict) else None
        if not isinstance(tools, list):
            raise CatalogFetchError(server_id, "response has no 'tools' list")
        return self._transform(tools, server_id, Transport.REMOTE_HTTP)

    @staticmethod
    def _transform(
        tools: List[Mapping[str, Any]], server_id: str, transport: Transport
    ) -> List[ToolDefinition]:
        definitions = []
        for tool in tools:
            original = tool.get("name") if isinstance(tool, Mapping) else None
            if not original:
                logger.warning("Skipping unnamed tool from server %s: %r", server_id, tool)
                continue
            definitions.append(
                ToolDefinition(
                    name=f"{server_id}_{original}",
                    description=tool.get("description") or "No description available",
                    parameter_schema=tool.get("inputSchema")
                    or {"type": "object", "properties": {}},
                    server_id=server_id,
                    original_name=original,
                    transport=transport,
                )
            )
        return definitions

    def _handle_server_error(self, server_id: str, exc: CatalogFetchError) -> None:
        self._last_errors[server_id] = exc.message
        if not self.fail_silently:
            logger.error("Error fetching tools from MCP server %s: %s", server_id, exc)
            raise exc
        logger.warning("MCP server %s contributes no tools: %s", server_id, exc)

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #
    def server_config(self, tool: ToolDefinition) -> McpServerConfig:
        """
        Return the configuration of the server owning *tool*.

        Raises
        ------
        ServerMisconfiguredError
            If the routing metadata is incomplete or the server is not configured.
        """
        if not tool.server_id or not tool.original_name:
            raise ServerMisconfiguredError(f"Invalid tool metadata for: {tool.name}")
        config = self.servers.get(tool.server_id)
        if config is None:
            raise ServerMisconfiguredError(f"MCP server not configured: {tool.server_id}")
        return config
