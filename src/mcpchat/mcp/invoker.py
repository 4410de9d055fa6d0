"""Dispatches tool calls to their owning MCP server and wraps errors."""

import json
import logging
import time
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Sequence,
)

import httpx

from mcpchat import tools as local_tools
from mcpchat.config import (
    McpServerConfig,
    settings,
)
from mcpchat.core.errors import (
    McpChatError,
    ServerMisconfiguredError,
    ToolExecutionError,
    ToolNotFoundError,
)
from mcpchat.core.retry import call_with_retries
from mcpchat.core.schema import (
    ToolCall,
    ToolDefinition,
    ToolResult,
    Transport,
    new_call_id,
)
from mcpchat.mcp.catalog import ToolCatalog
from mcpchat.tools.arguments import parse_arguments

logger = logging.getLogger(__name__)


class ToolInvoker:
    """Executes named tool calls against in-process or remote MCP servers."""

    def __init__(
        self,
        catalog: ToolCatalog,
        *,
        retry_attempts: int | None = None,
        retry_delay_ms: int | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.catalog = catalog
        self.retry_attempts = (
            settings.MCP_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        )
        self.retry_delay_ms = (
            settings.MCP_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        )
        self._transport = transport
        self._sleep = sleep

    def invoke(
        self,
        name: str,
        arguments: Mapping[str, Any] | str | None = None,
        call_id: str | None = None,
    ) -> ToolResult:
        """
        Look up *name* in the catalog and invoke it with *arguments*.

        Parameters
        ----------
        name:
            The prefixed tool name.
        arguments:
            Mapping or raw JSON text.  Text that cannot be decoded is treated as no arguments.
        call_id:
            Correlation id for the result; generated when missing.

        Returns
        -------
        ToolResult
            ``ok=True`` with the JSON-serialised result: ``{"content": [...]}`` for in-process
            tools, the decoded JSON body for remote tools.

        Raises
        ------
        ToolNotFoundError
            If *name* is not in the catalog.
        ServerMisconfiguredError
            If the tool's routing metadata or server configuration is invalid.
        ToolExecutionError
            If a required parameter is missing or the handler or remote server fails.
        """
        tool = self.catalog.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        config = self.catalog.server_config(tool)
        args = parse_arguments(arguments).values
        self._check_required(tool, args)

        if tool.transport is Transport.IN_PROCESS:
            result = self._invoke_in_process(tool, args)
        else:
            result = self._invoke_remote(tool, config, args)
        return ToolResult(
            tool_call_id=call_id or new_call_id(),
            name=name,
            content=json.dumps(result, default=str),
            ok=True,
        )

    def invoke_many(self, tool_calls: Sequence[ToolCall]) -> List[ToolResult]:
        """
        Execute *tool_calls* one after another.

        Individual failures become ``ToolResult(ok=False)`` entries so earlier results in the
        same turn are never lost; results correlate 1:1 with *tool_calls* by position.
        """
        results: List[ToolResult] = []
        for call in tool_calls:
            call_id = call.id or new_call_id()
            try:
                results.append(self.invoke(call.name, call.function.arguments, call_id))
            except McpChatError as exc:
                logger.warning("Tool '%s' failed: %s", call.name, exc)
                results.append(
                    ToolResult(
                        tool_call_id=call_id,
                        name=call.name,
                        content=json.dumps({"error": exc.message, "success": False}),
                        ok=False,
                    )
                )
        return results

    @staticmethod
    def _check_required(tool: ToolDefinition, args: Mapping[str, Any]) -> None:
        for required in tool.parameter_schema.get("required", []):
            if required not in args:
                logger.warning("Missing required parameter '%s' for tool '%s'", required, tool.name)
                raise ToolExecutionError(
                    f"Invalid arguments for tool '{tool.name}': "
                    f"missing required parameter '{required}'"
                )

    # ------------------------------------------------------------------ #
    # Transports
    # ------------------------------------------------------------------ #
    @staticmethod
    def _invoke_in_process(tool: ToolDefinition, args: Dict[str, Any]) -> Dict[str, Any]:
        handler = local_tools.get_handler(tool.server_id, tool.original_name)
        if handler is None:
            raise ServerMisconfiguredError(
                f"No in-process handler '{tool.original_name}' on server '{tool.server_id}'"
            )

        try:
            logger.debug("Executing tool '%s' with args=%s", tool.name, args)
            output = handler.fn(**args)
        except TypeError as exc:
            # Argument mismatch: give the caller a clean exception.
            logger.exception("Argument error while executing tool '%s'", tool.name)
            raise ToolExecutionError(f"Invalid arguments for tool '{tool.name}': {exc}") from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", tool.name)
            raise ToolExecutionError(f"Tool '{tool.name}' raised an error: {exc}") from exc

        logger.info("Tool execution successful: %s", tool.name)
        if isinstance(output, dict) and "content" in output:
            return output
        if isinstance(output, (dict, list)):
            return {"content": output}
        return {"content": [{"type": "text", "text": str(output)}]}

    def _invoke_remote(
        self, tool: ToolDefinition, config: McpServerConfig, args: Dict[str, Any]
    ) -> Any:
        if not config.url:
            raise ServerMisconfiguredError(f"MCP server '{tool.server_id}' has no 'url' configured")
        url = config.url.rstrip("/") + "/tools/call"
        logger.info("Executing tool on external MCP server (url=%s, tool=%s)", url, tool.name)

        def post() -> httpx.Response:
            with httpx.Client(timeout=config.timeout, transport=self._transport) as client:
                resp = client.post(url, json={"name": tool.original_name, "arguments": args})
                resp.raise_for_status()
                return resp

        try:
            resp = call_with_retries(
                post,
                attempts=self.retry_attempts,
                delay_ms=self.retry_delay_ms,
                retry_on=(httpx.HTTPError,),
                sleep=self._sleep,
                label=f"tools/call {tool.name}",
            )
        except httpx.HTTPStatusError as exc:
            raise ToolExecutionError(
                f"Tool execution failed with status {exc.response.status_code}: "
                f"{exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ToolExecutionError(f"Tool '{tool.name}' transport error: {exc}") from exc

        try:
            result = resp.json()
        except ValueError as exc:
            raise ToolExecutionError(f"Tool '{tool.name}' returned invalid JSON: {exc}") from exc
        logger.info("Tool execution successful: %s", tool.name)
        return result
