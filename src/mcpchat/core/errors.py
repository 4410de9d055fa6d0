"""
Error taxonomy shared by the catalog, invoker, completion client and loop.

Every error carries a snake-case ``code`` which becomes the ``reason`` of a failed run and the
``error`` field of HTTP error payloads, so callers can branch on it without string matching.
"""

from typing import (
    Any,
    Dict,
)


class McpChatError(RuntimeError):
    """Base class for all expected failures raised by mcpchat components."""

    code = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context


# ---------------------------------------------------------------------------
# Tool catalog / invocation
# ---------------------------------------------------------------------------
class CatalogFetchError(McpChatError):
    """A tool provider was unreachable or returned an unusable tool list."""

    code = "catalog_fetch_failed"

    def __init__(self, server_id: str, message: str) -> None:
        super().__init__(f"Failed to fetch tools from {server_id}: {message}", server_id=server_id)
        self.server_id = server_id


class ToolNotFoundError(McpChatError):
    """The requested tool name is absent from the catalog."""

    code = "tool_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}", tool=name)
        self.name = name


class ServerMisconfiguredError(McpChatError):
    """Routing metadata or server configuration for a tool is missing or invalid."""

    code = "server_misconfigured"


class ToolExecutionError(McpChatError):
    """Raised when a requested tool cannot run or fails."""

    code = "tool_execution_failed"


# ---------------------------------------------------------------------------
# Completion endpoint
# ---------------------------------------------------------------------------
class UpstreamError(McpChatError):
    """Base class for completion endpoint failures."""

    code = "upstream_error"


class UpstreamUnavailableError(UpstreamError):
    """Connection-level failure after retries were exhausted."""

    code = "upstream_unavailable"


class UpstreamProtocolError(UpstreamError):
    """Non-2xx response, or a response that is not JSON."""

    code = "upstream_protocol_error"

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message, status_code=status_code)
        self.status_code = status_code
        self.body = body


class UpstreamParseError(UpstreamError):
    """The response body could not be decoded."""

    code = "upstream_parse_error"


# ---------------------------------------------------------------------------
# Loop termination
# ---------------------------------------------------------------------------
class ToolCallLoopDetected(McpChatError):
    """The model kept requesting tools after the recovery directive."""

    code = "tool_loop_detected"


class MaxIterationsReached(McpChatError):
    """The model never produced a final answer within the iteration ceiling."""

    code = "max_iterations_reached"


class RunCancelled(McpChatError):
    """The caller asked the loop to stop between iterations."""

    code = "cancelled"
