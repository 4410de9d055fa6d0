"""
In-process tool registry for mcpchat.

This module provides a decorator to register tools under an internal MCP server id and a registry
to look them up by (server, name).  The tools are functions that are called with keyword arguments
and return text or structured content.
"""

import inspect
import logging
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    get_type_hints,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalTool:
    """A tool handler owned by an in-process server."""

    name: str
    fn: Callable[..., Any]
    description: str
    input_schema: Mapping[str, Any] = field(default_factory=dict)


TOOL_REGISTRY: Dict[str, Dict[str, LocalTool]] = {}
"""Global registry of tool functions, keyed by server id then tool name."""

_JSON_TYPES = {
    "str": "string",
    "int": "integer",
    "float": "number",
    "bool": "boolean",
    "dict": "object",
    "list": "array",
}


def register_tool(
    server: str, name: str, input_schema: Mapping[str, Any] | None = None
) -> Callable:
    """
    Register a tool function with the given name on the in-process server *server*.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("compressor_ai", "readings")
        def readings(limit: int = 20):
            ...

    When *input_schema* is omitted, a JSON schema is derived from the function signature.

    Raises
    ------
    ValueError
        If a tool with the same name is already registered on *server*.
    """
    tools = TOOL_REGISTRY.setdefault(server, {})
    if name in tools:
        raise ValueError(f"Tool '{name}' is already registered on server '{server}'.")
    logger.debug("Registering tool '%s' on server '%s'", name, server)

    def wrapper(fn: Callable) -> Callable:
        schema = input_schema if input_schema is not None else _schema_from_signature(fn)
        description = inspect.cleandoc(fn.__doc__ or "") or "No description available"
        tools[name] = LocalTool(name=name, fn=fn, description=description, input_schema=schema)
        return fn

    return wrapper


def unregister_server(server: str) -> None:
    """Drop every tool registered on *server*."""
    TOOL_REGISTRY.pop(server, None)


def get_handler(server: str, name: str) -> LocalTool | None:
    """Return the handler registered as *name* on *server*, if any."""
    return TOOL_REGISTRY.get(server, {}).get(name)


def has_server(server: str) -> bool:
    return server in TOOL_REGISTRY


def list_tools(server: str) -> List[Dict[str, Any]]:
    """Describe the tools of an in-process server in MCP ``tools/list`` form."""
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "inputSchema": dict(tool.input_schema),
        }
        for tool in TOOL_REGISTRY.get(server, {}).values()
    ]


def _schema_from_signature(func: Callable) -> Dict[str, Any]:
    """Extract parameter information from a tool function."""
    sig = inspect.signature(func)
    type_hints = get_type_hints(func)
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for param_name, param in sig.parameters.items():
        param_type = type_hints.get(param_name)
        type_name = getattr(param_type, "__name__", "")
        properties[param_name] = {"type": _JSON_TYPES.get(type_name, "string")}
        if param.default == inspect.Parameter.empty:
            required.append(param_name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


# Built-in servers register themselves on import.
from mcpchat.tools import sensors  # noqa: E402,F401  pylint: disable=wrong-import-position
