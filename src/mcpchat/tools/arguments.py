"""
Decoding of tool call arguments.

Models send arguments either as a mapping or as raw JSON text, and local models occasionally wrap
that text in markdown fences or emit stray control characters.  Decoding never fails hard: text
that cannot be read as a JSON object becomes an :class:`ArgumentsParseFailed` whose values are an
empty mapping, so the loop keeps moving.
"""

import json
import logging
import re
from typing import (
    Any,
    Mapping,
)

from mcpchat.core.schema import (
    ArgumentsOk,
    ArgumentsParseFailed,
    ParsedArguments,
)

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```(?:json)?\s*(.+?)```", re.DOTALL)


def _sanitize_json_string(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    # Strip markdown code blocks if present
    if "```" in content:
        match = _FENCE.search(content)
        if match:
            content = match.group(1).strip()

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")
    return content.strip()


def parse_arguments(raw: str | Mapping[str, Any] | None) -> ParsedArguments:
    """Decode *raw* tool arguments into a tagged :data:`ParsedArguments` value."""
    if raw is None:
        return ArgumentsOk()
    if isinstance(raw, Mapping):
        return ArgumentsOk(values=dict(raw))

    try:
        decoded = json.loads(str(raw))
    except json.JSONDecodeError:
        # Only text that is not valid JSON as sent gets cleaned up
        text = _sanitize_json_string(str(raw))
        if not text:
            return ArgumentsOk()
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning("Could not decode tool arguments %r: %s", raw, exc)
            return ArgumentsParseFailed(raw=str(raw), error=str(exc))

    if decoded is None:
        return ArgumentsOk()
    if not isinstance(decoded, dict):
        logger.warning("Tool arguments are not an object: %r", raw)
        return ArgumentsParseFailed(
            raw=str(raw), error=f"expected an object, got {type(decoded).__name__}"
        )
    return ArgumentsOk(values=decoded)
