"""Builders for completion endpoint payloads and a scripted completion client."""

import json
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Sequence,
    Tuple,
)

from mcpchat.core.schema import (
    CompletionResponse,
    Message,
)
from mcpchat.llm.client import CompletionClient


def text_reply(content: str, completion_id: str = "cmpl-text") -> Dict[str, Any]:
    return {
        "id": completion_id,
        "model": "test-model",
        "choices": [
            {"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


def tool_reply(*calls: Tuple[str, str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Each call is ``(call_id, tool_name, arguments)``."""
    return {
        "id": "cmpl-tools",
        "model": "test-model",
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call_id,
                            "type": "function",
                            "function": {"name": name, "arguments": json.dumps(dict(args))},
                        }
                        for call_id, name, args in calls
                    ],
                },
                "finish_reason": "tool_calls",
            }
        ],
    }


class ScriptedClient(CompletionClient):
    """Replays a fixed list of payloads (or raises listed exceptions) in order."""

    def __init__(self, script: Sequence[Any]) -> None:
        super().__init__(sleep=lambda _: None)
        self.script: List[Any] = list(script)
        self.calls: List[Dict[str, Any]] = []

    def complete(
        self,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> CompletionResponse:
        self.calls.append(
            {
                "messages": [m.model_copy(deep=True) for m in messages],
                "tools": list(tools) if tools else None,
                "options": dict(options or {}),
            }
        )
        if not self.script:
            raise AssertionError("unexpected completion call")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return CompletionResponse.from_payload(step)

    def list_models(self) -> List[str]:
        return ["test-model"]
