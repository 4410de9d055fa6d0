"""
Schema definitions for completion endpoint <-> loop <-> tool messages.

These data models serve as the contract between the completion endpoint, the orchestration loop,
the tool catalog and individual tools.  We keep them separate from runtime logic so they can be
imported anywhere without side-effects.
"""

import uuid
from datetime import (
    datetime,
    timezone,
)
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


def new_call_id() -> str:
    """Generate a client-side tool call correlation id."""
    return f"call_{uuid.uuid4().hex[:24]}"


def utc_timestamp() -> str:
    """ISO-8601 server timestamp used on progress events."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class Role(str, Enum):
    """Conversation roles understood by OpenAI-compatible endpoints."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FunctionCall(BaseModel):
    """Function name plus arguments, which may arrive as raw JSON text."""

    name: str
    arguments: Union[str, Dict[str, Any]] = "{}"


class ToolCall(BaseModel):
    """A single invocation the model wants the loop to execute."""

    id: str = Field(default_factory=new_call_id)
    type: str = "function"
    function: FunctionCall

    @property
    def name(self) -> str:
        return self.function.name


class Message(BaseModel):
    """One turn in a conversation."""

    role: Role
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    def to_payload(self) -> Dict[str, Any]:
        """Render the OpenAI wire form of the message."""
        payload: Dict[str, Any] = {"role": self.role.value}
        if self.tool_calls:
            payload["tool_calls"] = [call.model_dump(mode="json") for call in self.tool_calls]
            # content must be null (not absent) next to tool_calls
            payload["content"] = self.content
        else:
            payload["content"] = self.content if self.content is not None else ""
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.name:
            payload["name"] = self.name
        return payload


def validate_history(messages: Sequence[Message]) -> List[str]:
    """
    Return the ``tool_call_id`` of every tool message without a matching earlier tool call.

    An empty list means the history is structurally valid.
    """
    known: Set[str] = set()
    orphans: List[str] = []
    for message in messages:
        if message.role is Role.ASSISTANT and message.tool_calls:
            known.update(call.id for call in message.tool_calls)
        elif message.role is Role.TOOL:
            if not message.tool_call_id or message.tool_call_id not in known:
                orphans.append(message.tool_call_id or "")
    return orphans


# ---------------------------------------------------------------------------
# Tool arguments
# ---------------------------------------------------------------------------
class ArgumentsOk(BaseModel):
    """Arguments decoded into a mapping."""

    kind: Literal["ok"] = "ok"
    values: Dict[str, Any] = Field(default_factory=dict)


class ArgumentsParseFailed(BaseModel):
    """Arguments that could not be decoded; they are dispatched as an empty mapping."""

    kind: Literal["parse_failed"] = "parse_failed"
    raw: str
    error: str

    @property
    def values(self) -> Dict[str, Any]:
        return {}


ParsedArguments = Annotated[Union[ArgumentsOk, ArgumentsParseFailed], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Tool catalog
# ---------------------------------------------------------------------------
class Transport(str, Enum):
    """How the invoker reaches a tool's owning server."""

    IN_PROCESS = "in_process"
    REMOTE_HTTP = "remote_http"


class ToolDefinition(BaseModel):
    """Catalog entry for one callable tool."""

    name: str = Field(..., description="Public, server-prefixed tool name")
    description: str = "No description available"
    parameter_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    server_id: str
    original_name: str
    transport: Transport

    def to_function_schema(self) -> Dict[str, Any]:
        """Render the OpenAI function-calling form offered to the model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameter_schema,
            },
        }


class ToolResult(BaseModel):
    """Outcome of one tool invocation."""

    tool_call_id: str
    name: str
    content: str
    ok: bool

    def to_message(self, prefix: str = "") -> Message:
        return Message(
            role=Role.TOOL,
            tool_call_id=self.tool_call_id,
            name=self.name,
            content=f"{prefix}{self.content}",
        )


# ---------------------------------------------------------------------------
# Completion
# ---------------------------------------------------------------------------
class Usage(BaseModel):
    """Token accounting returned by the completion endpoint."""

    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResponse(BaseModel):
    """The assistant turn plus metadata returned by one completion call."""

    id: str = ""
    model: str = ""
    message: Message
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None
    timings: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tool_calls(self) -> List[ToolCall]:
        return list(self.message.tool_calls or [])

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "CompletionResponse":
        """
        Build a response from the decoded ``/v1/chat/completions`` body.

        Tool call entries lacking a resolvable function name are dropped.

        Raises
        ------
        ValueError
            If the body has no choices or the first choice has no message.
        """
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], Mapping):
            raise ValueError("response contains no choices")
        choice = choices[0]
        raw_message = choice.get("message")
        if not isinstance(raw_message, Mapping):
            raise ValueError("first choice contains no message")

        calls: List[ToolCall] = []
        for entry in raw_message.get("tool_calls") or []:
            function = entry.get("function") if isinstance(entry, Mapping) else None
            if not isinstance(function, Mapping) or not function.get("name"):
                continue
            call_id = entry.get("id") or new_call_id()
            arguments = function.get("arguments")
            calls.append(
                ToolCall(
                    id=call_id,
                    type=entry.get("type") or "function",
                    function=FunctionCall(
                        name=function["name"],
                        arguments=arguments if arguments is not None else "{}",
                    ),
                )
            )

        message = Message(
            role=Role.ASSISTANT,
            content=raw_message.get("content"),
            tool_calls=calls or None,
        )
        usage = data.get("usage")
        return cls(
            id=str(data.get("id") or ""),
            model=str(data.get("model") or ""),
            message=message,
            finish_reason=choice.get("finish_reason"),
            usage=Usage.model_validate(usage) if isinstance(usage, Mapping) else None,
            timings=data.get("timings") if isinstance(data.get("timings"), dict) else None,
            raw=dict(data),
        )


# ---------------------------------------------------------------------------
# Loop state and outcome
# ---------------------------------------------------------------------------
class ConversationState(BaseModel):
    """Working set owned by a single orchestration run."""

    messages: List[Message] = Field(default_factory=list)
    iteration: int = 0
    seen_signatures: Set[str] = Field(default_factory=set)


class RunMetrics(BaseModel):
    """Reported with the ``completed`` event."""

    iterations: int
    duration_seconds: float
    message_count: int


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class RunOutcome(BaseModel):
    """Terminal state of one orchestration run."""

    status: RunStatus
    conversation_id: str
    response: Optional[Dict[str, Any]] = None
    metrics: Optional[RunMetrics] = None
    reason: Optional[str] = None  # error code when failed
    error: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is RunStatus.COMPLETED


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------
class EventKind(str, Enum):
    QUEUED = "queued"
    API_RESPONDING = "api_responding"
    TOOLS_EXECUTING = "tools_executing"
    TOOLS_COMPLETED = "tools_completed"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressEvent(BaseModel):
    """One lifecycle notification scoped to a (user, conversation) channel."""

    kind: EventKind
    user_id: str
    conversation_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_timestamp)

    @property
    def channel(self) -> str:
        return channel_name(self.user_id, self.conversation_id)


def channel_name(user_id: str, conversation_id: str) -> str:
    return f"chat.{user_id}.{conversation_id}"
