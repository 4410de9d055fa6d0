"""
Pydantic models for mcpchat API requests and responses.
This module defines the request and response schemas used by the mcpchat API.
"""

from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from mcpchat.core.schema import (
    Message,
    ProgressEvent,
    RunMetrics,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ChatRequest(BaseModel):
    """Incoming user message."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(None, description="Conversation to continue")
    system_prompt: Optional[str] = Field(None, description="Overrides the default system prompt")
    run_async: bool = Field(False, alias="async", description="Queue the run in the background")
    tolerate_catalog_errors: bool = Field(
        False, description="Answer without tools when tool discovery fails"
    )
    options: Dict[str, Any] = Field(
        default_factory=dict, description="Extra completion parameters (model, temperature, ...)"
    )


class ChatResponse(BaseModel):
    """Synchronous run result."""

    success: bool = True
    data: Dict[str, Any]
    conversation_id: str
    history_length: int
    metrics: RunMetrics


class ErrorResponse(BaseModel):
    """Failed run or request."""

    success: bool = False
    error: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class QueuedResponse(BaseModel):
    """Returned with HTTP 202 for asynchronous runs."""

    success: bool = True
    message: str = "Request queued for processing"
    conversation_id: str
    user_id: str
    channel: str
    job_id: str
    events_after: int = Field(
        ..., description="Channel position before the job was queued; poll from here"
    )
    run_async: bool = Field(True, serialization_alias="async")


class ConversationResponse(BaseModel):
    conversation_id: str
    messages: List[Message]
    count: int


class EventsResponse(BaseModel):
    events: List[ProgressEvent]
    next: int = Field(..., description="Pass as 'after' to fetch only newer events")
