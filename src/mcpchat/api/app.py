"""
Core API backend for mcpchat.

This module exposes the orchestration loop and the MCP tool catalog over HTTP:
- **GET /health**  - liveness probe plus completion endpoint connectivity.
- **POST /chat**   - run one conversation turn, synchronously or queued (``async``).
- **GET/DELETE /conversations/{id}** - read or clear stored history.
- **GET /channels/{user_id}/{conversation_id}/events** - poll progress events.
- **GET /mcp/tools**, **GET /mcp/tools/{name}**, **POST /mcp/cache/clear**, **GET /mcp/status**
"""

import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Optional,
)

from fastapi import (
    FastAPI,
    Header,
    HTTPException,
)
from fastapi.responses import JSONResponse

from mcpchat.agent.jobs import (
    ChatJob,
    ChatJobQueue,
)
from mcpchat.agent.notifier import BufferedNotifier
from mcpchat.agent.orchestrator import OrchestrationLoop
from mcpchat.agent.session_store import JsonFileSessionStore
from mcpchat.api.models import (
    ChatRequest,
    ChatResponse,
    ConversationResponse,
    ErrorResponse,
    EventsResponse,
    QueuedResponse,
)
from mcpchat.config import settings
from mcpchat.core.errors import (
    CatalogFetchError,
    UpstreamError,
)
from mcpchat.core.schema import (
    RunOutcome,
    channel_name,
)
from mcpchat.llm.client import load_completion_client
from mcpchat.mcp.catalog import ToolCatalog
from mcpchat.mcp.invoker import ToolInvoker

logger = logging.getLogger(__name__)

ANONYMOUS_USER = "anonymous"
_UPSTREAM_CODES = {cls.code for cls in UpstreamError.__subclasses__()} | {UpstreamError.code}


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def build_default_loop(notifier: BufferedNotifier) -> OrchestrationLoop:
    """Wire the loop from ``settings``."""
    catalog = ToolCatalog()
    return OrchestrationLoop(
        catalog=catalog,
        invoker=ToolInvoker(catalog),
        client=load_completion_client(),
        session_store=JsonFileSessionStore(Path(settings.DATA_DIR)),
        notifier=notifier,
    )


def _is_async(req: ChatRequest, header: Optional[str]) -> bool:
    return req.run_async or (header or "").strip().lower() in {"1", "true"}


def _failure_response(outcome: RunOutcome) -> JSONResponse:
    status = 502 if outcome.reason in _UPSTREAM_CODES else 500
    body = ErrorResponse(
        error=outcome.reason or "internal_error",
        message=outcome.error or "",
        context=outcome.context,
    )
    return JSONResponse(status_code=status, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(
    loop: OrchestrationLoop | None = None,
    events: BufferedNotifier | None = None,
    jobs: ChatJobQueue | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    *loop*'s notifier should be *events* so polled channels see the loop's progress; when *loop*
    is omitted both are built from ``settings``.
    """
    events = events or BufferedNotifier()
    loop = loop or build_default_loop(events)
    jobs = jobs or ChatJobQueue(loop)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        jobs.start()
        yield
        jobs.stop()

    app = FastAPI(
        title="mcpchat API",
        version="0.1.0",
        description="Chat over a local LLM with MCP tool calling",
        lifespan=lifespan,
    )
    app.state.loop = loop
    app.state.events = events
    app.state.jobs = jobs

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.get("/health", summary="Health check")
    def health() -> Dict[str, Any]:
        """Return a liveness payload including completion endpoint reachability."""
        reachable = loop.client.check_connection()
        return {
            "status": "ok",
            "completion_endpoint": "reachable" if reachable else "unreachable",
        }

    @app.post("/chat", summary="Process a message", response_model=ChatResponse)
    def chat(
        req: ChatRequest,
        x_user_id: Optional[str] = Header(None),
        x_async_processing: Optional[str] = Header(None),
    ) -> Any:
        """Run one turn; queued when ``async`` is set in the body or header."""
        conversation_id = req.conversation_id or str(uuid.uuid4())

        if _is_async(req, x_async_processing):
            if not x_user_id:
                body = ErrorResponse(
                    error="unauthenticated",
                    message="Authentication required for async processing",
                )
                return JSONResponse(status_code=401, content=body.model_dump(mode="json"))
            events_after = events.position(x_user_id, conversation_id)
            job = jobs.dispatch(
                ChatJob(
                    user_id=x_user_id,
                    conversation_id=conversation_id,
                    message=req.message,
                    system_prompt=req.system_prompt,
                    options=req.options,
                    tolerate_catalog_errors=req.tolerate_catalog_errors,
                )
            )
            queued = QueuedResponse(
                conversation_id=conversation_id,
                user_id=x_user_id,
                channel=job.channel,
                job_id=job.job_id,
                events_after=events_after,
            )
            return JSONResponse(status_code=202, content=queued.model_dump(by_alias=True))

        try:
            outcome = loop.run(
                x_user_id or ANONYMOUS_USER,
                conversation_id,
                req.message,
                system_prompt=req.system_prompt,
                options=req.options,
                tolerate_catalog_errors=req.tolerate_catalog_errors,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Chat run crashed for conversation %s", conversation_id)
            body = ErrorResponse(
                error="internal_error",
                message=f"An error occurred while processing your request: {exc}",
            )
            return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

        if not outcome.ok or outcome.response is None or outcome.metrics is None:
            return _failure_response(outcome)
        return ChatResponse(
            data=outcome.response["data"],
            conversation_id=conversation_id,
            history_length=outcome.response["history_length"],
            metrics=outcome.metrics,
        )

    @app.get("/conversations/{conversation_id}", response_model=ConversationResponse)
    def get_conversation(
        conversation_id: str, x_user_id: Optional[str] = Header(None)
    ) -> ConversationResponse:
        """Return the stored history of a conversation."""
        messages = loop.session_store.get(x_user_id or ANONYMOUS_USER, conversation_id)
        return ConversationResponse(
            conversation_id=conversation_id, messages=messages, count=len(messages)
        )

    @app.delete("/conversations/{conversation_id}")
    def clear_conversation(
        conversation_id: str, x_user_id: Optional[str] = Header(None)
    ) -> Dict[str, Any]:
        """Forget a conversation and its buffered events."""
        user_id = x_user_id or ANONYMOUS_USER
        loop.session_store.clear(user_id, conversation_id)
        events.clear(user_id, conversation_id)
        return {"success": True, "conversation_id": conversation_id}

    @app.get("/channels/{user_id}/{conversation_id}/events", response_model=EventsResponse)
    def channel_events(user_id: str, conversation_id: str, after: int = 0) -> EventsResponse:
        """Poll progress events newer than *after*."""
        found, position = events.poll(user_id, conversation_id, after=after)
        logger.debug(
            "Channel %s: %d new event(s)", channel_name(user_id, conversation_id), len(found)
        )
        return EventsResponse(events=found, next=position)

    @app.get("/mcp/tools", summary="List available tools")
    def list_tools() -> Dict[str, Any]:
        try:
            tools = loop.catalog.function_schemas()
        except CatalogFetchError as exc:
            raise HTTPException(status_code=503, detail=exc.message) from exc
        return {"success": True, "count": len(tools), "tools": tools}

    @app.get("/mcp/tools/{name}", summary="Describe one tool")
    def get_tool(name: str) -> Dict[str, Any]:
        try:
            tool = loop.catalog.get(name)
        except CatalogFetchError as exc:
            raise HTTPException(status_code=503, detail=exc.message) from exc
        if tool is None:
            raise HTTPException(status_code=404, detail=f"Tool not found: {name}")
        return {"success": True, "tool": tool.model_dump(mode="json")}

    @app.post("/mcp/cache/clear", summary="Invalidate the tool catalog cache")
    def clear_cache() -> Dict[str, Any]:
        loop.catalog.invalidate()
        return {"success": True, "message": "MCP tools cache cleared"}

    @app.get("/mcp/status", summary="Tool server status")
    def mcp_status() -> Dict[str, Any]:
        return loop.catalog.status()

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg‑import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting mcpchat API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump())

    logger.info("API documentation at http://localhost:%d/docs", port)
    uvicorn.run(
        "mcpchat.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m mcpchat.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
