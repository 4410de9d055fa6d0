"""
Main orchestration loop for mcpchat.

One run sends the conversation to the completion endpoint, executes any tool calls the model asks
for, feeds the results back and repeats until the model answers in plain text.  The loop is
bounded by ``max_iterations`` and guards against models that keep re-requesting the same tools:
a repeated call set triggers exactly one corrective, tool-less request before the run fails.

The same :class:`OrchestrationLoop` serves both execution modes; the synchronous request handler
reads the returned :class:`RunOutcome`, the background job relies on the progress events.
"""

from __future__ import annotations

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
    Tuple,
)

from mcpchat.agent.notifier import (
    NullNotifier,
    ProgressNotifier,
    RunReporter,
)
from mcpchat.agent.session_store import SessionStore
from mcpchat.config import settings
from mcpchat.core.errors import (
    CatalogFetchError,
    MaxIterationsReached,
    McpChatError,
    RunCancelled,
    ToolCallLoopDetected,
    ToolExecutionError,
)
from mcpchat.core.schema import (
    CompletionResponse,
    ConversationState,
    Message,
    Role,
    RunMetrics,
    RunOutcome,
    RunStatus,
    ToolCall,
)
from mcpchat.llm.client import CompletionClient
from mcpchat.mcp.catalog import ToolCatalog
from mcpchat.mcp.invoker import ToolInvoker
from mcpchat.tools.arguments import parse_arguments

logger = logging.getLogger(__name__)

TOOL_RESULT_PREFIX = "[TOOL EXECUTION COMPLETE] "

RECOVERY_DIRECTIVE = """\
STOP - CRITICAL DIRECTIVE

You are repeating tool calls unnecessarily. The tools have ALREADY been executed and you have \
received ALL the data you need.

WHAT YOU MUST DO NOW:
1. Look at the previous "tool" role messages in this conversation
2. Extract the data/results from those messages
3. Write a clear, direct answer using ONLY that existing data
4. DO NOT call any functions or tools
5. DO NOT request more information
6. RESPOND WITH TEXT ONLY

YOU ARE FORBIDDEN FROM:
- Calling ANY tools or functions
- Using tool_calls in your response
- Requesting additional data

The conversation already contains all necessary information. Provide your analysis NOW using \
plain text based on the tool results above."""

LOOP_DETECTED_MESSAGE = (
    "The AI model is stuck in a tool-calling loop. Please try rephrasing your question or ask "
    "for a different analysis."
)


def tool_call_signatures(tool_calls: Sequence[ToolCall]) -> Tuple[str, str]:
    """
    Fingerprint a call set two ways: sorted tool names alone, and exact name/argument pairs.

    Name-only matching catches a model re-deriving slightly different arguments for a question
    it has already had answered.
    """
    names = ",".join(sorted(call.name for call in tool_calls))
    exact = json.dumps(
        [
            {"name": call.name, "args": parse_arguments(call.function.arguments).values}
            for call in tool_calls
        ],
        sort_keys=True,
        default=str,
    )
    return f"names:{names}", f"exact:{exact}"


class OrchestrationLoop:
    """Bounded tool-calling state machine over one completion endpoint."""

    def __init__(
        self,
        catalog: ToolCatalog,
        invoker: ToolInvoker,
        client: CompletionClient,
        session_store: SessionStore,
        notifier: ProgressNotifier | None = None,
        max_iterations: int | None = None,
        system_prompt: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.catalog = catalog
        self.invoker = invoker
        self.client = client
        self.session_store = session_store
        self.notifier = notifier or NullNotifier()
        self.max_iterations = settings.MAX_ITERATIONS if max_iterations is None else max_iterations
        self.system_prompt = (
            settings.DEFAULT_SYSTEM_PROMPT if system_prompt is None else system_prompt
        )
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def run(
        self,
        user_id: str,
        conversation_id: str,
        message: str,
        *,
        system_prompt: str | None = None,
        options: Mapping[str, Any] | None = None,
        tolerate_catalog_errors: bool = False,
        should_cancel: Callable[[], bool] | None = None,
    ) -> RunOutcome:
        """
        Drive one conversation turn to a terminal state.

        Expected failures (upstream errors, loop detection, iteration ceiling, strict catalog
        failures) are returned as a failed :class:`RunOutcome` and announced with a ``failed``
        event; only unexpected faults propagate.
        """
        started = self._clock()
        reporter = RunReporter(self.notifier, user_id, conversation_id)
        state = ConversationState(
            messages=self._initial_messages(user_id, conversation_id, message, system_prompt)
        )

        try:
            final = self._drive(
                state, reporter, options or {}, tolerate_catalog_errors, should_cancel
            )
        except McpChatError as exc:
            logger.error(
                "Run failed for conversation %s at iteration %d: [%s] %s",
                conversation_id,
                state.iteration,
                exc.code,
                exc.message,
            )
            self.session_store.put(user_id, conversation_id, state.messages)
            context: Dict[str, Any] = {"iteration": state.iteration, "reason": exc.code}
            context.update(exc.context)
            reporter.failed(exc.message, context)
            return RunOutcome(
                status=RunStatus.FAILED,
                conversation_id=conversation_id,
                reason=exc.code,
                error=exc.message,
                context=context,
            )

        self.session_store.put(user_id, conversation_id, state.messages)
        metrics = RunMetrics(
            iterations=state.iteration,
            duration_seconds=round(self._clock() - started, 3),
            message_count=len(state.messages),
        )
        response = {
            "data": final.raw,
            "conversation_id": conversation_id,
            "history_length": len(state.messages),
        }
        logger.info(
            "Final response received for conversation %s (iterations=%d, messages=%d)",
            conversation_id,
            metrics.iterations,
            metrics.message_count,
        )
        reporter.completed(response, metrics)
        return RunOutcome(
            status=RunStatus.COMPLETED,
            conversation_id=conversation_id,
            response=response,
            metrics=metrics,
        )

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #
    def _drive(
        self,
        state: ConversationState,
        reporter: RunReporter,
        options: Mapping[str, Any],
        tolerate_catalog_errors: bool,
        should_cancel: Callable[[], bool] | None,
    ) -> CompletionResponse:
        tools = self._load_tools(tolerate_catalog_errors)
        request_options = dict(options)
        if tools:
            request_options.setdefault("tool_choice", "auto")
            request_options.setdefault("parallel_tool_calls", False)

        while state.iteration < self.max_iterations:
            if should_cancel is not None and should_cancel():
                raise RunCancelled("Run cancelled by caller")

            state.iteration += 1
            logger.info("Iteration %d (messages=%d)", state.iteration, len(state.messages))
            reporter.api_responding(state.iteration, False)

            response = self.client.complete(state.messages, tools or None, request_options)
            tool_calls = response.tool_calls if tools else []

            if not tool_calls:
                state.messages.append(response.message.model_copy(update={"tool_calls": None}))
                return response

            reporter.tools_executing(tool_calls, state.iteration)

            names_signature, exact_signature = tool_call_signatures(tool_calls)
            if (
                names_signature in state.seen_signatures
                or exact_signature in state.seen_signatures
            ):
                return self._recover(state, reporter, tool_calls, request_options)
            state.seen_signatures.update((names_signature, exact_signature))

            logger.info(
                "Executing %d tool call(s): %s", len(tool_calls), [c.name for c in tool_calls]
            )
            try:
                results = self.invoker.invoke_many(tool_calls)
            except McpChatError:
                raise
            except Exception as exc:  # pylint: disable=broad-except
                logger.exception("Tool execution failed")
                raise ToolExecutionError(f"Tool execution failed: {exc}") from exc
            reporter.tools_completed(results, state.iteration)

            state.messages.append(response.message)
            state.messages.extend(result.to_message(TOOL_RESULT_PREFIX) for result in results)

        logger.warning("Max iterations reached (%d)", self.max_iterations)
        raise MaxIterationsReached(
            "Maximum tool call iterations reached", max_iterations=self.max_iterations
        )

    def _recover(
        self,
        state: ConversationState,
        reporter: RunReporter,
        tool_calls: List[ToolCall],
        options: Mapping[str, Any],
    ) -> CompletionResponse:
        """Issue the single tool-less corrective request after a repeated call set."""
        logger.warning(
            "Detected repeated tool calls at iteration %d - attempting recovery: %s",
            state.iteration,
            [c.name for c in tool_calls],
        )
        request = [*state.messages, Message.system(RECOVERY_DIRECTIVE)]
        recovery_options = {
            k: v for k, v in options.items() if k not in ("tool_choice", "parallel_tool_calls")
        }

        state.iteration += 1
        reporter.api_responding(state.iteration, False)
        response = self.client.complete(request, None, recovery_options)

        if response.tool_calls:
            logger.error(
                "AI still attempting tool calls after directive: %s",
                [c.name for c in response.tool_calls],
            )
            raise ToolCallLoopDetected(
                LOOP_DETECTED_MESSAGE, tool_calls=[c.name for c in tool_calls]
            )

        logger.info("Recovery successful, AI provided text response")
        state.messages.append(response.message)
        return response

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _initial_messages(
        self, user_id: str, conversation_id: str, message: str, system_prompt: str | None
    ) -> List[Message]:
        messages = self.session_store.get(user_id, conversation_id)
        prompt = system_prompt or self.system_prompt
        if prompt and (not messages or messages[0].role is not Role.SYSTEM):
            messages.insert(0, Message.system(prompt))
        messages.append(Message.user(message))
        return messages

    def _load_tools(self, tolerate_catalog_errors: bool) -> List[Dict[str, Any]]:
        try:
            tools = self.catalog.function_schemas()
        except CatalogFetchError as exc:
            if not tolerate_catalog_errors:
                raise
            logger.warning("Failed to fetch tools, continuing without tools: %s", exc)
            return []
        logger.info("Injecting %d tool(s)", len(tools))
        return tools
