"""
Progress notifications for orchestration runs.

A :class:`ProgressNotifier` receives :class:`ProgressEvent` objects scoped to a
``(user_id, conversation_id)`` channel.  Delivery is fire-and-forget: :class:`RunReporter` swallows
and logs notifier failures so a broken subscriber can never change the outcome of a run.
"""

import logging
import threading
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Sequence,
    Tuple,
)

from mcpchat.core.schema import (
    EventKind,
    ProgressEvent,
    RunMetrics,
    ToolCall,
    ToolResult,
    channel_name,
)

logger = logging.getLogger(__name__)


class ProgressNotifier(ABC):
    """Sink for lifecycle events."""

    @abstractmethod
    def emit(self, event: ProgressEvent) -> None:
        """Deliver *event*; may buffer, broadcast or drop it."""


class NullNotifier(ProgressNotifier):
    """Drops every event (synchronous callers read the outcome directly)."""

    def emit(self, event: ProgressEvent) -> None:
        return None


class BufferedNotifier(ProgressNotifier):
    """
    Keeps the most recent events of every channel in memory.

    Clients poll :meth:`events` with the number of events they have already seen.
    """

    def __init__(self, max_events_per_channel: int = 500) -> None:
        self._lock = threading.Lock()
        self._channels: Dict[str, List[ProgressEvent]] = {}
        self._dropped: Dict[str, int] = {}
        self.max_events = max_events_per_channel

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            log = self._channels.setdefault(event.channel, [])
            log.append(event)
            overflow = len(log) - self.max_events
            if overflow > 0:
                del log[:overflow]
                self._dropped[event.channel] = self._dropped.get(event.channel, 0) + overflow

    def poll(
        self, user_id: str, conversation_id: str, after: int = 0
    ) -> Tuple[List[ProgressEvent], int]:
        """Return the events with absolute index >= *after* and the index to poll from next."""
        channel = channel_name(user_id, conversation_id)
        with self._lock:
            dropped = self._dropped.get(channel, 0)
            log = self._channels.get(channel, [])
            start = max(after, dropped)
            found = list(log[start - dropped :])
        return found, start + len(found)

    def events(self, user_id: str, conversation_id: str, after: int = 0) -> List[ProgressEvent]:
        """Return events of the channel with absolute index >= *after*."""
        return self.poll(user_id, conversation_id, after)[0]

    def position(self, user_id: str, conversation_id: str) -> int:
        """Absolute index the next event on the channel will get."""
        channel = channel_name(user_id, conversation_id)
        with self._lock:
            return self._dropped.get(channel, 0) + len(self._channels.get(channel, []))

    def clear(self, user_id: str, conversation_id: str) -> None:
        channel = channel_name(user_id, conversation_id)
        with self._lock:
            self._channels.pop(channel, None)
            self._dropped.pop(channel, None)


class CompositeNotifier(ProgressNotifier):
    """Fans each event out to several notifiers."""

    def __init__(self, notifiers: Iterable[ProgressNotifier]) -> None:
        self.notifiers = list(notifiers)

    def emit(self, event: ProgressEvent) -> None:
        for notifier in self.notifiers:
            notifier.emit(event)


class RunReporter:
    """Emits the fixed-shape events of one run onto its channel."""

    def __init__(self, notifier: ProgressNotifier, user_id: str, conversation_id: str) -> None:
        self.notifier = notifier
        self.user_id = user_id
        self.conversation_id = conversation_id

    def _emit(self, kind: EventKind, payload: Dict[str, Any]) -> None:
        event = ProgressEvent(
            kind=kind,
            user_id=self.user_id,
            conversation_id=self.conversation_id,
            payload=payload,
        )
        try:
            self.notifier.emit(event)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Dropping %s event for %s: %s", kind.value, event.channel, exc)

    def queued(self, message: str, context: Mapping[str, Any] | None = None) -> None:
        self._emit(EventKind.QUEUED, {"message": message, "context": dict(context or {})})

    def api_responding(self, iteration: int, has_tool_calls: bool = False) -> None:
        self._emit(
            EventKind.API_RESPONDING, {"iteration": iteration, "has_tool_calls": has_tool_calls}
        )

    def tools_executing(self, tool_calls: Sequence[ToolCall], iteration: int) -> None:
        self._emit(
            EventKind.TOOLS_EXECUTING,
            {
                "tool_calls": [call.model_dump(mode="json") for call in tool_calls],
                "iteration": iteration,
            },
        )

    def tools_completed(self, results: Sequence[ToolResult], iteration: int) -> None:
        self._emit(
            EventKind.TOOLS_COMPLETED,
            {"results": [r.model_dump(mode="json") for r in results], "iteration": iteration},
        )

    def completed(self, response: Mapping[str, Any], metrics: RunMetrics) -> None:
        self._emit(
            EventKind.COMPLETED,
            {"response": dict(response), "metrics": metrics.model_dump(mode="json")},
        )

    def failed(self, error: str, context: Mapping[str, Any] | None = None) -> None:
        self._emit(EventKind.FAILED, {"error": error, "context": dict(context or {})})
