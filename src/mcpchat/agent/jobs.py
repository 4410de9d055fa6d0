"""
Background execution of orchestration runs (asynchronous mode).

The triggering request returns as soon as a :class:`ChatJob` is queued; progress and the final
result are delivered only through the run's progress channel.  A job re-runs the whole loop when
the run raises an unexpected fault (worker or store trouble), up to ``tries`` attempts with a fixed
backoff.  Failed runs (upstream errors, loop detection, ...) are terminal and never retried here.
"""

import logging
import queue
import threading
import time
import uuid
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from mcpchat.agent.notifier import RunReporter
from mcpchat.agent.orchestrator import OrchestrationLoop
from mcpchat.config import settings
from mcpchat.core.schema import (
    RunOutcome,
    channel_name,
)

logger = logging.getLogger(__name__)


class ChatJob(BaseModel):
    """Everything a worker needs to run one conversation turn."""

    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    conversation_id: str
    message: str
    system_prompt: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    tolerate_catalog_errors: bool = False

    @property
    def channel(self) -> str:
        return channel_name(self.user_id, self.conversation_id)


class ChatJobQueue:
    """Worker threads consuming :class:`ChatJob` items."""

    def __init__(
        self,
        loop: OrchestrationLoop,
        workers: int | None = None,
        tries: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.loop = loop
        self.workers = settings.JOB_WORKERS if workers is None else workers
        self.tries = max(1, settings.JOB_TRIES if tries is None else tries)
        self.backoff_seconds = (
            settings.JOB_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._queue: "queue.Queue[Optional[ChatJob]]" = queue.Queue()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        if self._threads:
            return
        for i in range(self.workers):
            thread = threading.Thread(target=self._work, name=f"chat-worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d chat worker(s)", self.workers)

    def stop(self) -> None:
        for _ in self._threads:
            self._queue.put(None)
        for thread in self._threads:
            thread.join()
        self._threads.clear()

    def join(self) -> None:
        """Block until every queued job has been processed."""
        self._queue.join()

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #
    def dispatch(self, job: ChatJob) -> ChatJob:
        """Announce *job* on its channel and queue it for a worker."""
        RunReporter(self.loop.notifier, job.user_id, job.conversation_id).queued(
            "Processing your message...", {"iteration": 0, "job_id": job.job_id}
        )
        self._queue.put(job)
        logger.info(
            "Dispatched async job %s (user=%s, conversation=%s)",
            job.job_id,
            job.user_id,
            job.conversation_id,
        )
        return job

    def process(self, job: ChatJob) -> Optional[RunOutcome]:
        """Run *job*, retrying the whole run on unexpected faults."""
        for attempt in range(1, self.tries + 1):
            try:
                outcome = self.loop.run(
                    job.user_id,
                    job.conversation_id,
                    job.message,
                    system_prompt=job.system_prompt,
                    options=job.options,
                    tolerate_catalog_errors=job.tolerate_catalog_errors,
                )
            except Exception as exc:  # pylint: disable=broad-except
                if attempt >= self.tries:
                    logger.exception("Job %s failed permanently", job.job_id)
                    RunReporter(self.loop.notifier, job.user_id, job.conversation_id).failed(
                        f"Job failed after multiple retries: {exc}", {"attempts": attempt}
                    )
                    return None
                logger.warning(
                    "Job %s attempt %d/%d crashed (%s), retrying in %.1fs",
                    job.job_id,
                    attempt,
                    self.tries,
                    exc,
                    self.backoff_seconds,
                )
                self._sleep(self.backoff_seconds)
                continue
            logger.info("Job %s finished with status %s", job.job_id, outcome.status.value)
            return outcome
        return None  # pragma: no cover

    def _work(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is None:
                    return
                self.process(job)
            finally:
                self._queue.task_done()
