"""Creation job dispatch strategies.

The strategy is selected once, when the application starts:

- QueueDispatcher (serverless deployments): publishes the job to QStash, which
  delivers it back to POST /api/create/worker. Publish failures are raised to
  the caller. Redelivery belongs to the queue.
- InProcessDispatcher (long-lived process): runs the job as a supervised
  background task. The HTTP response does not wait for it, and its failures are
  captured by a FailureSink instead of surfacing to the request.

Neither strategy retries.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Protocol

import structlog

from parascene.core.clock import utcnow
from parascene.core.config import Settings
from parascene.services.exceptions import ConfigurationError
from parascene.services.queue.qstash import QStashClient
from parascene.workers.creation_job import CreationJobPayload

logger = structlog.get_logger(__name__)

JobRunner = Callable[[CreationJobPayload], Awaitable[Any]]


@dataclass
class DispatchResult:
    """How a job was handed off."""

    enqueued: bool
    message_id: str | None = None


class JobDispatcher(Protocol):
    """Hands a creation job to the job runner."""

    async def dispatch(self, payload: CreationJobPayload) -> DispatchResult: ...


class QueueDispatcher:
    """Publishes jobs to QStash addressed at the worker webhook."""

    def __init__(self, client: QStashClient, callback_url: str):
        self.client = client
        self.callback_url = callback_url

    async def dispatch(self, payload: CreationJobPayload) -> DispatchResult:
        """Publish the job.

        Raises:
            QueuePublishError: If QStash does not accept the message
        """
        message_id = await self.client.publish_json(
            self.callback_url, payload.model_dump(mode="json", exclude_none=True)
        )
        logger.info(
            "dispatch.enqueued",
            created_image_id=payload.created_image_id,
            message_id=message_id,
        )
        return DispatchResult(enqueued=True, message_id=message_id)


@dataclass
class JobFailure:
    """Background job failure captured by the FailureSink."""

    created_image_id: int
    error: str
    error_type: str
    failed_at: datetime = field(default_factory=utcnow)


class FailureSink:
    """Collects failures of detached jobs: logged, and kept in a bounded buffer."""

    def __init__(self, maxlen: int = 100):
        self.failures: deque[JobFailure] = deque(maxlen=maxlen)

    def record(self, payload: CreationJobPayload, exc: BaseException) -> None:
        failure = JobFailure(
            created_image_id=payload.created_image_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        self.failures.append(failure)
        logger.error(
            "dispatch.background_failed",
            created_image_id=payload.created_image_id,
            error=failure.error,
            error_type=failure.error_type,
            exc_info=exc,
        )


class InProcessDispatcher:
    """Runs jobs as detached, supervised asyncio tasks."""

    def __init__(self, runner: JobRunner, failure_sink: FailureSink | None = None):
        self.runner = runner
        self.failure_sink = failure_sink or FailureSink()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of jobs still running."""
        return len(self._tasks)

    async def dispatch(self, payload: CreationJobPayload) -> DispatchResult:
        task = asyncio.create_task(
            self.runner(payload), name=f"creation-job-{payload.created_image_id}"
        )
        self._tasks.add(task)

        def on_job_done(done: asyncio.Task) -> None:
            self._tasks.discard(done)

            if done.cancelled():
                logger.info("dispatch.cancelled", created_image_id=payload.created_image_id)
                return

            exc = done.exception()
            if exc is not None:
                self.failure_sink.record(payload, exc)

        task.add_done_callback(on_job_done)
        logger.info("dispatch.scheduled", created_image_id=payload.created_image_id)
        return DispatchResult(enqueued=False)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for running jobs, cancelling those still running after ``timeout``."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("dispatch.drain_cancelled", cancelled=len(pending))


def build_dispatcher(
    settings: Settings,
    runner: JobRunner,
    queue_client: QStashClient | None = None,
) -> JobDispatcher:
    """Select the dispatch strategy for this deployment.

    Args:
        settings: Application settings (deployment mode, QStash credentials)
        runner: Job runner used by the in-process strategy
        queue_client: Pre-built QStash client (tests inject one with a mock transport)

    Returns:
        QueueDispatcher in serverless deployments, InProcessDispatcher otherwise

    Raises:
        ConfigurationError: Serverless deployment without QSTASH_TOKEN
    """
    if settings.is_serverless:
        if queue_client is None:
            if not settings.qstash_token:
                raise ConfigurationError(
                    "Serverless deployment requires QSTASH_TOKEN to dispatch creation jobs"
                )
            queue_client = QStashClient(
                token=settings.qstash_token,
                base_url=settings.qstash_url,
                timeout_seconds=settings.qstash_publish_timeout_seconds,
            )
        logger.info("dispatch.strategy_selected", strategy="queue")
        return QueueDispatcher(queue_client, settings.worker_callback_url)

    logger.info("dispatch.strategy_selected", strategy="in_process")
    return InProcessDispatcher(runner)
