"""Scheduling backends for import jobs.

Both backends hand the same `ImportJobInput` to the same processor; they only differ in where and when it runs.
`BackgroundTaskScheduler` runs the job in the web process right after the response is sent, so a server restart
loses a job in flight. `QueueScheduler` enqueues it on a Redis-backed rq queue consumed by a separate worker,
with retries, a wall-clock timeout and removal of completed jobs.
"""

from typing import Any, Protocol

from fastapi import BackgroundTasks
from redis import Redis
from rq import Queue, Retry
from sqlalchemy.orm import sessionmaker

from statement_importer.core.models import ImportJobInput
from statement_importer.core.settings import Settings
from statement_importer.core.utils import get_logger
from statement_importer.services.file_service import FileService
from statement_importer.workers.job_runner import process_import_job
from statement_importer.workers.queue_worker import process_queued_import

logger = get_logger("statement-importer.queue")


class JobScheduler(Protocol):
    """Something that can run an import job later."""

    backend: str

    def schedule(self, job_input: ImportJobInput) -> None:
        """Arrange for the job to run without waiting for it."""

    def stats(self) -> dict[str, Any]:
        """Describe the backend and its pending work."""


class BackgroundTaskScheduler:
    """Runs jobs in-process via FastAPI background tasks."""

    backend = "background_tasks"

    def __init__(
        self,
        background_tasks: BackgroundTasks,
        session_factory: sessionmaker,
        settings: Settings,
        file_service: FileService | None = None,
    ) -> None:
        """Initialize the scheduler with the request's background task list."""
        self.background_tasks = background_tasks
        self.session_factory = session_factory
        self.settings = settings
        self.file_service = file_service

    def schedule(self, job_input: ImportJobInput) -> None:
        """Defer the job until the response has been sent."""
        self.background_tasks.add_task(
            process_import_job,
            job_input,
            self.session_factory,
            settings=self.settings,
            file_service=self.file_service,
        )
        logger.info(f"Background job scheduled in-process: job_id={job_input.job_id}")

    def stats(self) -> dict[str, Any]:
        """In-process jobs are not tracked outside the database."""
        return {"backend": self.backend}


def retry_policy(settings: Settings) -> Retry | None:
    """Exponential backoff retries: `queue_attempts` counts the first run too."""
    retries = settings.queue_attempts - 1
    if retries <= 0:
        return None
    return Retry(max=retries, interval=[settings.queue_backoff_seconds * 2**n for n in range(retries)])


def build_queue(settings: Settings) -> Queue:
    """Create the rq queue for CSV uploads."""
    connection = Redis.from_url(settings.redis_url)
    return Queue(settings.queue_name, connection=connection, default_timeout=settings.queue_job_timeout)


class QueueScheduler:
    """Enqueues jobs on a durable rq queue."""

    backend = "rq"

    def __init__(self, queue: Queue, settings: Settings) -> None:
        """Initialize the scheduler with an rq queue."""
        self.queue = queue
        self.settings = settings

    def schedule(self, job_input: ImportJobInput) -> None:
        """Enqueue the job payload for a queue worker."""
        rq_job = self.queue.enqueue(
            process_queued_import,
            job_input.model_dump(),
            job_id=job_input.job_id,
            job_timeout=self.settings.queue_job_timeout,
            result_ttl=0,
            failure_ttl=7 * 24 * 3600,
            retry=retry_policy(self.settings),
            description=f"CSV import {job_input.file_name}",
        )
        logger.info(f"Import job enqueued: job_id={job_input.job_id}, queue={self.queue.name}, rq_id={rq_job.id}")

    def stats(self) -> dict[str, Any]:
        """Report queue counts from Redis."""
        return {
            "backend": self.backend,
            "name": self.queue.name,
            "counts": {
                "queued": self.queue.count,
                "started": self.queue.started_job_registry.count,
                "failed": self.queue.failed_job_registry.count,
                "deferred": self.queue.deferred_job_registry.count,
                "scheduled": self.queue.scheduled_job_registry.count,
            },
        }
