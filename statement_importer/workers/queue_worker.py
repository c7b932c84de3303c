"""rq consumer for queued CSV imports.

Run in a separate process from the web server:

    python -m statement_importer.workers.queue_worker

The processor records every failure on the import job itself, and a job in a terminal state is never run again.
A retry of a failed import therefore re-raises the recorded error without touching the ledger, so rq still files
the job under its failed registry. The retry policy only does real work when a worker dies mid-job and leaves the
import in `processing`; the next attempt then resumes from the start and may re-import committed batches.
"""

from functools import lru_cache
from typing import Any

from redis import Redis
from rq import Queue, Worker
from sqlalchemy.orm import sessionmaker

from statement_importer.core.db import JOB_STATUS_FAILED, get_engine, make_session_factory
from statement_importer.core.models import ImportJobInput
from statement_importer.core.settings import get_settings
from statement_importer.core.utils import get_logger, setup_file_logging
from statement_importer.services.file_service import FileService
from statement_importer.services.s3_file_service import S3FileService
from statement_importer.workers.job_runner import process_import_job

logger = get_logger("statement-importer.queue")


class ImportJobFailedError(RuntimeError):
    """Raised so rq records a failed import and applies its retry policy."""


@lru_cache(maxsize=1)
def worker_session_factory(database_url: str) -> sessionmaker:
    """Session factory owned by the worker process."""
    return make_session_factory(get_engine(database_url))


def process_queued_import(payload: dict[str, Any]) -> dict[str, Any]:
    """Run one queued import; invoked by rq in the worker process."""
    settings = get_settings()
    job_input = ImportJobInput.model_validate(payload)
    logger.info(f"[Queue] Starting processing for job {job_input.job_id}")
    file_service = FileService(S3FileService(settings)) if job_input.file_key else None
    outcome = process_import_job(
        job_input,
        worker_session_factory(settings.database_url),
        settings=settings,
        file_service=file_service,
    )
    if outcome.status == JOB_STATUS_FAILED:
        raise ImportJobFailedError(outcome.error or "Import failed")
    logger.info(f"[Queue] Job {job_input.job_id} finished with status {outcome.status}")
    return outcome.model_dump()


def main() -> None:
    """Start an rq worker for the upload queue."""
    settings = get_settings()
    setup_file_logging(settings.log_file)
    connection = Redis.from_url(settings.redis_url)
    queue = Queue(settings.queue_name, connection=connection)
    logger.info(f"CSV upload worker started on queue '{settings.queue_name}'. Waiting for jobs...")
    # The scheduler is what re-enqueues retries after their backoff interval
    Worker([queue], connection=connection).work(with_scheduler=True)


if __name__ == "__main__":
    main()
