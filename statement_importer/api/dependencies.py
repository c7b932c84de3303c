"""FastAPI dependencies for DI (settings, DB, acting user, scheduler, upload storage).

This module provides dependency injection helpers so the endpoints receive their persistence handle, the
authenticated user and the job scheduler explicitly, and tests can override any of them.
"""

from functools import lru_cache

from fastapi import BackgroundTasks, Depends, Header, HTTPException
from rq import Queue
from sqlalchemy import select
from sqlalchemy.orm import Session

from statement_importer.core.db import SessionLocal, User, get_db
from statement_importer.core.settings import Settings, get_settings
from statement_importer.services.file_service import FileService
from statement_importer.services.s3_file_service import S3FileService
from statement_importer.workers.scheduler import BackgroundTaskScheduler, JobScheduler, QueueScheduler, build_queue


def get_current_user(
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user from the identity header set by the session layer."""
    if not x_user_email or not x_user_email.strip():
        raise HTTPException(401, "Unauthorized")
    user = db.scalars(select(User).where(User.email == x_user_email.strip())).first()
    if user is None:
        raise HTTPException(404, "User not found")
    return user


@lru_cache(maxsize=1)
def _s3_file_service() -> FileService:
    return FileService(S3FileService(get_settings()))


@lru_cache(maxsize=1)
def _rq_queue() -> Queue:
    return build_queue(get_settings())


def get_file_service(settings: Settings = Depends(get_settings)) -> FileService | None:
    """Provide S3 upload storage when it is enabled."""
    if settings.upload_storage != "s3":
        return None
    return _s3_file_service()


def get_scheduler(
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    file_service: FileService | None = Depends(get_file_service),
) -> JobScheduler:
    """Provide the configured job scheduler."""
    if settings.job_backend == "rq":
        return QueueScheduler(_rq_queue(), settings)
    return BackgroundTaskScheduler(background_tasks, SessionLocal, settings, file_service)
