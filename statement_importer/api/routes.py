"""FastAPI endpoints for the Statement Importer API.

This module defines the API routes for uploading CSV statements, polling import jobs, reading and acknowledging
notifications, managing accounts, and health checks. It wires together the CSV parser, the upload storage and the
job scheduler.
"""

from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from statement_importer.api.dependencies import get_current_user, get_file_service, get_scheduler, get_settings
from statement_importer.core.db import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_TYPE_TRANSACTION_UPLOAD,
    Account,
    ImportJob,
    Notification,
    User,
    get_db,
)
from statement_importer.core.models import (
    AccountCreate,
    AccountOut,
    ImportJobInput,
    JobStatus,
    NotificationList,
    NotificationOut,
    NotificationUpdate,
)
from statement_importer.core.settings import Settings
from statement_importer.core.utils import get_logger, new_job_id
from statement_importer.services.csv_parser import CSVParseError, count_records, parse_csv
from statement_importer.services.file_service import FileService
from statement_importer.workers.scheduler import JobScheduler

router = APIRouter()
logger = get_logger("statement-importer.api")

CSV_CONTENT_TYPES = {"text/csv", "application/csv", "application/vnd.ms-excel"}


def is_csv_upload(file: UploadFile) -> bool:
    """Accept a file whose extension or declared MIME type says CSV."""
    filename = (file.filename or "").lower()
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    return filename.endswith(".csv") or content_type in CSV_CONTENT_TYPES


@router.post(
    "/transactions/upload",
    status_code=202,
    summary="Upload a bank statement CSV and start an import job",
    description=(
        "Upload a CSV bank statement for the authenticated user's default account. "
        "The first lines are validated synchronously; the full file is imported by a background job.\n\n"
        "**Request:**\n"
        "- Header: `X-User-Email`\n"
        "- Content-Type: multipart/form-data\n"
        "- Form field: `file` (CSV with `Date, Description, Category, Withdrawal Amount, Deposit Amount, Notes`)\n\n"
        "**Response:**\n"
        "- 202 Accepted: `{ 'success': true, 'jobId': '<id>', 'message': '...' }`.\n"
        "- 400 Bad Request: No file, not a CSV, or the sample does not parse.\n"
        "- 401 Unauthorized: No authenticated user.\n"
        "- 404 Not Found: Unknown user, or the user has no account.\n"
        "- 500 Internal Server Error: On unexpected errors."
    ),
    response_description="Job accepted. Returns jobId.",
    responses={
        202: {
            "description": "Job accepted. Returns jobId.",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "jobId": "job_0f6c2b8e4a5d4c3e9b1a7d2f6e8c9b0a",
                        "message": "Upload started successfully",
                    }
                }
            },
        },
        400: {
            "description": "Invalid upload.",
            "content": {"application/json": {"example": {"detail": "Only CSV files are supported"}}},
        },
        401: {"description": "Not authenticated."},
        404: {"description": "User or account not found."},
        500: {"description": "Internal server error."},
    },
)
async def upload_transactions(
    file: UploadFile | None = File(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
    file_service: FileService | None = Depends(get_file_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    """Validate an uploaded statement, record an import job and schedule it."""
    account = db.scalars(select(Account).where(Account.user_id == user.id).order_by(Account.id)).first()
    if account is None:
        raise HTTPException(404, "No accounts found for user. Create an account before importing transactions.")
    if file is None:
        raise HTTPException(400, "No file uploaded")
    logger.info(f"Received upload request: filename={file.filename}, user={user.id}")
    if not is_csv_upload(file):
        logger.warning(f"Rejected file (not CSV): {file.filename}")
        raise HTTPException(400, "Invalid file type. Only CSV files are supported.")

    raw = await file.read()
    try:
        content = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(400, "CSV file must be UTF-8 encoded") from exc
    try:
        parse_csv(
            content,
            lookback_years=settings.date_lookback_years,
            max_records=max(settings.sample_lines - 1, 1),
        )
    except CSVParseError as exc:
        logger.warning(f"Rejected file (sample failed to parse): {file.filename}: {exc}")
        raise HTTPException(400, str(exc)) from exc
    try:
        total_lines: int | None = count_records(content)
    except CSVParseError as exc:
        # The job reports the error once it reaches the broken record
        logger.warning(f"Could not count records past the sample of {file.filename}: {exc}")
        total_lines = None

    job_id = new_job_id()
    file_name = file.filename or "upload.csv"
    job = ImportJob(
        id=job_id,
        user_id=user.id,
        account_id=account.id,
        type=JOB_TYPE_TRANSACTION_UPLOAD,
        status=JOB_STATUS_PENDING,
        progress=0,
        result={"fileName": file_name, "accountId": account.id, "totalLines": total_lines},
    )
    db.add(job)
    db.commit()
    try:
        source: dict[str, str] = {"file_content": content}
        if file_service is not None:
            source = {"file_key": file_service.save_upload(user.id, job_id, content)}
            logger.info(f"Stored upload: job_id={job_id}, key={source['file_key']}")
        job_input = ImportJobInput(
            job_id=job_id, user_id=user.id, account_id=account.id, file_name=file_name, **source
        )
        scheduler.schedule(job_input)
    except Exception as exc:
        logger.exception(f"Error scheduling import job {job_id}")
        job.status = JOB_STATUS_FAILED
        job.error = f"Could not schedule import: {exc}"
        db.commit()
        raise
    logger.info(f"Import job accepted: job_id={job_id}, backend={scheduler.backend}")
    return JSONResponse(
        {"success": True, "jobId": job_id, "message": "Upload started successfully"},
        status_code=202,
    )


@router.get(
    "/background-jobs",
    summary="Get import job status",
    description=(
        "Poll import jobs of the authenticated user.\n\n"
        "**Query parameter:**\n"
        "- `jobId` (optional): The job identifier returned by /transactions/upload.\n\n"
        "**Response:**\n"
        "- 200 OK: The job when `jobId` is given, otherwise all jobs newest first.\n"
        "- 404 Not Found: If the job does not exist or belongs to another user."
    ),
    response_description="Job status and metadata.",
    responses={
        200: {
            "description": "Job found.",
            "content": {
                "application/json": {
                    "example": {
                        "id": "job_0f6c2b8e4a5d4c3e9b1a7d2f6e8c9b0a",
                        "type": "transaction_upload",
                        "status": "completed",
                        "progress": 100,
                        "result": {"transactionsCreated": 2, "accountBalanceUpdated": True, "finalBalance": 2095.5},
                        "error": None,
                        "created_at": "2025-05-18T10:30:49Z",
                        "updated_at": "2025-05-18T10:31:10Z",
                    }
                }
            },
        },
        404: {
            "description": "Job not found.",
            "content": {"application/json": {"example": {"detail": "Job not found"}}},
        },
    },
)
async def get_jobs(
    job_id: str | None = Query(default=None, alias="jobId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> JobStatus | list[JobStatus]:
    """Get one job of the user, or all of them newest first."""
    if job_id:
        job = db.scalars(select(ImportJob).where(ImportJob.id == job_id, ImportJob.user_id == user.id)).first()
        if job is None:
            raise HTTPException(404, "Job not found")
        return JobStatus.model_validate(job)
    jobs = db.scalars(
        select(ImportJob).where(ImportJob.user_id == user.id).order_by(ImportJob.created_at.desc(), ImportJob.id)
    ).all()
    return [JobStatus.model_validate(job) for job in jobs]


@router.get(
    "/background-jobs/queue",
    summary="Job scheduler status",
    description="Report which scheduling backend is active and, for the durable queue, its job counts.",
    response_description="Scheduler backend and counts.",
)
async def get_queue_status(
    _user: User = Depends(get_current_user),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    """Get scheduler statistics."""
    try:
        return scheduler.stats()
    except Exception:
        logger.exception("Error getting queue status")
        raise


@router.get(
    "/notifications",
    response_model=NotificationList,
    summary="List notifications",
    description=(
        "List notifications of the authenticated user, newest first.\n\n"
        "**Query parameters:**\n"
        "- `unread`: Only unread notifications when true.\n"
        "- `limit`, `offset`: Pagination."
    ),
)
async def list_notifications(
    unread: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationList:
    """List notifications with the unread count."""
    stmt = select(Notification).where(Notification.user_id == user.id)
    if unread:
        stmt = stmt.where(Notification.read.is_(False))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).offset(offset)
    unread_count = db.scalar(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user.id, Notification.read.is_(False))
    )
    return NotificationList(
        notifications=[NotificationOut.model_validate(n) for n in db.scalars(stmt).all()],
        unread_count=unread_count or 0,
    )


@router.get("/notifications/{notification_id}", response_model=NotificationOut, summary="Get a notification")
async def get_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NotificationOut:
    """Get a single notification of the user."""
    notification = db.scalars(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user.id)
    ).first()
    if notification is None:
        raise HTTPException(404, "Notification not found or does not belong to you")
    return NotificationOut.model_validate(notification)


@router.patch(
    "/notifications",
    summary="Mark notifications as read",
    description="Mark one notification (`id`) or all of them (`markAll: true`) as read.",
)
async def mark_notifications_read(
    body: NotificationUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    """Mark notifications as read."""
    if body.mark_all:
        db.execute(
            update(Notification)
            .where(Notification.user_id == user.id, Notification.read.is_(False))
            .values(read=True)
        )
        db.commit()
        return {"message": "All notifications marked as read"}
    if body.id is None:
        raise HTTPException(400, "Notification ID is required when not marking all as read")
    result = db.execute(
        update(Notification)
        .where(Notification.id == body.id, Notification.user_id == user.id, Notification.read.is_(False))
        .values(read=True)
    )
    db.commit()
    if result.rowcount == 0:
        raise HTTPException(404, "Notification not found or already read")
    return {"message": "Notification marked as read"}


@router.get("/accounts", summary="List accounts")
async def list_accounts(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, list[AccountOut]]:
    """List the user's active accounts ordered by name."""
    accounts = db.scalars(
        select(Account).where(Account.user_id == user.id, Account.is_active.is_(True)).order_by(Account.name)
    ).all()
    logger.info(f"Found {len(accounts)} accounts for user {user.id}")
    return {"accounts": [AccountOut.model_validate(account) for account in accounts]}


@router.post("/accounts", status_code=201, response_model=AccountOut, summary="Create an account")
async def create_account(
    body: AccountCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AccountOut:
    """Create an account for the user."""
    account = Account(
        user_id=user.id,
        name=body.name,
        type=body.type,
        balance=body.balance,
        currency=body.currency,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return AccountOut.model_validate(account)


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
