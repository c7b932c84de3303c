"""Background job orchestration for CSV statement imports.

A job moves `pending -> processing -> completed | failed`. Records are committed in fixed-size batches, each in
its own database transaction and strictly in order. A failed batch stops the job but leaves earlier batches in
the ledger: the import is at-least-once and not atomic across batches. The account balance is accumulated in
memory and written once at the end; if only that write fails the job still completes, flagged with
`accountUpdateFailed`.
"""

from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session, sessionmaker

from statement_importer.core.db import (
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PROCESSING,
    TERMINAL_JOB_STATUSES,
    Account,
    ImportJob,
    Transaction,
)
from statement_importer.core.models import ImportJobInput, JobOutcome, ParsedRecord
from statement_importer.core.settings import Settings, get_settings
from statement_importer.core.utils import get_logger
from statement_importer.services.csv_parser import CSVParseError, parse_csv
from statement_importer.services.file_service import FileService
from statement_importer.services.notifier import Notifier

logger = get_logger("statement-importer.worker")

PROGRESS_STARTED = 10
PROGRESS_PARSED = 20
PROGRESS_BATCHES_START = 30
PROGRESS_BATCHES_SPAN = 60
PROGRESS_BALANCE = 90
PROGRESS_PARTIAL = 95
PROGRESS_DONE = 100


class ImportJobProcessor:
    """Runs one import job against an explicitly provided session factory."""

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Notifier,
        settings: Settings,
        file_service: FileService | None = None,
    ) -> None:
        """Initialize the processor with its persistence handle and collaborators."""
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings
        self.file_service = file_service

    def run(self, job_input: ImportJobInput) -> JobOutcome:
        """Run the job to a terminal state and return its outcome."""
        job_id = job_input.job_id
        logger.info(f"Starting import job: {job_id}, file: {job_input.file_name}, account: {job_input.account_id}")
        progress = 0
        try:
            with self.session_factory() as session:
                job = session.get(ImportJob, job_id)
                if job is None:
                    logger.error(f"Import job not found: {job_id}")
                    return JobOutcome(job_id=job_id, status=JOB_STATUS_FAILED, progress=0, error="Job not found")
                if job.status in TERMINAL_JOB_STATUSES:
                    logger.warning(f"Import job {job_id} already {job.status}, not running it again")
                    return self._recorded_outcome(job)
            progress = PROGRESS_STARTED
            return self._process(job_input)
        except Exception as exc:
            logger.exception(f"Error in import job {job_id}")
            return self._fail(job_input, str(exc), progress)

    def _process(self, job_input: ImportJobInput) -> JobOutcome:
        job_id, user_id = job_input.job_id, job_input.user_id
        self._update_job(job_id, status=JOB_STATUS_PROCESSING, progress=PROGRESS_STARTED)
        self.notifier.upload_started(user_id, job_id, job_input.file_name)

        content = self._read_content(job_input)
        try:
            records = parse_csv(content, lookback_years=self.settings.date_lookback_years)
        except CSVParseError as exc:
            logger.warning(f"Parsing failed for job {job_id}: {exc}")
            return self._fail(job_input, str(exc), PROGRESS_STARTED)
        logger.info(f"Successfully parsed {len(records)} transactions for job {job_id}")
        self._update_job(job_id, progress=PROGRESS_PARSED)

        size = self.settings.batch_size
        batches = [records[i : i + size] for i in range(0, len(records), size)]
        logger.info(f"Split {len(records)} transactions into {len(batches)} batches of max {size} for job {job_id}")

        balance = self._read_balance(job_input.account_id)
        logger.info(f"Starting balance: {balance} for job {job_id}")
        self._update_job(job_id, progress=PROGRESS_BATCHES_START)

        progress = PROGRESS_BATCHES_START
        total_created = 0
        every = max(self.settings.progress_notification_every, 1)
        for index, batch in enumerate(batches):
            logger.info(f"Processing batch {index + 1} of {len(batches)} ({len(batch)} transactions) for job {job_id}")
            try:
                balance += self._commit_batch(job_input, batch)
            except Exception as exc:
                logger.exception(f"Error processing batch {index + 1} for job {job_id}")
                error = f"Error processing batch {index + 1}: {exc}"
                return self._fail(job_input, error, progress, transactions_created=total_created)
            total_created += len(batch)
            progress = PROGRESS_BATCHES_START + (PROGRESS_BATCHES_SPAN * (index + 1)) // len(batches)
            self._update_job(job_id, progress=progress)
            logger.info(f"Batch {index + 1} committed for job {job_id}: {len(batch)} transactions")
            if index % every == 0 or index == len(batches) - 1:
                self.notifier.upload_progress(user_id, job_id, progress, total_created)

        return self._reconcile_balance(job_input, balance, total_created)

    def _reconcile_balance(self, job_input: ImportJobInput, balance: float, total_created: int) -> JobOutcome:
        job_id, user_id = job_input.job_id, job_input.user_id
        self._update_job(job_id, progress=PROGRESS_BALANCE)
        try:
            logger.info(f"Updating account {job_input.account_id} balance to {balance} for job {job_id}")
            self._write_balance(job_input.account_id, balance)
        except Exception as exc:
            logger.exception(f"Error updating account balance for job {job_id}")
            error = f"Transactions were created but account balance could not be updated: {exc}"
            self._update_job(
                job_id,
                status=JOB_STATUS_COMPLETED,
                progress=PROGRESS_PARTIAL,
                error=error,
                result={"transactionsCreated": total_created, "accountUpdateFailed": True},
            )
            self.notifier.upload_partially_completed(user_id, job_id, total_created)
            return JobOutcome(
                job_id=job_id,
                status=JOB_STATUS_COMPLETED,
                progress=PROGRESS_PARTIAL,
                transactions_created=total_created,
                error=error,
                account_update_failed=True,
            )

        self._update_job(
            job_id,
            status=JOB_STATUS_COMPLETED,
            progress=PROGRESS_DONE,
            result={"transactionsCreated": total_created, "accountBalanceUpdated": True, "finalBalance": balance},
        )
        if total_created > 0:
            self.notifier.upload_completed(user_id, job_id, job_input.file_name, total_created)
        self.notifier.balance_updated(user_id, job_id, balance)
        logger.info(f"Import job {job_id} completed successfully. Created {total_created} transactions")
        return JobOutcome(
            job_id=job_id,
            status=JOB_STATUS_COMPLETED,
            progress=PROGRESS_DONE,
            transactions_created=total_created,
            final_balance=balance,
        )

    def _read_content(self, job_input: ImportJobInput) -> str:
        if job_input.file_content is not None:
            return job_input.file_content
        if self.file_service is None:
            msg = f"No file service configured to read stored upload {job_input.file_key}"
            raise RuntimeError(msg)
        if not self.file_service.file_exists(job_input.file_key):
            msg = f"Uploaded file {job_input.file_key} not found"
            raise FileNotFoundError(msg)
        logger.info(f"Downloading stored upload: {job_input.file_key}")
        return self.file_service.read_upload(job_input.file_key)

    def _read_balance(self, account_id: int) -> float:
        with self.session_factory() as session:
            account = session.get(Account, account_id)
            if account is None:
                msg = "Account not found"
                raise LookupError(msg)
            return account.balance

    def _configure_batch_transaction(self, session: Session) -> None:
        """Use READ COMMITTED and a statement timeout where the backend supports them."""
        if session.get_bind().dialect.name != "postgresql":
            return
        session.connection(execution_options={"isolation_level": "READ COMMITTED"})
        session.execute(text(f"SET LOCAL statement_timeout = {int(self.settings.batch_timeout_ms)}"))

    def _commit_batch(self, job_input: ImportJobInput, batch: list[ParsedRecord]) -> float:
        """Insert one batch atomically and return its effect on the balance."""
        delta = 0.0
        with self.session_factory() as session, session.begin():
            self._configure_batch_transaction(session)
            for record in batch:
                session.add(
                    Transaction(
                        user_id=job_input.user_id,
                        account_id=job_input.account_id,
                        date=record.date,
                        description=record.description,
                        category=record.category,
                        amount=record.amount,
                        type=record.type,
                        notes=record.notes,
                    )
                )
                delta += record.signed_amount
        return delta

    def _write_balance(self, account_id: int, balance: float) -> None:
        with self.session_factory() as session:
            account = session.get(Account, account_id)
            if account is None:
                msg = "Account not found"
                raise LookupError(msg)
            account.balance = balance
            session.commit()

    def _update_job(self, job_id: str, **values: Any) -> None:
        """Persist job fields; progress never moves backwards."""
        with self.session_factory() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                msg = f"Job {job_id} disappeared while processing"
                raise LookupError(msg)
            if "progress" in values:
                values["progress"] = max(values["progress"], job.progress or 0)
            for field, value in values.items():
                setattr(job, field, value)
            session.commit()

    def _fail(
        self,
        job_input: ImportJobInput,
        error: str,
        progress: int,
        transactions_created: int = 0,
    ) -> JobOutcome:
        job_id = job_input.job_id
        values: dict[str, Any] = {"status": JOB_STATUS_FAILED, "error": error}
        if transactions_created:
            with self.session_factory() as session:
                job = session.get(ImportJob, job_id)
                recorded = dict(job.result or {}) if job is not None else {}
            values["result"] = {**recorded, "transactionsCreated": transactions_created}
        self._update_job(job_id, **values)
        self.notifier.upload_failed(job_input.user_id, job_id, error)
        return JobOutcome(
            job_id=job_id,
            status=JOB_STATUS_FAILED,
            progress=progress,
            transactions_created=transactions_created,
            error=error,
        )

    @staticmethod
    def _recorded_outcome(job: ImportJob) -> JobOutcome:
        result = job.result or {}
        return JobOutcome(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            transactions_created=result.get("transactionsCreated", 0),
            final_balance=result.get("finalBalance"),
            error=job.error,
            account_update_failed=bool(result.get("accountUpdateFailed", False)),
        )


def process_import_job(
    job_input: ImportJobInput,
    session_factory: sessionmaker,
    notifier: Notifier | None = None,
    settings: Settings | None = None,
    file_service: FileService | None = None,
) -> JobOutcome:
    """Run one import job; the same entry point serves every scheduling backend."""
    processor = ImportJobProcessor(
        session_factory,
        notifier or Notifier(session_factory),
        settings or get_settings(),
        file_service,
    )
    return processor.run(job_input)
