"""Tests for the import job processor: batching, job state transitions and balance reconciliation."""

from collections.abc import Callable, Generator

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from statement_importer.core.db import Account, ImportJob, Notification, Transaction
from statement_importer.core.models import ImportJobInput
from statement_importer.core.settings import Settings
from statement_importer.workers.job_runner import ImportJobProcessor, process_import_job

HEADER = "Date,Description,Category,Withdrawal Amount,Deposit Amount,Notes\n"
EXAMPLE_CSV = (
    "Date,Description,Category,Withdrawal Amount,Deposit Amount\n"
    "01/01/2024,Coffee,Food,4.50,\n"
    "01/02/2024,Paycheck,Salary,,2000.00"
)


def build_csv(rows: int) -> str:
    """Statement with alternating 10.00 withdrawals and 25.00 deposits, described as 'Row <n>'."""
    lines = [
        f"2025-06-01,Row {n},Misc,10.00,," if n % 2 else f"2025-06-01,Row {n},Misc,,25.00,"
        for n in range(1, rows + 1)
    ]
    return HEADER + "\n".join(lines) + "\n"


def job_input_for(job: ImportJob, content: str | None = None, file_key: str | None = None) -> ImportJobInput:
    """Build the processor input for a pending job."""
    return ImportJobInput(
        job_id=job.id,
        user_id=job.user_id,
        account_id=job.account_id,
        file_name="statement.csv",
        file_content=content,
        file_key=file_key,
    )


def load_job(session_factory: sessionmaker, job_id: str) -> ImportJob:
    """Read the job row as persisted."""
    with session_factory() as session:
        return session.get(ImportJob, job_id)


def count_transactions(session_factory: sessionmaker) -> int:
    """Number of ledger rows."""
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(Transaction))


def account_balance(session_factory: sessionmaker, account_id: int) -> float:
    """Cached balance of an account."""
    with session_factory() as session:
        return session.get(Account, account_id).balance


def notification_titles(session_factory: sessionmaker) -> list[str]:
    """Titles of all notifications in creation order."""
    with session_factory() as session:
        return list(session.scalars(select(Notification.title).order_by(Notification.id)))


@pytest.fixture
def insert_failure() -> Generator[Callable[[type, Callable[[object], bool]], None], None, None]:
    """Make inserts of a mapped class fail when a predicate matches the row."""
    listeners = []

    def install(model: type, predicate: Callable[[object], bool]) -> None:
        def fail(_mapper: object, _connection: object, target: object) -> None:
            if predicate(target):
                msg = "simulated write failure"
                raise SQLAlchemyError(msg)

        event.listen(model, "before_insert", fail)
        listeners.append((model, fail))

    yield install
    for model, fail in listeners:
        event.remove(model, "before_insert", fail)


def test_example_statement_updates_balance(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """The documented example: starting at 100, a coffee and a paycheck end at 2095.50."""
    outcome = process_import_job(job_input_for(pending_job, EXAMPLE_CSV), session_factory)

    if outcome.status != "completed" or outcome.progress != 100:
        msg = f"Expected completed at 100%, got {outcome}"
        raise AssertionError(msg)
    if account_balance(session_factory, pending_job.account_id) != pytest.approx(2095.50):
        msg = "Expected final balance 2095.50"
        raise AssertionError(msg)
    with session_factory() as session:
        rows = session.scalars(select(Transaction).order_by(Transaction.id)).all()
    if [(t.type, t.amount) for t in rows] != [("expense", 4.5), ("income", 2000.0)]:
        msg = f"Unexpected transactions: {[(t.type, t.amount) for t in rows]}"
        raise AssertionError(msg)
    if any(t.account_id != pending_job.account_id or t.user_id != pending_job.user_id for t in rows):
        msg = "Transactions must belong to the job's user and account"
        raise AssertionError(msg)

    job = load_job(session_factory, pending_job.id)
    expected_result = {"transactionsCreated": 2, "accountBalanceUpdated": True, "finalBalance": 2095.5}
    if (job.status, job.progress, job.result, job.error) != ("completed", 100, expected_result, None):
        msg = f"Unexpected job state: {job.status} {job.progress} {job.result} {job.error}"
        raise AssertionError(msg)
    titles = notification_titles(session_factory)
    expected_titles = ["CSV Upload Started", "CSV Upload Progress", "CSV Upload Complete", "Balance Updated"]
    if titles != expected_titles:
        msg = f"Unexpected notifications: {titles}"
        raise AssertionError(msg)


def test_batches_are_committed_in_order(
    session_factory: sessionmaker, pending_job: ImportJob, monkeypatch: pytest.MonkeyPatch
) -> None:
    """120 records become three sequential batches of 50, 50 and 20."""
    committed: list[list[str]] = []
    original = ImportJobProcessor._commit_batch

    def recording(self: ImportJobProcessor, job_input: ImportJobInput, batch: list) -> float:
        delta = original(self, job_input, batch)
        committed.append([record.description for record in batch])
        return delta

    monkeypatch.setattr(ImportJobProcessor, "_commit_batch", recording)
    outcome = process_import_job(job_input_for(pending_job, build_csv(120)), session_factory)

    if [len(batch) for batch in committed] != [50, 50, 20]:
        msg = f"Unexpected batch sizes: {[len(batch) for batch in committed]}"
        raise AssertionError(msg)
    flattened = [description for batch in committed for description in batch]
    if flattened != [f"Row {n}" for n in range(1, 121)]:
        msg = "Batches must preserve file order"
        raise AssertionError(msg)
    # 60 withdrawals of 10 and 60 deposits of 25
    if outcome.final_balance != pytest.approx(100 - 600 + 1500):
        msg = f"Unexpected final balance {outcome.final_balance}"
        raise AssertionError(msg)
    if count_transactions(session_factory) != 120:
        msg = "Expected 120 transactions"
        raise AssertionError(msg)


def test_failed_batch_keeps_earlier_batches(
    session_factory: sessionmaker, pending_job: ImportJob, insert_failure: Callable
) -> None:
    """A failure in batch 2 leaves batch 1 committed, rolls back batch 2 and never attempts batch 3."""
    attempted: list[str] = []

    def fails_on_row_60(target: Transaction) -> bool:
        attempted.append(target.description)
        return target.description == "Row 60"

    insert_failure(Transaction, fails_on_row_60)
    outcome = process_import_job(job_input_for(pending_job, build_csv(120)), session_factory)

    if outcome.status != "failed" or not outcome.error.startswith("Error processing batch 2:"):
        msg = f"Expected batch 2 failure, got {outcome}"
        raise AssertionError(msg)
    if count_transactions(session_factory) != 50:
        msg = f"Expected only batch 1 to persist, found {count_transactions(session_factory)} rows"
        raise AssertionError(msg)
    if "Row 101" in attempted:
        msg = "Batch 3 must never be attempted"
        raise AssertionError(msg)
    if account_balance(session_factory, pending_job.account_id) != 100.0:
        msg = "The balance is only written after every batch succeeds"
        raise AssertionError(msg)
    job = load_job(session_factory, pending_job.id)
    if job.status != "failed" or job.result.get("transactionsCreated") != 50:
        msg = f"Unexpected job state: {job.status} {job.result}"
        raise AssertionError(msg)
    if notification_titles(session_factory)[-1] != "CSV Upload Failed":
        msg = "Expected a failure notification"
        raise AssertionError(msg)


def test_parse_failure_marks_job_failed(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A malformed row anywhere in the file fails the job before anything is written."""
    content = build_csv(10) + "2025-06-01,Broken,Misc,,,\n"
    outcome = process_import_job(job_input_for(pending_job, content), session_factory)

    job = load_job(session_factory, pending_job.id)
    if job.status != "failed" or not job.error.startswith("CSV parsing error:"):
        msg = f"Unexpected job state: {job.status} {job.error}"
        raise AssertionError(msg)
    if outcome.transactions_created != 0 or count_transactions(session_factory) != 0:
        msg = "No transactions may be written for an unparsable file"
        raise AssertionError(msg)
    if notification_titles(session_factory) != ["CSV Upload Started", "CSV Upload Failed"]:
        msg = f"Unexpected notifications: {notification_titles(session_factory)}"
        raise AssertionError(msg)


def test_balance_write_failure_is_partial_success(
    session_factory: sessionmaker, pending_job: ImportJob, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Transactions stay authoritative when only the cached balance cannot be written."""

    def broken_write(self: ImportJobProcessor, account_id: int, balance: float) -> None:
        msg = "could not obtain lock on row in relation accounts"
        raise SQLAlchemyError(msg)

    monkeypatch.setattr(ImportJobProcessor, "_write_balance", broken_write)
    outcome = process_import_job(job_input_for(pending_job, build_csv(60)), session_factory)

    job = load_job(session_factory, pending_job.id)
    if (job.status, job.progress) != ("completed", 95):
        msg = f"Expected completed at 95%, got {job.status} {job.progress}"
        raise AssertionError(msg)
    if job.result != {"transactionsCreated": 60, "accountUpdateFailed": True} or not job.error:
        msg = f"Unexpected partial result: {job.result} {job.error}"
        raise AssertionError(msg)
    if not outcome.account_update_failed or count_transactions(session_factory) != 60:
        msg = "Every parsed row must still exist as a transaction"
        raise AssertionError(msg)
    if account_balance(session_factory, pending_job.account_id) != 100.0:
        msg = "The balance is known-stale after a failed write"
        raise AssertionError(msg)
    if "CSV Upload Partially Completed" not in notification_titles(session_factory):
        msg = "Expected a partial success notification"
        raise AssertionError(msg)


def test_notification_failures_do_not_change_outcome(
    session_factory: sessionmaker, pending_job: ImportJob, insert_failure: Callable
) -> None:
    """Notifications are best-effort."""
    insert_failure(Notification, lambda _target: True)
    outcome = process_import_job(job_input_for(pending_job, EXAMPLE_CSV), session_factory)

    if outcome.status != "completed" or load_job(session_factory, pending_job.id).status != "completed":
        msg = f"Expected completed job, got {outcome}"
        raise AssertionError(msg)
    if notification_titles(session_factory):
        msg = "No notification could have been written"
        raise AssertionError(msg)


def test_progress_notifications_cadence(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """Progress is announced on the first batch, every fifth batch and the last one."""
    settings = Settings(batch_size=2)
    process_import_job(job_input_for(pending_job, build_csv(22)), session_factory, settings=settings)

    with session_factory() as session:
        progress = session.scalars(
            select(Notification).where(Notification.title == "CSV Upload Progress").order_by(Notification.id)
        ).all()
    created = [n.data["transactionsCreated"] for n in progress]
    if created != [2, 12, 22]:
        msg = f"Expected progress after batches 1, 6 and 11, got {created}"
        raise AssertionError(msg)
    if any(n.data["jobId"] != pending_job.id for n in progress):
        msg = "Progress notifications must carry the job id"
        raise AssertionError(msg)


def test_progress_only_moves_forward(
    session_factory: sessionmaker, pending_job: ImportJob, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Every persisted progress value is at least the previous one."""
    seen: list[int] = []
    original = ImportJobProcessor._update_job

    def recording(self: ImportJobProcessor, job_id: str, **values: object) -> None:
        original(self, job_id, **values)
        seen.append(load_job(session_factory, job_id).progress)

    monkeypatch.setattr(ImportJobProcessor, "_update_job", recording)
    process_import_job(job_input_for(pending_job, build_csv(130)), session_factory)

    if seen != sorted(seen) or seen[0] != 10 or seen[-1] != 100:
        msg = f"Unexpected progress sequence: {seen}"
        raise AssertionError(msg)


def test_terminal_job_is_not_run_again(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A completed job returns its recorded outcome instead of importing twice."""
    job_input = job_input_for(pending_job, EXAMPLE_CSV)
    first = process_import_job(job_input, session_factory)
    second = process_import_job(job_input, session_factory)

    if count_transactions(session_factory) != 2:
        msg = "A second run must not duplicate transactions"
        raise AssertionError(msg)
    if (second.status, second.transactions_created, second.final_balance) != (
        first.status,
        first.transactions_created,
        first.final_balance,
    ):
        msg = f"Expected the recorded outcome, got {second}"
        raise AssertionError(msg)


def test_unknown_job_fails(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A job id without a row cannot be processed."""
    job_input = job_input_for(pending_job, EXAMPLE_CSV).model_copy(update={"job_id": "job_missing"})
    outcome = process_import_job(job_input, session_factory)
    if outcome.status != "failed" or outcome.error != "Job not found":
        msg = f"Unexpected outcome: {outcome}"
        raise AssertionError(msg)


def test_missing_account_fails_job(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """Unexpected errors are caught at the outermost scope and fail the job."""
    job_input = job_input_for(pending_job, EXAMPLE_CSV).model_copy(update={"account_id": 9999})
    outcome = process_import_job(job_input, session_factory)

    job = load_job(session_factory, pending_job.id)
    if outcome.status != "failed" or job.status != "failed" or job.error != "Account not found":
        msg = f"Unexpected state: {outcome} / {job.status} {job.error}"
        raise AssertionError(msg)
    if notification_titles(session_factory)[-1] != "CSV Upload Failed":
        msg = "Expected a failure notification"
        raise AssertionError(msg)


def test_empty_statement_completes_without_rows(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A header-only file completes, keeps the balance and skips the completion message."""
    outcome = process_import_job(job_input_for(pending_job, HEADER), session_factory)

    if (outcome.status, outcome.transactions_created, outcome.final_balance) != ("completed", 0, 100.0):
        msg = f"Unexpected outcome: {outcome}"
        raise AssertionError(msg)
    if "CSV Upload Complete" in notification_titles(session_factory):
        msg = "Nothing was imported, so there is nothing to announce"
        raise AssertionError(msg)


class FakeFileService:
    """Stands in for S3-backed upload storage."""

    def __init__(self, files: dict[str, str]) -> None:
        """Initialize with key -> content."""
        self.files = files

    def read_upload(self, key: str) -> str:
        """Return stored content."""
        return self.files[key]

    def file_exists(self, key: str) -> bool:
        """Check for stored content."""
        return key in self.files


def test_stored_upload_is_downloaded(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """Jobs that carry a storage key read the statement through the file service."""
    key = f"uploads/{pending_job.user_id}/{pending_job.id}.csv"
    outcome = process_import_job(
        job_input_for(pending_job, file_key=key),
        session_factory,
        file_service=FakeFileService({key: EXAMPLE_CSV}),
    )
    if outcome.status != "completed" or outcome.transactions_created != 2:
        msg = f"Unexpected outcome: {outcome}"
        raise AssertionError(msg)


def test_stored_upload_without_file_service_fails(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A storage key is useless without storage."""
    outcome = process_import_job(job_input_for(pending_job, file_key="uploads/1/x.csv"), session_factory)
    if outcome.status != "failed" or "No file service" not in outcome.error:
        msg = f"Unexpected outcome: {outcome}"
        raise AssertionError(msg)


def test_missing_stored_upload_fails_job(session_factory: sessionmaker, pending_job: ImportJob) -> None:
    """A key that no longer resolves to an object fails the job before any download."""
    key = f"uploads/{pending_job.user_id}/{pending_job.id}.csv"
    outcome = process_import_job(
        job_input_for(pending_job, file_key=key),
        session_factory,
        file_service=FakeFileService({}),
    )
    if outcome.status != "failed" or outcome.error != f"Uploaded file {key} not found":
        msg = f"Unexpected outcome: {outcome}"
        raise AssertionError(msg)
    with session_factory() as session:
        created = session.scalar(select(func.count()).select_from(Transaction))
    if created != 0:
        msg = f"Expected no transactions, got {created}"
        raise AssertionError(msg)
