"""Best-effort user notifications for the import pipeline.

Every notification is written in its own session. A failure to write one is logged and dropped, so the
notifier can never change the outcome of the job that emitted it.
"""

from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from statement_importer.core.db import Notification
from statement_importer.core.utils import get_logger

RELATED_TO_UPLOAD = "transaction_upload"
RELATED_TO_BALANCE = "account_balance"

logger = get_logger("statement-importer.notifier")


class Notifier:
    """Creates Notification rows for job state transitions."""

    def __init__(self, session_factory: sessionmaker) -> None:
        """Initialize the Notifier with a session factory."""
        self.session_factory = session_factory

    def notify(
        self,
        user_id: int,
        title: str,
        message: str,
        notification_type: str = "info",
        related_to: str | None = RELATED_TO_UPLOAD,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Persist a notification; returns False instead of raising when the write fails."""
        try:
            with self.session_factory() as session:
                session.add(
                    Notification(
                        user_id=user_id,
                        title=title,
                        message=message,
                        type=notification_type,
                        related_to=related_to,
                        data=data or {},
                    )
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception(f"Failed to create notification '{title}' for user {user_id}")
            return False
        return True

    def upload_started(self, user_id: int, job_id: str, file_name: str) -> bool:
        return self.notify(
            user_id,
            "CSV Upload Started",
            f'Your file "{file_name}" is being processed in the background.',
            data={"jobId": job_id},
        )

    def upload_progress(self, user_id: int, job_id: str, progress: int, transactions_created: int) -> bool:
        return self.notify(
            user_id,
            "CSV Upload Progress",
            f"Processing: {progress}% complete ({transactions_created} transactions processed)",
            data={"jobId": job_id, "transactionsCreated": transactions_created},
        )

    def upload_completed(self, user_id: int, job_id: str, file_name: str, transactions_created: int) -> bool:
        return self.notify(
            user_id,
            "CSV Upload Complete",
            f'Successfully imported {transactions_created} transactions from "{file_name}".',
            data={"jobId": job_id, "transactionsCreated": transactions_created},
        )

    def upload_partially_completed(self, user_id: int, job_id: str, transactions_created: int) -> bool:
        return self.notify(
            user_id,
            "CSV Upload Partially Completed",
            f"Successfully imported {transactions_created} transactions, "
            "but account balance could not be updated.",
            notification_type="warning",
            data={"jobId": job_id, "transactionsCreated": transactions_created},
        )

    def upload_failed(self, user_id: int, job_id: str, error: str) -> bool:
        return self.notify(
            user_id,
            "CSV Upload Failed",
            f"There was an error processing your upload: {error}",
            notification_type="error",
            data={"jobId": job_id},
        )

    def balance_updated(self, user_id: int, job_id: str, balance: float) -> bool:
        return self.notify(
            user_id,
            "Balance Updated",
            f"Your account balance has been updated to {balance:,.2f}.",
            related_to=RELATED_TO_BALANCE,
            data={"jobId": job_id, "balance": balance},
        )
