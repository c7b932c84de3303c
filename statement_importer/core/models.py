"""Pydantic models for the Statement Importer.

This module defines the models that travel between the API, the CSV parser and the job processor: parsed CSV
records, the job input handed to a scheduler, the outcome a job run produces, and the response shapes of the
supporting endpoints.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

TransactionType = Literal["income", "expense"]


class ParsedRecord(BaseModel):
    """One CSV row after validation, ready to become a ledger transaction."""

    date: datetime
    description: str
    category: str = "Uncategorized"
    amount: float = Field(gt=0)
    type: TransactionType
    notes: str | None = None

    @property
    def signed_amount(self) -> float:
        """Amount as it affects the account balance."""
        return self.amount if self.type == "income" else -self.amount


class ImportJobInput(BaseModel):
    """Everything a scheduler hands to the job processor."""

    job_id: str
    user_id: int
    account_id: int
    file_name: str
    file_content: str | None = None
    file_key: str | None = None

    @model_validator(mode="after")
    def _require_content_source(self) -> "ImportJobInput":
        if self.file_content is None and self.file_key is None:
            msg = "Either file_content or file_key must be provided"
            raise ValueError(msg)
        return self


class JobOutcome(BaseModel):
    """Terminal result of one job run."""

    job_id: str
    status: str
    progress: int
    transactions_created: int = 0
    final_balance: float | None = None
    error: str | None = None
    account_update_failed: bool = False


class JobStatus(BaseModel):
    """Pydantic model representing the status of an import job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    status: str
    progress: int
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class NotificationOut(BaseModel):
    """A notification as returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    message: str
    type: str
    related_to: str | None = None
    data: dict[str, Any] | None = None
    read: bool
    created_at: datetime


class NotificationList(BaseModel):
    """A page of notifications plus the user's unread count."""

    notifications: list[NotificationOut]
    unread_count: int = Field(serialization_alias="unreadCount")


class NotificationUpdate(BaseModel):
    """Body of a mark-as-read request."""

    id: int | None = None
    mark_all: bool = Field(default=False, alias="markAll")


class AccountCreate(BaseModel):
    """Body of an account creation request."""

    name: str = Field(min_length=1)
    type: str = Field(min_length=1)
    balance: float
    currency: str = "USD"


class AccountOut(BaseModel):
    """An account as returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: str
    balance: float
    currency: str
