"""DB models, engine and session helpers for the Statement Importer."""

from collections.abc import Generator

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from statement_importer.core.utils import utcnow

Base = declarative_base()

JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
TERMINAL_JOB_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

JOB_TYPE_TRANSACTION_UPLOAD = "transaction_upload"


class User(Base):
    """An application user; owns accounts, transactions, jobs and notifications."""

    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Account(Base):
    """A ledger account whose cached balance is reconciled after each import."""

    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="checking")
    balance = Column(Float, nullable=False, default=0.0)
    currency = Column(String, nullable=False, default="USD")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Transaction(Base):
    """A persisted ledger entry. Amount is positive; `type` carries the sign."""

    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), index=True, nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    description = Column(String, nullable=False)
    category = Column(String, nullable=False, default="Uncategorized")
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ImportJob(Base):
    """A background CSV import, tracked by status and progress."""

    __tablename__ = "background_jobs"
    id = Column(String, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    type = Column(String, nullable=False, default=JOB_TYPE_TRANSACTION_UPLOAD)
    status = Column(String, nullable=False, default=JOB_STATUS_PENDING)
    progress = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Notification(Base):
    """A user-facing status message; written by the pipeline, never read by it."""

    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String, nullable=False, default="info")
    related_to = Column(String, nullable=True)
    data = Column(JSON, nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


def get_engine(database_url: str | None = None, pool_timeout: int | None = None) -> Engine:
    """Create a SQLAlchemy engine using the configured database URL."""
    from statement_importer.core.settings import get_settings

    settings = get_settings()
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    # Bounds how long a batch waits for a connection before its transaction can start
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_timeout=pool_timeout if pool_timeout is not None else settings.batch_max_wait_seconds,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to the given engine."""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(engine)


engine = get_engine()
SessionLocal = make_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session and close it afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
