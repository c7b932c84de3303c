"""Shared fixtures: tests run against a throwaway SQLite database with in-process background jobs."""

import os
import tempfile
from collections.abc import Generator
from pathlib import Path

_TMP_DIR = Path(tempfile.mkdtemp(prefix="statement-importer-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["JOB_BACKEND"] = "background_tasks"
os.environ["UPLOAD_STORAGE"] = "inline"
os.environ["LOG_FILE"] = str(_TMP_DIR / "import_processing.log")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from main import app  # noqa: E402
from statement_importer.core.db import Account, Base, ImportJob, SessionLocal, User, engine  # noqa: E402
from statement_importer.core.utils import new_job_id  # noqa: E402

USER_EMAIL = "alice@example.com"
STARTING_BALANCE = 100.0


@pytest.fixture(autouse=True)
def fresh_db() -> Generator[None, None, None]:
    """Recreate every table before each test."""
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def session_factory() -> sessionmaker:
    """Session factory bound to the test database."""
    return SessionLocal


@pytest.fixture
def client() -> Generator[TestClient, None, None]:
    """API client; background tasks finish before each request returns."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user(session_factory: sessionmaker) -> User:
    """A user without accounts."""
    with session_factory() as session:
        user = User(email=USER_EMAIL, name="Alice")
        session.add(user)
        session.commit()
        return user


@pytest.fixture
def account(session_factory: sessionmaker, user: User) -> Account:
    """The user's default account."""
    with session_factory() as session:
        account = Account(user_id=user.id, name="Everyday", type="checking", balance=STARTING_BALANCE)
        session.add(account)
        session.commit()
        return account


@pytest.fixture
def auth_headers(user: User) -> dict[str, str]:
    """Identity header for the test user."""
    return {"X-User-Email": user.email}


@pytest.fixture
def pending_job(session_factory: sessionmaker, user: User, account: Account) -> ImportJob:
    """An import job as the intake handler leaves it."""
    with session_factory() as session:
        job = ImportJob(
            id=new_job_id(),
            user_id=user.id,
            account_id=account.id,
            status="pending",
            progress=0,
            result={"fileName": "statement.csv", "accountId": account.id, "totalLines": 0},
        )
        session.add(job)
        session.commit()
        return job
