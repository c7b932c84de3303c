"""Main entrypoint and application factory for the Statement Importer API.

This module initializes the FastAPI application, configures logging, creates the database tables, and exposes the
Scalar API reference endpoint for interactive OpenAPI documentation. It also includes the main entrypoint for
running the app with Uvicorn.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from scalar_fastapi import get_scalar_api_reference
from sqlalchemy.exc import SQLAlchemyError

from statement_importer.api.routes import router
from statement_importer.core.db import engine, init_db
from statement_importer.core.settings import get_settings
from statement_importer.core.utils import get_logger, setup_file_logging

logger = get_logger("statement-importer")
setup_file_logging(get_settings().log_file)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler to create the ledger, job and notification tables."""
    _ = app  # Silence unused argument warning
    try:
        init_db(engine)
    except SQLAlchemyError:
        logger.exception("Failed to create database tables")
        raise
    logger.info(f"Statement Importer started with job backend '{get_settings().job_backend}'")
    yield


app = FastAPI(
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    title="Statement Importer API",
    description="""
    The Statement Importer API imports bank statement CSV files into a personal-finance ledger in the background.

    **Endpoints:**
    - `POST /transactions/upload`: Upload a CSV statement and start an import job. Returns a `jobId`.
    - `GET /background-jobs`: Poll one import job (`?jobId=`) or list all of them.
    - `GET /background-jobs/queue`: Job scheduler status.
    - `GET /notifications`, `PATCH /notifications`: Import progress and outcome messages.
    - `GET /accounts`, `POST /accounts`: Accounts that statements are imported into.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
    version="1.0.0",
)
app.include_router(router)


@app.get("/scalar", include_in_schema=False)
async def scalar_docs() -> HTMLResponse:
    """Return Scalar API reference."""
    return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
