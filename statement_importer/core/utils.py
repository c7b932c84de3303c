"""Shared utility functions for the Statement Importer project."""

import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path

import colorlog

ROOT_LOGGER_NAME = "statement-importer"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a project logger; handlers live on the project root logger so children propagate to it."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = colorlog.ColoredFormatter(
            f"%(log_color)s{LOG_FORMAT}",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    root.propagate = False
    return logging.getLogger(name)


def setup_file_logging(log_file: str | Path) -> None:
    """Add a persistent (not colorized) file handler to the project root logger."""
    path = Path(log_file)
    ensure_dir(path.parent)
    logger = get_logger(ROOT_LOGGER_NAME)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)


def ensure_dir(path: str | Path) -> None:
    """Ensure a directory exists (like mkdir -p)."""
    Path(path).mkdir(parents=True, exist_ok=True)


def safe_cast(val: object, to_type: type, default: object = None) -> object:
    """Safely cast a value to a type, returning default on failure."""
    try:
        return to_type(val)
    except (ValueError, TypeError):
        return default


def utcnow() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_job_id() -> str:
    """Generate an opaque identifier for an import job."""
    return f"job_{uuid.uuid4().hex}"
