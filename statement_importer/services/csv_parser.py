"""CSV statement parsing.

Turns the text of a bank statement export into validated `ParsedRecord` objects. The expected header is
`Date, Description, Category, Withdrawal Amount, Deposit Amount, Notes`; every row must carry a positive value
in exactly one of the two amount columns. Parsing is all-or-nothing: the first invalid row fails the whole file.
"""

import io
import math
from datetime import datetime

import pandas as pd

from statement_importer.core.models import ParsedRecord
from statement_importer.core.utils import get_logger, safe_cast, utcnow

DATE_COLUMN = "Date"
DESCRIPTION_COLUMN = "Description"
CATEGORY_COLUMN = "Category"
WITHDRAWAL_COLUMN = "Withdrawal Amount"
DEPOSIT_COLUMN = "Deposit Amount"
NOTES_COLUMN = "Notes"

DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_LOOKBACK_YEARS = 3

logger = get_logger("statement-importer.parser")


class CSVParseError(ValueError):
    """Raised when statement text cannot be turned into records."""

    def __init__(self, detail: str) -> None:
        """Prefix the detail so callers can surface the message unchanged."""
        super().__init__(f"CSV parsing error: {detail}")
        self.detail = detail


def read_statement(text: str, max_records: int | None = None) -> pd.DataFrame:
    """Load statement text into a DataFrame of trimmed strings, optionally only the first `max_records` rows."""
    text = text.lstrip("\ufeff")
    if not text.strip():
        msg = "file is empty"
        raise CSVParseError(msg)
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            index_col=False,
            nrows=max_records,
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        raise CSVParseError(str(exc)) from exc
    frame.columns = [str(column).strip() for column in frame.columns]
    for column in frame.columns:
        frame[column] = frame[column].astype(str).str.strip()
    return frame


def count_records(text: str) -> int:
    """Count the data records of a statement; quoted cells may span several lines."""
    return len(read_statement(text).index)


def parse_date(value: str, now: datetime, lookback_years: int = DEFAULT_LOOKBACK_YEARS) -> datetime:
    """Parse a statement date; unparsable or stale dates fall back to `now`."""
    timestamp = pd.to_datetime(value, errors="coerce")
    if pd.isna(timestamp) or timestamp.year < now.year - lookback_years:
        logger.info(f"Invalid or old date {value!r}, defaulting to {now.isoformat()}")
        return now
    timestamp = timestamp.tz_localize("UTC") if timestamp.tzinfo is None else timestamp.tz_convert("UTC")
    return timestamp.to_pydatetime()


def _positive_amount(value: str) -> float | None:
    amount = safe_cast(value, float) if value else None
    if amount is None or not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def parse_row(row: dict[str, str], row_number: int, now: datetime, lookback_years: int) -> ParsedRecord:
    """Validate one CSV row and map it to a ParsedRecord."""
    date_value = row.get(DATE_COLUMN, "")
    description = row.get(DESCRIPTION_COLUMN, "")
    if not date_value or not description:
        msg = f"CSV must contain Date and Description columns (row {row_number})"
        raise CSVParseError(msg)

    withdrawal = _positive_amount(row.get(WITHDRAWAL_COLUMN, ""))
    deposit = _positive_amount(row.get(DEPOSIT_COLUMN, ""))
    if withdrawal is not None and deposit is not None:
        msg = f"Row {row_number} has both Withdrawal Amount and Deposit Amount"
        raise CSVParseError(msg)
    if withdrawal is not None:
        amount, kind = withdrawal, "expense"
    elif deposit is not None:
        amount, kind = deposit, "income"
    else:
        msg = f"Each row must have either Withdrawal Amount or Deposit Amount (row {row_number})"
        raise CSVParseError(msg)

    return ParsedRecord(
        date=parse_date(date_value, now, lookback_years),
        description=description,
        category=row.get(CATEGORY_COLUMN) or DEFAULT_CATEGORY,
        amount=amount,
        type=kind,
        notes=row.get(NOTES_COLUMN) or None,
    )


def parse_csv(
    text: str,
    now: datetime | None = None,
    lookback_years: int = DEFAULT_LOOKBACK_YEARS,
    max_records: int | None = None,
) -> list[ParsedRecord]:
    """Parse statement text into records, failing on the first invalid row.

    With `max_records` only the leading records are read and validated, which is how intake checks a sample
    without cutting a quoted multi-line cell in half.
    """
    now = now or utcnow()
    frame = read_statement(text, max_records)
    records = [
        parse_row(row, row_number, now, lookback_years)
        for row_number, row in enumerate(frame.to_dict(orient="records"), start=1)
    ]
    logger.info(f"Parsed {len(records)} records")
    return records
