"""CSV bank statement and manual records parser."""

import io
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

import pandas as pd

from bankrecon.config import ImportConfig
from bankrecon.engine.errors import ValidationError
from bankrecon.engine.models import (
    NormalizedCandidate,
    RowFailure,
    TransactionType,
    round_to_minor_unit,
)
from bankrecon.engine.text import normalize_text

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("date", "description", "amount")
OPTIONAL_FIELDS = (
    "fee", "balance", "state", "product", "type", "currency", "completed_date", "category",
)

# Row type values that name a transaction direction outright
TYPE_NAMES = {
    "INCOME": TransactionType.INCOME,
    "EXPENDITURE": TransactionType.EXPENDITURE,
    "EXPENSE": TransactionType.EXPENDITURE,
}

# Fingerprints only look at the start of the description
FINGERPRINT_DESCRIPTION_LENGTH = 50


def fingerprint(txn_date: date, amount: Decimal, normalized_description: str,
                currency: Optional[str] = None) -> str:
    """
    Build the duplicate-detection key of a transaction.

    The key depends only on the calendar date, the amount rounded to the
    currency's minor unit and the normalized description, so re-importing the
    same statement always produces the same keys.
    """
    amount_key = round_to_minor_unit(amount, currency)
    description_key = normalized_description[:FINGERPRINT_DESCRIPTION_LENGTH]
    return f"{txn_date.isoformat()}_{amount_key}_{description_key}"


class NormalizedBatch:
    """
    Lazy, restartable sequence of normalized candidates.

    Each iteration walks the underlying rows from the start and yields the same
    candidates in the same order. Rows that cannot be normalized are recorded
    in ``failures`` (reset at the start of every pass) and skipped; rows whose
    state is not accepted are counted in ``excluded``.
    """

    def __init__(self, parser: "CSVParser", frame: pd.DataFrame):
        self._parser = parser
        self._frame = frame
        self.failures: List[RowFailure] = []
        self.excluded = 0

    def __iter__(self) -> Iterator[NormalizedCandidate]:
        self.failures = []
        self.excluded = 0
        # Row numbers are 1-based and count the header, as a spreadsheet shows them
        for position, (_, row) in enumerate(self._frame.iterrows(), start=2):
            if not self._parser.is_accepted_state(row):
                self.excluded += 1
                continue
            try:
                yield self._parser.convert_row(row, position)
            except (ValueError, InvalidOperation) as e:
                logger.warning("Skipping row %s: %s", position, e)
                self.failures.append(RowFailure(row_number=position, reason=str(e)))

    def __len__(self) -> int:
        return len(self._frame)

    @property
    def total_rows(self) -> int:
        return len(self._frame)


class CSVParser:
    """Parse delimited bank exports and manual records into normalized candidates."""

    # Default column mapping (Revolut-style export headers)
    DEFAULT_MAPPING: Dict[str, str] = {
        "date": "Started Date",
        "description": "Description",
        "amount": "Amount",
        "fee": "Fee",
        "balance": "Balance",
        "state": "State",
        "product": "Product",
        "type": "Type",
        "currency": "Currency",
        "completed_date": "Completed Date",
    }

    def __init__(
        self,
        column_mapping: Optional[Dict[str, str]] = None,
        config: Optional[ImportConfig] = None,
    ):
        """
        Initialize parser with optional custom column mapping.

        Args:
            column_mapping: Dict mapping our field names to CSV column names.
                          Example: {"date": "Date", "amount": "Value"}.
                          Only the required fields and the mapped optional
                          fields are read.
            config: Delimiter, date formats and row filters.
        """
        self.column_mapping = column_mapping or self.DEFAULT_MAPPING
        self.config = config or ImportConfig()
        unknown = set(self.column_mapping) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown mapped fields: {', '.join(sorted(unknown))}")

    def parse(self, file_path: str | Path, **kwargs) -> NormalizedBatch:
        """
        Parse a CSV file.

        Args:
            file_path: Path to the CSV file.
            **kwargs: Additional arguments passed to pandas.read_csv.

        Returns:
            A NormalizedBatch over the file's rows.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValidationError: If a mapped column is missing.
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        if file_path.suffix.lower() not in (".csv", ".txt", ".tsv"):
            raise ValidationError(f"Unsupported file format: {file_path.suffix}. Use .csv")

        return self._to_batch(self._read(file_path, **kwargs))

    def parse_text(self, content: str, **kwargs) -> NormalizedBatch:
        """Parse CSV content already held in memory."""
        return self._to_batch(self._read(io.StringIO(content), **kwargs))

    def parse_rows(self, rows: Iterable[Mapping[str, object]]) -> NormalizedBatch:
        """Parse raw rows given as mappings of column name to cell value."""
        frame = pd.DataFrame(list(rows), dtype=str).fillna("")
        return self._to_batch(frame)

    def _read(self, source, **kwargs) -> pd.DataFrame:
        options = {
            "sep": self.config.delimiter,
            "dtype": str,
            "keep_default_na": False,
            "skipinitialspace": True,
        }
        options.update(kwargs)
        return pd.read_csv(source, **options)

    def _to_batch(self, frame: pd.DataFrame) -> NormalizedBatch:
        frame.columns = [str(c).strip() for c in frame.columns]
        self._validate_columns(frame)
        return NormalizedBatch(self, frame)

    def _validate_columns(self, df: pd.DataFrame) -> None:
        """
        Validate that every mapped column exists in the dataframe.

        Raises:
            ValidationError: If mapped columns are missing.
        """
        missing = []
        for field in REQUIRED_FIELDS:
            col_name = self.column_mapping.get(field, field)
            if col_name not in df.columns:
                missing.append(f"{field} (expected column: '{col_name}')")
        for field in OPTIONAL_FIELDS:
            col_name = self.column_mapping.get(field)
            if col_name is not None and col_name not in df.columns:
                missing.append(f"{field} (expected column: '{col_name}')")

        if missing:
            available = ", ".join(df.columns.tolist())
            raise ValidationError(
                f"Missing mapped columns: {', '.join(missing)}. "
                f"Available columns: {available}. "
                f"Use column_mapping parameter to map your columns."
            )

    def _cell(self, row: pd.Series, field: str) -> str:
        col_name = self.column_mapping.get(field, field if field in REQUIRED_FIELDS else None)
        if col_name is None or col_name not in row.index:
            return ""
        value = row[col_name]
        if value is None or (isinstance(value, float) and pd.isna(value)):
            return ""
        return str(value).strip()

    def is_accepted_state(self, row: pd.Series) -> bool:
        """Rows are kept unless a mapped state column says otherwise."""
        if "state" not in self.column_mapping:
            return True
        state = self._cell(row, "state").upper()
        return state in self.config.accepted_states

    def convert_row(self, row: pd.Series, row_number: int) -> NormalizedCandidate:
        """Convert a single row to a NormalizedCandidate."""
        for field in REQUIRED_FIELDS:
            if not self._cell(row, field):
                raise ValueError(f"Missing value for required field '{field}'")

        txn_date = self._parse_date(self._cell(row, "date"))
        amount = self._parse_amount(self._cell(row, "amount"))
        description = self._cell(row, "description")
        currency = (self._cell(row, "currency") or self.config.default_currency).upper()
        normalized = normalize_text(description)

        fee_raw = self._cell(row, "fee")
        balance_raw = self._cell(row, "balance")
        completed_raw = self._cell(row, "completed_date")

        return NormalizedCandidate(
            row_number=row_number,
            date=txn_date,
            amount=amount,
            currency=currency,
            description=description,
            normalized_description=normalized,
            fingerprint=fingerprint(txn_date, amount, normalized, currency),
            type=self._infer_type(amount, self._cell(row, "type")),
            fee=self._parse_amount(fee_raw) if fee_raw else Decimal("0"),
            balance=self._parse_amount(balance_raw) if balance_raw else None,
            state=self._cell(row, "state").upper() or None,
            product=self._cell(row, "product") or None,
            completed_date=self._parse_date(completed_raw) if completed_raw else None,
            category_name=self._cell(row, "category") or None,
        )

    def _parse_date(self, value: str) -> date:
        """Parse a calendar date from the configured formats."""
        for fmt in self.config.date_formats:
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                continue

        raise ValueError(f"Could not parse date: {value!r}")

    def _parse_amount(self, value: str) -> Decimal:
        """Parse amount handling various number formats."""
        str_value = value.replace("£", "").replace("€", "").replace("$", "")
        str_value = str_value.replace(" ", "").strip()

        # Handle European format: 1.234,56
        if "," in str_value and "." in str_value:
            if str_value.rindex(",") > str_value.rindex("."):
                str_value = str_value.replace(".", "").replace(",", ".")
            else:
                str_value = str_value.replace(",", "")

        # Handle comma as decimal separator: 1234,56
        elif "," in str_value:
            str_value = str_value.replace(",", ".")

        try:
            amount = Decimal(str_value)
        except InvalidOperation:
            raise ValueError(f"Could not parse amount: {value!r}") from None
        if not amount.is_finite():
            raise ValueError(f"Could not parse amount: {value!r}")
        return amount

    def _infer_type(self, amount: Decimal, row_type: str) -> TransactionType:
        """
        Take the transaction type from the row type when it names one, else
        from the sign of the amount.
        """
        normalized = row_type.upper().replace(" ", "_")
        if normalized and normalized in self.config.capital_types:
            return TransactionType.CAPITAL
        if normalized in TYPE_NAMES:
            return TYPE_NAMES[normalized]
        return TransactionType.INCOME if amount > 0 else TransactionType.EXPENDITURE
