"""DuckDB-backed loading and orchestration for reconciliation runs."""

import datetime
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set
from zipfile import BadZipFile

import duckdb
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from arithmetic import check_arithmetic
from matcher import reconcile
from models import ArithmeticIssue, ReconConfig, ReconResult, Record, Side, make_records
from normalize import normalize_amount, normalize_key

logger = logging.getLogger(__name__)

LEFT_TABLE = "source_a"
RIGHT_TABLE = "source_b"

CSV_SUFFIXES = (".csv",)
EXCEL_SUFFIXES = (".xlsx", ".xlsm")

# Header fragments that mark an amount column, tried against headers in file order
AMOUNT_PATTERNS = ("amount", "сумма", "премия", "sum")

# openpyxl failures for files that are not readable workbooks
WORKBOOK_ERRORS = (BadZipFile, InvalidFileException, KeyError, OSError)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _cell_text(value: Any) -> Optional[str]:
    """Render a workbook cell the way it reads in a CSV export."""
    if value is None:
        return None
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, float):
        return normalize_key(value)
    text = str(value)
    return text if text.strip() else None


def _header_names(raw: tuple) -> List[str]:
    names: List[str] = []
    for position, value in enumerate(raw, start=1):
        name = str(value).strip() if value is not None else ""
        name = name or f"column_{position}"
        base, suffix = name, 2
        while name in names:
            name = f"{base}_{suffix}"
            suffix += 1
        names.append(name)
    return names


class ReconEngine:
    """Reconciliation engine using DuckDB to hold the loaded files."""

    def __init__(self):
        """Initialize with in-memory DuckDB connection."""
        self.conn = duckdb.connect(":memory:")
        self._loaded: Set[str] = set()

    def load_csv(self, path: str, table_name: str) -> List[str]:
        """
        Load a CSV file into a DuckDB table.

        All columns are read as text so that identifiers keep leading zeros;
        amounts are normalized later by the matcher.

        Args:
            path: Path to the CSV file
            table_name: Name for the table in DuckDB

        Returns:
            List of column names from the CSV
        """
        source = str(path).replace("'", "''")
        self.conn.execute(f"""
            CREATE OR REPLACE TABLE {_quote(table_name)} AS
            SELECT * FROM read_csv_auto('{source}', header = true, all_varchar = true)
        """)
        self._loaded.add(table_name)
        columns = self.get_columns(table_name)
        logger.info("Loaded %s into %s: %d rows", path, table_name, self.get_row_count(table_name))
        return columns

    def load_excel(self, path: str, table_name: str, sheet_name: Optional[str] = None) -> List[str]:
        """
        Load one worksheet into a DuckDB table.

        The first non-empty row is the header. Empty rows are skipped.

        Args:
            path: Path to the workbook
            table_name: Name for the table in DuckDB
            sheet_name: Worksheet to read, the active sheet if omitted

        Returns:
            List of column names from the header row

        Raises:
            ValueError: If the file is not a readable workbook or lacks the sheet
        """
        try:
            workbook = load_workbook(path, read_only=True, data_only=True)
        except WORKBOOK_ERRORS as e:
            raise ValueError(f"Could not read workbook {path}: {e}") from e
        try:
            if sheet_name and sheet_name not in workbook.sheetnames:
                raise ValueError(f"Worksheet '{sheet_name}' not found in {path}")
            sheet = workbook[sheet_name] if sheet_name else workbook.active
            rows = [
                row for row in sheet.iter_rows(values_only=True)
                if any(_cell_text(v) is not None for v in row)
            ]
        except WORKBOOK_ERRORS as e:
            raise ValueError(f"Could not read workbook {path}: {e}") from e
        finally:
            workbook.close()

        if not rows:
            raise ValueError(f"No header row found in {path}")

        columns = _header_names(rows[0])
        width = len(columns)
        column_defs = ", ".join(f"{_quote(c)} VARCHAR" for c in columns)
        self.conn.execute(f"CREATE OR REPLACE TABLE {_quote(table_name)} ({column_defs})")

        data = [
            [_cell_text(v) for v in (tuple(row) + (None,) * width)[:width]]
            for row in rows[1:]
        ]
        if data:
            placeholders = ", ".join("?" for _ in columns)
            self.conn.executemany(
                f"INSERT INTO {_quote(table_name)} VALUES ({placeholders})", data
            )

        self._loaded.add(table_name)
        logger.info("Loaded %s into %s: %d rows", path, table_name, len(data))
        return columns

    def load_file(self, path: str, table_name: str) -> List[str]:
        """Load a CSV or Excel file, chosen by its suffix."""
        suffix = Path(path).suffix.lower()
        if suffix in CSV_SUFFIXES:
            return self.load_csv(path, table_name)
        if suffix in EXCEL_SUFFIXES:
            return self.load_excel(path, table_name)
        raise ValueError(f"Unsupported file type '{suffix}' for {path}")

    def get_columns(self, table_name: str) -> List[str]:
        """Get column names for a loaded table."""
        result = self.conn.execute(f"DESCRIBE {_quote(table_name)}").fetchall()
        return [row[0] for row in result]

    def get_row_count(self, table_name: str) -> int:
        """Get row count for a table."""
        result = self.conn.execute(f"SELECT COUNT(*) FROM {_quote(table_name)}").fetchone()
        return result[0] if result else 0

    def detect_column(self, table_name: str, patterns: Sequence[str]) -> Optional[str]:
        """
        Find the first header, in file order, containing any of ``patterns``.

        Matching is a case-insensitive substring test, so "Сумма премии"
        matches "сумма".
        """
        needles = [p.casefold() for p in patterns]
        for column in self.get_columns(table_name):
            header = column.casefold()
            if any(needle in header for needle in needles):
                return column
        return None

    def amount_column(self, table_name: str, column: Optional[str] = None) -> str:
        """
        Return ``column``, or detect the amount column of a loaded table.

        Raises:
            ValueError: If no column is given and no header looks like an amount
        """
        if column:
            return column
        self._require_loaded(table_name)
        detected = self.detect_column(table_name, AMOUNT_PATTERNS)
        if detected is None:
            raise ValueError(
                f"No amount column given and none detected in {table_name} "
                f"(looked for: {', '.join(AMOUNT_PATTERNS)})"
            )
        logger.info("Detected amount column %r in %s", detected, table_name)
        return detected

    def get_column_sum(self, table_name: str, column_name: str) -> float:
        """Sum of a column after amount normalization."""
        rows = self.conn.execute(
            f"SELECT {_quote(column_name)} FROM {_quote(table_name)}"
        ).fetchall()
        return sum(normalize_amount(row[0]) for row in rows)

    def fetch_records(self, table_name: str, side: Side) -> List[Record]:
        """Read a loaded table back as records in file order."""
        self._require_loaded(table_name)
        cursor = self.conn.execute(f"SELECT * FROM {_quote(table_name)}")
        columns = [d[0] for d in cursor.description]
        return make_records((dict(zip(columns, row)) for row in cursor.fetchall()), side)

    def reconcile(
        self,
        config: ReconConfig,
        left_table: str = LEFT_TABLE,
        right_table: str = RIGHT_TABLE,
    ) -> ReconResult:
        """
        Run reconciliation between two loaded tables.

        Args:
            config: Reconciliation configuration
            left_table: Table holding the act report side
            right_table: Table holding the insurance side

        Returns:
            ReconResult with matched, unmatched and duplicate records
        """
        if left_table not in self._loaded or right_table not in self._loaded:
            raise ValueError("Both source files must be loaded before reconciliation")

        if not (config.amount_col_left and config.amount_col_right):
            config = replace(
                config,
                amount_col_left=self.amount_column(left_table, config.amount_col_left),
                amount_col_right=self.amount_column(right_table, config.amount_col_right),
            )

        left = self.fetch_records(left_table, Side.LEFT)
        right = self.fetch_records(right_table, Side.RIGHT)
        return reconcile(left, right, config)

    def check_arithmetic(
        self,
        table_name: str,
        base_column: str,
        commission_column: str,
        net_column: str,
        side: Side = Side.LEFT,
    ) -> List[ArithmeticIssue]:
        """Run the commission / net check over a loaded table."""
        records = self.fetch_records(table_name, side)
        return check_arithmetic(records, base_column, commission_column, net_column, side=side)

    def reconcile_files(self, left_path: str, right_path: str, config: ReconConfig) -> ReconResult:
        """Load both files and reconcile them."""
        self.load_file(left_path, LEFT_TABLE)
        self.load_file(right_path, RIGHT_TABLE)
        return self.reconcile(config)

    def _require_loaded(self, table_name: str) -> None:
        if table_name not in self._loaded:
            raise ValueError(f"Table '{table_name}' has not been loaded")

    def close(self):
        """Close the database connection."""
        self.conn.close()
