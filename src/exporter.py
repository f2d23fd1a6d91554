"""Export utilities for reconciliation results."""

import csv
import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

from models import ArithmeticIssue, ReconResult, Record, ReviewCase, Side

logger = logging.getLogger(__name__)

HIGHLIGHT_FILL = PatternFill(fill_type="solid", fgColor="FFFFE599")
MIN_COLUMN_WIDTH = 12
MAX_COLUMN_WIDTH = 50


def _columns_of(records: Iterable[Record]) -> List[str]:
    """Union of record columns in order of first appearance."""
    columns: Dict[str, None] = {}
    for record in records:
        for column in record.columns:
            columns.setdefault(column, None)
    return list(columns)


def _cell(value: Any) -> Any:
    # openpyxl only takes scalar cell values
    if value is None or isinstance(value, (str, int, float, datetime)):
        return value
    return str(value)


class Exporter:
    """Handles exporting reconciliation results to workbooks and CSV files."""

    # Mapping of result tables to friendly file names
    TABLE_FILE_NAMES = {
        "matched": "matched_pairs.csv",
        "unmatched": "unmatched.csv",
        "duplicates": "duplicates.csv",
        "arithmetic_issues": "arithmetic_issues.csv",
    }

    SHEET_NAMES = {
        "summary": "Summary",
        "matched": "Matched",
        "unmatched": "Unmatched",
        "duplicates": "Duplicates",
        "arithmetic_issues": "Arithmetic issues",
    }

    def tables(
        self,
        result: ReconResult,
        arithmetic_issues: Sequence[ArithmeticIssue] = (),
    ) -> Dict[str, Dict[str, Any]]:
        """
        Flatten a result into header + rows tables, one per sheet.

        Matched pairs get ``L:``/``R:`` prefixed columns, unmatched and
        duplicate rows are tagged with the side they came from.
        """
        left_cols = _columns_of(
            [p.left for p in result.matched] + result.unmatched.left
            + [r for g in result.duplicates if g.side is Side.LEFT for r in g.records]
        )
        right_cols = _columns_of(
            [p.right for p in result.matched] + result.unmatched.right
            + [r for g in result.duplicates if g.side is Side.RIGHT for r in g.records]
        )

        matched_headers = (
            ["left_id"] + [f"L:{c}" for c in left_cols]
            + ["right_id"] + [f"R:{c}" for c in right_cols]
            + ["confidence", "reason", "amount_difference"]
        )
        matched_rows = []
        for pair in result.matched:
            row = {"left_id": pair.left.id, "right_id": pair.right.id}
            row.update({f"L:{c}": pair.left.get(c) for c in left_cols})
            row.update({f"R:{c}": pair.right.get(c) for c in right_cols})
            row.update(
                confidence=pair.confidence,
                reason=pair.reason,
                amount_difference=pair.amount_difference,
            )
            matched_rows.append(row)

        all_cols = list(dict.fromkeys(left_cols + right_cols))
        unmatched_headers = ["source_side", "record_id"] + all_cols
        unmatched_rows = [
            {**r.cells, "source_side": side, "record_id": r.id}
            for side, records in (("left", result.unmatched.left), ("right", result.unmatched.right))
            for r in records
        ]

        duplicate_headers = ["source_side", "duplicate_key", "record_id"] + all_cols
        duplicate_rows = [
            {**r.cells, "source_side": g.side.value, "duplicate_key": g.key, "record_id": r.id}
            for g in result.duplicates
            for r in g.records
        ]

        issue_cols = _columns_of(i.record for i in arithmetic_issues)
        issue_headers = ["check", "reason", "record_id"] + issue_cols
        issue_rows = [
            {**i.record.cells, "check": i.check.value, "reason": i.reason, "record_id": i.record.id}
            for i in arithmetic_issues
        ]

        return {
            "matched": {"headers": matched_headers, "rows": matched_rows},
            "unmatched": {"headers": unmatched_headers, "rows": unmatched_rows},
            "duplicates": {"headers": duplicate_headers, "rows": duplicate_rows},
            "arithmetic_issues": {"headers": issue_headers, "rows": issue_rows},
        }

    def summary_rows(
        self,
        result: ReconResult,
        arithmetic_issues: Sequence[ArithmeticIssue] = (),
        review_cases: Sequence[ReviewCase] = (),
        exported_at: Optional[datetime] = None,
    ) -> List[List[Any]]:
        """Labelled metrics for the summary sheet."""
        exported_at = exported_at or datetime.now()
        summary = result.summary
        rows: List[List[Any]] = [
            ["Metric", "Value"],
            ["Total matches", summary.total_matched],
            ["Total unmatched", summary.total_unmatched],
            ["Match percentage", f"{summary.match_percentage:.0f}%"],
            ["Duplicate groups", len(result.duplicates)],
            ["Arithmetic issues", len(arithmetic_issues)],
            ["Exported at", exported_at.strftime("%Y-%m-%d %H:%M:%S")],
        ]
        for case in review_cases:
            rows.append([f"Review ({case.priority})", case.description])
        return rows

    def export_workbook(
        self,
        result: ReconResult,
        output_path: str,
        arithmetic_issues: Sequence[ArithmeticIssue] = (),
        review_cases: Sequence[ReviewCase] = (),
        exported_at: Optional[datetime] = None,
    ) -> str:
        """
        Export a result to a multi-sheet workbook.

        Args:
            result: Reconciliation result to export
            output_path: Path of the .xlsx file to write
            arithmetic_issues: Issues from the arithmetic check, if run
            review_cases: Flags to list under the summary metrics
            exported_at: Timestamp for the summary sheet, now if omitted

        Returns:
            Path to the exported file
        """
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        workbook = Workbook()
        summary_sheet = workbook.active
        summary_sheet.title = self.SHEET_NAMES["summary"]
        for row in self.summary_rows(result, arithmetic_issues, review_cases, exported_at):
            summary_sheet.append(row)
        summary_sheet["A1"].font = Font(bold=True)
        summary_sheet["B1"].font = Font(bold=True)
        self._fit_columns(summary_sheet)

        for name, table in self.tables(result, arithmetic_issues).items():
            self._write_sheet(workbook, self.SHEET_NAMES[name], table["headers"], table["rows"])

        workbook.save(output_path)
        logger.info("Exported reconciliation workbook to %s", output_path)
        return output_path

    def export_annotated(
        self,
        records: Sequence[Record],
        reasons: Mapping[str, str],
        output_path: str,
        sheet_title: str = "data",
    ) -> str:
        """
        Export the original rows with a ``reason`` column.

        Rows whose record id has a reason are highlighted.

        Args:
            records: Rows in their original order
            reasons: Record id -> reason text
            output_path: Path of the .xlsx file to write

        Returns:
            Path to the exported file
        """
        headers = _columns_of(records) + ["reason"]
        rows = [{**r.cells, "reason": reasons.get(r.id)} for r in records]

        workbook = Workbook()
        workbook.remove(workbook.active)
        sheet = self._write_sheet(workbook, sheet_title, headers, rows)
        for offset, record in enumerate(records, start=2):
            if reasons.get(record.id):
                for cell in sheet[offset]:
                    cell.fill = HIGHLIGHT_FILL

        workbook.save(output_path)
        return output_path

    def export_csv(
        self,
        result: ReconResult,
        output_dir: str,
        arithmetic_issues: Sequence[ArithmeticIssue] = (),
    ) -> Dict[str, str]:
        """
        Export all result tables to CSV files.

        Args:
            result: Reconciliation result to export
            output_dir: Directory to save the CSV files

        Returns:
            Dictionary mapping table names to exported file paths
        """
        os.makedirs(output_dir, exist_ok=True)

        exported = {}
        for name, table in self.tables(result, arithmetic_issues).items():
            if name == "arithmetic_issues" and not arithmetic_issues:
                continue
            path = os.path.join(output_dir, self.TABLE_FILE_NAMES[name])
            with open(path, "w", newline="", encoding="utf-8") as fh:
                writer = csv.DictWriter(fh, fieldnames=table["headers"], extrasaction="ignore")
                writer.writeheader()
                writer.writerows(table["rows"])
            exported[name] = path

        return exported

    def _write_sheet(self, workbook: Workbook, title: str, headers: List[str], rows: List[Dict[str, Any]]):
        sheet = workbook.create_sheet(title)
        sheet.append(headers)
        for cell in sheet[1]:
            cell.font = Font(bold=True)
        for row in rows:
            sheet.append([_cell(row.get(h)) for h in headers])
        self._fit_columns(sheet)
        return sheet

    def _fit_columns(self, sheet) -> None:
        for column in sheet.columns:
            longest = max((len(str(c.value)) for c in column if c.value is not None), default=0)
            width = min(MAX_COLUMN_WIDTH, max(MIN_COLUMN_WIDTH, longest + 2))
            sheet.column_dimensions[column[0].column_letter].width = width
