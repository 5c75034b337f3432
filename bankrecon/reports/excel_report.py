"""Excel review workbook for staged bank imports."""

from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from bankrecon.engine.matcher import TransactionMatcher
from bankrecon.engine.models import (
    CommitPreview,
    ImportedTransaction,
    MatchConfidence,
    MatchingResult,
    MatchRecord,
    MatchStatus,
    RowFailure,
    Transaction,
)

REVIEW_STATES = (MatchStatus.POTENTIAL, MatchStatus.MATCHED, MatchStatus.VERIFIED, MatchStatus.REVIEWED)


class ExcelReportGenerator:
    """Generate the review workbook a reviewer works through before commit."""

    # Style constants
    HEADER_FILL = PatternFill(start_color="1F4E79", end_color="1F4E79", fill_type="solid")
    HEADER_FONT = Font(name="Calibri", size=11, bold=True, color="FFFFFF")
    HIGH_FILL = PatternFill(start_color="C6EFCE", end_color="C6EFCE", fill_type="solid")
    MEDIUM_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
    UNMATCHED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
    TITLE_FONT = Font(name="Calibri", size=16, bold=True, color="1F4E79")
    SUBTITLE_FONT = Font(name="Calibri", size=12, bold=True, color="1F4E79")
    KPI_FONT = Font(name="Calibri", size=14, bold=True)
    THIN_BORDER = Border(
        left=Side(style="thin"),
        right=Side(style="thin"),
        top=Side(style="thin"),
        bottom=Side(style="thin"),
    )

    def generate(
        self,
        staged: Sequence[ImportedTransaction],
        existing: Sequence[Transaction],
        matching: MatchingResult,
        preview: CommitPreview,
        output_path: str | Path,
        failures: Sequence[RowFailure] = (),
        category_names: Optional[Dict[str, str]] = None,
    ) -> Path:
        """
        Generate the review workbook with 4 tabs.

        Args:
            staged: Staged bank transactions of one account.
            existing: Canonical transactions the staged rows were matched against.
            matching: Summary of the matching run.
            preview: Commit preview for the account.
            output_path: Path for the output Excel file.
            failures: Rows the parser could not normalize.
            category_names: Category id to name, used for suggested categories.

        Returns:
            Path to the generated workbook.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        category_names = category_names or {}
        existing_by_id = {txn.id: txn for txn in existing}

        wb = Workbook()

        # Tab 1: Summary
        self._create_summary_tab(wb, matching, preview, len(failures))

        # Tab 2: Review Queue, ordered by tier, evidence and recency
        in_review = [row for row in staged if row.match_status in REVIEW_STATES and row.matched_existing_id]
        self._create_review_tab(wb, self._review_order(in_review), existing_by_id, category_names)

        # Tab 3: Unmatched
        review_ids = {row.id for row in in_review}
        unmatched = [row for row in staged if row.id not in review_ids]
        self._create_unmatched_tab(wb, unmatched, category_names)

        # Tab 4: Failed Rows
        self._create_failures_tab(wb, failures)

        wb.save(str(output_path))
        return output_path

    @staticmethod
    def _review_order(rows: List[ImportedTransaction]) -> List[ImportedTransaction]:
        records = [
            MatchRecord(
                imported_id=row.id,
                existing_id=row.matched_existing_id,
                confidence=row.match_confidence,
                reasons=row.match_reasons,
            )
            for row in rows
        ]
        by_id = {row.id: row for row in rows}
        dates = {row.id: row.date for row in rows}
        return [by_id[r.imported_id] for r in TransactionMatcher.sort_records(records, dates)]

    def _create_summary_tab(
        self,
        wb: Workbook,
        matching: MatchingResult,
        preview: CommitPreview,
        failed_rows: int,
    ) -> None:
        """Create the Summary dashboard tab."""
        ws = wb.active
        ws.title = "Summary"
        ws.sheet_properties.tabColor = "1F4E79"

        # Title
        ws.merge_cells("A1:F1")
        ws["A1"] = "Bank Import Review"
        ws["A1"].font = self.TITLE_FONT
        ws["A1"].alignment = Alignment(horizontal="center")

        ws.merge_cells("A2:F2")
        ws["A2"] = f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        ws["A2"].alignment = Alignment(horizontal="center")

        kpis = [
            ("Imported Transactions", matching.total_imported),
            ("High Confidence", matching.high_confidence_matches),
            ("Medium Confidence", matching.medium_confidence_matches),
            ("Low Confidence", matching.low_confidence_matches),
            ("Unmatched", matching.unmatched),
            ("Failed Rows", failed_rows),
        ]

        ws["A4"] = "Matching"
        ws["A4"].font = self.SUBTITLE_FONT

        for i, (label, value) in enumerate(kpis, start=5):
            ws[f"A{i}"] = label
            ws[f"A{i}"].font = Font(bold=True)
            ws[f"B{i}"] = value
            ws[f"B{i}"].font = self.KPI_FONT
            if label in ("Unmatched", "Failed Rows") and value > 0:
                ws[f"B{i}"].fill = self.UNMATCHED_FILL
            elif label == "High Confidence" and value > 0:
                ws[f"B{i}"].fill = self.HIGH_FILL

        row = len(kpis) + 7
        ws[f"A{row}"] = "Commit Preview"
        ws[f"A{row}"].font = self.SUBTITLE_FONT
        row += 1

        counts = [
            ("Manual Transactions To Delete", preview.manual_transactions_to_delete),
            ("Transactions To Write", preview.total_imported_transactions),
            ("Verified", preview.verified_transactions),
            ("Awaiting Review", preview.potential_transactions),
            ("Rejected", preview.rejected_transactions),
            ("Unmatched", preview.unmatched_transactions),
        ]
        for label, value in counts:
            ws[f"A{row}"] = label
            ws[f"A{row}"].font = Font(bold=True)
            ws[f"B{row}"] = value
            row += 1

        ws.column_dimensions["A"].width = 32
        ws.column_dimensions["B"].width = 20

    def _create_review_tab(
        self,
        wb: Workbook,
        rows: List[ImportedTransaction],
        existing_by_id: Dict[str, Transaction],
        category_names: Dict[str, str],
    ) -> None:
        """Create the Review Queue tab."""
        ws = wb.create_sheet("Review Queue")
        ws.sheet_properties.tabColor = "00B050"

        headers = [
            "Bank Date", "Bank Amount", "Bank Description",
            "Manual Date", "Manual Amount", "Manual Description",
            "Confidence", "Status", "Reasons", "Suggested Category", "Imported ID",
        ]
        self._write_headers(ws, headers)

        for i, row in enumerate(rows, start=2):
            existing = existing_by_id.get(row.matched_existing_id)

            ws[f"A{i}"] = row.date.strftime("%Y-%m-%d")
            ws[f"B{i}"] = float(row.amount)
            ws[f"B{i}"].number_format = '#,##0.00'
            ws[f"C{i}"] = row.description[:50]
            ws[f"D{i}"] = existing.date.strftime("%Y-%m-%d") if existing else ""
            ws[f"E{i}"] = float(existing.signed_amount) if existing else 0
            ws[f"E{i}"].number_format = '#,##0.00'
            ws[f"F{i}"] = existing.description[:50] if existing else ""
            ws[f"G{i}"] = row.match_confidence.value if row.match_confidence else ""
            ws[f"H{i}"] = row.match_status.value
            ws[f"I{i}"] = ", ".join(str(reason) for reason in row.match_reasons)
            ws[f"J{i}"] = category_names.get(row.suggested_category_id, "")
            ws[f"K{i}"] = row.id

            fill = self.HIGH_FILL if row.match_confidence == MatchConfidence.HIGH else self.MEDIUM_FILL
            for col in range(1, len(headers) + 1):
                ws.cell(row=i, column=col).fill = fill

        self._auto_width(ws, headers)

    def _create_unmatched_tab(
        self,
        wb: Workbook,
        rows: List[ImportedTransaction],
        category_names: Dict[str, str],
    ) -> None:
        """Create the Unmatched tab."""
        ws = wb.create_sheet("Unmatched")
        ws.sheet_properties.tabColor = "FF0000"

        headers = ["Date", "Amount", "Description", "Type", "Suggested Category", "Imported ID"]
        self._write_headers(ws, headers)

        for i, row in enumerate(sorted(rows, key=lambda r: (r.date, r.description)), start=2):
            ws[f"A{i}"] = row.date.strftime("%Y-%m-%d")
            ws[f"B{i}"] = float(row.amount)
            ws[f"B{i}"].number_format = '#,##0.00'
            ws[f"C{i}"] = row.description[:80]
            ws[f"D{i}"] = row.type.value
            ws[f"E{i}"] = category_names.get(row.suggested_category_id, "")
            ws[f"F{i}"] = row.id

            for col in range(1, len(headers) + 1):
                ws.cell(row=i, column=col).fill = self.UNMATCHED_FILL

        self._auto_width(ws, headers)

    def _create_failures_tab(self, wb: Workbook, failures: Sequence[RowFailure]) -> None:
        ws = wb.create_sheet("Failed Rows")
        ws.sheet_properties.tabColor = "FFC000"

        headers = ["Row", "Reason"]
        self._write_headers(ws, headers)

        for i, failure in enumerate(failures, start=2):
            ws[f"A{i}"] = failure.row_number
            ws[f"B{i}"] = failure.reason

        self._auto_width(ws, headers)
        ws.column_dimensions["B"].width = 60

    def _write_headers(self, ws, headers: List[str]) -> None:
        """Write styled header row."""
        for col_idx, header in enumerate(headers, start=1):
            cell = ws.cell(row=1, column=col_idx, value=header)
            cell.font = self.HEADER_FONT
            cell.fill = self.HEADER_FILL
            cell.alignment = Alignment(horizontal="center")
            cell.border = self.THIN_BORDER

        # Freeze top row
        ws.freeze_panes = "A2"

        ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    def _auto_width(self, ws, headers: List[str]) -> None:
        """Auto-adjust column widths."""
        for col_idx, header in enumerate(headers, start=1):
            col_letter = get_column_letter(col_idx)
            ws.column_dimensions[col_letter].width = min(len(header) + 4, 35)
