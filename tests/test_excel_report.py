"""Tests for the review workbook generator."""

from datetime import date
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from bankrecon.engine.models import (
    CommitPreview,
    ImportedTransaction,
    MatchConfidence,
    MatchingResult,
    MatchReason,
    MatchStatus,
    ReasonCode,
    RowFailure,
    Transaction,
    TransactionType,
)
from bankrecon.reports.excel_report import ExcelReportGenerator


def make_staged(
    id: str,
    day: int,
    amount: str,
    desc: str,
    status: MatchStatus = MatchStatus.UNMATCHED,
    confidence: MatchConfidence = None,
    matched: str = None,
    reasons=(),
    suggested: str = None,
) -> ImportedTransaction:
    """Helper to create staged rows."""
    return ImportedTransaction(
        id=id,
        account_id="acct-1",
        date=date(2024, 1, day),
        amount=Decimal(amount),
        currency="GBP",
        description=desc,
        normalized_description=desc.lower(),
        fingerprint=f"fp-{id}",
        type=TransactionType.EXPENDITURE,
        match_status=status,
        match_confidence=confidence,
        matched_existing_id=matched,
        match_reasons=list(reasons),
        suggested_category_id=suggested,
    )


@pytest.fixture
def review_data():
    existing = [
        Transaction("M1", "acct-1", date(2024, 1, 10), Decimal("12.50"), "Weekly shop",
                    TransactionType.EXPENDITURE, "cat-groceries"),
        Transaction("M2", "acct-1", date(2024, 1, 12), Decimal("40.00"), "Dinner",
                    TransactionType.EXPENDITURE),
    ]
    staged = [
        make_staged("B1", 12, "-40.00", "CARD PAYMENT", MatchStatus.POTENTIAL, MatchConfidence.MEDIUM, "M2",
                    [MatchReason(ReasonCode.EXACT_AMOUNT)]),
        make_staged("B2", 10, "-12.50", "TESCO STORES", MatchStatus.POTENTIAL, MatchConfidence.HIGH, "M1",
                    [MatchReason(ReasonCode.EXACT_AMOUNT), MatchReason(ReasonCode.DESCRIPTION_OVERLAP, 100)],
                    suggested="cat-groceries"),
        make_staged("B3", 20, "-3.10", "COSTA COFFEE", suggested="cat-groceries"),
    ]
    matching = MatchingResult(total_imported=3, high_confidence_matches=1,
                              medium_confidence_matches=1, unmatched=1)
    preview = CommitPreview(manual_transactions_to_delete=2, total_imported_transactions=3,
                            potential_transactions=2, unmatched_transactions=1)
    failures = [RowFailure(row_number=6, reason="Could not parse date: 'yesterday'")]
    return staged, existing, matching, preview, failures


def generate(tmp_path, review_data, name="review.xlsx"):
    staged, existing, matching, preview, failures = review_data
    output = tmp_path / name
    ExcelReportGenerator().generate(
        staged, existing, matching, preview, output,
        failures=failures, category_names={"cat-groceries": "Groceries"},
    )
    return load_workbook(output)


class TestExcelReportGenerator:
    """Test review workbook generation."""

    def test_generate_creates_file(self, tmp_path, review_data):
        staged, existing, matching, preview, failures = review_data
        result_path = ExcelReportGenerator().generate(staged, existing, matching, preview, tmp_path / "r.xlsx")

        assert result_path.exists()
        assert result_path.suffix == ".xlsx"

    def test_report_has_four_tabs(self, tmp_path, review_data):
        wb = generate(tmp_path, review_data)
        assert wb.sheetnames == ["Summary", "Review Queue", "Unmatched", "Failed Rows"]

    def test_summary_tab(self, tmp_path, review_data):
        ws = generate(tmp_path, review_data)["Summary"]

        assert ws["A1"].value == "Bank Import Review"
        labels = {ws[f"A{row}"].value: ws[f"B{row}"].value for row in range(5, 11)}
        assert labels["Imported Transactions"] == 3
        assert labels["High Confidence"] == 1
        assert labels["Failed Rows"] == 1

    def test_review_queue_orders_high_first(self, tmp_path, review_data):
        ws = generate(tmp_path, review_data)["Review Queue"]

        assert ws["A1"].value == "Bank Date"
        assert ws["C2"].value == "TESCO STORES"
        assert ws["F2"].value == "Weekly shop"
        assert ws["G2"].value == "high"
        assert ws["I2"].value == "EXACT_AMOUNT, DESCRIPTION_OVERLAP(100)"
        assert ws["J2"].value == "Groceries"
        assert ws["C3"].value == "CARD PAYMENT"
        assert ws["A4"].value is None

    def test_unmatched_tab(self, tmp_path, review_data):
        ws = generate(tmp_path, review_data)["Unmatched"]

        assert ws["C2"].value == "COSTA COFFEE"
        assert ws["E2"].value == "Groceries"
        assert ws["F2"].value == "B3"
        assert ws["A3"].value is None

    def test_failed_rows_tab(self, tmp_path, review_data):
        ws = generate(tmp_path, review_data)["Failed Rows"]

        assert ws["A2"].value == 6
        assert "yesterday" in ws["B2"].value

    def test_empty_report(self, tmp_path):
        output = tmp_path / "empty.xlsx"
        ExcelReportGenerator().generate([], [], MatchingResult(), CommitPreview(), output)

        wb = load_workbook(output)
        assert len(wb.sheetnames) == 4
        assert wb["Review Queue"]["A2"].value is None

    def test_output_directory_created(self, tmp_path, review_data):
        staged, existing, matching, preview, _ = review_data
        output = tmp_path / "subdir" / "nested" / "review.xlsx"

        assert ExcelReportGenerator().generate(staged, existing, matching, preview, output).exists()

    def test_frozen_panes_and_number_format(self, tmp_path, review_data):
        ws = generate(tmp_path, review_data)["Review Queue"]

        assert ws.freeze_panes == "A2"
        assert ws["B2"].number_format == '#,##0.00'
        assert ws["B2"].value == -12.5
        assert ws["E2"].value == -12.5
