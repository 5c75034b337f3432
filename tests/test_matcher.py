"""Tests for the transaction matcher."""

import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from bankrecon.config import MatcherConfig
from bankrecon.engine.errors import ValidationError
from bankrecon.engine.matcher import TransactionMatcher
from bankrecon.engine.models import (
    ImportedTransaction,
    MatchConfidence,
    MatchReason,
    MatchRecord,
    MatchStatus,
    ReasonCode,
    Transaction,
    TransactionType,
)
from bankrecon.engine.text import normalize_text


def make_imported(id: str, day: str, amount: str, desc: str = "Test") -> ImportedTransaction:
    """Helper to create a staged bank row."""
    amt = Decimal(amount)
    return ImportedTransaction(
        id=id,
        account_id="acct-1",
        date=datetime.strptime(day, "%Y-%m-%d").date(),
        amount=amt,
        currency="GBP",
        description=desc,
        normalized_description=normalize_text(desc),
        fingerprint=f"{day}_{amount}_{normalize_text(desc)}",
        type=TransactionType.INCOME if amt > 0 else TransactionType.EXPENDITURE,
    )


def make_existing(id: str, day: str, amount: str, desc: str = "Test", income: bool = False) -> Transaction:
    """Helper to create a manual transaction."""
    return Transaction(
        id=id,
        account_id="acct-1",
        date=datetime.strptime(day, "%Y-%m-%d").date(),
        amount=Decimal(amount),
        description=desc,
        type=TransactionType.INCOME if income else TransactionType.EXPENDITURE,
    )


class TestScoring:
    """Test the composite score and its reasons."""

    def test_exact_match_reasons(self):
        matcher = TransactionMatcher()
        score, reasons = matcher.score(
            make_imported("B1", "2024-01-15", "-12.50", "Tesco Stores"),
            make_existing("M1", "2024-01-15", "12.50", "Tesco Stores"),
        )

        assert score == 1.0
        assert reasons == [
            MatchReason(ReasonCode.EXACT_AMOUNT),
            MatchReason(ReasonCode.DESCRIPTION_OVERLAP, 100),
        ]

    def test_date_proximity_reason(self):
        matcher = TransactionMatcher()
        score, reasons = matcher.score(
            make_imported("B1", "2024-01-15", "-12.50", "Tesco Stores"),
            make_existing("M1", "2024-01-16", "12.50", "Tesco Stores"),
        )

        assert score == pytest.approx(0.95)
        assert [r.code for r in reasons] == [
            ReasonCode.EXACT_AMOUNT, ReasonCode.DESCRIPTION_OVERLAP, ReasonCode.DATE_PROXIMITY,
        ]
        assert reasons[-1].value == 1

    def test_low_overlap_does_not_count(self):
        matcher = TransactionMatcher()
        _, reasons = matcher.score(
            make_imported("B1", "2024-01-15", "-12.50", "Tesco Stores London"),
            make_existing("M1", "2024-01-15", "12.50", "Tesco"),
        )
        assert [r.code for r in reasons] == [ReasonCode.EXACT_AMOUNT]

    def test_amount_must_match_to_the_penny(self):
        matcher = TransactionMatcher()
        _, reasons = matcher.score(
            make_imported("B1", "2024-01-15", "-12.50"),
            make_existing("M1", "2024-01-15", "12.51", "Other"),
        )
        assert ReasonCode.EXACT_AMOUNT not in [r.code for r in reasons]

    def test_score_bounded(self):
        matcher = TransactionMatcher()
        imported = make_imported("B1", "2024-01-15", "-7.00", "bus fare")
        for offset in range(4):
            score, _ = matcher.score(imported, make_existing("M", f"2024-01-{15 + offset}", "7.00", "bus fare"))
            assert 0.0 <= score <= 1.0

    @pytest.mark.parametrize("day, expected", [
        ("2024-01-15", MatchConfidence.MEDIUM),
        ("2024-01-18", MatchConfidence.LOW),
    ])
    def test_amount_only_tiers(self, day, expected):
        matcher = TransactionMatcher()
        record = matcher.match(
            make_imported("B1", "2024-01-15", "-40.00", "Card payment"),
            [make_existing("M1", day, "40.00", "Dinner")],
        )
        assert record.confidence == expected


class TestMatching:
    """Test best-candidate selection."""

    def test_three_rows_two_exact_one_unmatched(self):
        matcher = TransactionMatcher()
        imported = [
            make_imported("B1", "2024-01-15", "-12.50", "Tesco Stores"),
            make_imported("B2", "2024-01-16", "-30.00", "Shell Garage"),
            make_imported("B3", "2024-02-20", "-99.00", "Unknown Merchant"),
        ]
        existing = [
            make_existing("M1", "2024-01-15", "12.50", "Tesco Stores"),
            make_existing("M2", "2024-01-16", "30.00", "Shell Garage"),
        ]

        records = matcher.match_all(imported, existing)

        assert [r.existing_id for r in records] == ["M1", "M2", None]
        assert [r.confidence for r in records] == [MatchConfidence.HIGH, MatchConfidence.HIGH, None]
        for record in records[:2]:
            assert record.reason_codes == [ReasonCode.EXACT_AMOUNT, ReasonCode.DESCRIPTION_OVERLAP]

        summary = matcher.summarize(records)
        assert summary.as_dict() == {
            "totalImported": 3,
            "highConfidenceMatches": 2,
            "mediumConfidenceMatches": 0,
            "lowConfidenceMatches": 0,
            "unmatched": 1,
        }

    def test_only_same_type_within_tolerance(self):
        matcher = TransactionMatcher(MatcherConfig(date_tolerance_days=3))
        imported = make_imported("B1", "2024-01-15", "-50.00", "Transfer")
        existing = [
            make_existing("M1", "2024-01-15", "50.00", "Transfer", income=True),
            make_existing("M2", "2024-01-19", "50.00", "Transfer"),
        ]

        record = matcher.match(imported, existing)

        assert record.existing_id is None
        assert not record.is_match

    def test_tie_break_on_amount_difference(self):
        matcher = TransactionMatcher()
        imported = make_imported("B1", "2024-01-15", "-12.50", "Coffee Shop")
        existing = [
            make_existing("M1", "2024-01-15", "13.00", "Coffee Shop"),
            make_existing("M2", "2024-01-15", "12.60", "Coffee Shop"),
        ]

        record = matcher.match(imported, existing)

        assert record.existing_id == "M2"
        assert record.amount_diff == Decimal("0.10")

    def test_full_tie_keeps_first_candidate(self):
        matcher = TransactionMatcher()
        imported = make_imported("B1", "2024-01-15", "-5.00", "Bus")
        existing = [
            make_existing("M1", "2024-01-15", "5.00", "Bus"),
            make_existing("M2", "2024-01-15", "5.00", "Bus"),
        ]

        assert matcher.match(imported, existing).existing_id == "M1"
        assert matcher.match(imported, list(reversed(existing))).existing_id == "M2"

    def test_matching_is_deterministic(self):
        matcher = TransactionMatcher()
        imported = [make_imported(f"B{i}", "2024-01-15", f"-{i}.00", "Shop") for i in range(1, 6)]
        existing = [make_existing(f"M{i}", "2024-01-1" + str(i), f"{i}.00", "Shop") for i in range(1, 6)]

        assert matcher.match_all(imported, existing) == matcher.match_all(imported, existing)

    def test_match_all_stops_when_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        records = TransactionMatcher().match_all([make_imported("B1", "2024-01-15", "-1.00")], [], cancel)
        assert records == []


class TestInitialStatus:

    def test_high_starts_potential(self):
        matcher = TransactionMatcher()
        record = MatchRecord("B1", "M1", MatchConfidence.HIGH, 0.9)
        assert matcher.initial_status(record) == MatchStatus.POTENTIAL

    def test_auto_accept_high(self):
        matcher = TransactionMatcher(MatcherConfig(auto_accept_high=True))
        assert matcher.initial_status(MatchRecord("B1", "M1", MatchConfidence.HIGH, 0.9)) == MatchStatus.MATCHED
        assert matcher.initial_status(MatchRecord("B1", "M1", MatchConfidence.MEDIUM, 0.7)) == MatchStatus.POTENTIAL

    def test_no_match_is_unmatched(self):
        assert TransactionMatcher().initial_status(MatchRecord("B1", None, None)) == MatchStatus.UNMATCHED


class TestSortRecords:

    def test_tier_then_reasons_then_newest(self):
        records = [
            MatchRecord("low", "M1", MatchConfidence.LOW, 0.4, [MatchReason(ReasonCode.EXACT_AMOUNT)]),
            MatchRecord("high-old", "M2", MatchConfidence.HIGH, 1.0, [MatchReason(ReasonCode.EXACT_AMOUNT)]),
            MatchRecord("high-new", "M3", MatchConfidence.HIGH, 1.0, [MatchReason(ReasonCode.EXACT_AMOUNT)]),
            MatchRecord("high-more", "M4", MatchConfidence.HIGH, 1.0, [
                MatchReason(ReasonCode.EXACT_AMOUNT), MatchReason(ReasonCode.DESCRIPTION_OVERLAP, 100),
            ]),
            MatchRecord("none", None, None),
        ]
        dates = {"high-old": date(2024, 1, 1), "high-new": date(2024, 1, 5)}

        ordered = TransactionMatcher.sort_records(records, dates)

        assert [r.imported_id for r in ordered] == ["high-more", "high-new", "high-old", "low", "none"]


class TestMatcherConfig:

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValidationError):
            MatcherConfig(high_threshold=0.5, medium_threshold=0.6)

    def test_negative_tolerance(self):
        with pytest.raises(ValidationError):
            MatcherConfig(date_tolerance_days=-1)
