"""Core reconciliation matching engine."""

import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from bankrecon.config import MatcherConfig
from bankrecon.engine.models import (
    ImportedTransaction,
    MatchConfidence,
    MatchingResult,
    MatchReason,
    MatchRecord,
    MatchStatus,
    ReasonCode,
    Transaction,
    minor_unit,
)
from bankrecon.engine.text import token_overlap

logger = logging.getLogger(__name__)

_TIER_ORDER = {MatchConfidence.HIGH: 3, MatchConfidence.MEDIUM: 2, MatchConfidence.LOW: 1, None: 0}


class TransactionMatcher:
    """
    Scores imported bank transactions against existing manual transactions.

    Scoring Strategy:
    1. Exact amount: absolute amounts equal to the minor unit (dominant weight)
    2. Date proximity: full weight on the same day, decaying to the tolerance
    3. Description overlap: Jaccard overlap of normalized tokens

    Only existing transactions of the same type within the date tolerance are
    candidates. Among candidates the highest score wins; ties go to the
    smallest date distance, then the smallest amount difference, then the
    candidate seen first.

    The matcher is read-only: it never writes to the transactions it scores.
    """

    def __init__(self, config: Optional[MatcherConfig] = None):
        """
        Initialize the matcher.

        Args:
            config: Weights, tolerance and tier thresholds. Each account can use
                its own instance.
        """
        self.config = config or MatcherConfig()

    def match(
        self,
        imported: ImportedTransaction,
        existing: Sequence[Transaction],
    ) -> MatchRecord:
        """
        Find the best existing transaction for one imported transaction.

        Args:
            imported: The staged bank transaction.
            existing: Canonical transactions of the same account.

        Returns:
            A MatchRecord; ``existing_id`` is None when nothing scored above the
            LOW threshold.
        """
        best: Optional[Tuple[Tuple[float, int, Decimal], Transaction, float, List[MatchReason]]] = None

        for candidate in self.candidate_window(imported, existing):
            score, reasons = self.score(imported, candidate)
            days = abs((imported.date - candidate.date).days)
            amount_diff = abs(imported.abs_amount - abs(candidate.amount))
            key = (-score, days, amount_diff)
            # Strict comparison keeps the earliest candidate on a full tie
            if best is None or key < best[0]:
                best = (key, candidate, score, reasons)

        if best is None:
            return MatchRecord(imported_id=imported.id, existing_id=None, confidence=None)

        key, candidate, score, reasons = best
        confidence = self.tier(score)
        if confidence is None:
            return MatchRecord(imported_id=imported.id, existing_id=None, confidence=None, score=score)

        return MatchRecord(
            imported_id=imported.id,
            existing_id=candidate.id,
            confidence=confidence,
            score=score,
            reasons=reasons,
            date_diff_days=key[1],
            amount_diff=key[2],
        )

    def match_all(
        self,
        imported: Iterable[ImportedTransaction],
        existing: Sequence[Transaction],
        cancel: Optional[threading.Event] = None,
    ) -> List[MatchRecord]:
        """
        Match every imported transaction independently.

        Args:
            imported: Staged bank transactions.
            existing: Canonical transactions of the same account.
            cancel: Checked between rows; when set, the records computed so
                far are returned.

        Returns:
            One MatchRecord per processed imported transaction, in input order.
        """
        records: List[MatchRecord] = []
        for txn in imported:
            if cancel is not None and cancel.is_set():
                logger.info("Matching cancelled after %d rows", len(records))
                break
            records.append(self.match(txn, existing))
        return records

    def candidate_window(
        self,
        imported: ImportedTransaction,
        existing: Iterable[Transaction],
    ) -> List[Transaction]:
        """Existing transactions of the same type within the date tolerance."""
        tolerance = self.config.date_tolerance_days
        return [
            txn for txn in existing
            if txn.type == imported.type and abs((imported.date - txn.date).days) <= tolerance
        ]

    def score(
        self,
        imported: ImportedTransaction,
        existing: Transaction,
    ) -> Tuple[float, List[MatchReason]]:
        """
        Compute the composite score of one (imported, existing) pair.

        Returns:
            Tuple of (score in [0, 1], ordered reason codes).
        """
        cfg = self.config
        score = 0.0
        reasons: List[MatchReason] = []

        amount_diff = abs(imported.abs_amount - abs(existing.amount))
        if amount_diff < minor_unit(imported.currency):
            score += cfg.amount_weight
            reasons.append(MatchReason(ReasonCode.EXACT_AMOUNT))

        overlap = token_overlap(imported.description, existing.description)
        if overlap > 0 and overlap >= cfg.min_description_overlap:
            score += cfg.description_weight * overlap
            reasons.append(MatchReason(ReasonCode.DESCRIPTION_OVERLAP, round(overlap * 100)))

        days = abs((imported.date - existing.date).days)
        if days <= cfg.date_tolerance_days:
            score += cfg.date_weight * (1 - days / (cfg.date_tolerance_days + 1))
            if days > 0:
                reasons.append(MatchReason(ReasonCode.DATE_PROXIMITY, days))

        # Rounded so equal inputs never differ by float noise
        return round(score, 6), reasons

    def tier(self, score: float) -> Optional[MatchConfidence]:
        """Bucket a composite score into a confidence tier."""
        if score >= self.config.high_threshold:
            return MatchConfidence.HIGH
        if score >= self.config.medium_threshold:
            return MatchConfidence.MEDIUM
        if score >= self.config.low_threshold:
            return MatchConfidence.LOW
        return None

    def initial_status(self, record: MatchRecord) -> MatchStatus:
        """Review state an imported transaction starts in after matching."""
        if not record.is_match:
            return MatchStatus.UNMATCHED
        if self.config.auto_accept_high and record.confidence == MatchConfidence.HIGH:
            return MatchStatus.MATCHED
        return MatchStatus.POTENTIAL

    @staticmethod
    def summarize(records: Iterable[MatchRecord]) -> MatchingResult:
        """Count records per confidence tier."""
        result = MatchingResult()
        for record in records:
            result.total_imported += 1
            if record.confidence == MatchConfidence.HIGH:
                result.high_confidence_matches += 1
            elif record.confidence == MatchConfidence.MEDIUM:
                result.medium_confidence_matches += 1
            elif record.confidence == MatchConfidence.LOW:
                result.low_confidence_matches += 1
            else:
                result.unmatched += 1
        return result

    @staticmethod
    def sort_records(
        records: Iterable[MatchRecord],
        dates: Optional[dict] = None,
    ) -> List[MatchRecord]:
        """
        Order records for review: best tier first, then more reasons, then newest.

        Args:
            records: Match records to sort.
            dates: Optional mapping of imported id to date used for the last key.
        """
        dates = dates or {}

        def key(record: MatchRecord):
            txn_date: date = dates.get(record.imported_id, date.min)
            return (-_TIER_ORDER[record.confidence], -len(record.reasons), -txn_date.toordinal())

        return sorted(records, key=key)
