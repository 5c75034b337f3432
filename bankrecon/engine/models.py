"""Data models for the reconciliation engine."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional, Set


class TransactionType(Enum):
    """Direction of a transaction as used by categories and reports."""
    INCOME = "income"
    EXPENDITURE = "expenditure"
    CAPITAL = "capital"


class MatchStatus(Enum):
    """Review state of an imported transaction."""
    UNMATCHED = "unmatched"
    POTENTIAL = "potential"
    MATCHED = "matched"
    REVIEWED = "reviewed"    # Match rejected, bank description is used at commit
    VERIFIED = "verified"    # Match confirmed, existing description/category kept


class MatchConfidence(Enum):
    """Confidence tier of a proposed match."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReasonCode(Enum):
    """Why the matcher proposed a given existing transaction."""
    EXACT_AMOUNT = "exact_amount"
    DESCRIPTION_OVERLAP = "description_overlap"
    DATE_PROXIMITY = "date_proximity"


class DuplicateStrategy(Enum):
    """What to do with a candidate whose fingerprint is already staged."""
    SKIP = "skip"
    REPLACE = "replace"
    ALLOW = "allow"


# ISO 4217 currencies whose minor unit is not two decimal places
_MINOR_UNIT_EXPONENTS: Dict[str, int] = {
    "JPY": 0, "KRW": 0, "ISK": 0, "VND": 0,
    "BHD": 3, "KWD": 3, "OMR": 3, "JOD": 3, "TND": 3,
}


def minor_unit(currency: Optional[str]) -> Decimal:
    """Return the smallest representable amount for a currency (0.01 for GBP)."""
    exponent = _MINOR_UNIT_EXPONENTS.get((currency or "").upper(), 2)
    return Decimal(1).scaleb(-exponent)


def round_to_minor_unit(amount: Decimal, currency: Optional[str]) -> Decimal:
    return amount.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MatchReason:
    """
    A parameterized reason code.

    ``value`` carries the parameter of the code: the description overlap in
    percent for DESCRIPTION_OVERLAP, the day distance for DATE_PROXIMITY.
    """
    code: ReasonCode
    value: Optional[int] = None

    def __str__(self) -> str:
        if self.value is None:
            return self.code.name
        return f"{self.code.name}({self.value})"


@dataclass
class Category:
    """A category a transaction can be filed under. Read-only for the engine."""
    id: str
    name: str
    type: TransactionType
    color: str = ""
    account_id: str = ""


@dataclass
class Transaction:
    """Canonical transaction: the record reports are built from."""
    id: str
    account_id: str
    date: date
    amount: Decimal              # Absolute value, ``type`` carries the direction
    description: str
    type: TransactionType
    category_id: Optional[str] = None
    notes: Optional[str] = None
    bank_reference: Optional[str] = None

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign an exported statement would show."""
        if self.type == TransactionType.INCOME:
            return abs(self.amount)
        return -abs(self.amount)


@dataclass
class ImportedTransaction:
    """A bank statement row staged for review."""
    id: str
    account_id: str
    date: date
    amount: Decimal              # Signed, as exported by the bank
    currency: str
    description: str
    normalized_description: str
    fingerprint: str
    type: TransactionType
    match_status: MatchStatus = MatchStatus.UNMATCHED
    match_confidence: Optional[MatchConfidence] = None
    matched_existing_id: Optional[str] = None
    match_reasons: List[MatchReason] = field(default_factory=list)
    suggested_category_id: Optional[str] = None
    fee: Decimal = Decimal("0")
    balance: Optional[Decimal] = None
    state: Optional[str] = None
    product: Optional[str] = None
    completed_date: Optional[date] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)


@dataclass
class CategorizationPattern:
    """A regex bound to a category, learnt from past categorizations."""
    id: str
    account_id: str
    pattern: str
    category_id: str
    confidence_score: int
    match_count: int
    last_matched: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    evidence_ids: Set[str] = field(default_factory=set)


@dataclass
class NormalizedCandidate:
    """A parsed CSV row, ready to be staged or written as a transaction."""
    row_number: int
    date: date
    amount: Decimal
    currency: str
    description: str
    normalized_description: str
    fingerprint: str
    type: TransactionType
    fee: Decimal = Decimal("0")
    balance: Optional[Decimal] = None
    state: Optional[str] = None
    product: Optional[str] = None
    completed_date: Optional[date] = None
    category_name: Optional[str] = None


@dataclass
class RowFailure:
    """A row that could not be processed, and why."""
    row_number: int
    reason: str


@dataclass
class MatchRecord:
    """Best match the matcher found for one imported transaction."""
    imported_id: str
    existing_id: Optional[str]
    confidence: Optional[MatchConfidence]
    score: float = 0.0
    reasons: List[MatchReason] = field(default_factory=list)
    date_diff_days: Optional[int] = None
    amount_diff: Optional[Decimal] = None

    @property
    def is_match(self) -> bool:
        return self.existing_id is not None and self.confidence is not None

    @property
    def reason_codes(self) -> List[ReasonCode]:
        return [reason.code for reason in self.reasons]


@dataclass
class MatchingResult:
    """Summary of a matching run."""
    total_imported: int = 0
    high_confidence_matches: int = 0
    medium_confidence_matches: int = 0
    low_confidence_matches: int = 0
    unmatched: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "totalImported": self.total_imported,
            "highConfidenceMatches": self.high_confidence_matches,
            "mediumConfidenceMatches": self.medium_confidence_matches,
            "lowConfidenceMatches": self.low_confidence_matches,
            "unmatched": self.unmatched,
        }


@dataclass
class PatternMatch:
    """A stored pattern that matched a description."""
    category_id: str
    confidence_score: int
    pattern_id: str
    pattern: str
    match_count: int = 0


@dataclass
class TopPattern:
    pattern: str
    category_name: str
    confidence: int
    match_count: int


@dataclass
class LearningResult:
    """Summary of a pattern learning pass."""
    patterns_created: int = 0
    patterns_updated: int = 0
    patterns_skipped: int = 0
    total_transactions: int = 0
    top_patterns: List[TopPattern] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_processed(self) -> int:
        return self.patterns_created + self.patterns_updated + self.patterns_skipped

    def as_dict(self) -> dict:
        return {
            "patternsCreated": self.patterns_created,
            "patternsUpdated": self.patterns_updated,
            "patternsSkipped": self.patterns_skipped,
            "totalTransactions": self.total_transactions,
            "topPatterns": [
                {
                    "pattern": top.pattern,
                    "categoryName": top.category_name,
                    "confidence": top.confidence,
                    "matchCount": top.match_count,
                }
                for top in self.top_patterns
            ],
        }


@dataclass
class LearningFailure:
    """A background learning run that failed."""
    account_id: str
    transaction_id: str
    error: str
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass
class CommitPreview:
    """What a commit would do, computed before anything is deleted."""
    manual_transactions_to_delete: int = 0
    total_imported_transactions: int = 0
    verified_transactions: int = 0
    unmatched_transactions: int = 0
    rejected_transactions: int = 0
    potential_transactions: int = 0
    matched_transactions: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "manualTransactionsToDelete": self.manual_transactions_to_delete,
            "totalImportedTransactions": self.total_imported_transactions,
            "verifiedTransactions": self.verified_transactions,
            "unmatchedTransactions": self.unmatched_transactions,
            "rejectedTransactions": self.rejected_transactions,
        }


@dataclass
class CommitResult:
    total_committed: int
    verified_with_categories: int
    ready_for_categorization: int
    preview: CommitPreview


@dataclass
class ReviewOutcome:
    """Result of one review action inside a bulk request."""
    imported_id: str
    ok: bool
    status: Optional[MatchStatus] = None
    error: Optional[str] = None


@dataclass
class BulkReviewResult:
    outcomes: List[ReviewOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[str]:
        return [o.imported_id for o in self.outcomes if o.ok]

    @property
    def failed(self) -> Dict[str, str]:
        return {o.imported_id: o.error or "" for o in self.outcomes if not o.ok}


@dataclass
class ImportSummary:
    """Structured success/skip/fail summary of an import batch."""
    total_rows: int = 0
    written: int = 0
    duplicates: int = 0
    replaced: int = 0
    excluded: int = 0
    failed: List[RowFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancelled: bool = False
    matching: Optional[MatchingResult] = None
