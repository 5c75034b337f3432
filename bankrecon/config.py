"""Tunable settings for the matcher, the pattern learner and CSV ingest.

Instances are passed explicitly to the engine objects that use them so two
accounts can be processed side by side with different settings.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

from bankrecon.engine.errors import ValidationError


@dataclass(frozen=True)
class MatcherConfig:
    """
    Scoring weights and tier thresholds for the transaction matcher.

    Args:
        date_tolerance_days: Existing transactions further away than this are
            not considered at all.
        amount_weight: Score contributed by an exact amount match.
        date_weight: Score contributed by a same-day match; decays linearly
            with the day distance.
        description_weight: Score contributed by a full description overlap.
        min_description_overlap: Token overlap below which the description
            contributes nothing.
        high_threshold / medium_threshold / low_threshold: Lower bounds of the
            confidence tiers. Scores below ``low_threshold`` are no match.
        auto_accept_high: Start HIGH matches as MATCHED instead of POTENTIAL.
    """
    date_tolerance_days: int = 3
    amount_weight: float = 0.5
    date_weight: float = 0.2
    description_weight: float = 0.3
    min_description_overlap: float = 0.5
    high_threshold: float = 0.85
    medium_threshold: float = 0.6
    low_threshold: float = 0.3
    auto_accept_high: bool = False

    def __post_init__(self):
        if self.date_tolerance_days < 0:
            raise ValidationError("date_tolerance_days must be non-negative")
        for name in ("amount_weight", "date_weight", "description_weight"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must be non-negative")
        if not 0 <= self.min_description_overlap <= 1:
            raise ValidationError("min_description_overlap must be between 0 and 1")
        if not 0 < self.low_threshold <= self.medium_threshold <= self.high_threshold:
            raise ValidationError(
                "Thresholds must satisfy 0 < low <= medium <= high, got "
                f"{self.low_threshold}/{self.medium_threshold}/{self.high_threshold}"
            )


@dataclass(frozen=True)
class LearningConfig:
    """Rules for deriving categorization patterns from history."""
    min_group_size: int = 2
    min_description_length: int = 4
    max_patterns_per_description: int = 3
    min_token_length: int = 5
    base_confidence: int = 50
    confidence_step: int = 10
    top_patterns_limit: int = 10
    max_suggestions: int = 5

    def __post_init__(self):
        if self.min_group_size < 1:
            raise ValidationError("min_group_size must be at least 1")
        if self.max_patterns_per_description < 1:
            raise ValidationError("max_patterns_per_description must be at least 1")
        if not 0 <= self.base_confidence <= 100:
            raise ValidationError("base_confidence must be between 0 and 100")


@dataclass(frozen=True)
class ImportConfig:
    """How raw CSV rows are read and which rows are kept."""
    delimiter: str = ","
    default_currency: str = "GBP"
    accepted_states: FrozenSet[str] = frozenset({"COMPLETED"})
    capital_types: FrozenSet[str] = frozenset()
    date_formats: Tuple[str, ...] = field(default=(
        "%Y-%m-%d",
        "%Y-%m-%d %H:%M:%S",
        "%d/%m/%Y",
        "%d/%m/%Y %H:%M",
        "%d-%m-%Y",
        "%Y/%m/%d",
        "%d.%m.%Y",
    ))

    def __post_init__(self):
        if len(self.delimiter) != 1:
            raise ValidationError(f"delimiter must be a single character, got {self.delimiter!r}")
