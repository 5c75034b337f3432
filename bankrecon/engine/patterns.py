"""Regex-based category suggestion and pattern learning."""

import logging
import re
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from bankrecon.config import LearningConfig
from bankrecon.engine.errors import ConflictError, NotFoundError, ValidationError
from bankrecon.engine.models import (
    CategorizationPattern,
    LearningResult,
    PatternMatch,
    TopPattern,
    Transaction,
    utcnow,
)
from bankrecon.engine.text import normalize_text
from bankrecon.store.memory import CATEGORIES, CREATED, PATTERNS, TRANSACTIONS, UPDATED, RecordStore

logger = logging.getLogger(__name__)

# Words that never make a useful pattern: common English plus statement boilerplate
STOPWORDS = frozenset({
    "main", "plus", "good", "user", "from", "with", "your", "have", "been",
    "this", "that", "will", "more", "some", "than", "them", "very", "when",
    "what", "make", "like", "time", "just", "know", "take", "come", "could",
    "over", "such", "after", "also", "back", "into", "year", "only", "other",
    "then", "first", "last", "long", "great", "little", "right", "still",
    "find", "here", "thing", "many", "well", "transfer", "verified", "payment",
    "reference", "completed", "stores", "store", "limited", "online",
    "purchase", "payments", "transfers", "exchange", "refund",
})

_REGEX_OPERATORS = re.compile(r"[\\.*+?^${}()|\[\]\s]")

MIN_CONFIDENCE = 0
MAX_CONFIDENCE = 100
# Floor applied when a rejected suggestion lowers a pattern's confidence
REJECTION_FLOOR = 10
SUGGESTION_STEP = 5


def clamp_confidence(value: int) -> int:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, int(value)))


def enforce_word_boundaries(pattern: str) -> str:
    """Wrap a plain single word in word boundaries so "post" misses "postage"."""
    if _REGEX_OPERATORS.search(pattern):
        return pattern
    return rf"\b{pattern}\b"


class PatternEngine:
    """
    Suggests categories from stored patterns and learns new patterns.

    Every pattern write goes through ``RecordStore.upsert`` keyed on
    (account, pattern), so the bulk learning pass and the single-transaction
    background path can run against the same key without losing updates.
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[LearningConfig] = None,
        regex_cache: Optional[Dict[str, "re.Pattern[str]"]] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Record store holding transactions, categories and patterns.
            config: Learning thresholds and confidence arithmetic.
            regex_cache: Compiled-regex cache to use; a private one is created
                when omitted.
        """
        self.store = store
        self.config = config or LearningConfig()
        self._regex_cache: Dict[str, "re.Pattern[str]"] = {} if regex_cache is None else regex_cache

    # Matching

    def compile(self, pattern: str) -> "re.Pattern[str]":
        """
        Compile a stored pattern case-insensitively.

        Raises:
            ValidationError: If the pattern is not a valid regular expression.
        """
        compiled = self._regex_cache.get(pattern)
        if compiled is None:
            try:
                compiled = re.compile(enforce_word_boundaries(pattern), re.IGNORECASE)
            except re.error as e:
                raise ValidationError(f"Invalid pattern regex {pattern!r}: {e}") from e
            self._regex_cache[pattern] = compiled
        return compiled

    def is_valid(self, pattern: str) -> bool:
        try:
            self.compile(pattern)
        except ValidationError:
            return False
        return True

    def test_pattern(self, pattern: str, description: str) -> bool:
        """Return True when ``pattern`` matches ``description``; invalid patterns never match."""
        try:
            return bool(self.compile(pattern).search(normalize_text(description)))
        except ValidationError as e:
            logger.warning("%s", e)
            return False

    def match_patterns(
        self,
        description: str,
        patterns: Iterable[CategorizationPattern],
    ) -> List[PatternMatch]:
        """
        Return every pattern matching ``description``, best confidence first.

        Ties keep the higher match count first, then the given pattern order.
        Invalid patterns are logged and skipped.
        """
        normalized = normalize_text(description)
        matches: List[PatternMatch] = []

        for pattern in patterns:
            try:
                compiled = self.compile(pattern.pattern)
            except ValidationError as e:
                logger.warning("Skipping pattern %s: %s", pattern.id, e)
                continue
            if compiled.search(normalized):
                matches.append(PatternMatch(
                    category_id=pattern.category_id,
                    confidence_score=pattern.confidence_score,
                    pattern_id=pattern.id,
                    pattern=pattern.pattern,
                    match_count=pattern.match_count,
                ))

        matches.sort(key=lambda m: (-m.confidence_score, -m.match_count))
        return matches

    def match(self, account_id: str, description: str) -> List[PatternMatch]:
        """Match a description against the account's stored patterns."""
        return self.match_patterns(description, self.store.select(PATTERNS, account_id=account_id))

    def suggest(self, account_id: str, description: str, limit: Optional[int] = None) -> List[PatternMatch]:
        """Top category suggestions for a description."""
        limit = limit or self.config.max_suggestions
        return self.match(account_id, description)[:limit]

    def best_match(self, account_id: str, description: str) -> Optional[PatternMatch]:
        matches = self.match(account_id, description)
        return matches[0] if matches else None

    # Extraction

    def extract_patterns(self, description: str) -> List[str]:
        """
        Derive up to ``max_patterns_per_description`` ranked regex fragments.

        Single significant words come first (in order of appearance), then
        adjacent word pairs, then the first three words together.
        """
        words = [
            word for word in normalize_text(description).split()
            if len(word) >= self.config.min_token_length
            and word not in STOPWORDS
            and not word.isdigit()
        ]

        patterns: List[str] = []
        patterns.extend(words)
        patterns.extend(rf"{a}\s+{b}" for a, b in zip(words, words[1:]))
        if len(words) >= 3:
            patterns.append(rf"{words[0]}\s+{words[1]}\s+{words[2]}")

        unique = list(dict.fromkeys(patterns))
        return unique[: self.config.max_patterns_per_description]

    # Learning

    def learn_from_history(
        self,
        account_id: str,
        cancel: Optional[threading.Event] = None,
    ) -> LearningResult:
        """
        Mine the account's categorized transactions into patterns.

        Transactions are grouped by (normalized description, category). Groups
        seen fewer than ``min_group_size`` times are skipped; the others
        create or reinforce up to three patterns each. A pattern already bound
        to another category is left alone. Transactions that already
        reinforced a pattern are not counted again, so rerunning the pass over
        unchanged data writes nothing.

        Args:
            account_id: Owner of the transactions and patterns.
            cancel: Checked between groups; when set the pass stops with the
                groups processed so far applied.

        Returns:
            LearningResult with created/updated/skipped counts and top patterns.
        """
        result = LearningResult()

        with self.store.account_lock(account_id):
            transactions = self._learnable_transactions(account_id)
            result.total_transactions = len(transactions)

            groups: Dict[Tuple[str, str], List[str]] = {}
            for txn in transactions:
                key = (normalize_text(txn.description), txn.category_id)
                groups.setdefault(key, []).append(txn.id)

            logger.info(
                "Learning from %d transactions in %d description/category groups",
                len(transactions), len(groups),
            )

            for (description, category_id), txn_ids in groups.items():
                if cancel is not None and cancel.is_set():
                    result.cancelled = True
                    logger.info("Learning pass cancelled")
                    break

                if len(txn_ids) < self.config.min_group_size:
                    result.patterns_skipped += 1
                    continue

                self._learn_group(account_id, description, category_id, set(txn_ids), result)

            result.top_patterns = self.top_patterns(account_id)

        logger.info(
            "Learning complete: %d created, %d updated, %d skipped",
            result.patterns_created, result.patterns_updated, result.patterns_skipped,
        )
        return result

    def learn_one(self, account_id: str, transaction_id: str) -> LearningResult:
        """
        Learn from a single manual categorization.

        Raises:
            NotFoundError: If the transaction does not exist for the account.
            ValidationError: If the transaction has no category.
        """
        result = LearningResult(total_transactions=1)

        with self.store.account_lock(account_id):
            txn: Optional[Transaction] = self.store.find(TRANSACTIONS, transaction_id)
            if txn is None or txn.account_id != account_id:
                raise NotFoundError("transaction", transaction_id)
            if txn.category_id is None:
                raise ValidationError(f"Transaction {transaction_id!r} has no category to learn from")
            if len((txn.description or "").strip()) < self.config.min_description_length:
                result.patterns_skipped += 1
                return result

            self._learn_group(
                account_id, normalize_text(txn.description), txn.category_id, {txn.id}, result,
            )

        logger.debug(
            "Learnt from %s: %d created, %d updated, %d skipped",
            transaction_id, result.patterns_created, result.patterns_updated, result.patterns_skipped,
        )
        return result

    def _learnable_transactions(self, account_id: str) -> List[Transaction]:
        min_length = self.config.min_description_length
        known_categories = {c.id for c in self.store.select(CATEGORIES)}
        return self.store.select(
            TRANSACTIONS,
            account_id=account_id,
            where=lambda t: (
                t.category_id is not None
                and t.category_id in known_categories
                and len((t.description or "").strip()) >= min_length
            ),
        )

    def _learn_group(
        self,
        account_id: str,
        description: str,
        category_id: str,
        evidence: Set[str],
        result: LearningResult,
    ) -> None:
        for pattern in self.extract_patterns(description):
            if not self.is_valid(pattern):
                logger.warning("Skipping invalid pattern: %s", pattern)
                result.patterns_skipped += 1
                continue

            outcome = self._reinforce(account_id, pattern, category_id, evidence)
            if outcome == CREATED:
                result.patterns_created += 1
            elif outcome == UPDATED:
                result.patterns_updated += 1
            else:
                result.patterns_skipped += 1

    def _reinforce(self, account_id: str, pattern: str, category_id: str, evidence: Set[str]) -> str:
        """Create or reinforce one pattern atomically; return the upsert outcome."""
        cfg = self.config
        now = utcnow()

        def create() -> CategorizationPattern:
            count = len(evidence)
            return CategorizationPattern(
                id="",
                account_id=account_id,
                pattern=pattern,
                category_id=category_id,
                confidence_score=clamp_confidence(cfg.base_confidence + cfg.confidence_step * count),
                match_count=count,
                last_matched=now,
                created_at=now,
                updated_at=now,
                evidence_ids=set(evidence),
            )

        def update(existing: CategorizationPattern) -> Optional[CategorizationPattern]:
            if existing.category_id != category_id:
                logger.debug(
                    "Pattern %r is bound to category %s, not %s; skipping",
                    pattern, existing.category_id, category_id,
                )
                return None
            fresh = evidence - existing.evidence_ids
            if not fresh:
                return None
            return replace(
                existing,
                match_count=existing.match_count + len(fresh),
                confidence_score=clamp_confidence(existing.confidence_score + cfg.confidence_step),
                last_matched=now,
                updated_at=now,
                evidence_ids=existing.evidence_ids | fresh,
            )

        _, outcome = self.store.upsert(
            PATTERNS, {"account_id": account_id, "pattern": pattern}, create, update,
        )
        return outcome

    # Management

    def register_pattern(
        self,
        account_id: str,
        pattern: str,
        category_id: str,
        confidence_score: Optional[int] = None,
    ) -> CategorizationPattern:
        """
        Register a hand-written pattern.

        Raises:
            ValidationError: If the pattern is not a valid regular expression.
            NotFoundError: If the category does not exist.
            ConflictError: If the pattern is already bound to another category.
        """
        self.compile(pattern)
        self.store.get(CATEGORIES, category_id)
        if confidence_score is None:
            confidence_score = self.config.base_confidence + self.config.confidence_step
        now = utcnow()

        def create() -> CategorizationPattern:
            return CategorizationPattern(
                id="",
                account_id=account_id,
                pattern=pattern,
                category_id=category_id,
                confidence_score=clamp_confidence(confidence_score),
                match_count=0,
                created_at=now,
                updated_at=now,
            )

        def update(existing: CategorizationPattern) -> Optional[CategorizationPattern]:
            if existing.category_id != category_id:
                raise ConflictError(
                    f"Pattern {pattern!r} is already bound to category {existing.category_id!r}"
                )
            return None

        with self.store.account_lock(account_id):
            record, _ = self.store.upsert(
                PATTERNS, {"account_id": account_id, "pattern": pattern}, create, update,
            )
        return record

    def record_accepted_suggestion(self, account_id: str, pattern_id: str) -> CategorizationPattern:
        """A suggestion from this pattern was applied: count it and raise confidence."""
        return self._adjust(account_id, pattern_id, SUGGESTION_STEP, count=True)

    def record_rejected_suggestion(self, account_id: str, pattern_id: str) -> CategorizationPattern:
        """A suggestion from this pattern was turned down: lower confidence."""
        return self._adjust(account_id, pattern_id, -SUGGESTION_STEP, count=False)

    def _adjust(self, account_id: str, pattern_id: str, delta: int, count: bool) -> CategorizationPattern:
        now = utcnow()

        def missing() -> CategorizationPattern:
            raise NotFoundError("pattern", pattern_id)

        def update(existing: CategorizationPattern) -> CategorizationPattern:
            confidence = existing.confidence_score + delta
            if delta < 0:
                confidence = max(confidence, min(REJECTION_FLOOR, existing.confidence_score))
            changes = {"confidence_score": clamp_confidence(confidence), "updated_at": now}
            if count:
                changes["match_count"] = existing.match_count + 1
                changes["last_matched"] = now
            return replace(existing, **changes)

        with self.store.account_lock(account_id):
            record, _ = self.store.upsert(
                PATTERNS, {"id": pattern_id, "account_id": account_id}, missing, update,
            )
        return record

    def top_patterns(self, account_id: str, limit: Optional[int] = None) -> List[TopPattern]:
        """Highest-confidence patterns of an account, most used first on ties."""
        limit = limit or self.config.top_patterns_limit
        patterns = sorted(
            self.store.select(PATTERNS, account_id=account_id),
            key=lambda p: (-p.confidence_score, -p.match_count),
        )[:limit]

        top: List[TopPattern] = []
        for p in patterns:
            category = self.store.find(CATEGORIES, p.category_id)
            top.append(TopPattern(
                pattern=p.pattern,
                category_name=category.name if category else "Unknown",
                confidence=p.confidence_score,
                match_count=p.match_count,
            ))
        return top
