"""Stage bank statements for review and load manual records."""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from bankrecon.engine.matcher import TransactionMatcher
from bankrecon.engine.models import (
    DuplicateStrategy,
    ImportedTransaction,
    ImportSummary,
    MatchConfidence,
    MatchRecord,
    MatchStatus,
    NormalizedCandidate,
    Transaction,
    TransactionType,
    utcnow,
)
from bankrecon.engine.patterns import PatternEngine
from bankrecon.engine.text import normalize_text
from bankrecon.parsers.csv_parser import NormalizedBatch, fingerprint
from bankrecon.store.memory import CATEGORIES, IMPORTED, TRANSACTIONS, RecordStore

logger = logging.getLogger(__name__)


class ImportService:
    """
    Drives a statement through staging, matching and category suggestion.

    All writes for an account happen under the account lock, so an import
    never interleaves with a commit of the same account.
    """

    def __init__(
        self,
        store: RecordStore,
        matcher: Optional[TransactionMatcher] = None,
        patterns: Optional[PatternEngine] = None,
    ):
        self.store = store
        self.matcher = matcher or TransactionMatcher()
        self.patterns = patterns or PatternEngine(store)

    def import_statement(
        self,
        account_id: str,
        batch: NormalizedBatch,
        strategy: DuplicateStrategy = DuplicateStrategy.SKIP,
        cancel: Optional[threading.Event] = None,
    ) -> ImportSummary:
        """
        Stage a normalized bank statement and propose matches for it.

        Args:
            account_id: Account the statement belongs to.
            batch: Normalized candidates from the CSV parser.
            strategy: What to do with candidates whose fingerprint is staged.
            cancel: Checked between rows; when set, the rows staged so far are
                matched and the rest of the batch is left untouched.

        Returns:
            ImportSummary with per-row failures and the matching summary.
        """
        summary = ImportSummary(total_rows=batch.total_rows)

        with self.store.account_lock(account_id):
            staged_by_fp: Dict[str, ImportedTransaction] = {}
            for row in self.store.select(IMPORTED, account_id=account_id):
                staged_by_fp.setdefault(row.fingerprint, row)

            touched: List[ImportedTransaction] = []
            for candidate in batch:
                if cancel is not None and cancel.is_set():
                    summary.cancelled = True
                    logger.info("Import cancelled after %d rows", len(touched))
                    break

                prior = staged_by_fp.get(candidate.fingerprint)
                if prior is not None:
                    summary.duplicates += 1
                    if strategy == DuplicateStrategy.SKIP:
                        continue
                    if strategy == DuplicateStrategy.REPLACE:
                        replaced = self.store.update(IMPORTED, prior.id, **self._staged_fields(candidate))
                        summary.replaced += 1
                        staged_by_fp[candidate.fingerprint] = replaced
                        touched = [t for t in touched if t.id != replaced.id]
                        touched.append(replaced)
                        continue

                staged = self.store.insert(IMPORTED, ImportedTransaction(
                    id="", account_id=account_id, **self._staged_fields(candidate),
                ))
                staged_by_fp.setdefault(candidate.fingerprint, staged)
                touched.append(staged)
                summary.written += 1

            summary.failed = list(batch.failures)
            summary.excluded = batch.excluded

            existing = self.store.select(TRANSACTIONS, account_id=account_id)
            records = self.matcher.match_all(touched, existing)
            for staged, record in zip(touched, records):
                self._apply_match(account_id, staged, record, existing)

        summary.matching = self.matcher.summarize(records)
        logger.info(
            "Imported %d of %d rows for account %s (%d duplicates, %d failed, %d excluded)",
            summary.written, summary.total_rows, account_id,
            summary.duplicates, len(summary.failed), summary.excluded,
        )
        return summary

    def import_manual(
        self,
        account_id: str,
        batch: NormalizedBatch,
        strategy: DuplicateStrategy = DuplicateStrategy.SKIP,
        cancel: Optional[threading.Event] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> ImportSummary:
        """
        Write manually kept records straight into the canonical transactions.

        Manual records usually hold unsigned amounts, so ``transaction_type``
        sets the type of every row; without it the parser's inference stands.
        Duplicates are detected by fingerprint against the account's existing
        transactions and earlier rows of the same batch, both keyed from the
        stored amount and type. A ``category`` column is resolved by
        case-insensitive category name; unknown names are reported as warnings
        and the row is written uncategorized.
        """
        summary = ImportSummary(total_rows=batch.total_rows)

        with self.store.account_lock(account_id):
            category_ids = {c.name.casefold(): c.id for c in self.store.select(CATEGORIES)}
            seen: Dict[str, Transaction] = {}
            for txn in self.store.select(TRANSACTIONS, account_id=account_id):
                seen.setdefault(self.canonical_fingerprint(txn), txn)

            for candidate in batch:
                if cancel is not None and cancel.is_set():
                    summary.cancelled = True
                    break

                txn = Transaction(
                    id="",
                    account_id=account_id,
                    date=candidate.date,
                    amount=abs(candidate.amount),
                    description=candidate.description,
                    type=transaction_type or candidate.type,
                )
                key = self.canonical_fingerprint(txn)
                prior = seen.get(key)
                if prior is not None:
                    summary.duplicates += 1
                    if strategy == DuplicateStrategy.SKIP:
                        continue

                if candidate.category_name:
                    txn.category_id = category_ids.get(candidate.category_name.casefold())
                    if txn.category_id is None:
                        summary.warnings.append(
                            f"Category {candidate.category_name!r} not found for row {candidate.row_number}"
                        )

                if prior is not None and strategy == DuplicateStrategy.REPLACE:
                    txn = self.store.update(
                        TRANSACTIONS, prior.id,
                        date=txn.date, amount=txn.amount, description=txn.description,
                        type=txn.type, category_id=txn.category_id,
                    )
                    summary.replaced += 1
                else:
                    txn = self.store.insert(TRANSACTIONS, txn)
                    summary.written += 1
                seen.setdefault(key, txn)

            summary.failed = list(batch.failures)
            summary.excluded = batch.excluded

        logger.info(
            "Loaded %d manual transactions for account %s (%d duplicates, %d failed)",
            summary.written, account_id, summary.duplicates, len(summary.failed),
        )
        return summary

    def clear_staged(self, account_id: str) -> int:
        """Drop every staged row of an account; return how many were removed."""
        with self.store.account_lock(account_id):
            return self.store.delete_where(IMPORTED, account_id=account_id)

    @staticmethod
    def canonical_fingerprint(txn: Transaction) -> str:
        return fingerprint(txn.date, txn.signed_amount, normalize_text(txn.description))

    @staticmethod
    def _staged_fields(candidate: NormalizedCandidate) -> dict:
        """Fields of a staged row taken from a candidate, with match state reset."""
        return {
            "date": candidate.date,
            "amount": candidate.amount,
            "currency": candidate.currency,
            "description": candidate.description,
            "normalized_description": candidate.normalized_description,
            "fingerprint": candidate.fingerprint,
            "type": candidate.type,
            "fee": candidate.fee,
            "balance": candidate.balance,
            "state": candidate.state,
            "product": candidate.product,
            "completed_date": candidate.completed_date,
            "match_status": MatchStatus.UNMATCHED,
            "match_confidence": None,
            "matched_existing_id": None,
            "match_reasons": [],
            "suggested_category_id": None,
            "notes": None,
            "updated_at": utcnow(),
        }

    def _apply_match(
        self,
        account_id: str,
        staged: ImportedTransaction,
        record: MatchRecord,
        existing: Iterable[Transaction],
    ) -> None:
        """Persist a match record and pick a suggested category."""
        suggested = None
        if record.is_match:
            matched = next((t for t in existing if t.id == record.existing_id), None)
            suggested = matched.category_id if matched else None

        if suggested is None or record.confidence == MatchConfidence.LOW:
            best = self.patterns.best_match(account_id, staged.description)
            if best is not None:
                logger.debug(
                    "Pattern %r suggests %s for %r", best.pattern, best.category_id, staged.description,
                )
                suggested = best.category_id

        self.store.update(
            IMPORTED, staged.id,
            match_status=self.matcher.initial_status(record),
            match_confidence=record.confidence,
            matched_existing_id=record.existing_id,
            match_reasons=list(record.reasons),
            suggested_category_id=suggested,
            updated_at=utcnow(),
        )
