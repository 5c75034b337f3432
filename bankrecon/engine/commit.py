"""Replace the manual transaction set with the reviewed bank import."""

import logging
from typing import Dict, List

from bankrecon.engine.errors import AtomicityError, NotFoundError, StateError, ValidationError
from bankrecon.engine.models import (
    CommitPreview,
    CommitResult,
    ImportedTransaction,
    MatchStatus,
    Transaction,
    TransactionType,
)
from bankrecon.store.memory import IMPORTED, TRANSACTIONS, RecordStore

logger = logging.getLogger(__name__)


class CommitOrchestrator:
    """
    Commits staged bank transactions as the account's canonical transactions.

    The commit deletes every canonical transaction of the account and writes
    one per staged row. Rows the reviewer VERIFIED keep the description and
    category of the manual transaction they matched; every other row uses the
    bank data. The whole operation runs inside one store transaction while
    holding the account lock: it is applied completely or not at all.
    """

    def __init__(self, store: RecordStore):
        self.store = store

    def preview(self, account_id: str) -> CommitPreview:
        """Count what a commit would delete and write."""
        staged = self.store.select(IMPORTED, account_id=account_id)
        by_status: Dict[MatchStatus, int] = {status: 0 for status in MatchStatus}
        for row in staged:
            by_status[row.match_status] += 1

        return CommitPreview(
            manual_transactions_to_delete=self.store.count(TRANSACTIONS, account_id=account_id),
            total_imported_transactions=len(staged),
            verified_transactions=by_status[MatchStatus.VERIFIED],
            unmatched_transactions=by_status[MatchStatus.UNMATCHED],
            rejected_transactions=by_status[MatchStatus.REVIEWED],
            potential_transactions=by_status[MatchStatus.POTENTIAL],
            matched_transactions=by_status[MatchStatus.MATCHED],
        )

    def commit(self, account_id: str, allow_pending: bool = False) -> CommitResult:
        """
        Atomically replace the account's transactions with the staged import.

        Args:
            account_id: Account whose data is replaced.
            allow_pending: Commit even though some rows are still POTENTIAL.

        Returns:
            CommitResult with counts and the preview taken before the commit.

        Raises:
            ValidationError: If nothing is staged.
            StateError: If POTENTIAL rows remain and ``allow_pending`` is False.
            AtomicityError: If any write failed; nothing was changed.
        """
        with self.store.account_lock(account_id):
            preview = self.preview(account_id)
            if preview.total_imported_transactions == 0:
                raise ValidationError("No imported transactions found to commit")
            if preview.potential_transactions and not allow_pending:
                raise StateError(
                    "commit", MatchStatus.POTENTIAL,
                    detail=f"{preview.potential_transactions} rows still await review",
                )

            try:
                with self.store.transaction():
                    result = self._replace(account_id, preview)
            except Exception as e:
                logger.error("Commit for account %s rolled back: %s", account_id, e)
                raise AtomicityError(f"Commit failed and was rolled back: {e}") from e

        logger.info(
            "Committed %d transactions for account %s (%d verified, %d deleted)",
            result.total_committed, account_id,
            result.verified_with_categories, preview.manual_transactions_to_delete,
        )
        return result

    def _replace(self, account_id: str, preview: CommitPreview) -> CommitResult:
        staged: List[ImportedTransaction] = self.store.select(IMPORTED, account_id=account_id)

        # Read the matched manual rows before they are deleted
        preserved: Dict[str, Transaction] = {}
        for row in staged:
            if row.match_status == MatchStatus.VERIFIED:
                existing = self.store.find(TRANSACTIONS, row.matched_existing_id) if row.matched_existing_id else None
                if existing is None:
                    raise NotFoundError("matched transaction", row.matched_existing_id or "")
                preserved[row.id] = existing

        deleted = self.store.delete_where(TRANSACTIONS, account_id=account_id)
        logger.debug("Deleted %d manual transactions for account %s", deleted, account_id)

        committed = 0
        verified_with_categories = 0
        for row in staged:
            self.store.insert(TRANSACTIONS, self._to_canonical(row, preserved.get(row.id)))
            committed += 1
            if row.id in preserved and preserved[row.id].category_id:
                verified_with_categories += 1

        self.store.delete_where(IMPORTED, account_id=account_id)

        return CommitResult(
            total_committed=committed,
            verified_with_categories=verified_with_categories,
            ready_for_categorization=committed - verified_with_categories,
            preview=preview,
        )

    @staticmethod
    def _to_canonical(row: ImportedTransaction, existing: "Transaction | None") -> Transaction:
        if row.type == TransactionType.CAPITAL:
            txn_type = TransactionType.CAPITAL
        else:
            txn_type = TransactionType.INCOME if row.amount > 0 else TransactionType.EXPENDITURE

        if existing is not None:
            description = existing.description
            category_id = existing.category_id
            notes = row.notes or existing.notes
        else:
            description = row.description
            category_id = row.suggested_category_id
            notes = row.notes

        return Transaction(
            id="",
            account_id=row.account_id,
            date=row.date,
            amount=row.abs_amount,
            description=description,
            type=txn_type,
            category_id=category_id,
            notes=notes,
            bank_reference=row.description,
        )
