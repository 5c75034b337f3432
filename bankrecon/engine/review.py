"""Review state machine for staged bank transactions."""

import logging
import threading
from typing import Dict, FrozenSet, Iterable, Optional

from bankrecon.engine.errors import NotFoundError, ReconciliationError, StateError
from bankrecon.engine.models import (
    BulkReviewResult,
    ImportedTransaction,
    MatchStatus,
    ReviewOutcome,
    utcnow,
)
from bankrecon.store.memory import IMPORTED, TRANSACTIONS, RecordStore

logger = logging.getLogger(__name__)

ACCEPT = "accept"
REJECT = "reject"
VERIFY = "verify"

# action -> (states it may start from, state it leads to)
TRANSITIONS: Dict[str, tuple] = {
    ACCEPT: (frozenset({MatchStatus.POTENTIAL}), MatchStatus.MATCHED),
    REJECT: (frozenset({MatchStatus.POTENTIAL, MatchStatus.MATCHED}), MatchStatus.REVIEWED),
    VERIFY: (frozenset({MatchStatus.POTENTIAL, MatchStatus.MATCHED}), MatchStatus.VERIFIED),
}

# No action leaves a terminal state
TERMINAL_STATES: FrozenSet[MatchStatus] = frozenset({MatchStatus.VERIFIED})


def transition(current: MatchStatus, action: str) -> MatchStatus:
    """
    Return the state ``action`` leads to from ``current``.

    Raises:
        StateError: If the action is unknown or not allowed from ``current``.
    """
    if action not in TRANSITIONS:
        raise StateError(action, current, detail="unknown action")
    sources, target = TRANSITIONS[action]
    if current in TERMINAL_STATES or current not in sources:
        raise StateError(action, current, target)
    return target


class ReviewService:
    """Applies review actions to staged transactions held in a record store."""

    def __init__(self, store: RecordStore):
        self.store = store

    def accept(self, account_id: str, imported_id: str) -> ImportedTransaction:
        """Accept the proposed match: POTENTIAL -> MATCHED."""
        return self._apply(account_id, imported_id, ACCEPT)

    def reject(self, account_id: str, imported_id: str, notes: Optional[str] = None) -> ImportedTransaction:
        """Reject the proposed match; the bank description is used at commit."""
        return self._apply(account_id, imported_id, REJECT, notes=notes)

    def verify(self, account_id: str, imported_id: str) -> ImportedTransaction:
        """
        Confirm the match so the existing description and category survive commit.

        Raises:
            StateError: If the row is not POTENTIAL or MATCHED, or has no match.
            NotFoundError: If the row or its matched transaction is missing.
        """
        with self.store.account_lock(account_id):
            imported = self._load(account_id, imported_id)
            target = transition(imported.match_status, VERIFY)
            if imported.matched_existing_id is None:
                raise StateError(VERIFY, imported.match_status, target, "no matched transaction")
            existing = self.store.get(TRANSACTIONS, imported.matched_existing_id)
            note = f"Verified against manual entry: {existing.description}"
            updated = self.store.update(
                IMPORTED, imported_id,
                match_status=target, notes=note, updated_at=utcnow(),
            )
            logger.info("Verified %s against %s", imported_id, existing.id)
            return updated

    def bulk_accept(
        self,
        account_id: str,
        imported_ids: Iterable[str],
        cancel: Optional[threading.Event] = None,
    ) -> BulkReviewResult:
        return self._bulk(account_id, imported_ids, ACCEPT, cancel)

    def bulk_reject(
        self,
        account_id: str,
        imported_ids: Iterable[str],
        cancel: Optional[threading.Event] = None,
    ) -> BulkReviewResult:
        return self._bulk(account_id, imported_ids, REJECT, cancel)

    def _bulk(
        self,
        account_id: str,
        imported_ids: Iterable[str],
        action: str,
        cancel: Optional[threading.Event],
    ) -> BulkReviewResult:
        """Apply one action per id independently, collecting per-id outcomes."""
        result = BulkReviewResult()
        for imported_id in imported_ids:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                break
            try:
                updated = self._apply(account_id, imported_id, action)
            except ReconciliationError as e:
                result.outcomes.append(ReviewOutcome(imported_id, ok=False, error=str(e)))
            else:
                result.outcomes.append(ReviewOutcome(imported_id, ok=True, status=updated.match_status))

        logger.info(
            "Bulk %s: %d succeeded, %d failed",
            action, len(result.succeeded), len(result.failed),
        )
        return result

    def _apply(self, account_id: str, imported_id: str, action: str, **changes) -> ImportedTransaction:
        with self.store.account_lock(account_id):
            imported = self._load(account_id, imported_id)
            target = transition(imported.match_status, action)
            if changes.get("notes") is None:
                changes.pop("notes", None)
            return self.store.update(
                IMPORTED, imported_id,
                match_status=target, updated_at=utcnow(), **changes,
            )

    def _load(self, account_id: str, imported_id: str) -> ImportedTransaction:
        imported = self.store.find(IMPORTED, imported_id)
        if imported is None or imported.account_id != account_id:
            raise NotFoundError("imported transaction", imported_id)
        return imported
