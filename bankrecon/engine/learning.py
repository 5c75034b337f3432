"""Manual categorization with decoupled background pattern learning."""

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from typing import List, Optional, Set

from bankrecon.engine.errors import NotFoundError
from bankrecon.engine.models import LearningFailure, LearningResult, Transaction
from bankrecon.engine.patterns import PatternEngine
from bankrecon.store.memory import CATEGORIES, TRANSACTIONS, RecordStore

logger = logging.getLogger(__name__)


class BackgroundLearner:
    """
    Runs single-transaction learning off the caller's path.

    Work is submitted to an executor; failures are logged and kept in
    ``failures`` instead of reaching whoever triggered the learning. A failure
    is recorded before its Future resolves, so ``wait()`` followed by a look
    at ``failures`` always sees it.
    """

    def __init__(
        self,
        engine: PatternEngine,
        executor: Optional[Executor] = None,
        max_workers: int = 1,
    ):
        self.engine = engine
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="pattern-learner",
        )
        self.failures: List[LearningFailure] = []
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, account_id: str, transaction_id: str) -> Optional[Future]:
        """
        Queue learning from one categorized transaction.

        Returns:
            The Future of the learning run (resolving to a LearningResult, or
            None when the run failed), or None if it could not be queued.
        """
        try:
            future = self._executor.submit(self._run, account_id, transaction_id)
        except RuntimeError as e:
            # Executor already shut down
            self._record_failure(account_id, transaction_id, e)
            return None

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until every queued learning run has finished."""
        with self._lock:
            pending = list(self._pending)
        wait_for_futures(pending, timeout=timeout)

    def close(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def __enter__(self) -> "BackgroundLearner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _run(self, account_id: str, transaction_id: str) -> Optional[LearningResult]:
        try:
            result = self.engine.learn_one(account_id, transaction_id)
        except Exception as e:
            self._record_failure(account_id, transaction_id, e)
            return None
        logger.debug(
            "Background learning for %s: %d created, %d updated",
            transaction_id, result.patterns_created, result.patterns_updated,
        )
        return result

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def _record_failure(self, account_id: str, transaction_id: str, error: BaseException) -> None:
        logger.error(
            "Pattern learning failed for transaction %s: %s",
            transaction_id, error, exc_info=error,
        )
        with self._lock:
            self.failures.append(LearningFailure(
                account_id=account_id,
                transaction_id=transaction_id,
                error=f"{type(error).__name__}: {error}",
            ))


class CategorizationService:
    """Assigns categories to canonical transactions and learns from them."""

    def __init__(self, store: RecordStore, learner: BackgroundLearner):
        self.store = store
        self.learner = learner

    def categorize_transaction(self, account_id: str, transaction_id: str, category_id: Optional[str]) -> Transaction:
        """
        Set (or clear) a transaction's category.

        Learning from the new category is queued on the background learner and
        never affects the outcome of this call.

        Raises:
            NotFoundError: If the transaction or the category does not exist.
        """
        with self.store.account_lock(account_id):
            txn = self.store.find(TRANSACTIONS, transaction_id)
            if txn is None or txn.account_id != account_id:
                raise NotFoundError("transaction", transaction_id)
            if category_id is not None:
                self.store.get(CATEGORIES, category_id)
            updated = self.store.update(TRANSACTIONS, transaction_id, category_id=category_id)

        if category_id is not None and updated.description:
            self.learner.submit(account_id, transaction_id)
        return updated
