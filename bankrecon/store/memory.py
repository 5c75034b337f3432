"""Record store contract used by the engine, and an in-memory implementation."""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TypeVar
from uuid import uuid4

from bankrecon.engine.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

R = TypeVar("R")

IMPORTED = "imported_transactions"
TRANSACTIONS = "transactions"
PATTERNS = "categorization_patterns"
CATEGORIES = "categories"

TABLES = (IMPORTED, TRANSACTIONS, PATTERNS, CATEGORIES)

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


class RecordStore(ABC):
    """
    Generic record store the engine is written against.

    Records are dataclasses with an ``id`` attribute. Every read returns a
    copy, so callers change stored data only through ``update``/``upsert``.
    """

    def __init__(self):
        self._account_locks: Dict[str, threading.RLock] = {}
        self._account_locks_guard = threading.Lock()

    @abstractmethod
    def insert(self, table: str, record: R) -> R:
        """Store a new record, assigning an id when it has none."""

    @abstractmethod
    def find(self, table: str, record_id: str) -> Optional[Any]:
        """Return the record with this id, or None."""

    @abstractmethod
    def update(self, table: str, record_id: str, **changes) -> Any:
        """Apply field changes to one record and return the updated copy."""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> None:
        """Delete one record by id."""

    @abstractmethod
    def delete_where(self, table: str, **filters) -> int:
        """Delete every record whose fields equal ``filters``; return the count."""

    @abstractmethod
    def select(
        self,
        table: str,
        where: Optional[Callable[[Any], bool]] = None,
        **filters,
    ) -> List[Any]:
        """Return records matching ``filters`` and ``where``, in insertion order."""

    @abstractmethod
    def upsert(
        self,
        table: str,
        key: Dict[str, Any],
        create: Callable[[], R],
        update: Callable[[R], Optional[R]],
    ) -> Tuple[R, str]:
        """
        Atomically create or modify the single record identified by ``key``.

        Args:
            table: Table name.
            key: Field values identifying at most one record.
            create: Builds the record when none exists.
            update: Receives the existing record and returns its replacement,
                or None to leave it untouched.

        Returns:
            Tuple of (stored record, one of "created", "updated", "unchanged").
        """

    @abstractmethod
    def transaction(self):
        """Context manager: everything inside is applied fully or not at all."""

    def get(self, table: str, record_id: str) -> Any:
        """
        Return the record with this id.

        Raises:
            NotFoundError: If no such record exists.
        """
        record = self.find(table, record_id)
        if record is None:
            raise NotFoundError(table, record_id)
        return record

    def count(self, table: str, **filters) -> int:
        return len(self.select(table, **filters))

    def account_lock(self, account_id: str) -> threading.RLock:
        """Exclusive, re-entrant lock serializing writes for one account."""
        with self._account_locks_guard:
            lock = self._account_locks.get(account_id)
            if lock is None:
                lock = threading.RLock()
                self._account_locks[account_id] = lock
            return lock


class InMemoryRecordStore(RecordStore):
    """
    Thread-safe store keeping every table in process memory.

    Unique keys are enforced per table. ``transaction()`` snapshots all tables
    and restores the snapshot when the block raises; the store lock is held for
    the whole block so no other thread observes intermediate state.
    """

    UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
        PATTERNS: ("account_id", "pattern"),
    }

    def __init__(self):
        super().__init__()
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in TABLES}
        self._lock = threading.RLock()
        self._depth = 0

    def insert(self, table: str, record: R) -> R:
        with self._lock:
            rows = self._table(table)
            if not getattr(record, "id", None):
                record = replace(record, id=str(uuid4()))
            if record.id in rows:
                raise ConflictError(f"Duplicate id {record.id!r} in {table}")
            self._check_unique(table, record)
            rows[record.id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def find(self, table: str, record_id: str) -> Optional[Any]:
        with self._lock:
            record = self._table(table).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def update(self, table: str, record_id: str, **changes) -> Any:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise NotFoundError(table, record_id)
            updated = replace(rows[record_id], **changes)
            self._check_unique(table, updated)
            rows[record_id] = copy.deepcopy(updated)
            return updated

    def delete(self, table: str, record_id: str) -> None:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise NotFoundError(table, record_id)
            del rows[record_id]

    def delete_where(self, table: str, **filters) -> int:
        with self._lock:
            rows = self._table(table)
            doomed = [rid for rid, rec in rows.items() if self._matches(rec, None, filters)]
            for rid in doomed:
                del rows[rid]
            return len(doomed)

    def select(
        self,
        table: str,
        where: Optional[Callable[[Any], bool]] = None,
        **filters,
    ) -> List[Any]:
        with self._lock:
            return [
                copy.deepcopy(rec)
                for rec in self._table(table).values()
                if self._matches(rec, where, filters)
            ]

    def upsert(
        self,
        table: str,
        key: Dict[str, Any],
        create: Callable[[], R],
        update: Callable[[R], Optional[R]],
    ) -> Tuple[R, str]:
        with self._lock:
            existing = [rec for rec in self._table(table).values() if self._matches(rec, None, key)]
            if len(existing) > 1:
                raise ConflictError(f"Key {key!r} is not unique in {table}")
            if not existing:
                return self.insert(table, create()), CREATED

            current = copy.deepcopy(existing[0])
            replacement = update(current)
            if replacement is None:
                return current, UNCHANGED
            if replacement.id != current.id:
                raise ConflictError(f"Upsert may not change the id of {current.id!r}")
            self._check_unique(table, replacement)
            self._table(table)[current.id] = copy.deepcopy(replacement)
            return replacement, UPDATED

    @contextmanager
    def transaction(self) -> Iterator["InMemoryRecordStore"]:
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._tables) if outermost else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._tables = snapshot
                    logger.warning("Transaction rolled back")
                raise
            finally:
                self._depth -= 1

    def _table(self, table: str) -> Dict[str, Any]:
        try:
            return self._tables[table]
        except KeyError:
            raise ValueError(f"Unknown table: {table!r}") from None

    def _check_unique(self, table: str, record: Any) -> None:
        fields = self.UNIQUE_KEYS.get(table)
        if not fields:
            return
        key = {name: getattr(record, name) for name in fields}
        for rid, other in self._table(table).items():
            if rid != record.id and self._matches(other, None, key):
                raise ConflictError(f"Unique key {key!r} already used in {table} by {rid!r}")

    @staticmethod
    def _matches(record: Any, where: Optional[Callable[[Any], bool]], filters: Dict[str, Any]) -> bool:
        for name, value in filters.items():
            if getattr(record, name) != value:
                return False
        return where is None or bool(where(record))
