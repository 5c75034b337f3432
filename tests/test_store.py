"""Tests for the in-memory record store."""

import threading
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from bankrecon.engine.errors import ConflictError, NotFoundError
from bankrecon.engine.models import CategorizationPattern, Transaction, TransactionType
from bankrecon.store.memory import (
    CREATED,
    PATTERNS,
    TRANSACTIONS,
    UNCHANGED,
    UPDATED,
)


def make_txn(id: str = "", desc: str = "Test", account: str = "acct-1") -> Transaction:
    return Transaction(
        id=id,
        account_id=account,
        date=date(2024, 1, 15),
        amount=Decimal("10.00"),
        description=desc,
        type=TransactionType.EXPENDITURE,
    )


def make_pattern(pattern: str = "tesco", category_id: str = "cat-groceries") -> CategorizationPattern:
    return CategorizationPattern(
        id="", account_id="acct-1", pattern=pattern, category_id=category_id,
        confidence_score=60, match_count=1,
    )


class TestCrud:

    def test_insert_assigns_id(self, store):
        txn = store.insert(TRANSACTIONS, make_txn())
        assert txn.id
        assert store.get(TRANSACTIONS, txn.id) == txn

    def test_reads_are_copies(self, store):
        txn = store.insert(TRANSACTIONS, make_txn("T1"))
        txn.description = "changed"
        assert store.get(TRANSACTIONS, "T1").description == "Test"

    def test_duplicate_id(self, store):
        store.insert(TRANSACTIONS, make_txn("T1"))
        with pytest.raises(ConflictError):
            store.insert(TRANSACTIONS, make_txn("T1"))

    def test_update_and_missing(self, store):
        store.insert(TRANSACTIONS, make_txn("T1"))
        assert store.update(TRANSACTIONS, "T1", description="New").description == "New"
        with pytest.raises(NotFoundError):
            store.update(TRANSACTIONS, "T2", description="New")
        with pytest.raises(NotFoundError):
            store.get(TRANSACTIONS, "T2")
        assert store.find(TRANSACTIONS, "T2") is None

    def test_select_and_delete_where(self, store):
        store.insert(TRANSACTIONS, make_txn("T1", "a"))
        store.insert(TRANSACTIONS, make_txn("T2", "b"))
        store.insert(TRANSACTIONS, make_txn("T3", "c", account="acct-2"))

        assert [t.id for t in store.select(TRANSACTIONS, account_id="acct-1")] == ["T1", "T2"]
        assert [t.id for t in store.select(TRANSACTIONS, where=lambda t: t.description == "b")] == ["T2"]
        assert store.delete_where(TRANSACTIONS, account_id="acct-1") == 2
        assert store.count(TRANSACTIONS) == 1

    def test_delete(self, store):
        store.insert(TRANSACTIONS, make_txn("T1"))
        store.delete(TRANSACTIONS, "T1")
        with pytest.raises(NotFoundError):
            store.delete(TRANSACTIONS, "T1")

    def test_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.select("nope")

    def test_pattern_unique_key(self, store):
        store.insert(PATTERNS, make_pattern())
        with pytest.raises(ConflictError):
            store.insert(PATTERNS, make_pattern(category_id="cat-other"))


class TestUpsert:

    def test_created_updated_unchanged(self, store):
        key = {"account_id": "acct-1", "pattern": "tesco"}

        record, outcome = store.upsert(PATTERNS, key, make_pattern, lambda p: None)
        assert outcome == CREATED

        record, outcome = store.upsert(
            PATTERNS, key, make_pattern, lambda p: replace(p, match_count=p.match_count + 1),
        )
        assert outcome == UPDATED
        assert record.match_count == 2

        _, outcome = store.upsert(PATTERNS, key, make_pattern, lambda p: None)
        assert outcome == UNCHANGED
        assert store.count(PATTERNS) == 1

    def test_update_may_not_change_id(self, store):
        key = {"account_id": "acct-1", "pattern": "tesco"}
        store.upsert(PATTERNS, key, make_pattern, lambda p: None)

        with pytest.raises(ConflictError):
            store.upsert(PATTERNS, key, make_pattern, lambda p: replace(p, id="other"))

    def test_concurrent_upserts_keep_one_row(self, store):
        key = {"account_id": "acct-1", "pattern": "tesco"}

        def bump():
            for _ in range(50):
                store.upsert(
                    PATTERNS, key, make_pattern, lambda p: replace(p, match_count=p.match_count + 1),
                )

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        patterns = store.select(PATTERNS, account_id="acct-1")
        assert len(patterns) == 1
        assert patterns[0].match_count == 400


class TestTransaction:

    def test_rollback_on_error(self, store):
        store.insert(TRANSACTIONS, make_txn("T1"))

        with pytest.raises(RuntimeError):
            with store.transaction():
                store.delete_where(TRANSACTIONS)
                store.insert(TRANSACTIONS, make_txn("T2"))
                raise RuntimeError("fail")

        assert [t.id for t in store.select(TRANSACTIONS)] == ["T1"]

    def test_nested_rolls_back_to_outermost(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert(TRANSACTIONS, make_txn("T1"))
                with store.transaction():
                    store.insert(TRANSACTIONS, make_txn("T2"))
                raise RuntimeError("fail")

        assert store.count(TRANSACTIONS) == 0

    def test_commit_on_success(self, store):
        with store.transaction():
            store.insert(TRANSACTIONS, make_txn("T1"))
        assert store.count(TRANSACTIONS) == 1


class TestAccountLock:

    def test_one_lock_per_account(self, store):
        assert store.account_lock("a") is store.account_lock("a")
        assert store.account_lock("a") is not store.account_lock("b")

    def test_reentrant(self, store):
        with store.account_lock("a"):
            with store.account_lock("a"):
                store.insert(TRANSACTIONS, make_txn("T1"))
        assert store.count(TRANSACTIONS) == 1
