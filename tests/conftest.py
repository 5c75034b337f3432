"""Shared fixtures: an empty record store and a couple of categories."""

import pytest

from bankrecon.engine.models import Category, TransactionType
from bankrecon.store.memory import CATEGORIES, InMemoryRecordStore

ACCOUNT = "acct-1"


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def groceries(store) -> Category:
    return store.insert(CATEGORIES, Category(id="cat-groceries", name="Groceries", type=TransactionType.EXPENDITURE))


@pytest.fixture
def transport(store) -> Category:
    return store.insert(CATEGORIES, Category(id="cat-transport", name="Transport", type=TransactionType.EXPENDITURE))


@pytest.fixture
def salary(store) -> Category:
    return store.insert(CATEGORIES, Category(id="cat-salary", name="Salary", type=TransactionType.INCOME))
