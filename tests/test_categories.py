from datetime import date

import pytest

import models  # noqa: F401
from database import Base, make_engine, make_sessionmaker
from models import AccountType, CategoryType, PaymentMethod, TransactionType
from schemas import AccountIn, CategoryIn, CategoryUpdate, TransactionIn
from services import (
    AccountService,
    CategoryService,
    NotFoundError,
    TransactionService,
    ValidationError,
)


def make_session():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def test_category_crud() -> None:
    session = make_session()
    categories = CategoryService(session)
    food = categories.create(
        CategoryIn(name="Food", type=CategoryType.expense, color="#ff8800")
    )
    categories.create(CategoryIn(name="Bills", type=CategoryType.expense))

    updated = categories.update(food.id, CategoryUpdate(name="Dining", color=None))
    assert updated.name == "Dining"
    assert updated.color is None
    assert [c.name for c in categories.list_all()] == ["Bills", "Dining"]


def test_deleting_category_detaches_transactions() -> None:
    session = make_session()
    checking = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=5_000)
    )
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    txn = TransactionService(session).create(
        TransactionIn(
            account_id=checking.id,
            category_id=food.id,
            type=TransactionType.expense,
            payment_method=PaymentMethod.debit,
            description="Lunch",
            amount_cents=1_299,
            date=date(2026, 2, 10),
        )
    )

    CategoryService(session).delete(food.id)

    session.expire_all()
    txn_after = TransactionService(session).get(txn.id)
    assert txn_after.category_id is None
    assert txn_after.amount_cents == 1_299
    with pytest.raises(NotFoundError):
        CategoryService(session).get(food.id)


def test_transaction_category_type_must_match() -> None:
    session = make_session()
    checking = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=5_000)
    )
    salary = CategoryService(session).create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )
    with pytest.raises(ValidationError, match="Category type mismatch"):
        TransactionService(session).create(
            TransactionIn(
                account_id=checking.id,
                category_id=salary.id,
                type=TransactionType.expense,
                payment_method=PaymentMethod.debit,
                description="Lunch",
                amount_cents=100,
                date=date(2026, 2, 10),
            )
        )
