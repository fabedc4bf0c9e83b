from datetime import date

import pytest
from sqlalchemy import select

import models  # noqa: F401
from database import Base, make_engine, make_sessionmaker
from models import (
    AccountType,
    Bill,
    BillStatus,
    PaymentMethod,
    Transaction,
    TransactionType,
)
from schemas import AccountIn, AccountUpdate, HybridAccountIn, TransactionIn
from services import (
    AccountService,
    NotFoundError,
    PaymentService,
    TransactionService,
    ValidationError,
    rebuild_balances,
)


def make_session():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return make_sessionmaker(engine)()


def test_create_credit_account_keeps_card_days() -> None:
    session = make_session()
    card = AccountService(session).create(
        AccountIn(name=" Visa ", type=AccountType.credit, closing_day=3, due_day=10)
    )
    assert card.name == "Visa"
    assert card.balance_cents == 0
    assert (card.closing_day, card.due_day) == (3, 10)


def test_create_checking_account_drops_card_days() -> None:
    session = make_session()
    checking = AccountService(session).create(
        AccountIn(
            name="Checking",
            type=AccountType.checking,
            balance_cents=12_345,
            closing_day=3,
            due_day=10,
        )
    )
    assert checking.balance_cents == 12_345
    assert checking.opening_balance_cents == 12_345
    assert checking.closing_day is None
    assert checking.due_day is None


def test_create_hybrid_account_creates_checking_and_card() -> None:
    session = make_session()
    checking, card = AccountService(session).create_hybrid(
        HybridAccountIn(name="Nubank", balance_cents=50_000, closing_day=2, due_day=9)
    )
    assert checking.type == AccountType.checking
    assert checking.balance_cents == 50_000
    assert card.type == AccountType.credit
    assert card.name == "Nubank - Card"
    assert card.balance_cents == 0
    assert card.due_day == 9
    assert [a.name for a in AccountService(session).list_all()] == [
        "Nubank",
        "Nubank - Card",
    ]


def test_set_balance_shifts_opening_balance() -> None:
    session = make_session()
    accounts = AccountService(session)
    checking = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=10_000)
    )
    TransactionService(session).create(
        TransactionIn(
            account_id=checking.id,
            type=TransactionType.expense,
            payment_method=PaymentMethod.debit,
            description="Groceries",
            amount_cents=2_500,
            date=date(2026, 3, 4),
        )
    )

    accounts.set_balance(checking.id, 20_000)
    assert checking.balance_cents == 20_000
    assert checking.opening_balance_cents == 22_500

    rebuild_balances(session, checking.user_id)
    assert accounts.get(checking.id).balance_cents == 20_000


def test_set_balance_rejects_credit_accounts() -> None:
    session = make_session()
    accounts = AccountService(session)
    card = accounts.create(AccountIn(name="Visa", type=AccountType.credit, due_day=10))
    with pytest.raises(ValidationError, match="cannot be set directly"):
        accounts.set_balance(card.id, 5_000)


def test_type_change_blocked_once_transactions_exist() -> None:
    session = make_session()
    accounts = AccountService(session)
    cash = accounts.create(
        AccountIn(name="Wallet", type=AccountType.cash, balance_cents=1_000)
    )
    updated = accounts.update(cash.id, AccountUpdate(type=AccountType.checking))
    assert updated.type == AccountType.checking

    TransactionService(session).create(
        TransactionIn(
            account_id=cash.id,
            type=TransactionType.income,
            payment_method=PaymentMethod.pix,
            description="Gift",
            amount_cents=500,
            date=date(2026, 3, 1),
        )
    )
    with pytest.raises(ValidationError, match="Cannot change the type"):
        accounts.update(cash.id, AccountUpdate(type=AccountType.credit))

    renamed = accounts.update(cash.id, AccountUpdate(name="Main"))
    assert renamed.name == "Main"


def test_delete_account_removes_its_rows_and_refreshes_counterparts() -> None:
    session = make_session()
    accounts = AccountService(session)
    txns = TransactionService(session)
    checking = accounts.create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=10_000)
    )
    savings = accounts.create(
        AccountIn(name="Savings", type=AccountType.cash, balance_cents=0)
    )
    card = accounts.create(AccountIn(name="Visa", type=AccountType.credit, due_day=10))

    txns.create(
        TransactionIn(
            account_id=checking.id,
            destination_account_id=savings.id,
            type=TransactionType.transfer,
            payment_method=PaymentMethod.pix,
            description="Move",
            amount_cents=4_000,
            date=date(2026, 3, 2),
        )
    )
    txns.create(
        TransactionIn(
            account_id=card.id,
            type=TransactionType.expense,
            payment_method=PaymentMethod.credit,
            description="Shoes",
            amount_cents=9_000,
            date=date(2026, 3, 2),
        )
    )
    assert savings.balance_cents == 4_000

    accounts.delete(checking.id)
    assert accounts.get(savings.id).balance_cents == 0
    with pytest.raises(NotFoundError):
        accounts.get(checking.id)

    accounts.delete(card.id)
    assert session.scalars(select(Bill)).all() == []
    assert session.scalars(select(Transaction)).all() == []


def test_get_is_scoped_to_user() -> None:
    session = make_session()
    account = AccountService(session, user_id=1).create(
        AccountIn(name="Checking", type=AccountType.checking)
    )
    with pytest.raises(NotFoundError):
        AccountService(session, user_id=2).get(account.id)


def test_account_that_paid_a_bill_cannot_be_deleted_until_reverted() -> None:
    session = make_session()
    accounts = AccountService(session)
    checking = accounts.create(
        AccountIn(name="CK1", type=AccountType.checking, balance_cents=100_000)
    )
    card = accounts.create(AccountIn(name="CC1", type=AccountType.credit, due_day=10))
    txn = TransactionService(session).create(
        TransactionIn(
            account_id=card.id,
            type=TransactionType.expense,
            payment_method=PaymentMethod.credit,
            description="Flight",
            amount_cents=30_000,
            date=date(2026, 10, 5),
        )
    )
    payments = PaymentService(session)
    payments.pay_bill(txn.bill_id, checking.id)

    with pytest.raises(ValidationError, match="revert those payments"):
        accounts.delete(checking.id)

    session.expire_all()
    assert accounts.get(checking.id).balance_cents == 70_000
    assert accounts.get(card.id).balance_cents == 30_000
    assert payments.payment_for(session.get(Bill, txn.bill_id)) is not None

    payments.revert_bill_payment(txn.bill_id)
    accounts.delete(checking.id)

    session.expire_all()
    bill = session.get(Bill, txn.bill_id)
    assert bill.status == BillStatus.closed
    assert accounts.get(card.id).balance_cents == 0
