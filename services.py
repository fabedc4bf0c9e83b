from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Iterator, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import (
    Account,
    AccountType,
    Bill,
    BillStatus,
    Category,
    PaymentMethod,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from periods import Period, add_months, day_in_month, local_today, month_dates
from schemas import (
    AccountIn,
    AccountUpdate,
    BillUpdate,
    CategoryIn,
    CategoryUpdate,
    HybridAccountIn,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

INSTALLMENT_SUFFIX = re.compile(r"\s*\(\d+/\d+\)$")
FINANCIAL_FIELDS = ("amount_cents", "type", "account_id", "payment_method")
CLEARABLE_FIELDS = ("category_id", "destination_account_id")


class LedgerError(ValueError):
    """Base class for ledger failures. The message is meant for end users."""


class ValidationError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


class InsufficientFundsError(LedgerError):
    def __init__(
        self,
        message: str,
        *,
        account_id: int,
        available_cents: int,
        required_cents: int,
    ) -> None:
        super().__init__(message)
        self.account_id = account_id
        self.available_cents = available_cents
        self.required_cents = required_cents


class PartialWorkflowFailure(LedgerError):
    """A workflow failed after some of its writes had been issued.

    The surrounding database transaction is rolled back before this is
    raised; ``completed_steps`` lists what had been applied at that point.
    """

    def __init__(
        self, workflow: str, completed_steps: list[str], cause: BaseException
    ) -> None:
        steps = ", ".join(completed_steps)
        super().__init__(
            f"{workflow} failed after: {steps}. Changes were rolled back ({cause})"
        )
        self.workflow = workflow
        self.completed_steps = list(completed_steps)
        self.cause = cause


def get_current_user_id() -> int:
    return 1


def format_cents(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def divide_cents(amount_cents: int, count: int) -> int:
    share = Decimal(amount_cents) / Decimal(count)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_installment(amount_cents: int, count: int) -> int:
    return divide_cents(amount_cents, count)


def require_funds(account: Account, amount_cents: int, message: str) -> None:
    if account.balance_cents < amount_cents:
        raise InsufficientFundsError(
            message,
            account_id=account.id,
            available_cents=account.balance_cents,
            required_cents=amount_cents,
        )


@contextmanager
def ledger_workflow(session: Session, name: str) -> Iterator[list[str]]:
    """Run a multi-step write as one database transaction.

    Steps append a label to the yielded list once their write is issued.
    Ledger rule violations propagate unchanged; any other failure after at
    least one step becomes a ``PartialWorkflowFailure``.
    """
    steps: list[str] = []
    try:
        yield steps
        session.commit()
    except LedgerError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        if not steps:
            raise
        logger.warning(
            f"workflow_failed: name={name} completed_steps={steps} error={exc!r}"
        )
        raise PartialWorkflowFailure(name, steps, exc) from exc
    logger.info(f"workflow_done: name={name} steps={len(steps)}")


def _sum_amount(session: Session, *criteria) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                *criteria
            )
        ).scalar_one()
        or 0
    )


def recompute_account_balance(session: Session, account_id: int) -> int:
    account = session.get(Account, account_id)
    if account is None:
        return 0

    not_credit = Transaction.payment_method != PaymentMethod.credit
    income = _sum_amount(
        session,
        Transaction.account_id == account_id,
        Transaction.type == TransactionType.income,
        not_credit,
    )
    expense = _sum_amount(
        session,
        Transaction.account_id == account_id,
        Transaction.type == TransactionType.expense,
        not_credit,
    )
    sent = _sum_amount(
        session,
        Transaction.account_id == account_id,
        Transaction.type == TransactionType.transfer,
    )
    received = _sum_amount(
        session,
        Transaction.destination_account_id == account_id,
        Transaction.type == TransactionType.transfer,
    )

    account.balance_cents = (
        account.opening_balance_cents + income - expense - sent + received
    )
    return account.balance_cents


def recompute_bill_total(session: Session, bill_id: int) -> int:
    bill = session.get(Bill, bill_id)
    if bill is None:
        return 0

    expenses = _sum_amount(
        session,
        Transaction.bill_id == bill_id,
        Transaction.type == TransactionType.expense,
    )
    refunds = _sum_amount(
        session,
        Transaction.bill_id == bill_id,
        Transaction.type == TransactionType.income,
    )
    bill.total_amount_cents = max(0, expenses - refunds)
    return bill.total_amount_cents


def refresh_ledger(
    session: Session,
    account_ids: Iterable[Optional[int]],
    bill_ids: Iterable[Optional[int]] = (),
) -> None:
    session.flush()
    for account_id in sorted({a for a in account_ids if a is not None}):
        recompute_account_balance(session, account_id)
    for bill_id in sorted({b for b in bill_ids if b is not None}):
        recompute_bill_total(session, bill_id)
    session.flush()


def rebuild_balances(session: Session, user_id: int) -> None:
    account_ids = session.scalars(
        select(Account.id).where(Account.user_id == user_id)
    ).all()
    bill_ids = session.scalars(select(Bill.id).where(Bill.user_id == user_id)).all()
    refresh_ledger(session, account_ids, bill_ids)
    session.commit()
    logger.info(
        f"rebuild_balances: user_id={user_id} accounts={len(account_ids)} "
        f"bills={len(bill_ids)}"
    )


def bill_closing_date(bill: Bill, closing_day: Optional[int]) -> date:
    """A bill closes on the card's closing day of the month after its own."""
    next_month = add_months(date(bill.year, bill.month, 1), 1)
    return day_in_month(next_month.year, next_month.month, closing_day or 1)


def close_due_bills(session: Session, today: date) -> int:
    stmt = (
        select(Bill)
        .options(joinedload(Bill.account))
        .where(Bill.status == BillStatus.open)
        .order_by(Bill.year, Bill.month, Bill.id)
    )
    closed = 0
    for bill in session.scalars(stmt).all():
        if bill_closing_date(bill, bill.account.closing_day) <= today:
            bill.status = BillStatus.closed
            closed += 1
    session.commit()
    return closed


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    bill_id: Optional[int] = None
    category_id: Optional[int] = None
    query: Optional[str] = None


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        is_credit = data.type == AccountType.credit
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            opening_balance_cents=data.balance_cents,
            balance_cents=data.balance_cents,
            closing_day=data.closing_day if is_credit else None,
            due_day=data.due_day if is_credit else None,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def create_hybrid(self, data: HybridAccountIn) -> tuple[Account, Account]:
        """Checking account plus the credit card that belongs to it."""
        name = data.name.strip()
        checking = Account(
            user_id=self.user_id,
            name=name,
            type=AccountType.checking,
            opening_balance_cents=data.balance_cents,
            balance_cents=data.balance_cents,
        )
        card = Account(
            user_id=self.user_id,
            name=f"{name} - Card",
            type=AccountType.credit,
            opening_balance_cents=0,
            balance_cents=0,
            closing_day=data.closing_day,
            due_day=data.due_day,
        )
        self.session.add_all([checking, card])
        self.session.commit()
        self.session.refresh(checking)
        self.session.refresh(card)
        return checking, card

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)

        new_type = changes.get("type")
        if new_type is not None and new_type != account.type:
            used = self.session.execute(
                select(func.count(Transaction.id)).where(
                    or_(
                        Transaction.account_id == account.id,
                        Transaction.destination_account_id == account.id,
                    )
                )
            ).scalar_one()
            if used:
                raise ValidationError(
                    "Cannot change the type of an account that has transactions"
                )
            account.type = new_type

        if changes.get("name"):
            account.name = changes["name"].strip()
        for field in ("closing_day", "due_day"):
            if field in changes:
                setattr(account, field, changes[field])
        if not account.is_credit:
            account.closing_day = None
            account.due_day = None

        self.session.commit()
        self.session.refresh(account)
        return account

    def set_balance(self, account_id: int, balance_cents: int) -> Account:
        account = self.get(account_id)
        if account.is_credit:
            raise ValidationError("Credit account balances cannot be set directly")

        current = recompute_account_balance(self.session, account.id)
        account.opening_balance_cents += balance_cents - current
        account.balance_cents = balance_cents
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            f"set_balance: account_id={account.id} balance_cents={balance_cents}"
        )
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        paid_bills = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.account_id == account.id,
                Transaction.paid_bill_id.is_not(None),
            )
        ).scalar_one()
        if paid_bills:
            raise ValidationError(
                "This account paid card bills; revert those payments before "
                "deleting it"
            )

        with ledger_workflow(self.session, "delete_account") as steps:
            # balances fed by this account's outgoing transfers
            touched = set(
                self.session.scalars(
                    select(Transaction.destination_account_id).where(
                        Transaction.account_id == account.id,
                        Transaction.type == TransactionType.transfer,
                        Transaction.destination_account_id.is_not(None),
                    )
                ).all()
            )
            self.session.execute(
                update(Transaction)
                .where(Transaction.destination_account_id == account.id)
                .values(destination_account_id=None)
            )
            steps.append("incoming transfers detached")

            self.session.delete(account)
            self.session.flush()
            steps.append(f"account {account_id} deleted")

            touched.discard(account_id)
            refresh_ledger(self.session, touched)
        logger.info(f"delete_account: account_id={account_id}")


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name"):
            category.name = changes["name"].strip()
        if changes.get("type") is not None:
            category.type = changes["type"]
        if "color" in changes:
            category.color = changes["color"]
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
            .values(category_id=None)
        )
        self.session.delete(category)
        self.session.commit()


class BillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Bill]:
        stmt = (
            select(Bill)
            .where(Bill.user_id == self.user_id)
            .order_by(Bill.year.desc(), Bill.month.desc(), Bill.id)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, bill_id: int) -> Bill:
        bill = self.session.get(Bill, bill_id)
        if not bill or bill.user_id != self.user_id:
            raise NotFoundError("Bill not found")
        return bill

    def find(self, account_id: int, month: int, year: int) -> Optional[Bill]:
        stmt = select(Bill).where(
            Bill.user_id == self.user_id,
            Bill.account_id == account_id,
            Bill.month == month,
            Bill.year == year,
        )
        return self.session.scalar(stmt)

    def get_or_create(self, account_id: int, month: int, year: int) -> Bill:
        bill = self.resolve(account_id, month, year)
        self.session.commit()
        return bill

    def resolve(
        self,
        account_id: int,
        month: int,
        year: int,
        steps: Optional[list[str]] = None,
    ) -> Bill:
        """Get-or-create without committing, for use inside a workflow."""
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12")

        existing = self.find(account_id, month, year)
        if existing:
            return existing

        account = AccountService(self.session, self.user_id).get(account_id)
        if not account.is_credit:
            raise ValidationError("Bills can only belong to credit accounts")

        due_day = account.due_day or get_settings().default_due_day
        bill = Bill(
            user_id=self.user_id,
            account_id=account.id,
            month=month,
            year=year,
            status=BillStatus.open,
            total_amount_cents=0,
            due_date=day_in_month(year, month, due_day),
        )
        try:
            with self.session.begin_nested():
                self.session.add(bill)
        except IntegrityError:
            # another session created the same period first
            logger.warning(
                f"bill_create_race: account_id={account_id} period={month:02d}/{year}"
            )
            existing = self.find(account_id, month, year)
            if existing is None:
                raise
            return existing

        if steps is not None:
            steps.append(f"bill {bill.period_label} created")
        logger.info(
            f"bill_created: bill_id={bill.id} account_id={account_id} "
            f"period={bill.period_label}"
        )
        return bill

    def update_status(self, bill_id: int, status: BillStatus) -> Bill:
        bill = self.get(bill_id)
        bill.status = status
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def update(self, bill_id: int, data: BillUpdate) -> Bill:
        bill = self.get(bill_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("status") is not None:
            bill.status = changes["status"]
        if "due_date" in changes:
            bill.due_date = changes["due_date"]
        self.session.commit()
        self.session.refresh(bill)
        return bill

    def delete(self, bill_id: int) -> None:
        bill = self.get(bill_id)
        if bill.status == BillStatus.paid:
            raise ValidationError("Revert the payment before deleting a paid bill")

        with ledger_workflow(self.session, "delete_bill") as steps:
            self.session.execute(
                update(Transaction)
                .where(Transaction.bill_id == bill.id)
                .values(bill_id=None)
            )
            self.session.execute(
                update(Transaction)
                .where(Transaction.paid_bill_id == bill.id)
                .values(paid_bill_id=None)
            )
            steps.append("transactions detached")

            self.session.delete(bill)
            self.session.flush()
            steps.append(f"bill {bill_id} deleted")
        logger.info(f"delete_bill: bill_id={bill_id}")


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.bills = BillService(session, self.user_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        period: Optional[Period] = None,
        *,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters:
            if filters.type:
                stmt = stmt.where(Transaction.type == filters.type)
            if filters.account_id:
                stmt = stmt.where(
                    or_(
                        Transaction.account_id == filters.account_id,
                        Transaction.destination_account_id == filters.account_id,
                    )
                )
            if filters.bill_id:
                stmt = stmt.where(Transaction.bill_id == filters.bill_id)
            if filters.category_id:
                stmt = stmt.where(Transaction.category_id == filters.category_id)
            if filters.query:
                stmt = stmt.where(Transaction.description.ilike(f"%{filters.query}%"))
        stmt = stmt.order_by(
            Transaction.date.desc(), Transaction.created_at.desc(), Transaction.id.desc()
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn) -> Transaction:
        with ledger_workflow(self.session, "create_transaction") as steps:
            txn = self._create(data, steps)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        original = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if self._is_financial_change(original, changes):
            return self._recreate(original, changes)
        return self._update_details(original, changes)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        with ledger_workflow(self.session, "delete_transaction") as steps:
            self._delete(txn, steps)

    def _validate(self, data: TransactionIn) -> tuple[Account, Optional[Account]]:
        account = self.accounts.get(data.account_id)
        is_credit = data.payment_method == PaymentMethod.credit

        destination = None
        if data.type == TransactionType.transfer:
            if data.destination_account_id is None:
                raise ValidationError("Transfers need a destination account")
            if data.destination_account_id == data.account_id:
                raise ValidationError("Cannot transfer to the same account")
            if is_credit:
                raise ValidationError("Transfers cannot be paid by credit")
            destination = self.accounts.get(data.destination_account_id)

        if is_credit and not account.is_credit:
            raise ValidationError("Credit payments must use a credit account")

        if data.category_id is not None:
            category = CategoryService(self.session, self.user_id).get(
                data.category_id
            )
            if (
                data.type != TransactionType.transfer
                and category.type.value != data.type.value
            ):
                raise ValidationError("Category type mismatch")

        if (
            is_credit
            and data.total_installments > 1
            and data.amount_cents < data.total_installments
        ):
            raise ValidationError("Amount is too small to split into installments")
        return account, destination

    def _create(self, data: TransactionIn, steps: list[str]) -> Transaction:
        account, destination = self._validate(data)
        is_credit = data.payment_method == PaymentMethod.credit
        is_installment = is_credit and data.total_installments > 1
        base_status = TransactionStatus.pending if is_credit else TransactionStatus.paid

        if (
            not is_credit and data.type == TransactionType.expense
        ) or data.type == TransactionType.transfer:
            require_funds(
                account,
                data.amount_cents,
                f'Insufficient funds in "{account.name}". '
                f"Available: {format_cents(account.balance_cents)}.",
            )

        description = data.description.strip()
        if is_installment:
            txn = self._create_installments(
                data, account, description, base_status, steps
            )
            bill_ids = [txn.bill_id, *(child.bill_id for child in txn.children)]
        else:
            bill = (
                self.bills.resolve(account.id, data.date.month, data.date.year, steps)
                if is_credit
                else None
            )
            txn = Transaction(
                user_id=self.user_id,
                account_id=account.id,
                destination_account_id=destination.id if destination else None,
                category_id=data.category_id,
                bill_id=bill.id if bill else None,
                type=data.type,
                payment_method=data.payment_method,
                description=description,
                amount_cents=data.amount_cents,
                date=data.date,
                status=base_status,
                is_installment=False,
            )
            self.session.add(txn)
            self.session.flush()
            steps.append(f"transaction {txn.id} inserted")
            bill_ids = [txn.bill_id]

        refresh_ledger(
            self.session, [account.id, destination.id if destination else None], bill_ids
        )
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"method={txn.payment_method.value} amount_cents={data.amount_cents} "
            f"installments={data.total_installments if is_installment else 1}"
        )
        return txn

    def _create_installments(
        self,
        data: TransactionIn,
        account: Account,
        description: str,
        status: TransactionStatus,
        steps: list[str],
    ) -> Transaction:
        count = data.total_installments
        share = split_installment(data.amount_cents, count)
        dates = month_dates(data.date, count)
        bills = [self.bills.resolve(account.id, d.month, d.year, steps) for d in dates]

        def build(number: int) -> Transaction:
            return Transaction(
                user_id=self.user_id,
                account_id=account.id,
                category_id=data.category_id,
                bill_id=bills[number - 1].id,
                type=data.type,
                payment_method=data.payment_method,
                description=f"{description} ({number}/{count})",
                amount_cents=share,
                date=dates[number - 1],
                status=status,
                is_installment=True,
                installment_number=number,
                total_installments=count,
            )

        parent = build(1)
        self.session.add(parent)
        self.session.flush()
        steps.append(f"installment 1/{count} inserted")

        for number in range(2, count + 1):
            parent.children.append(build(number))
        self.session.flush()
        steps.append(f"installments 2-{count}/{count} inserted")
        return parent

    def _check_reversal(self, txn: Transaction) -> None:
        if txn.type == TransactionType.income and txn.moves_balance:
            account = self.accounts.get(txn.account_id)
            require_funds(
                account,
                txn.amount_cents,
                f'Cannot delete: the reversal would make "{account.name}" negative.',
            )
        if (
            txn.type == TransactionType.transfer
            and txn.destination_account_id is not None
        ):
            destination = self.accounts.get(txn.destination_account_id)
            require_funds(
                destination,
                txn.amount_cents,
                f'Cannot delete: the reversal would make "{destination.name}" '
                "negative.",
            )

    def _delete(self, txn: Transaction, steps: list[str]) -> None:
        if txn.paid_bill_id is not None:
            raise ValidationError(
                "This transfer paid a bill; revert the bill payment instead"
            )
        self._check_reversal(txn)

        target = txn.parent if txn.parent_transaction_id is not None else txn
        rows = [target, *target.children]
        account_ids = {row.account_id for row in rows}
        account_ids.update(row.destination_account_id for row in rows)
        bill_ids = {row.bill_id for row in rows}

        self.session.delete(target)
        self.session.flush()
        steps.append(f"transaction {target.id} deleted ({len(rows)} rows)")

        refresh_ledger(self.session, account_ids, bill_ids)
        logger.info(f"transaction_deleted: id={target.id} rows={len(rows)}")

    def _is_financial_change(
        self, original: Transaction, changes: dict[str, object]
    ) -> bool:
        fields = list(FINANCIAL_FIELDS)
        new_type = changes.get("type") or original.type
        if new_type == TransactionType.transfer:
            fields.append("destination_account_id")
        for field in fields:
            value = changes.get(field)
            if value is not None and value != getattr(original, field):
                return True
        installments = changes.get("total_installments")
        return installments is not None and installments != (
            original.total_installments or 1
        )

    def _recreate(
        self, original: Transaction, changes: dict[str, object]
    ) -> Transaction:
        def pick(field: str):
            if field in CLEARABLE_FIELDS and field in changes:
                return changes[field]
            value = changes.get(field)
            return value if value is not None else getattr(original, field)

        txn_type = pick("type")
        description = changes.get("description") or INSTALLMENT_SUFFIX.sub(
            "", original.description
        )
        payload = TransactionIn(
            account_id=pick("account_id"),
            destination_account_id=(
                pick("destination_account_id")
                if txn_type == TransactionType.transfer
                else None
            ),
            category_id=pick("category_id"),
            type=txn_type,
            payment_method=pick("payment_method"),
            description=description,
            amount_cents=pick("amount_cents"),
            date=pick("date"),
            total_installments=changes.get("total_installments") or 1,
        )
        self._validate(payload)

        with ledger_workflow(self.session, "update_transaction") as steps:
            self._delete(original, steps)
            txn = self._create(payload, steps)
        return txn

    def _update_details(
        self, txn: Transaction, changes: dict[str, object]
    ) -> Transaction:
        with ledger_workflow(self.session, "update_transaction_details") as steps:
            if changes.get("description"):
                txn.description = str(changes["description"]).strip()

            if "category_id" in changes:
                category_id = changes["category_id"]
                if category_id is not None:
                    category = CategoryService(self.session, self.user_id).get(
                        category_id
                    )
                    if (
                        txn.type != TransactionType.transfer
                        and category.type.value != txn.type.value
                    ):
                        raise ValidationError("Category type mismatch")
                txn.category_id = category_id

            new_date = changes.get("date")
            if new_date is not None and new_date != txn.date:
                if txn.payment_method == PaymentMethod.credit:
                    self._rebind_bill(txn, new_date, steps)
                txn.date = new_date

            self.session.flush()
            steps.append(f"transaction {txn.id} updated")
        return txn

    def _rebind_bill(
        self, txn: Transaction, new_date: date, steps: list[str]
    ) -> None:
        """Move a credit row to the bill of ``new_date``'s month.

        Within the same month the row stays put. Otherwise neither the row, its
        current bill nor the target bill may be PAID.
        """
        old_bill = self.session.get(Bill, txn.bill_id) if txn.bill_id else None
        if old_bill is not None and (old_bill.month, old_bill.year) == (
            new_date.month,
            new_date.year,
        ):
            return
        if txn.status == TransactionStatus.paid or (
            old_bill is not None and old_bill.status == BillStatus.paid
        ):
            raise ValidationError(
                "Cannot move a transaction off a paid bill; revert the payment first"
            )

        bill = self.bills.resolve(txn.account_id, new_date.month, new_date.year, steps)
        if bill.status == BillStatus.paid:
            raise ValidationError(
                f"Cannot move a transaction onto bill {bill.period_label}, "
                "which is already paid"
            )
        if bill.id == txn.bill_id:
            return

        txn.bill_id = bill.id
        txn.status = TransactionStatus.pending
        refresh_ledger(self.session, [], [old_bill.id if old_bill else None, bill.id])
        steps.append(f"transaction {txn.id} moved to bill {bill.period_label}")


class PaymentService:
    """Bill payment and its reversal.

    Paying a bill is a transfer from a checking/cash account into the card
    account, never an expense. The transfer keeps ``paid_bill_id`` so the
    reversal can find it again.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(session, self.user_id)
        self.bills = BillService(session, self.user_id)

    def payment_for(self, bill: Bill) -> Optional[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.paid_bill_id == bill.id,
                Transaction.type == TransactionType.transfer,
            )
            .order_by(Transaction.id.desc())
        )
        return self.session.scalars(stmt).first()

    def pay_bill(self, bill_id: int, source_account_id: int) -> Transaction:
        bill = self.bills.get(bill_id)
        if bill.status == BillStatus.paid:
            raise ValidationError("Bill is already paid")

        source = self.accounts.get(source_account_id)
        if source.is_credit:
            raise ValidationError("Bills must be paid from a checking or cash account")

        total = bill.total_amount_cents
        if total <= 0:
            raise ValidationError("Bill has no outstanding amount")
        if source.balance_cents < total:
            missing = total - source.balance_cents
            raise InsufficientFundsError(
                f'Insufficient funds in "{source.name}". '
                f"Missing {format_cents(missing)}.",
                account_id=source.id,
                available_cents=source.balance_cents,
                required_cents=total,
            )

        with ledger_workflow(self.session, "pay_bill") as steps:
            bill.status = BillStatus.paid
            self.session.flush()
            steps.append("bill marked paid")

            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.bill_id == bill.id,
                )
                .values(status=TransactionStatus.paid)
            )
            steps.append("bill transactions marked paid")

            transfer = Transaction(
                user_id=self.user_id,
                account_id=source.id,
                destination_account_id=bill.account_id,
                paid_bill_id=bill.id,
                type=TransactionType.transfer,
                payment_method=(
                    PaymentMethod.cash
                    if source.type == AccountType.cash
                    else PaymentMethod.debit
                ),
                description=f"Bill payment {bill.period_label}",
                amount_cents=total,
                date=local_today(),
                status=TransactionStatus.paid,
                is_installment=False,
            )
            self.session.add(transfer)
            self.session.flush()
            steps.append(f"payment transfer {transfer.id} inserted")

            refresh_ledger(self.session, [source.id, bill.account_id])
        logger.info(
            f"pay_bill: bill_id={bill.id} source_account_id={source.id} "
            f"amount_cents={total}"
        )
        return transfer

    def revert_bill_payment(self, bill_id: int) -> Bill:
        bill = self.bills.get(bill_id)
        if bill.status != BillStatus.paid:
            raise ValidationError("Bill is not paid")

        payment = self.payment_for(bill)
        if payment is None:
            raise NotFoundError("Payment transaction not found")

        credit_account = self.accounts.get(bill.account_id)
        require_funds(
            credit_account,
            payment.amount_cents,
            f'Cannot revert: the reversal would make "{credit_account.name}" '
            "negative.",
        )

        with ledger_workflow(self.session, "revert_bill_payment") as steps:
            account_ids = [payment.account_id, payment.destination_account_id]
            self.session.delete(payment)
            self.session.flush()
            steps.append("payment transfer deleted")
            refresh_ledger(self.session, account_ids)

            self.session.execute(
                update(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.bill_id == bill.id,
                )
                .values(status=TransactionStatus.pending)
            )
            steps.append("bill transactions marked pending")

            bill.status = BillStatus.closed
            self.session.flush()
            steps.append("bill marked closed")
        logger.info(f"revert_bill_payment: bill_id={bill.id}")
        return bill


class AnalyticsService:
    """Month summaries and a short cash projection.

    Income and expense totals count INCOME/EXPENSE rows by their date,
    whatever the payment method. Transfers, bill payments included, are
    left out.
    """

    UNCATEGORIZED = "Uncategorized"

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _month_end(d: date) -> date:
        return day_in_month(d.year, d.month, 31)

    def _monthly_totals(
        self, start: date, end: date
    ) -> dict[tuple[int, int], dict[str, int]]:
        stmt = (
            select(
                func.strftime("%Y", Transaction.date).label("year"),
                func.strftime("%m", Transaction.date).label("month"),
                Transaction.type.label("type"),
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type.in_(
                    [TransactionType.income, TransactionType.expense]
                ),
                Transaction.date.between(start, end),
            )
            .group_by("year", "month", Transaction.type)
        )
        totals: dict[tuple[int, int], dict[str, int]] = {}
        for row in self.session.execute(stmt):
            bucket = totals.setdefault(
                (int(row.year), int(row.month)),
                {"income_cents": 0, "expense_cents": 0},
            )
            key = (
                "income_cents" if row.type == TransactionType.income else "expense_cents"
            )
            bucket[key] = int(row.total or 0)
        return totals

    def month_totals(self, today: date) -> dict[str, int]:
        first = today.replace(day=1)
        totals = self._monthly_totals(first, self._month_end(first))
        bucket = totals.get(
            (first.year, first.month), {"income_cents": 0, "expense_cents": 0}
        )
        return {
            "income_cents": bucket["income_cents"],
            "expense_cents": bucket["expense_cents"],
            "balance_cents": bucket["income_cents"] - bucket["expense_cents"],
        }

    def category_breakdown(self, period: Period) -> list[dict[str, object]]:
        total_col = func.coalesce(func.sum(Transaction.amount_cents), 0)
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("name"),
                Category.color.label("color"),
                total_col.label("total"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.color)
            .order_by(total_col.desc(), Category.name)
        )
        rows = self.session.execute(stmt).all()
        total = sum(int(row.total or 0) for row in rows)
        breakdown = []
        for row in rows:
            amount = int(row.total or 0)
            breakdown.append(
                {
                    "category_id": row.category_id,
                    "name": row.name or self.UNCATEGORIZED,
                    "color": row.color,
                    "amount_cents": amount,
                    "percent": (amount / total * 100) if total else 0,
                }
            )
        return breakdown

    def monthly_series(self, today: date, months: int = 6) -> list[dict[str, object]]:
        first = today.replace(day=1)
        starts = [add_months(first, -i) for i in range(months - 1, -1, -1)]
        totals = self._monthly_totals(starts[0], self._month_end(first))
        series = []
        for start in starts:
            bucket = totals.get((start.year, start.month), {})
            series.append(
                {
                    "year": start.year,
                    "month": start.month,
                    "label": f"{start.month:02d}/{start.year}",
                    "income_cents": bucket.get("income_cents", 0),
                    "expense_cents": bucket.get("expense_cents", 0),
                }
            )
        return series

    def overview(self, today: date) -> dict[str, object]:
        first = today.replace(day=1)
        period = Period("this_month", first, self._month_end(first))
        return {
            "month": self.month_totals(today),
            "categories": self.category_breakdown(period),
            "series": self.monthly_series(today),
        }

    def forecast(
        self, today: date, months_ahead: int = 3, history: int = 3
    ) -> dict[str, object]:
        """Project checking + cash money over the next ``months_ahead`` months.

        Each month adds the average income and subtracts the average expense
        of the last ``history`` months that had any, plus the OPEN/CLOSED bill
        totals of that month.
        """
        cash = int(
            self.session.execute(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id,
                    Account.type.in_([AccountType.checking, AccountType.cash]),
                )
            ).scalar_one()
            or 0
        )

        first = today.replace(day=1)
        past = self._monthly_totals(add_months(first, -history), first - date.resolution)
        months_with_data = len(past)
        avg_income = avg_expense = 0
        if months_with_data:
            avg_income = divide_cents(
                sum(b["income_cents"] for b in past.values()), months_with_data
            )
            avg_expense = divide_cents(
                sum(b["expense_cents"] for b in past.values()), months_with_data
            )

        bill_stmt = (
            select(
                Bill.year,
                Bill.month,
                func.coalesce(func.sum(Bill.total_amount_cents), 0).label("total"),
            )
            .where(
                Bill.user_id == self.user_id,
                Bill.status.in_([BillStatus.open, BillStatus.closed]),
            )
            .group_by(Bill.year, Bill.month)
        )
        bills_due = {
            (row.year, row.month): int(row.total or 0)
            for row in self.session.execute(bill_stmt)
        }

        running = cash
        months = []
        for offset in range(1, months_ahead + 1):
            start = add_months(first, offset)
            bills_cents = bills_due.get((start.year, start.month), 0)
            expense = avg_expense + bills_cents
            running += avg_income - expense
            months.append(
                {
                    "year": start.year,
                    "month": start.month,
                    "label": f"{start.month:02d}/{start.year}",
                    "bills_cents": bills_cents,
                    "projected_income_cents": avg_income,
                    "projected_expense_cents": expense,
                    "projected_balance_cents": running,
                    "is_negative": running < 0,
                }
            )

        logger.info(
            f"forecast: user_id={self.user_id} cash_cents={cash} "
            f"months_with_data={months_with_data}"
        )
        return {
            "current_cash_cents": cash,
            "average_income_cents": avg_income,
            "average_expense_cents": avg_expense,
            "months": months,
            "has_negative": any(m["is_negative"] for m in months),
        }
