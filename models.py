import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "CHECKING"
    credit = "CREDIT"
    cash = "CASH"


class CategoryType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"
    transfer = "TRANSFER"


class PaymentMethod(str, Enum):
    pix = "PIX"
    debit = "DEBIT"
    credit = "CREDIT"
    cash = "CASH"


class TransactionStatus(str, Enum):
    pending = "PENDING"
    paid = "PAID"


class BillStatus(str, Enum):
    open = "OPEN"
    closed = "CLOSED"
    paid = "PAID"


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


ACCOUNT_TYPE_ENUM = _value_enum(AccountType, "accounttype")
CATEGORY_TYPE_ENUM = _value_enum(CategoryType, "categorytype")
TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "transactiontype")
PAYMENT_METHOD_ENUM = _value_enum(PaymentMethod, "paymentmethod")
TRANSACTION_STATUS_ENUM = _value_enum(TransactionStatus, "transactionstatus")
BILL_STATUS_ENUM = _value_enum(BillStatus, "billstatus")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(ACCOUNT_TYPE_ENUM, nullable=False)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    due_day: Mapped[Optional[int]] = mapped_column(Integer)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        foreign_keys="Transaction.account_id",
        back_populates="account",
        cascade="save-update, merge, delete",
    )
    bills: Mapped[list["Bill"]] = relationship(
        "Bill", back_populates="account", cascade="save-update, merge, delete"
    )

    __table_args__ = (
        CheckConstraint(
            "closing_day IS NULL OR closing_day BETWEEN 1 AND 31",
            name="ck_account_closing_day_range",
        ),
        CheckConstraint(
            "due_day IS NULL OR due_day BETWEEN 1 AND 31",
            name="ck_account_due_day_range",
        ),
        Index("ix_accounts_user_name", "user_id", "name"),
    )

    @property
    def is_credit(self) -> bool:
        return self.type == AccountType.credit


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(CATEGORY_TYPE_ENUM, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category", passive_deletes=True
    )


class Bill(Base, TimestampMixin):
    __tablename__ = "bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BillStatus] = mapped_column(
        BILL_STATUS_ENUM, nullable=False, default=BillStatus.open
    )
    total_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    due_date: Mapped[Optional[date]] = mapped_column(Date)

    account: Mapped["Account"] = relationship("Account", back_populates="bills")

    __table_args__ = (
        UniqueConstraint("account_id", "month", "year", name="uq_bill_account_period"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_bill_month_range"),
        Index("ix_bills_user_period", "user_id", "year", "month"),
    )

    @property
    def period_label(self) -> str:
        return f"{self.month:02d}/{self.year}"


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    destination_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bills.id", ondelete="SET NULL")
    )
    paid_bill_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bills.id", ondelete="SET NULL")
    )
    type: Mapped[TransactionType] = mapped_column(
        TRANSACTION_TYPE_ENUM, nullable=False
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        PAYMENT_METHOD_ENUM, nullable=False
    )
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        TRANSACTION_STATUS_ENUM, nullable=False
    )
    is_installment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    installment_number: Mapped[Optional[int]] = mapped_column(Integer)
    total_installments: Mapped[Optional[int]] = mapped_column(Integer)
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE")
    )

    account: Mapped["Account"] = relationship(
        "Account", foreign_keys=[account_id], back_populates="transactions"
    )
    destination_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[destination_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    bill: Mapped[Optional["Bill"]] = relationship("Bill", foreign_keys=[bill_id])
    parent: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", remote_side=[id], back_populates="children"
    )
    children: Mapped[list["Transaction"]] = relationship(
        "Transaction",
        back_populates="parent",
        cascade="save-update, merge, delete",
        order_by="Transaction.installment_number",
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_bill", "bill_id"),
        Index("ix_transactions_paid_bill", "paid_bill_id"),
        Index("ix_transactions_parent", "parent_transaction_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def moves_balance(self) -> bool:
        """CREDIT-paid income/expense accrues on a bill, not on a balance."""
        if self.type == TransactionType.transfer:
            return True
        return self.payment_method != PaymentMethod.credit
