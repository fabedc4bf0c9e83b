import datetime as dt
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    BillStatus,
    CategoryType,
    PaymentMethod,
    TransactionStatus,
    TransactionType,
)

MAX_INSTALLMENTS = 48
COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class HybridAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=90)
    balance_cents: int = 0
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)


class BalanceIn(BaseModel):
    balance_cents: int


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[CategoryType] = None
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)


class BillKeyIn(BaseModel):
    account_id: int
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)


class BillUpdate(BaseModel):
    status: Optional[BillStatus] = None
    due_date: Optional[date] = None


class BillStatusIn(BaseModel):
    status: BillStatus


class PayBillIn(BaseModel):
    source_account_id: int


class TransactionIn(BaseModel):
    account_id: int
    destination_account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: TransactionType
    payment_method: PaymentMethod
    description: str = Field(..., min_length=1, max_length=190)
    amount_cents: int = Field(..., gt=0)
    date: date
    total_installments: int = Field(default=1, ge=1, le=MAX_INSTALLMENTS)


class TransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=190)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    date: Optional[dt.date] = None
    total_installments: Optional[int] = Field(default=None, ge=1, le=MAX_INSTALLMENTS)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    closing_day: Optional[int]
    due_day: Optional[int]


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType
    color: Optional[str]


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    month: int
    year: int
    status: BillStatus
    total_amount_cents: int
    due_date: Optional[date]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    destination_account_id: Optional[int]
    category_id: Optional[int]
    bill_id: Optional[int]
    paid_bill_id: Optional[int]
    type: TransactionType
    payment_method: PaymentMethod
    description: str
    amount_cents: int
    date: date
    status: TransactionStatus
    is_installment: bool
    installment_number: Optional[int]
    total_installments: Optional[int]
    parent_transaction_id: Optional[int]
    created_at: datetime
