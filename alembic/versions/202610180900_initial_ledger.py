"""ledger schema: accounts, categories, bills, transactions

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("CHECKING", "CREDIT", "CASH", name="accounttype"),
            nullable=False,
        ),
        sa.Column(
            "opening_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("closing_day", sa.Integer()),
        sa.Column("due_day", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day IS NULL OR closing_day BETWEEN 1 AND 31",
            name="ck_account_closing_day_range",
        ),
        sa.CheckConstraint(
            "due_day IS NULL OR due_day BETWEEN 1 AND 31",
            name="ck_account_due_day_range",
        ),
    )
    op.create_index("ix_accounts_user_name", "accounts", ["user_id", "name"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("INCOME", "EXPENSE", name="categorytype"), nullable=False
        ),
        sa.Column("color", sa.String(length=7)),
        *_timestamps(),
    )

    op.create_table(
        "bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "CLOSED", "PAID", name="billstatus"),
            nullable=False,
            server_default="OPEN",
        ),
        sa.Column(
            "total_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("due_date", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "month", "year", name="uq_bill_account_period"
        ),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_bill_month_range"),
    )
    op.create_index("ix_bills_user_period", "bills", ["user_id", "year", "month"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "destination_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "bill_id", sa.Integer(), sa.ForeignKey("bills.id", ondelete="SET NULL")
        ),
        sa.Column(
            "paid_bill_id",
            sa.Integer(),
            sa.ForeignKey("bills.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "type",
            sa.Enum("INCOME", "EXPENSE", "TRANSFER", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "payment_method",
            sa.Enum("PIX", "DEBIT", "CREDIT", "CASH", name="paymentmethod"),
            nullable=False,
        ),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PAID", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column(
            "is_installment", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("installment_number", sa.Integer()),
        sa.Column("total_installments", sa.Integer()),
        sa.Column(
            "parent_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_transactions_amount_positive"
        ),
    )
    op.create_index(
        "ix_transactions_user_date", "transactions", ["user_id", "date"]
    )
    op.create_index("ix_transactions_bill", "transactions", ["bill_id"])
    op.create_index("ix_transactions_paid_bill", "transactions", ["paid_bill_id"])
    op.create_index(
        "ix_transactions_parent", "transactions", ["parent_transaction_id"]
    )


def downgrade():
    op.drop_index("ix_transactions_parent", table_name="transactions")
    op.drop_index("ix_transactions_paid_bill", table_name="transactions")
    op.drop_index("ix_transactions_bill", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bills_user_period", table_name="bills")
    op.drop_table("bills")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_name", table_name="accounts")
    op.drop_table("accounts")
