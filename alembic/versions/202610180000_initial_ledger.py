"""initial ledger schema

Revision ID: 202610180000
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610180000"
down_revision = None
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")
TRANSACTION_STATUS = sa.Enum(
    "pending", "completed", "failed", name="transactionstatus"
)
RECURRING_INTERVAL = sa.Enum(
    "daily", "weekly", "monthly", "yearly", name="recurringinterval"
)
ACCOUNT_TYPE = sa.Enum("current", "savings", name="accounttype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(120), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("type", ACCOUNT_TYPE, nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
    )
    op.create_index(
        "ix_accounts_user_default", "accounts", ["user_id", "is_default"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("receipt_url", sa.String(500), nullable=True),
        sa.Column("status", TRANSACTION_STATUS, nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("recurring_interval", RECURRING_INTERVAL, nullable=True),
        sa.Column("last_processed_at", sa.DateTime(), nullable=True),
        sa.Column("next_recurring_date", sa.Date(), nullable=True),
        sa.Column(
            "origin_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("occurrence_date", sa.Date(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "origin_transaction_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_transactions_amount_positive"
        ),
        sa.CheckConstraint(
            "NOT is_recurring OR recurring_interval IS NOT NULL",
            name="ck_transactions_recurring_interval",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_account_type_date",
        "transactions",
        ["account_id", "type", "date"],
    )
    op.create_index(
        "ix_transactions_recurring_due",
        "transactions",
        ["is_recurring", "status", "next_recurring_date"],
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("last_alert_sent", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )


def downgrade() -> None:
    op.drop_table("budgets")
    op.drop_index("ix_transactions_recurring_due", table_name="transactions")
    op.drop_index("ix_transactions_account_type_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_accounts_user_default", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("users")
