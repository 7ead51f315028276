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
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


# Largest single amount accepted, in cents. Keeps balances and monthly sums
# well inside a signed 64-bit column.
MAX_AMOUNT_CENTS = 10**15


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class RecurringInterval(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AccountType(str, Enum):
    current = "current"
    savings = "savings"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="user"
    )
    budget: Mapped[Optional["Budget"]] = relationship(
        "Budget", back_populates="user", uselist=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.current
    )
    # Cache of the signed sum of this account's transactions; written by
    # LedgerMutator only.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user_default", "user_id", "is_default"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.completed
    )

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_interval: Mapped[Optional[RecurringInterval]] = mapped_column(
        SAEnum(RecurringInterval)
    )
    last_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    next_recurring_date: Mapped[Optional[date]] = mapped_column(Date)

    # Set on occurrences generated from a recurring template.
    origin_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    account: Mapped["Account"] = relationship(
        "Account", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "origin_transaction_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account_type_date", "account_id", "type", "date"),
        Index(
            "ix_transactions_recurring_due",
            "is_recurring",
            "status",
            "next_recurring_date",
        ),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "NOT is_recurring OR recurring_interval IS NOT NULL",
            name="ck_transactions_recurring_interval",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"), nullable=False, unique=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    last_alert_sent: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="budget")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )
