from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from budgets import default_account_for, expenses_for_period, percentage_used
from errors import NotFoundError, ValidationError
from ledger import LedgerMutator, Reconciliation
from models import Account, Budget, Transaction, TransactionType, User
from periods import Period, month_period
from recurrence import local_today
from schemas import AccountIn, BudgetIn, TransactionIn, UserIn


OPENING_BALANCE_CATEGORY = "opening-balance"


def get_current_user_id() -> int:
    return 1


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    recurring_only: bool = False


class UserService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self) -> User:
        user = self.session.get(User, self.user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def upsert(self, data: UserIn) -> User:
        user = self.session.get(User, self.user_id)
        if not user:
            user = User(id=self.user_id, email=data.email, name=data.name)
            self.session.add(user)
        else:
            user.email = data.email
            user.name = data.name
        self.session.commit()
        self.session.refresh(user)
        return user


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return LedgerMutator(self.session, self.user_id).get_account(account_id)

    def default(self) -> Optional[Account]:
        return default_account_for(self.session, self.user_id)

    def create(self, data: AccountIn, *, opened_on: Optional[date] = None) -> Account:
        UserService(self.session, self.user_id).get()
        has_accounts = (
            self.session.execute(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            ).scalar_one()
            or 0
        ) > 0
        should_be_default = data.is_default or not has_accounts
        if should_be_default:
            self._clear_default()
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            balance_cents=0,
            is_default=should_be_default,
        )
        self.session.add(account)
        self.session.flush()

        if data.balance_cents:
            opening_type = (
                TransactionType.income
                if data.balance_cents > 0
                else TransactionType.expense
            )
            # commits the account together with its opening entry
            LedgerMutator(self.session, self.user_id).create(
                TransactionIn(
                    account_id=account.id,
                    type=opening_type,
                    amount_cents=abs(data.balance_cents),
                    description="Opening balance",
                    date=opened_on or local_today(),
                    category=OPENING_BALANCE_CATEGORY,
                )
            )
        else:
            self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        if account.is_default:
            return account
        self._clear_default()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def unset_default(self, account_id: int) -> None:
        account = self.get(account_id)
        if account.is_default:
            raise ValidationError("You need at least one default account")

    def reconcile(self, account_id: int, *, repair: bool = False) -> Reconciliation:
        return LedgerMutator(self.session, self.user_id).reconcile(
            account_id, repair=repair
        )

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.ledger = LedgerMutator(session, self.user_id)

    def create(self, data: TransactionIn) -> Transaction:
        return self.ledger.create(data)

    def get(self, transaction_id: int) -> Transaction:
        return self.ledger.get_transaction(transaction_id)

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        return self.ledger.amend(transaction_id, data)

    def bulk_delete(self, transaction_ids: list[int]) -> int:
        return self.ledger.remove(transaction_ids)

    def list(
        self,
        period: Period,
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.recurring_only:
            stmt = stmt.where(Transaction.is_recurring.is_(True))
        return self.session.scalars(stmt).all()

    def occurrences_of(self, template_id: int) -> list[Transaction]:
        template = self.get(template_id)
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.origin_transaction_id == template.id,
            )
            .order_by(Transaction.occurrence_date)
        )
        return self.session.scalars(stmt).all()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget).where(Budget.user_id == self.user_id)
        )

    def upsert(self, data: BudgetIn) -> Budget:
        UserService(self.session, self.user_id).get()
        budget = self.get()
        if budget is None:
            budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
            self.session.add(budget)
        else:
            budget.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def progress_for_month(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        budget = self.get()
        account = default_account_for(self.session, self.user_id)
        period = month_period(today)
        spent = (
            expenses_for_period(self.session, self.user_id, account.id, period)
            if account
            else 0
        )
        if budget is None:
            return {
                "budget_cents": None,
                "spent_cents": spent,
                "remaining_cents": None,
                "percentage_used": None,
            }
        used: Decimal = percentage_used(spent, budget.amount_cents)
        return {
            "budget_cents": budget.amount_cents,
            "spent_cents": spent,
            "remaining_cents": budget.amount_cents - spent,
            "percentage_used": float(used.quantize(Decimal("0.01"))),
        }
