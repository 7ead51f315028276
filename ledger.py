"""Ledger writes.

Every change to ``Account.balance_cents`` happens here, inside the same
database transaction as the transaction row it accounts for. A failure at any
point rolls the whole unit back, so readers never see a row without its
balance change or the other way round.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from errors import DownstreamUnavailable, NotFoundError, ValidationError
from models import (
    MAX_AMOUNT_CENTS,
    Account,
    RecurringInterval,
    Transaction,
    TransactionType,
)
from recurrence import calculate_next_date
from schemas import TransactionIn


logger = logging.getLogger(__name__)

WriteHook = Callable[[Session], None]


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -amount_cents
    return amount_cents


def _validate_amount(amount_cents: object) -> None:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("Amount must be a whole number of cents")
    if amount_cents < 0:
        raise ValidationError("Amount must not be negative")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise ValidationError("Amount is too large")


def _next_date(
    anchor: date, interval: Optional[RecurringInterval]
) -> Optional[date]:
    if interval is None:
        return None
    return calculate_next_date(anchor, interval)


@dataclass(frozen=True)
class Reconciliation:
    account_id: int
    cached_cents: int
    computed_cents: int
    repaired: bool

    @property
    def drift_cents(self) -> int:
        return self.cached_cents - self.computed_cents

    @property
    def consistent(self) -> bool:
        return self.drift_cents == 0


class LedgerMutator:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def get_transaction(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def apply(
        self,
        account_id: int,
        signed_delta: int,
        txn: Transaction,
        *,
        extra_writes: Optional[WriteHook] = None,
    ) -> Transaction:
        """Insert ``txn`` and move the account balance by ``signed_delta``.

        ``extra_writes`` runs first inside the same unit; raising from it
        aborts the insert and the balance change as well.
        """
        self.get_account(account_id)
        _validate_amount(txn.amount_cents)
        txn.user_id = self.user_id
        txn.account_id = account_id

        def writes() -> None:
            if extra_writes is not None:
                extra_writes(self.session)
            self.session.add(txn)
            self.session.flush()
            self._adjust_balance(account_id, signed_delta)

        self._atomic(writes)
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            category=data.category,
            receipt_url=data.receipt_url,
            status=data.status,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval,
            next_recurring_date=(
                _next_date(data.date, data.recurring_interval)
                if data.is_recurring
                else None
            ),
        )
        return self.apply(
            data.account_id, signed_amount(data.type, data.amount_cents), txn
        )

    def amend(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get_transaction(transaction_id)
        self.get_account(data.account_id)
        _validate_amount(data.amount_cents)

        old_account_id = txn.account_id
        old_signed = signed_amount(txn.type, txn.amount_cents)
        new_signed = signed_amount(data.type, data.amount_cents)

        def writes() -> None:
            txn.account_id = data.account_id
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.description = data.description
            txn.date = data.date
            txn.category = data.category
            txn.receipt_url = data.receipt_url
            txn.status = data.status
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            if data.is_recurring:
                anchor = (
                    txn.last_processed_at.date()
                    if txn.last_processed_at
                    else data.date
                )
                txn.next_recurring_date = _next_date(anchor, data.recurring_interval)
            else:
                txn.next_recurring_date = None
            self.session.flush()

            if old_account_id == data.account_id:
                self._adjust_balance(data.account_id, new_signed - old_signed)
            else:
                self._adjust_balance(old_account_id, -old_signed)
                self._adjust_balance(data.account_id, new_signed)

        self._atomic(writes)
        return txn

    def remove(self, transaction_ids: Iterable[int]) -> int:
        ids = set(transaction_ids)
        if not ids:
            return 0
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id.in_(ids)
            )
        ).all()
        if len(txns) != len(ids):
            raise NotFoundError("Transaction not found")

        reversals: dict[int, int] = {}
        for txn in txns:
            reversals[txn.account_id] = reversals.get(txn.account_id, 0) - (
                signed_amount(txn.type, txn.amount_cents)
            )

        def writes() -> None:
            # occurrences outlive their template
            self.session.execute(
                update(Transaction)
                .where(Transaction.origin_transaction_id.in_(ids))
                .values(origin_transaction_id=None)
                .execution_options(synchronize_session=False)
            )
            for txn in txns:
                self.session.delete(txn)
            self.session.flush()
            for account_id, delta in reversals.items():
                self._adjust_balance(account_id, delta)

        self._atomic(writes)
        return len(txns)

    def reconcile(self, account_id: int, *, repair: bool = False) -> Reconciliation:
        account = self.get_account(account_id)
        self.session.refresh(account)
        signed = case(
            (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
            else_=Transaction.amount_cents,
        )
        computed = int(
            self.session.execute(
                select(func.coalesce(func.sum(signed), 0)).where(
                    Transaction.account_id == account_id
                )
            ).scalar_one()
            or 0
        )
        cached = account.balance_cents
        if computed == cached or not repair:
            return Reconciliation(account_id, cached, computed, repaired=False)

        def writes() -> None:
            self.session.execute(
                update(Account)
                .where(Account.id == account_id, Account.user_id == self.user_id)
                .values(balance_cents=computed)
                .execution_options(synchronize_session=False)
            )
            self.session.expire(account, ["balance_cents"])

        self._atomic(writes)
        logger.warning(
            f"ledger_reconcile: account_id={account_id} cached={cached} "
            f"computed={computed} repaired=True"
        )
        return Reconciliation(account_id, cached, computed, repaired=True)

    def _adjust_balance(self, account_id: int, delta: int) -> None:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("Account not found")
        account = self.session.get(Account, account_id)
        if account is not None:
            self.session.expire(account, ["balance_cents"])

    def _atomic(self, writes: Callable[[], None]) -> None:
        try:
            writes()
            self.session.commit()
        except OperationalError as exc:
            self.session.rollback()
            logger.error(
                f"ledger_write_failed: user_id={self.user_id} reason=store_unavailable"
            )
            raise DownstreamUnavailable("Ledger store unavailable") from exc
        except Exception:
            self.session.rollback()
            raise
