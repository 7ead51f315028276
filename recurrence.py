import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from errors import ConcurrencyConflict, ValidationError
from models import RecurringInterval, Transaction, TransactionStatus


logger = logging.getLogger(__name__)


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # clamp to month end: Jan 31 -> Feb 28/29, Feb 29 -> Feb 28 next year
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(
    from_date: date, interval: Union[RecurringInterval, str]
) -> date:
    try:
        interval = RecurringInterval(interval)
    except ValueError as exc:
        raise ValidationError(f"Unknown recurring interval: {interval}") from exc
    if isinstance(from_date, datetime):
        from_date = from_date.date()

    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    return _add_months(from_date, 12)


def is_due(txn: Transaction, today: date) -> bool:
    if not txn.is_recurring or txn.recurring_interval is None:
        return False
    if txn.status != TransactionStatus.completed:
        return False
    if txn.last_processed_at is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return txn.next_recurring_date <= today


@dataclass(frozen=True)
class WorkItem:
    template_id: int
    user_id: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "WorkItem":
        template_id = payload.get("templateId", payload.get("template_id"))
        user_id = payload.get("userId", payload.get("user_id"))
        if not template_id or not user_id:
            raise ValidationError("Missing required event data")
        try:
            return cls(template_id=int(template_id), user_id=int(user_id))
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid event data") from exc


class ProcessOutcome(str, Enum):
    materialized = "materialized"
    skipped = "skipped"


class DueDetector:
    def __init__(self, session: Session) -> None:
        self.session = session

    def detect(self, today: Optional[date] = None) -> list[WorkItem]:
        today = today or local_today()
        stmt = (
            select(Transaction.id, Transaction.user_id)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed_at.is_(None),
                    Transaction.next_recurring_date <= today,
                ),
            )
            .order_by(Transaction.user_id, Transaction.id)
        )
        rows = self.session.execute(stmt).all()
        return [WorkItem(template_id=row.id, user_id=row.user_id) for row in rows]


class RecurrenceProcessor:
    """Revalidate, materialize and reschedule one recurring template.

    Running it twice for the same due occurrence posts at most one
    occurrence: the reschedule is a compare-and-swap on the template row and
    the occurrence carries a unique (template, occurrence date) key, both in
    the same atomic unit as the balance change.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def process(
        self, item: WorkItem, now: Optional[datetime] = None
    ) -> ProcessOutcome:
        now = now or local_now()
        template = self.revalidate(item, now.date())
        if template is None:
            logger.info(
                f"recurring_skip: template_id={item.template_id} reason=not_due"
            )
            return ProcessOutcome.skipped
        return self.materialize(template, now)

    def revalidate(self, item: WorkItem, today: date) -> Optional[Transaction]:
        template = self.session.get(
            Transaction, item.template_id, populate_existing=True
        )
        if template is None or template.user_id != item.user_id:
            return None
        if not is_due(template, today):
            return None
        return template

    def materialize(self, template: Transaction, now: datetime) -> ProcessOutcome:
        from ledger import LedgerMutator, signed_amount

        today = now.date()
        template_id = template.id
        seen_processed_at = template.last_processed_at
        seen_next = template.next_recurring_date
        seen_amount = template.amount_cents
        seen_type = template.type
        seen_account_id = template.account_id
        occurrence_key = (
            seen_next if seen_processed_at is not None else template.date
        )
        next_date = calculate_next_date(today, template.recurring_interval)

        def reschedule(session: Session) -> None:
            criteria = [
                Transaction.id == template_id,
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                # an edit since revalidation must not post the stale copy
                Transaction.amount_cents == seen_amount,
                Transaction.type == seen_type,
                Transaction.account_id == seen_account_id,
            ]
            if seen_processed_at is None:
                criteria.append(Transaction.last_processed_at.is_(None))
            else:
                criteria.append(Transaction.last_processed_at == seen_processed_at)
            if seen_next is None:
                criteria.append(Transaction.next_recurring_date.is_(None))
            else:
                criteria.append(Transaction.next_recurring_date == seen_next)
            result = session.execute(
                update(Transaction)
                .where(*criteria)
                .values(last_processed_at=now, next_recurring_date=next_date)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrencyConflict(
                    f"Recurring template {template_id} was already advanced"
                )
            session.expire(template, ["last_processed_at", "next_recurring_date"])

        occurrence = Transaction(
            type=seen_type,
            amount_cents=seen_amount,
            description=f"{template.description or template.category} (Recurring)",
            date=today,
            category=template.category,
            status=TransactionStatus.completed,
            is_recurring=False,
            origin_transaction_id=template_id,
            occurrence_date=occurrence_key,
        )
        mutator = LedgerMutator(self.session, template.user_id)
        try:
            mutator.apply(
                seen_account_id,
                signed_amount(seen_type, seen_amount),
                occurrence,
                extra_writes=reschedule,
            )
        except (ConcurrencyConflict, IntegrityError):
            logger.info(
                f"recurring_skip: template_id={template_id} reason=already_processed"
            )
            return ProcessOutcome.skipped

        logger.info(
            f"recurring_materialized: template_id={template_id} "
            f"occurrence_id={occurrence.id} next_recurring_date={next_date}"
        )
        return ProcessOutcome.materialized
