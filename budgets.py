import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Account, Budget, Transaction, TransactionType
from notifications import Notification, NotificationService
from periods import Period, month_period
from recurrence import local_now


logger = logging.getLogger(__name__)


def default_account_for(session: Session, user_id: int) -> Optional[Account]:
    return session.scalar(
        select(Account)
        .where(Account.user_id == user_id, Account.is_default.is_(True))
        .order_by(Account.id)
        .limit(1)
    )


def expenses_for_period(
    session: Session, user_id: int, account_id: int, period: Period
) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == user_id,
                Transaction.account_id == account_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
        ).scalar_one()
        or 0
    )


def percentage_used(spent_cents: int, budget_cents: int) -> Decimal:
    return Decimal(spent_cents) * 100 / Decimal(budget_cents)


def is_new_month(last_alert: datetime, now: datetime) -> bool:
    return (last_alert.year, last_alert.month) < (now.year, now.month)


@dataclass(frozen=True)
class BudgetCheck:
    budget_id: int
    account: Account
    spent_cents: int
    budget_cents: int
    percentage_used: Decimal
    should_alert: bool


@dataclass
class BudgetCheckReport:
    alerted: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class BudgetMonitor:
    """Compares this month's default-account expenses against each budget.

    The alert is sent before ``last_alert_sent`` is written. A crash between
    the two can repeat an alert; a failed send never suppresses one.
    """

    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationService] = None,
        threshold_pct: Optional[int] = None,
    ) -> None:
        self.session = session
        self.notifier = notifier or NotificationService()
        if threshold_pct is None:
            threshold_pct = get_settings().budget_alert_pct
        self.threshold = Decimal(threshold_pct)

    def run(self, now: Optional[datetime] = None) -> BudgetCheckReport:
        now = now or local_now()
        report = BudgetCheckReport()
        budgets = self.session.scalars(
            select(Budget).options(joinedload(Budget.user)).order_by(Budget.id)
        ).all()
        for budget in budgets:
            budget_id = budget.id
            try:
                check = self.check(budget, now)
                if check is None or not check.should_alert:
                    report.skipped.append(budget_id)
                    continue
                self._alert(budget, check, now)
                report.alerted.append(budget_id)
            except Exception:
                self.session.rollback()
                logger.exception(f"budget_check_failed: budget_id={budget_id}")
                report.failed.append(budget_id)

        logger.info(
            f"budget_run: alerted={len(report.alerted)} "
            f"skipped={len(report.skipped)} failed={len(report.failed)}"
        )
        return report

    def check(self, budget: Budget, now: datetime) -> Optional[BudgetCheck]:
        account = default_account_for(self.session, budget.user_id)
        if account is None:
            return None
        spent = expenses_for_period(
            self.session, budget.user_id, account.id, month_period(now.date())
        )
        used = percentage_used(spent, budget.amount_cents)
        should_alert = used >= self.threshold and (
            budget.last_alert_sent is None or is_new_month(budget.last_alert_sent, now)
        )
        return BudgetCheck(
            budget_id=budget.id,
            account=account,
            spent_cents=spent,
            budget_cents=budget.amount_cents,
            percentage_used=used,
            should_alert=should_alert,
        )

    def _alert(self, budget: Budget, check: BudgetCheck, now: datetime) -> None:
        user = budget.user
        self.notifier.send(
            Notification(
                recipient=user.email,
                subject=f"Budget Alert for {check.account.name}",
                template_type="budget-alert",
                template_data={
                    "user_name": user.name,
                    "percentage_used": str(check.percentage_used.quantize(Decimal("0.1"))),
                    "budget_amount": f"{check.budget_cents / 100:.2f}",
                    "total_expenses": f"{check.spent_cents / 100:.2f}",
                    "account_name": check.account.name,
                },
            )
        )

        previous = budget.last_alert_sent
        guard = (
            Budget.last_alert_sent.is_(None)
            if previous is None
            else Budget.last_alert_sent == previous
        )
        result = self.session.execute(
            update(Budget)
            .where(Budget.id == budget.id, guard)
            .values(last_alert_sent=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        self.session.expire(budget, ["last_alert_sent"])
        if result.rowcount != 1:
            logger.warning(
                f"budget_alert_race: budget_id={budget.id} "
                "reason=last_alert_sent_changed"
            )
        logger.info(
            f"budget_alert_sent: budget_id={budget.id} user_id={budget.user_id} "
            f"percentage_used={check.percentage_used:.1f}"
        )
