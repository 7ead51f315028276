import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Transaction, TransactionType, User
from notifications import Notification, NotificationService
from periods import Period, previous_month_period
from recurrence import local_today


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonthlyStats:
    total_income_cents: int
    total_expenses_cents: int
    by_category: dict[str, int]
    transaction_count: int

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents


InsightProvider = Callable[[MonthlyStats, str], list[str]]


def default_insights(stats: MonthlyStats, month_name: str) -> list[str]:
    insights: list[str] = []
    if stats.by_category:
        top_category, top_amount = max(
            stats.by_category.items(), key=lambda item: (item[1], item[0])
        )
        insights.append(
            f"Your highest expense category in {month_name} was {top_category} "
            f"at {top_amount / 100:.2f}."
        )
    else:
        insights.append(
            "Your highest expense category this month might need attention."
        )
    if stats.net_cents < 0:
        insights.append(
            f"You spent {-stats.net_cents / 100:.2f} more than you earned; "
            "consider setting up a budget for better financial management."
        )
    else:
        insights.append(
            f"You kept {stats.net_cents / 100:.2f} of your income in {month_name}."
        )
    insights.append("Track your recurring expenses to identify potential savings.")
    return insights


@dataclass
class ReportRunSummary:
    sent: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class ReportAggregator:
    def __init__(
        self,
        session: Session,
        notifier: Optional[NotificationService] = None,
        insights: Optional[InsightProvider] = None,
    ) -> None:
        self.session = session
        self.notifier = notifier or NotificationService()
        self.insights = insights

    def monthly_stats(self, user_id: int, period: Period) -> MonthlyStats:
        rows = self.session.execute(
            select(
                Transaction.type,
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type, Transaction.category)
        ).all()

        income = 0
        expenses = 0
        count = 0
        by_category: dict[str, int] = {}
        for row in rows:
            total = int(row.total or 0)
            count += int(row.count or 0)
            if row.type == TransactionType.expense:
                expenses += total
                by_category[row.category] = by_category.get(row.category, 0) + total
            else:
                income += total
        return MonthlyStats(
            total_income_cents=income,
            total_expenses_cents=expenses,
            by_category=by_category,
            transaction_count=count,
        )

    def _insights_for(self, stats: MonthlyStats, month_name: str) -> list[str]:
        if self.insights is None:
            return default_insights(stats, month_name)
        try:
            return list(self.insights(stats, month_name))
        except Exception:
            logger.exception("report_insights_failed: falling back to defaults")
            return default_insights(stats, month_name)

    def run(self, today: Optional[date] = None) -> ReportRunSummary:
        today = today or local_today()
        period = previous_month_period(today)
        month_name = period.start.strftime("%B")
        summary = ReportRunSummary()
        users = self.session.scalars(select(User).order_by(User.id)).all()
        for user in users:
            user_id = user.id
            try:
                stats = self.monthly_stats(user_id, period)
                self.notifier.send(
                    Notification(
                        recipient=user.email,
                        subject=f"Your Monthly Financial Report - {month_name}",
                        template_type="monthly-report",
                        template_data={
                            "user_name": user.name,
                            "month": month_name,
                            "stats": {
                                "total_income": stats.total_income_cents,
                                "total_expenses": stats.total_expenses_cents,
                                "net": stats.net_cents,
                                "by_category": stats.by_category,
                                "transaction_count": stats.transaction_count,
                            },
                            "insights": self._insights_for(stats, month_name),
                        },
                    )
                )
                summary.sent.append(user_id)
            except Exception:
                logger.exception(f"report_failed: user_id={user_id}")
                summary.failed.append(user_id)

        logger.info(
            f"report_run: month={period.start:%Y-%m} sent={len(summary.sent)} "
            f"failed={len(summary.failed)}"
        )
        return summary
