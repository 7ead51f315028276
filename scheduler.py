import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from budgets import BudgetMonitor
from config import get_settings
from database import session_scope
from dispatcher import DispatchReport, Dispatcher
from recurrence import DueDetector, local_today
from reports import ReportAggregator


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, dispatcher: Optional[Dispatcher] = None) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        # one dispatcher for the process so the per-user window spans runs
        self.dispatcher = dispatcher or Dispatcher()

    def run_recurring(self, source: str = "manual") -> DispatchReport:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            items = DueDetector(session).detect(local_today())
        if not items:
            logger.info(f"scheduler_run: job=recurring source={source} due=0")
            return DispatchReport()
        report = self.dispatcher.dispatch(items)
        logger.info(
            f"scheduler_run: job=recurring source={source} due={len(items)} "
            f"occurrences_posted={len(report.materialized)} "
            f"deferred={len(report.deferred)} failed={len(report.failed)}"
        )
        return report

    def run_budget_alerts(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=budget_alerts source={source}")
        with session_scope() as session:
            BudgetMonitor(session).run()

    def run_monthly_reports(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=monthly_reports source={source}")
        with session_scope() as session:
            ReportAggregator(session).run()

    def start(self) -> None:
        self.run_recurring("startup")

        self.scheduler.add_job(
            self.run_recurring,
            CronTrigger(hour=0, minute=0),
            args=["daily_00:00"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        # also drains items deferred by the throttle
        self.scheduler.add_job(
            self.run_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        self.scheduler.add_job(
            self.run_budget_alerts,
            CronTrigger(hour="*/6", minute=0),
            args=["every_6h"],
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger(day=1, hour=0, minute=0),
            args=["monthly_1st"],
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with daily recurring run, hourly safety net, "
            "6-hourly budget alerts and monthly reports"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
