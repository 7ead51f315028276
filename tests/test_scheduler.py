from datetime import date
from functools import partial

import pytest

import scheduler
from database import session_scope
from dispatcher import Dispatcher, Throttle, process_work_item
from ledger import LedgerMutator
from models import Account, Budget, RecurringInterval, TransactionType, User
from schemas import TransactionIn
from scheduler import SchedulerManager


@pytest.fixture
def manager(session_factory, monkeypatch):
    monkeypatch.setattr(
        scheduler, "session_scope", partial(session_scope, session_factory)
    )
    mgr = SchedulerManager(
        dispatcher=Dispatcher(
            handler=partial(process_work_item, factory=session_factory),
            throttle=Throttle(limit=10, period_secs=60),
            max_workers=1,
        )
    )
    yield mgr
    mgr.stop()


def test_run_recurring_posts_due_templates(manager, session_factory):
    with session_factory() as session:
        session.add(User(id=1, email="ana@example.com", name="Ana"))
        account = Account(user_id=1, name="Main", is_default=True, balance_cents=0)
        session.add(account)
        session.commit()
        LedgerMutator(session, 1).create(
            TransactionIn(
                account_id=account.id,
                type=TransactionType.income,
                amount_cents=250_000,
                description="Salary",
                date=date(2025, 1, 28),
                category="salary",
                is_recurring=True,
                recurring_interval=RecurringInterval.monthly,
            )
        )
        account_id = account.id

    first = manager.run_recurring("test")
    second = manager.run_recurring("test")

    assert len(first.materialized) == 1
    assert second.admitted == 0
    with session_factory() as session:
        assert session.get(Account, account_id).balance_cents == 500_000


def test_budget_and_report_jobs_run_against_the_store(manager, session_factory):
    with session_factory() as session:
        session.add(User(id=1, email="ana@example.com", name="Ana"))
        session.add(Account(user_id=1, name="Main", is_default=True))
        session.add(Budget(user_id=1, amount_cents=1_000))
        session.commit()

    manager.run_budget_alerts("test")
    manager.run_monthly_reports("test")

    with session_factory() as session:
        assert session.get(Budget, 1).last_alert_sent is None


def test_start_registers_jobs(manager, monkeypatch):
    calls = []
    monkeypatch.setattr(manager, "run_recurring", lambda source: calls.append(source))

    manager.start()

    assert calls == ["startup"]
    job_ids = {job.id for job in manager.scheduler.get_jobs()}
    assert job_ids == {
        "recurring_daily",
        "recurring_hourly_safety",
        "budget_alerts",
        "monthly_reports",
    }
