from datetime import date, datetime
from decimal import Decimal

import pytest

from budgets import BudgetMonitor, is_new_month, percentage_used
from errors import DownstreamUnavailable
from ledger import LedgerMutator
from models import Budget, TransactionType, User
from notifications import DeliveryReceipt, Notification
from schemas import AccountIn, BudgetIn, TransactionIn
from services import AccountService, BudgetService


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> DeliveryReceipt:
        self.sent.append(notification)
        return DeliveryReceipt(
            provider="test",
            recipient=notification.recipient,
            delivered_at=datetime(2025, 1, 1),
        )


class FailingNotifier:
    def __init__(self) -> None:
        self.attempts = 0

    def send(self, notification: Notification) -> DeliveryReceipt:
        self.attempts += 1
        raise DownstreamUnavailable("mail provider down")


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        session.add(User(id=1, email="ana@example.com", name="Ana"))
        session.commit()
        yield session


@pytest.fixture
def account(session):
    return AccountService(session, 1).create(AccountIn(name="Main"))


@pytest.fixture
def budget(session, account):
    return BudgetService(session, 1).upsert(BudgetIn(amount_cents=10_000))


def _spend(session, account_id: int, cents: int, on: date, **overrides):
    fields = dict(
        account_id=account_id,
        type=TransactionType.expense,
        amount_cents=cents,
        date=on,
        category="groceries",
    )
    fields.update(overrides)
    return LedgerMutator(session, 1).create(TransactionIn(**fields))


def test_percentage_used_is_exact():
    assert percentage_used(8_500, 10_000) == Decimal("85")
    assert percentage_used(1, 3) > Decimal("33.33")
    assert percentage_used(0, 10_000) == 0


def test_is_new_month():
    assert is_new_month(datetime(2025, 1, 31, 23, 59), datetime(2025, 2, 1, 0, 0))
    assert is_new_month(datetime(2024, 12, 15), datetime(2025, 1, 2))
    assert not is_new_month(datetime(2025, 1, 1), datetime(2025, 1, 31, 23, 59))
    assert not is_new_month(datetime(2025, 3, 1), datetime(2025, 2, 28))


def test_alert_sent_once_per_month(session, account, budget):
    notifier = RecordingNotifier()
    monitor = BudgetMonitor(session, notifier=notifier, threshold_pct=80)
    _spend(session, account.id, 8_500, date(2025, 1, 10))

    now = datetime(2025, 1, 20, 6, 0)
    report = monitor.run(now=now)

    assert report.alerted == [budget.id]
    assert len(notifier.sent) == 1
    alert = notifier.sent[0]
    assert alert.recipient == "ana@example.com"
    assert alert.template_type == "budget-alert"
    assert alert.subject == "Budget Alert for Main"
    assert alert.template_data["percentage_used"] == "85.0"
    assert alert.template_data["budget_amount"] == "100.00"
    assert alert.template_data["total_expenses"] == "85.00"
    assert session.get(Budget, budget.id).last_alert_sent == now

    _spend(session, account.id, 500, date(2025, 1, 21))
    again = monitor.run(now=datetime(2025, 1, 22, 6, 0))
    assert again.alerted == []
    assert again.skipped == [budget.id]
    assert len(notifier.sent) == 1


def test_alert_repeats_in_a_new_month(session, account, budget):
    notifier = RecordingNotifier()
    monitor = BudgetMonitor(session, notifier=notifier, threshold_pct=80)
    _spend(session, account.id, 9_000, date(2025, 1, 10))
    monitor.run(now=datetime(2025, 1, 20, 6, 0))

    assert monitor.run(now=datetime(2025, 2, 2, 6, 0)).alerted == []

    _spend(session, account.id, 8_000, date(2025, 2, 3))
    feb = datetime(2025, 2, 4, 6, 0)
    assert monitor.run(now=feb).alerted == [budget.id]
    assert len(notifier.sent) == 2
    assert session.get(Budget, budget.id).last_alert_sent == feb


def test_below_threshold_sends_nothing(session, account, budget):
    notifier = RecordingNotifier()
    _spend(session, account.id, 7_999, date(2025, 1, 10))

    report = BudgetMonitor(session, notifier=notifier, threshold_pct=80).run(
        now=datetime(2025, 1, 20)
    )

    assert report.skipped == [budget.id]
    assert notifier.sent == []
    assert session.get(Budget, budget.id).last_alert_sent is None


def test_budget_without_default_account_is_skipped(session):
    budget = BudgetService(session, 1).upsert(BudgetIn(amount_cents=5_000))
    notifier = RecordingNotifier()

    report = BudgetMonitor(session, notifier=notifier).run(now=datetime(2025, 1, 20))

    assert report.skipped == [budget.id]
    assert notifier.sent == []


def test_failed_send_does_not_record_alert(session, account, budget):
    _spend(session, account.id, 9_500, date(2025, 1, 10))
    failing = FailingNotifier()

    report = BudgetMonitor(session, notifier=failing, threshold_pct=80).run(
        now=datetime(2025, 1, 20, 6, 0)
    )

    assert report.failed == [budget.id]
    assert failing.attempts == 1
    assert session.get(Budget, budget.id).last_alert_sent is None

    notifier = RecordingNotifier()
    retry = BudgetMonitor(session, notifier=notifier, threshold_pct=80).run(
        now=datetime(2025, 1, 20, 12, 0)
    )
    assert retry.alerted == [budget.id]
    assert len(notifier.sent) == 1


def test_only_default_account_expenses_in_current_month_count(
    session, account, budget
):
    savings = AccountService(session, 1).create(AccountIn(name="Savings"))
    _spend(session, account.id, 1_000, date(2025, 1, 5))
    _spend(session, account.id, 2_000, date(2025, 1, 31))
    _spend(session, account.id, 50_000, date(2024, 12, 31))
    _spend(session, account.id, 50_000, date(2025, 2, 1))
    _spend(session, savings.id, 50_000, date(2025, 1, 15))
    _spend(
        session,
        account.id,
        50_000,
        date(2025, 1, 15),
        type=TransactionType.income,
        category="salary",
    )

    check = BudgetMonitor(session, notifier=RecordingNotifier()).check(
        session.get(Budget, budget.id), datetime(2025, 1, 20)
    )

    assert check.account.id == account.id
    assert check.spent_cents == 3_000
    assert check.percentage_used == Decimal("30")
    assert check.should_alert is False


def test_no_second_alert_after_dipping_below_within_month(session, account, budget):
    notifier = RecordingNotifier()
    monitor = BudgetMonitor(session, notifier=notifier, threshold_pct=80)
    big = _spend(session, account.id, 8_500, date(2025, 1, 10))
    assert monitor.run(now=datetime(2025, 1, 11)).alerted == [budget.id]

    LedgerMutator(session, 1).remove([big.id])
    assert monitor.run(now=datetime(2025, 1, 12)).alerted == []

    _spend(session, account.id, 9_000, date(2025, 1, 13))
    assert monitor.run(now=datetime(2025, 1, 14)).alerted == []
    assert len(notifier.sent) == 1


def test_threshold_defaults_from_settings(session, account, budget):
    monitor = BudgetMonitor(session, notifier=RecordingNotifier())
    assert monitor.threshold == Decimal(80)
