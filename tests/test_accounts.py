import csv
from datetime import date, datetime
from io import StringIO

import pytest

from csv_utils import export_transactions, parse_amount, sanitize_csv_value
from errors import NotFoundError, ValidationError
from models import Account, AccountType, RecurringInterval, TransactionType, User
from periods import Period
from recurrence import RecurrenceProcessor, WorkItem
from schemas import AccountIn, BudgetIn, TransactionIn
from services import (
    OPENING_BALANCE_CATEGORY,
    AccountService,
    BudgetService,
    TransactionFilters,
    TransactionService,
)

JANUARY = Period("custom", date(2025, 1, 1), date(2025, 1, 31))


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        session.add(User(id=1, email="ana@example.com", name="Ana"))
        session.commit()
        yield session


def test_first_account_becomes_default(session):
    service = AccountService(session, 1)
    main = service.create(AccountIn(name="Main"))
    savings = service.create(AccountIn(name="Savings", type=AccountType.savings))

    assert main.is_default is True
    assert savings.is_default is False
    assert service.default().id == main.id


def test_setting_default_clears_previous(session):
    service = AccountService(session, 1)
    main = service.create(AccountIn(name="Main"))
    savings = service.create(AccountIn(name="Savings", is_default=True))

    session.refresh(main)
    assert savings.is_default is True
    assert main.is_default is False

    service.set_default(main.id)
    session.refresh(savings)
    assert main.is_default is True
    assert savings.is_default is False


def test_cannot_unset_only_default(session):
    service = AccountService(session, 1)
    main = service.create(AccountIn(name="Main"))
    savings = service.create(AccountIn(name="Savings"))

    with pytest.raises(ValidationError, match="at least one default"):
        service.unset_default(main.id)
    service.unset_default(savings.id)


def test_opening_balance_is_a_ledger_entry(session):
    service = AccountService(session, 1)
    account = service.create(
        AccountIn(name="Main", balance_cents=25_000), opened_on=date(2025, 1, 1)
    )
    overdrawn = service.create(
        AccountIn(name="Card", balance_cents=-4_000), opened_on=date(2025, 1, 1)
    )

    assert account.balance_cents == 25_000
    assert overdrawn.balance_cents == -4_000
    assert service.reconcile(account.id).consistent
    assert service.reconcile(overdrawn.id).consistent

    entries = TransactionService(session, 1).list(
        JANUARY, TransactionFilters(category=OPENING_BALANCE_CATEGORY)
    )
    assert {(t.account_id, t.type, t.amount_cents) for t in entries} == {
        (account.id, TransactionType.income, 25_000),
        (overdrawn.id, TransactionType.expense, 4_000),
    }


def test_account_for_missing_user_is_rejected(session):
    with pytest.raises(NotFoundError):
        AccountService(session, 42).create(AccountIn(name="Ghost"))
    assert session.query(Account).count() == 0


def test_transaction_listing_filters(session):
    account = AccountService(session, 1).create(AccountIn(name="Main"))
    service = TransactionService(session, 1)
    rent = service.create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount="1200.00",
            date=date(2025, 1, 3),
            category="housing",
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
        )
    )
    service.create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.income,
            amount="3000",
            date=date(2025, 1, 25),
            category="salary",
        )
    )
    service.create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount="12,50",
            date=date(2025, 2, 2),
            category="food",
        )
    )

    assert rent.amount_cents == 120_000
    assert len(service.list(JANUARY, TransactionFilters())) == 2
    expenses = service.list(JANUARY, TransactionFilters(type=TransactionType.expense))
    assert [t.id for t in expenses] == [rent.id]
    recurring = service.list(JANUARY, TransactionFilters(recurring_only=True))
    assert [t.id for t in recurring] == [rent.id]
    assert len(service.list(JANUARY, TransactionFilters(), limit=1)) == 1


def test_occurrences_of_template(session):
    account = AccountService(session, 1).create(AccountIn(name="Main"))
    service = TransactionService(session, 1)
    template = service.create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=1_500,
            date=date(2025, 1, 5),
            category="streaming",
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
        )
    )
    RecurrenceProcessor(session).process(
        WorkItem(template.id, 1), now=datetime(2025, 1, 6, 0, 0)
    )

    occurrences = service.occurrences_of(template.id)
    assert len(occurrences) == 1
    assert occurrences[0].occurrence_date == date(2025, 1, 5)
    with pytest.raises(NotFoundError):
        service.occurrences_of(12_345)


def test_budget_progress(session):
    account = AccountService(session, 1).create(AccountIn(name="Main"))
    budgets = BudgetService(session, 1)
    assert budgets.progress_for_month(date(2025, 1, 20))["budget_cents"] is None

    budgets.upsert(BudgetIn(amount_cents=40_000))
    TransactionService(session, 1).create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=10_000,
            date=date(2025, 1, 10),
            category="groceries",
        )
    )

    progress = budgets.progress_for_month(date(2025, 1, 20))
    assert progress == {
        "budget_cents": 40_000,
        "spent_cents": 10_000,
        "remaining_cents": 30_000,
        "percentage_used": 25.0,
    }
    assert budgets.upsert(BudgetIn(amount_cents=50_000)).id == budgets.get().id


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("12.34", 1_234),
        ("€ 1.234,56", 123_456),
        ("7", 700),
        ("0,5", 50),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(
    "raw", ["NaN", "inf", "-Infinity", "abc", "-3.00", "", "1e20", "1e999999999"]
)
def test_parse_amount_rejects_bad_input(raw):
    with pytest.raises(ValidationError):
        parse_amount(raw)


def test_transaction_in_rejects_recurring_without_interval():
    with pytest.raises(ValueError):
        TransactionIn(
            account_id=1,
            type=TransactionType.expense,
            amount_cents=100,
            date=date(2025, 1, 1),
            category="misc",
            is_recurring=True,
        )


def test_export_transactions_sanitizes_cells(session):
    account = AccountService(session, 1).create(AccountIn(name="Main"))
    txn = TransactionService(session, 1).create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=4_250,
            description="=HYPERLINK(\"http://evil\")",
            date=date(2025, 1, 9),
            category="gifts",
        )
    )

    rows = list(csv.reader(StringIO(export_transactions([txn]))))

    assert rows[0][0] == "Date"
    assert rows[1][:4] == ["2025-01-09", "expense", "42.50", "gifts"]
    assert rows[1][4].startswith("\t=")
    assert sanitize_csv_value("  ") == ""
