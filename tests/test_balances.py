from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from balances import rebuild_all_balances, rebuild_balances, stash_ledger_total
from database import Base
from models import TransactionType
from money import from_cents, to_cents
from months import current_year_month, parse_year_month
from schemas import BudgetIn, ExpenseIn, StashIn, TransactionIn
from services import BudgetService, DashboardService, ExpenseService, StashService, TransactionService

USER = "user-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_ledger(session, user_id: str = USER):
    stash = StashService(session, user_id).create(StashIn(name="Rainy day"))
    txns = TransactionService(session, user_id)
    txns.create(
        stash.id,
        TransactionIn(transaction_type=TransactionType.deposit, amount=Decimal("80.00")),
    )
    txns.create(
        stash.id,
        TransactionIn(
            transaction_type=TransactionType.withdrawal, amount=Decimal("15.25")
        ),
    )
    budget = BudgetService(session, user_id).upsert(
        "2025-08", BudgetIn(budget_set=Decimal("300.00"))
    )
    ExpenseService(session, user_id).create(
        ExpenseIn(
            amount=Decimal("45.00"), expense_date=date(2025, 8, 9), description="Shoes"
        )
    )
    return stash, budget.item


def test_stored_balances_match_ledger() -> None:
    session = make_session()
    stash, budget = seed_ledger(session)

    assert stash_ledger_total(session, stash.id) == stash.current_balance_cents == 6_475
    assert budget.current_balance_cents == 25_500
    assert rebuild_balances(session, USER) == 0


def test_rebuild_repairs_drifted_balances() -> None:
    session = make_session()
    stash, budget = seed_ledger(session)
    stash.current_balance_cents = 1
    budget.current_balance_cents = 999_999
    session.commit()

    drifted = rebuild_balances(session, USER)
    session.commit()

    assert drifted == 2
    assert stash.current_balance == Decimal("64.75")
    assert budget.current_balance == Decimal("255.00")


def test_rebuild_all_covers_every_owner() -> None:
    session = make_session()
    first, _ = seed_ledger(session, "user-a")
    second, _ = seed_ledger(session, "user-b")
    first.current_balance_cents = 0
    second.current_balance_cents = 0
    session.commit()

    assert rebuild_all_balances(session) == 2
    session.commit()
    assert first.current_balance_cents == second.current_balance_cents == 6_475


def test_dashboard_summary_reports_month_without_budget() -> None:
    session = make_session()
    seed_ledger(session)
    dashboard = DashboardService(session, USER)

    summary = dashboard.summary("2025-08")
    assert summary["stashes"]["total_stashes"] == 1
    assert summary["stashes"]["total_balance"] == Decimal("64.75")
    assert summary["budget"]["total_expenses"] == Decimal("45.00")
    assert summary["budget"]["has_no_budget"] is False

    empty = dashboard.summary("2025-09")
    assert empty["budget"]["has_no_budget"] is True
    assert empty["budget"]["budget_set"] is None
    assert empty["budget"]["total_expenses"] == Decimal("0.00")


def test_money_conversion() -> None:
    assert to_cents(Decimal("10.5")) == 1050
    assert to_cents("0.01") == 1
    assert from_cents(-234) == Decimal("-2.34")
    with pytest.raises(ValueError):
        to_cents("1.001")
    with pytest.raises(ValueError):
        to_cents("NaN")
    with pytest.raises(ValueError):
        to_cents("abc")


def test_year_month_helpers() -> None:
    assert parse_year_month("2025-12") == (2025, 12)
    assert current_year_month(today=date(2025, 1, 31)) == "2025-01"
    with pytest.raises(ValueError, match="YYYY-MM"):
        parse_year_month("2025-13")
