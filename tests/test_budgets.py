from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from models import MonthBudget
from schemas import BudgetIn, BudgetListQuery, ExpenseIn, ExpenseUpdate
from services import BudgetService, ExpenseService

USER = "user-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def spend(session, amount: str, on: date, user_id: str = USER):
    return ExpenseService(session, user_id).create(
        ExpenseIn(amount=Decimal(amount), expense_date=on, description="Lunch")
    )


def test_budget_created_after_expenses_accounts_for_them() -> None:
    session = make_session()
    spend(session, "40.00", date(2025, 3, 2))
    spend(session, "5.00", date(2025, 4, 1))

    budgets = BudgetService(session, USER)
    result = budgets.upsert("2025-03", BudgetIn(budget_set=Decimal("100.00")))

    assert result.created is True
    assert result.item.budget_set == Decimal("100.00")
    assert result.item.current_balance == Decimal("60.00")


def test_second_upsert_updates_the_same_row() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)
    first = budgets.upsert("2025-01", BudgetIn(budget_set=Decimal("100.00")))
    spend(session, "30.00", date(2025, 1, 15))

    second = budgets.upsert("2025-01", BudgetIn(budget_set=Decimal("150.00")))

    assert second.created is False
    assert second.item.id == first.item.id
    assert second.item.current_balance == Decimal("120.00")
    total = session.scalar(select(func.count()).select_from(MonthBudget))
    assert total == 1


def test_expense_changes_keep_budget_balance_current() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)
    budgets.upsert("2025-05", BudgetIn(budget_set=Decimal("200.00")))

    first = spend(session, "25.50", date(2025, 5, 3))
    spend(session, "10.00", date(2025, 5, 20))
    spend(session, "99.00", date(2025, 5, 20), user_id="user-2")
    assert budgets.get("2025-05").current_balance == Decimal("164.50")

    ExpenseService(session, USER).update(first.id, ExpenseUpdate(amount=Decimal("5.50")))
    assert budgets.get("2025-05").current_balance == Decimal("184.50")

    ExpenseService(session, USER).soft_delete(first.id)
    assert budgets.get("2025-05").current_balance == Decimal("190.00")


def test_overspending_gives_negative_balance() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)
    budgets.upsert("2025-06", BudgetIn(budget_set=Decimal("10.00")))
    spend(session, "12.34", date(2025, 6, 30))

    assert budgets.get("2025-06").current_balance == Decimal("-2.34")


def test_invalid_year_month_is_rejected() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)

    for value in ("2025-13", "2025-1", "25-01", "2025/01"):
        with pytest.raises(ValidationError):
            budgets.upsert(value, BudgetIn(budget_set=Decimal("1.00")))
        with pytest.raises(ValidationError):
            budgets.get(value)

    assert budgets.get("2025-07") is None


def test_list_filters_by_year_and_orders_by_month() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)
    for year_month in ("2024-12", "2025-02", "2025-01"):
        budgets.upsert(year_month, BudgetIn(budget_set=Decimal("50.00")))

    page = budgets.list(BudgetListQuery(year="2025", order="asc"))
    assert page.total == 2
    assert [b.year_month for b in page.items] == ["2025-01", "2025-02"]

    everything = budgets.list(BudgetListQuery())
    assert [b.year_month for b in everything.items] == ["2025-02", "2025-01", "2024-12"]


def test_concurrent_first_upsert_is_retried_as_update(tmp_path, monkeypatch) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    ours, theirs = SessionLocal(), SessionLocal()

    service = BudgetService(ours, USER)
    lookup = service._active_budget
    calls = []

    def racing_lookup(year_month, *, lock=False):
        calls.append(year_month)
        if len(calls) == 1:
            # The other writer commits between our lookup and our insert.
            BudgetService(theirs, USER).upsert(
                year_month, BudgetIn(budget_set=Decimal("100.00"))
            )
            return None
        return lookup(year_month, lock=lock)

    monkeypatch.setattr(service, "_active_budget", racing_lookup)

    result = service.upsert("2025-02", BudgetIn(budget_set=Decimal("250.00")))

    assert result.created is False
    assert result.item.budget_set == Decimal("250.00")
    assert len(calls) == 2
    rows = ours.scalars(select(MonthBudget)).all()
    assert len(rows) == 1
    assert rows[0].budget_set_cents == 25_000


def test_repeating_the_same_upsert_keeps_the_balance() -> None:
    session = make_session()
    spend(session, "12.00", date(2025, 9, 9))
    budgets = BudgetService(session, USER)

    first = budgets.upsert("2025-09", BudgetIn(budget_set=Decimal("80.00")))
    balance = first.item.current_balance
    second = budgets.upsert("2025-09", BudgetIn(budget_set=Decimal("80.00")))

    assert (first.created, second.created) == (True, False)
    assert second.item.id == first.item.id
    assert second.item.current_balance == balance == Decimal("68.00")


def test_budget_set_after_expense_then_expense_removed() -> None:
    session = make_session()
    expense = spend(session, "50.00", date(2025, 1, 15))
    budgets = BudgetService(session, USER)

    result = budgets.upsert("2025-01", BudgetIn(budget_set=Decimal("200.00")))
    assert result.item.current_balance == Decimal("150.00")

    ExpenseService(session, USER).soft_delete(expense.id)
    assert budgets.get("2025-01").current_balance == Decimal("200.00")


def test_new_budget_balance_comes_from_the_ledger_after_insert(monkeypatch) -> None:
    session = make_session()
    spend(session, "30.00", date(2025, 10, 1))

    # Stale sum, as seen by an upsert racing an expense insert.
    monkeypatch.setattr("services.total_expenses_for_month", lambda *args: 0)
    result = BudgetService(session, USER).upsert(
        "2025-10", BudgetIn(budget_set=Decimal("100.00"))
    )

    assert result.created is True
    assert result.item.current_balance == Decimal("70.00")


def test_store_rejects_malformed_year_month() -> None:
    session = make_session()
    for value in ("2025-13", "2025-00", "202501", "2025-1x"):
        session.add(MonthBudget(user_id=USER, year_month=value, budget_set_cents=100))
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    session.add(MonthBudget(user_id=USER, year_month="2025-12", budget_set_cents=100))
    session.commit()
