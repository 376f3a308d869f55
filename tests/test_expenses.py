from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import CategoryNotFound, ExpenseNotFound
from models import Expense, ExpenseCategory
from schemas import BudgetIn, ExpenseIn, ExpenseListQuery, ExpenseUpdate
from services import BudgetService, CategoryService, ExpenseService

USER = "user-1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_category(session, name: str, display_name: str) -> ExpenseCategory:
    category = ExpenseCategory(
        name=name, slug=name.lower().replace(" ", "-"), display_name=display_name
    )
    session.add(category)
    session.commit()
    session.refresh(category)
    return category


def expense_in(amount: str, on: date, description: str = "Coffee", **extra) -> ExpenseIn:
    return ExpenseIn(
        amount=Decimal(amount), expense_date=on, description=description, **extra
    )


def test_create_derives_year_month_and_keeps_category() -> None:
    session = make_session()
    groceries = add_category(session, "Groceries", "Jedzenie")

    expense = ExpenseService(session, USER).create(
        expense_in("12.99", date(2025, 2, 28), category_id=groceries.id)
    )

    assert expense.year_month == "2025-02"
    assert expense.category_id == groceries.id
    assert expense.amount == Decimal("12.99")


def test_unknown_category_inserts_nothing() -> None:
    session = make_session()
    expenses = ExpenseService(session, USER)

    with pytest.raises(CategoryNotFound):
        expenses.create(expense_in("5.00", date(2025, 1, 1), category_id="missing"))

    assert session.scalar(select(func.count()).select_from(Expense)) == 0


def test_moving_expense_between_months_updates_both_budgets() -> None:
    session = make_session()
    budgets = BudgetService(session, USER)
    budgets.upsert("2025-01", BudgetIn(budget_set=Decimal("100.00")))
    budgets.upsert("2025-02", BudgetIn(budget_set=Decimal("100.00")))
    expenses = ExpenseService(session, USER)
    expense = expenses.create(expense_in("20.00", date(2025, 1, 31)))
    assert budgets.get("2025-01").current_balance == Decimal("80.00")

    moved = expenses.update(expense.id, ExpenseUpdate(expense_date=date(2025, 2, 1)))

    assert moved.year_month == "2025-02"
    assert budgets.get("2025-01").current_balance == Decimal("100.00")
    assert budgets.get("2025-02").current_balance == Decimal("80.00")


def test_partial_update_leaves_other_fields() -> None:
    session = make_session()
    transport = add_category(session, "Transport", "Transport")
    expenses = ExpenseService(session, USER)
    expense = expenses.create(
        expense_in("7.40", date(2025, 3, 3), "Bus", category_id=transport.id)
    )

    updated = expenses.update(expense.id, ExpenseUpdate(description="Tram"))
    assert updated.description == "Tram"
    assert updated.amount == Decimal("7.40")
    assert updated.category_id == transport.id

    cleared = expenses.update(expense.id, ExpenseUpdate(category_id=None))
    assert cleared.category_id is None

    with pytest.raises(CategoryNotFound):
        expenses.update(expense.id, ExpenseUpdate(category_id="missing"))


def test_update_payload_validation() -> None:
    with pytest.raises(PydanticValidationError):
        ExpenseUpdate()
    with pytest.raises(PydanticValidationError):
        ExpenseUpdate(amount=None)
    with pytest.raises(PydanticValidationError):
        ExpenseUpdate(description="")


def test_delete_twice_reports_not_found() -> None:
    session = make_session()
    expenses = ExpenseService(session, USER)
    expense = expenses.create(expense_in("3.00", date(2025, 4, 4)))

    expenses.soft_delete(expense.id)

    with pytest.raises(ExpenseNotFound):
        expenses.soft_delete(expense.id)
    with pytest.raises(ExpenseNotFound):
        expenses.get(expense.id)
    with pytest.raises(ExpenseNotFound):
        ExpenseService(session, "user-2").update(
            expense.id, ExpenseUpdate(description="x")
        )


def test_list_filters_search_and_sort() -> None:
    session = make_session()
    groceries = add_category(session, "Groceries", "Jedzenie")
    expenses = ExpenseService(session, USER)
    expenses.create(expense_in("15.00", date(2025, 1, 10), "Weekly GROCERY run", category_id=groceries.id))
    expenses.create(expense_in("3.50", date(2025, 1, 12), "Coffee"))
    expenses.create(expense_in("60.00", date(2025, 2, 1), "Grocery stock-up", category_id=groceries.id))
    ExpenseService(session, "user-2").create(expense_in("1.00", date(2025, 1, 1), "grocery"))

    january = expenses.list(ExpenseListQuery(year_month="2025-01"))
    assert january.total == 2

    searched = expenses.list(ExpenseListQuery(search="grocery", sort="amount", order="asc"))
    assert [e.amount for e in searched.items] == [Decimal("15.00"), Decimal("60.00")]

    by_category = expenses.list(ExpenseListQuery(category_id=groceries.id))
    assert by_category.total == 2

    ranged = expenses.list(
        ExpenseListQuery.model_validate({"from": "2025-01-11", "to": "2025-02-01"})
    )
    assert [e.description for e in ranged.items] == ["Grocery stock-up", "Coffee"]


def test_list_query_rejects_conflicting_filters() -> None:
    with pytest.raises(PydanticValidationError):
        ExpenseListQuery.model_validate({"year_month": "2025-01", "from": "2025-01-01"})
    with pytest.raises(PydanticValidationError):
        ExpenseListQuery.model_validate({"from": "2025-02-01", "to": "2025-01-01"})
    with pytest.raises(PydanticValidationError):
        ExpenseListQuery(year_month="2025-00")


def test_categories_are_listed_by_display_name() -> None:
    session = make_session()
    add_category(session, "Utilities", "Media")
    add_category(session, "Groceries", "Jedzenie")
    categories = CategoryService(session)

    assert [c.display_name for c in categories.list_all()] == ["Jedzenie", "Media"]
    with pytest.raises(CategoryNotFound):
        categories.get("missing")
