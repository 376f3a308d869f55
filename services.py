from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from balances import (
    recompute_month_balance,
    recompute_stash_balance,
    total_expenses_for_month,
)
from errors import (
    BudgetConflict,
    CategoryNotFound,
    DuplicateStashName,
    ExpenseNotFound,
    InsufficientBalance,
    InternalError,
    LedgerError,
    StashNotFound,
    TransactionNotFound,
    Unprocessable,
    ValidationError,
)
from models import (
    Expense,
    ExpenseCategory,
    MonthBudget,
    STASH_BALANCE_CHECK,
    Stash,
    StashTransaction,
    TransactionType,
    utcnow,
)
from money import from_cents, to_cents
from months import current_year_month, is_year_month
from schemas import (
    BudgetIn,
    BudgetListQuery,
    ExpenseIn,
    ExpenseListQuery,
    ExpenseUpdate,
    StashIn,
    StashListQuery,
    TransactionIn,
    TransactionListQuery,
)

logger = logging.getLogger(__name__)

RECENT_TRANSACTIONS_LIMIT = 50

_PG_INTEGRITY_CODES = {
    "23505": "unique",
    "23514": "check",
    "23503": "foreign_key",
}
_SQLITE_INTEGRITY_MARKERS = {
    "UNIQUE constraint failed": "unique",
    "CHECK constraint failed": "check",
    "FOREIGN KEY constraint failed": "foreign_key",
}


def integrity_kind(exc: IntegrityError) -> Optional[str]:
    code = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
    if code in _PG_INTEGRITY_CODES:
        return _PG_INTEGRITY_CODES[code]
    message = str(exc.orig)
    for marker, kind in _SQLITE_INTEGRITY_MARKERS.items():
        if marker in message:
            return kind
    return None


def _context(context: dict[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in context.items())


@contextmanager
def persistence_errors(session: Session, action: str, **context: object) -> Iterator[None]:
    """Roll back on any failure and translate engine errors.

    Ledger errors pass through untouched. Check-constraint rejections become
    ``Unprocessable``; every other database error is logged with its context
    and surfaces as ``InternalError`` without the engine's error codes.
    """
    try:
        yield
    except LedgerError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        if integrity_kind(exc) == "check":
            logger.info(f"{action}_rejected: {_context(context)}")
            raise Unprocessable() from exc
        logger.exception(f"{action}_failed: {_context(context)}")
        raise InternalError() from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"{action}_failed: {_context(context)}")
        raise InternalError() from exc


def positive_cents(amount: Decimal, label: str = "Amount") -> int:
    try:
        cents = to_cents(amount)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if cents <= 0:
        raise ValidationError(f"{label} must be greater than 0")
    return cents


def paginate(session: Session, stmt: Select, page: int, limit: int) -> "Page":
    total = int(
        session.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        )
        or 0
    )
    items = session.scalars(stmt.offset((page - 1) * limit).limit(limit)).all()
    return Page(items=list(items), page=page, limit=limit, total=total)


@dataclass
class Page:
    items: list
    page: int
    limit: int
    total: int


@dataclass
class StashDetails:
    stash: Stash
    transactions: Optional[list[StashTransaction]] = None


@dataclass
class BudgetUpsertResult:
    item: MonthBudget
    created: bool


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[ExpenseCategory]:
        with persistence_errors(self.session, "category_list"):
            stmt = select(ExpenseCategory).order_by(ExpenseCategory.display_name.asc())
            return list(self.session.scalars(stmt).all())

    def get(self, category_id: str) -> ExpenseCategory:
        with persistence_errors(self.session, "category_get", category_id=category_id):
            category = self.session.get(ExpenseCategory, category_id)
        if category is None:
            raise CategoryNotFound(f"Category with ID {category_id} does not exist")
        return category


class StashService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get_active(self, stash_id: str, *, lock: bool = False) -> Stash:
        stmt = select(Stash).where(
            Stash.id == stash_id,
            Stash.user_id == self.user_id,
            Stash.deleted_at.is_(None),
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        stash = self.session.scalar(stmt)
        if stash is None:
            raise StashNotFound()
        return stash

    def _name_taken(self, name: str, *, exclude_id: Optional[str] = None) -> bool:
        stmt = select(Stash.id).where(
            Stash.user_id == self.user_id,
            Stash.name == name,
            Stash.deleted_at.is_(None),
        )
        if exclude_id is not None:
            stmt = stmt.where(Stash.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _flush_unique_name(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            if integrity_kind(exc) == "unique":
                raise DuplicateStashName() from exc
            raise

    def create(self, data: StashIn) -> Stash:
        name = data.name.strip()
        if not name:
            raise ValidationError("Name cannot be empty")
        with persistence_errors(self.session, "stash_create", user_id=self.user_id):
            if self._name_taken(name):
                raise DuplicateStashName()
            stash = Stash(user_id=self.user_id, name=name, current_balance_cents=0)
            self.session.add(stash)
            self._flush_unique_name()
            self.session.commit()
            self.session.refresh(stash)
        return stash

    def list(self, query: StashListQuery) -> Page:
        column = Stash.name if query.sort == "name" else Stash.created_at
        ordering = column.asc() if query.order == "asc" else column.desc()
        stmt = (
            select(Stash)
            .where(Stash.user_id == self.user_id, Stash.deleted_at.is_(None))
            .order_by(ordering, Stash.id.asc())
        )
        with persistence_errors(self.session, "stash_list", user_id=self.user_id):
            return paginate(self.session, stmt, query.page, query.limit)

    def get(self, stash_id: str, *, include_transactions: bool = False) -> StashDetails:
        with persistence_errors(
            self.session, "stash_get", user_id=self.user_id, stash_id=stash_id
        ):
            stash = self.get_active(stash_id)
            transactions = None
            if include_transactions:
                transactions = TransactionService(self.session, self.user_id).recent(
                    stash_id
                )
        return StashDetails(stash=stash, transactions=transactions)

    def rename(self, stash_id: str, data: StashIn) -> Stash:
        name = data.name.strip()
        if not name:
            raise ValidationError("Name cannot be empty")
        with persistence_errors(
            self.session, "stash_rename", user_id=self.user_id, stash_id=stash_id
        ):
            stash = self.get_active(stash_id, lock=True)
            if self._name_taken(name, exclude_id=stash.id):
                raise DuplicateStashName()
            stash.name = name
            stash.updated_at = utcnow()
            self._flush_unique_name()
            self.session.commit()
            self.session.refresh(stash)
        return stash

    def soft_delete(self, stash_id: str) -> None:
        # Transactions stay untouched; they become unreachable through the
        # deleted stash but keep their ledger rows.
        with persistence_errors(
            self.session, "stash_delete", user_id=self.user_id, stash_id=stash_id
        ):
            stash = self.get_active(stash_id, lock=True)
            stash.deleted_at = utcnow()
            self.session.commit()


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _stashes(self) -> StashService:
        return StashService(self.session, self.user_id)

    def _flush_balance(self) -> None:
        # SQLite ignores FOR UPDATE, so a concurrent writer can slip in between
        # the balance check and the recompute; the store check catches it.
        try:
            self.session.flush()
        except IntegrityError as exc:
            if integrity_kind(exc) == "check" and STASH_BALANCE_CHECK in str(exc.orig):
                raise InsufficientBalance() from exc
            raise

    def list(self, stash_id: str, query: TransactionListQuery) -> Page:
        with persistence_errors(
            self.session, "transaction_list", user_id=self.user_id, stash_id=stash_id
        ):
            self._stashes().get_active(stash_id)
            ordering = (
                StashTransaction.created_at.asc()
                if query.order == "asc"
                else StashTransaction.created_at.desc()
            )
            stmt = (
                select(StashTransaction)
                .where(
                    StashTransaction.stash_id == stash_id,
                    StashTransaction.user_id == self.user_id,
                    StashTransaction.deleted_at.is_(None),
                )
                .order_by(ordering)
            )
            if query.type:
                stmt = stmt.where(StashTransaction.transaction_type == query.type)
            if query.created_from:
                stmt = stmt.where(StashTransaction.created_at >= query.created_from)
            if query.created_to:
                stmt = stmt.where(StashTransaction.created_at <= query.created_to)
            return paginate(self.session, stmt, query.page, query.limit)

    def recent(
        self, stash_id: str, limit: int = RECENT_TRANSACTIONS_LIMIT
    ) -> list[StashTransaction]:
        stmt = (
            select(StashTransaction)
            .where(
                StashTransaction.stash_id == stash_id,
                StashTransaction.user_id == self.user_id,
                StashTransaction.deleted_at.is_(None),
            )
            .order_by(StashTransaction.created_at.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, stash_id: str, data: TransactionIn) -> StashTransaction:
        with persistence_errors(
            self.session, "transaction_create", user_id=self.user_id, stash_id=stash_id
        ):
            stash = self._stashes().get_active(stash_id, lock=True)
            amount_cents = positive_cents(data.amount)
            if (
                data.transaction_type == TransactionType.withdrawal
                and amount_cents > stash.current_balance_cents
            ):
                raise InsufficientBalance()

            txn = StashTransaction(
                stash_id=stash.id,
                user_id=self.user_id,
                transaction_type=data.transaction_type,
                amount_cents=amount_cents,
                description=data.description or None,
            )
            self.session.add(txn)
            recompute_stash_balance(self.session, stash.id)
            stash.updated_at = utcnow()
            self._flush_balance()
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def soft_delete(self, stash_id: str, transaction_id: str) -> None:
        with persistence_errors(
            self.session,
            "transaction_delete",
            user_id=self.user_id,
            stash_id=stash_id,
            transaction_id=transaction_id,
        ):
            stash = self._stashes().get_active(stash_id, lock=True)
            txn = self.session.scalar(
                select(StashTransaction).where(
                    StashTransaction.id == transaction_id,
                    StashTransaction.stash_id == stash.id,
                    StashTransaction.user_id == self.user_id,
                    StashTransaction.deleted_at.is_(None),
                )
            )
            if txn is None:
                raise TransactionNotFound()
            if (
                txn.transaction_type == TransactionType.deposit
                and txn.amount_cents > stash.current_balance_cents
            ):
                raise InsufficientBalance(
                    "Removing this deposit would make the stash balance negative"
                )

            txn.deleted_at = utcnow()
            recompute_stash_balance(self.session, stash.id)
            stash.updated_at = utcnow()
            self._flush_balance()
            self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    @staticmethod
    def _check_year_month(year_month: str) -> None:
        if not is_year_month(year_month):
            raise ValidationError("Invalid year-month format. Use YYYY-MM")

    def _active_budget(
        self, year_month: str, *, lock: bool = False
    ) -> Optional[MonthBudget]:
        stmt = select(MonthBudget).where(
            MonthBudget.user_id == self.user_id,
            MonthBudget.year_month == year_month,
            MonthBudget.deleted_at.is_(None),
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.scalar(stmt)

    def get(self, year_month: str) -> Optional[MonthBudget]:
        self._check_year_month(year_month)
        with persistence_errors(
            self.session, "budget_get", user_id=self.user_id, year_month=year_month
        ):
            return self._active_budget(year_month)

    def list(self, query: BudgetListQuery) -> Page:
        ordering = (
            MonthBudget.year_month.asc()
            if query.order == "asc"
            else MonthBudget.year_month.desc()
        )
        stmt = (
            select(MonthBudget)
            .where(MonthBudget.user_id == self.user_id, MonthBudget.deleted_at.is_(None))
            .order_by(ordering)
        )
        if query.year:
            stmt = stmt.where(MonthBudget.year_month.like(f"{query.year}-%"))
        with persistence_errors(self.session, "budget_list", user_id=self.user_id):
            return paginate(self.session, stmt, query.page, query.limit)

    def upsert(self, year_month: str, data: BudgetIn) -> BudgetUpsertResult:
        """Create or update the owner's budget for ``year_month``.

        Two first-time upserts for the same month can both miss the existing
        row; the loser hits the partial unique index on insert and is retried
        exactly once as an update.
        """
        self._check_year_month(year_month)
        budget_cents = positive_cents(data.budget_set, "Budget")
        with persistence_errors(
            self.session, "budget_upsert", user_id=self.user_id, year_month=year_month
        ):
            try:
                return self._write(year_month, budget_cents, allow_insert=True)
            except IntegrityError as exc:
                if integrity_kind(exc) != "unique":
                    raise
                self.session.rollback()
                logger.warning(
                    f"budget_upsert_race: user_id={self.user_id} "
                    f"year_month={year_month} retry=update"
                )
            return self._write(year_month, budget_cents, allow_insert=False)

    def _write(
        self, year_month: str, budget_cents: int, *, allow_insert: bool
    ) -> BudgetUpsertResult:
        existing = self._active_budget(year_month, lock=True)
        total = total_expenses_for_month(self.session, self.user_id, year_month)
        balance = budget_cents - total

        if existing is not None:
            existing.budget_set_cents = budget_cents
            existing.current_balance_cents = balance
            existing.updated_at = utcnow()
            self.session.commit()
            self.session.refresh(existing)
            return BudgetUpsertResult(item=existing, created=False)

        if not allow_insert:
            raise BudgetConflict()

        budget = MonthBudget(
            user_id=self.user_id,
            year_month=year_month,
            budget_set_cents=budget_cents,
            current_balance_cents=balance,
        )
        self.session.add(budget)
        self.session.flush()
        # Expenses committed after the sum above found no budget row to update.
        recompute_month_balance(self.session, self.user_id, year_month)
        self.session.commit()
        self.session.refresh(budget)
        return BudgetUpsertResult(item=budget, created=True)


class ExpenseService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _check_category(self, category_id: str) -> None:
        if self.session.get(ExpenseCategory, category_id) is None:
            raise CategoryNotFound(f"Category with ID {category_id} does not exist")

    def _active_expense(self, expense_id: str, *, lock: bool = False) -> Expense:
        stmt = select(Expense).where(
            Expense.id == expense_id,
            Expense.user_id == self.user_id,
            Expense.deleted_at.is_(None),
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        expense = self.session.scalar(stmt)
        if expense is None:
            raise ExpenseNotFound()
        return expense

    def _flush(self, category_id: Optional[str]) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            if integrity_kind(exc) == "foreign_key":
                raise CategoryNotFound(
                    f"Category with ID {category_id} does not exist"
                ) from exc
            raise

    def _recompute_months(self, months: set[str]) -> None:
        # Sorted so concurrent writers lock budget rows in the same order.
        for year_month in sorted(months):
            recompute_month_balance(self.session, self.user_id, year_month)

    def list(self, query: ExpenseListQuery) -> Page:
        column = Expense.amount_cents if query.sort == "amount" else Expense.expense_date
        ordering = column.asc() if query.order == "asc" else column.desc()
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id, Expense.deleted_at.is_(None))
            .order_by(ordering, Expense.created_at.desc())
        )
        if query.category_id:
            stmt = stmt.where(Expense.category_id == query.category_id)
        if query.year_month:
            stmt = stmt.where(Expense.year_month == query.year_month)
        else:
            if query.date_from:
                stmt = stmt.where(Expense.expense_date >= query.date_from)
            if query.date_to:
                stmt = stmt.where(Expense.expense_date <= query.date_to)
        if query.search:
            stmt = stmt.where(Expense.description.ilike(f"%{query.search}%"))
        with persistence_errors(self.session, "expense_list", user_id=self.user_id):
            return paginate(self.session, stmt, query.page, query.limit)

    def get(self, expense_id: str) -> Expense:
        with persistence_errors(
            self.session, "expense_get", user_id=self.user_id, expense_id=expense_id
        ):
            return self._active_expense(expense_id)

    def create(self, data: ExpenseIn) -> Expense:
        amount_cents = positive_cents(data.amount)
        description = data.description.strip()
        if not description:
            raise ValidationError("Description is required")
        with persistence_errors(self.session, "expense_create", user_id=self.user_id):
            if data.category_id:
                self._check_category(data.category_id)
            expense = Expense(
                user_id=self.user_id,
                category_id=data.category_id or None,
                amount_cents=amount_cents,
                expense_date=data.expense_date,
                description=description,
            )
            self.session.add(expense)
            self._flush(data.category_id)
            self._recompute_months({expense.year_month})
            self.session.commit()
            self.session.refresh(expense)
        return expense

    def update(self, expense_id: str, data: ExpenseUpdate) -> Expense:
        fields = data.model_fields_set
        amount_cents = None
        if "amount" in fields:
            amount_cents = positive_cents(data.amount)
        with persistence_errors(
            self.session, "expense_update", user_id=self.user_id, expense_id=expense_id
        ):
            expense = self._active_expense(expense_id, lock=True)
            if "category_id" in fields and data.category_id:
                self._check_category(data.category_id)

            touched = {expense.year_month}
            if "category_id" in fields:
                expense.category_id = data.category_id or None
            if amount_cents is not None:
                expense.amount_cents = amount_cents
            if "expense_date" in fields:
                expense.expense_date = data.expense_date
            if "description" in fields:
                description = data.description.strip()
                if not description:
                    raise ValidationError("Description is required")
                expense.description = description
            expense.updated_at = utcnow()
            touched.add(expense.year_month)

            self._flush(data.category_id)
            self._recompute_months(touched)
            self.session.commit()
            self.session.refresh(expense)
        return expense

    def soft_delete(self, expense_id: str) -> None:
        with persistence_errors(
            self.session, "expense_delete", user_id=self.user_id, expense_id=expense_id
        ):
            expense = self._active_expense(expense_id, lock=True)
            expense.deleted_at = utcnow()
            self._recompute_months({expense.year_month})
            self.session.commit()


class DashboardService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def stash_summary(self) -> dict[str, object]:
        stashes = list(
            self.session.scalars(
                select(Stash)
                .where(Stash.user_id == self.user_id, Stash.deleted_at.is_(None))
                .order_by(Stash.created_at.desc())
            ).all()
        )
        total_cents = sum(stash.current_balance_cents for stash in stashes)
        return {
            "total_stashes": len(stashes),
            "total_balance": from_cents(total_cents),
            "stashes": stashes,
        }

    def budget_summary(self, year_month: str) -> dict[str, object]:
        budget = self.session.scalar(
            select(MonthBudget).where(
                MonthBudget.user_id == self.user_id,
                MonthBudget.year_month == year_month,
                MonthBudget.deleted_at.is_(None),
            )
        )
        total = total_expenses_for_month(self.session, self.user_id, year_month)
        return {
            "year_month": year_month,
            "budget_set": budget.budget_set if budget else None,
            "total_expenses": from_cents(total),
            "current_balance": budget.current_balance if budget else None,
            "has_no_budget": budget is None,
        }

    def summary(self, year_month: Optional[str] = None) -> dict[str, object]:
        target = year_month or current_year_month()
        if not is_year_month(target):
            raise ValidationError("Invalid year-month format. Use YYYY-MM")
        with persistence_errors(
            self.session, "dashboard", user_id=self.user_id, year_month=target
        ):
            return {
                "stashes": self.stash_summary(),
                "budget": self.budget_summary(target),
            }
