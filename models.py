from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from database import Base
from money import from_cents
from months import year_month_for

ACTIVE_ROWS = text("deleted_at IS NULL")
STASH_BALANCE_CHECK = "ck_stashes_balance_non_negative"
YEAR_MONTH_CHECK = (
    "year_month LIKE '____-__' "
    "AND substr(year_month, 6, 2) BETWEEN '01' AND '12'"
)


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class ExpenseCategory(Base):
    __tablename__ = "expense_categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class Stash(Base, TimestampMixin):
    __tablename__ = "stashes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["StashTransaction"]] = relationship(
        "StashTransaction", back_populates="stash"
    )

    __table_args__ = (
        CheckConstraint("current_balance_cents >= 0", name=STASH_BALANCE_CHECK),
        Index(
            "uq_stashes_user_name_active",
            "user_id",
            "name",
            unique=True,
            sqlite_where=ACTIVE_ROWS,
            postgresql_where=ACTIVE_ROWS,
        ),
        Index("ix_stashes_user_created", "user_id", "created_at"),
    )

    @property
    def current_balance(self) -> Decimal:
        return from_cents(self.current_balance_cents)


class StashTransaction(Base):
    __tablename__ = "stash_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    stash_id: Mapped[str] = mapped_column(ForeignKey("stashes.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    stash: Mapped["Stash"] = relationship("Stash", back_populates="transactions")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_stash_transactions_amount_positive"),
        Index("ix_stash_transactions_stash_created", "stash_id", "created_at"),
        Index("ix_stash_transactions_user_created", "user_id", "created_at"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class MonthBudget(Base, TimestampMixin):
    __tablename__ = "month_budget"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    budget_set_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint("budget_set_cents > 0", name="ck_month_budget_set_positive"),
        CheckConstraint(YEAR_MONTH_CHECK, name="ck_month_budget_year_month_format"),
        Index(
            "uq_month_budget_user_month_active",
            "user_id",
            "year_month",
            unique=True,
            sqlite_where=ACTIVE_ROWS,
            postgresql_where=ACTIVE_ROWS,
        ),
    )

    @property
    def budget_set(self) -> Decimal:
        return from_cents(self.budget_set_cents)

    @property
    def current_balance(self) -> Decimal:
        return from_cents(self.current_balance_cents)


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("expense_categories.id", ondelete="RESTRICT")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["ExpenseCategory"]] = relationship("ExpenseCategory")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(YEAR_MONTH_CHECK, name="ck_expenses_year_month_format"),
        Index("ix_expenses_user_date", "user_id", "expense_date"),
        Index("ix_expenses_user_year_month", "user_id", "year_month"),
        Index("ix_expenses_user_category", "user_id", "category_id"),
    )

    @validates("expense_date")
    def _sync_year_month(self, _key: str, value: date) -> date:
        self.year_month = year_month_for(value)
        return value

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)
