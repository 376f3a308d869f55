"""Derived balance maintenance.

Stash and month budget balances are never adjusted incrementally. Every
mutation of a ledger row is followed, inside the same database transaction,
by a full recompute from the non-deleted ledger rows. Callers are expected to
hold the row lock on the stash (or let ``recompute_month_balance`` take the
budget lock) and to commit the ledger write and the recompute together.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, func, select, union
from sqlalchemy.orm import Session

from models import Expense, MonthBudget, Stash, StashTransaction, TransactionType

logger = logging.getLogger(__name__)


def stash_ledger_total(session: Session, stash_id: str) -> int:
    signed_amount = case(
        (
            StashTransaction.transaction_type == TransactionType.withdrawal,
            -StashTransaction.amount_cents,
        ),
        else_=StashTransaction.amount_cents,
    )
    return int(
        session.execute(
            select(func.coalesce(func.sum(signed_amount), 0)).where(
                StashTransaction.stash_id == stash_id,
                StashTransaction.deleted_at.is_(None),
            )
        ).scalar_one()
        or 0
    )


def recompute_stash_balance(session: Session, stash_id: str) -> int:
    session.flush()
    total = stash_ledger_total(session, stash_id)
    stash = session.get(Stash, stash_id)
    if stash is None:
        raise ValueError(f"Stash {stash_id} does not exist")
    stash.current_balance_cents = total
    return total


def total_expenses_for_month(session: Session, user_id: str, year_month: str) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(Expense.amount_cents), 0)).where(
                Expense.user_id == user_id,
                Expense.year_month == year_month,
                Expense.deleted_at.is_(None),
            )
        ).scalar_one()
        or 0
    )


def lock_active_budget(
    session: Session, user_id: str, year_month: str
) -> Optional[MonthBudget]:
    return session.scalar(
        select(MonthBudget)
        .where(
            MonthBudget.user_id == user_id,
            MonthBudget.year_month == year_month,
            MonthBudget.deleted_at.is_(None),
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )


def recompute_month_balance(
    session: Session, user_id: str, year_month: str
) -> Optional[MonthBudget]:
    """Refresh ``current_balance`` of the owner's budget for ``year_month``.

    Months without a budget row have no balance to maintain; expenses never
    create budgets, so this returns None without writing anything.
    """
    session.flush()
    budget = lock_active_budget(session, user_id, year_month)
    if budget is None:
        return None
    total = total_expenses_for_month(session, user_id, year_month)
    budget.current_balance_cents = budget.budget_set_cents - total
    return budget


def rebuild_balances(session: Session, user_id: str) -> int:
    """Recompute every active stash and budget of one owner.

    Returns the number of rows whose stored balance had drifted from the
    ledger. The caller owns the commit.
    """
    drifted = 0
    stash_ids = session.scalars(
        select(Stash.id).where(Stash.user_id == user_id, Stash.deleted_at.is_(None))
    ).all()
    for stash_id in stash_ids:
        stash = session.scalar(
            select(Stash)
            .where(Stash.id == stash_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        stored = stash.current_balance_cents
        ledger = recompute_stash_balance(session, stash_id)
        if stored != ledger:
            drifted += 1
            logger.warning(
                f"balance_drift: kind=stash user_id={user_id} stash_id={stash_id} "
                f"stored={stored} ledger={ledger}"
            )

    months = session.scalars(
        select(MonthBudget.year_month).where(
            MonthBudget.user_id == user_id, MonthBudget.deleted_at.is_(None)
        )
    ).all()
    for year_month in months:
        budget = lock_active_budget(session, user_id, year_month)
        stored = budget.current_balance_cents
        recompute_month_balance(session, user_id, year_month)
        if stored != budget.current_balance_cents:
            drifted += 1
            logger.warning(
                f"balance_drift: kind=budget user_id={user_id} year_month={year_month} "
                f"stored={stored} ledger={budget.current_balance_cents}"
            )

    session.flush()
    return drifted


def rebuild_all_balances(session: Session) -> int:
    owners = session.scalars(
        union(
            select(Stash.user_id).where(Stash.deleted_at.is_(None)),
            select(MonthBudget.user_id).where(MonthBudget.deleted_at.is_(None)),
        )
    ).all()
    drifted = 0
    for user_id in owners:
        drifted += rebuild_balances(session, user_id)
    return drifted
