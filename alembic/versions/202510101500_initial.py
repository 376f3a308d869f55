"""initial stashes, budgets and expenses

Revision ID: 202510101500
Revises:
Create Date: 2025-10-10 15:00:00.000000

"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from alembic import op
import sqlalchemy as sa


revision = "202510101500"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_ROWS = sa.text("deleted_at IS NULL")
YEAR_MONTH_CHECK = (
    "year_month LIKE '____-__' "
    "AND substr(year_month, 6, 2) BETWEEN '01' AND '12'"
)

SEED_CATEGORIES = [
    ("Groceries", "groceries", "Jedzenie"),
    ("Transport", "transport", "Transport"),
    ("Utilities", "utilities", "Media"),
    ("Entertainment", "entertainment", "Rozrywka"),
    ("Healthcare", "healthcare", "Zdrowie"),
    ("Dining Out", "dining-out", "Restauracje"),
    ("Shopping", "shopping", "Zakupy"),
    ("Education", "education", "Edukacja"),
    ("Housing", "housing", "Mieszkanie"),
    ("Insurance", "insurance", "Ubezpieczenia"),
    ("Savings", "savings", "Oszczędności"),
    ("Other", "other", "Inne"),
]


def upgrade() -> None:
    categories = op.create_table(
        "expense_categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "stashes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "current_balance_cents >= 0", name="ck_stashes_balance_non_negative"
        ),
    )
    op.create_index(
        "uq_stashes_user_name_active",
        "stashes",
        ["user_id", "name"],
        unique=True,
        sqlite_where=ACTIVE_ROWS,
        postgresql_where=ACTIVE_ROWS,
    )
    op.create_index("ix_stashes_user_created", "stashes", ["user_id", "created_at"])

    op.create_table(
        "stash_transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "stash_id", sa.String(36), sa.ForeignKey("stashes.id"), nullable=False
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column(
            "transaction_type",
            sa.Enum("deposit", "withdrawal", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "amount_cents > 0", name="ck_stash_transactions_amount_positive"
        ),
    )
    op.create_index(
        "ix_stash_transactions_stash_created",
        "stash_transactions",
        ["stash_id", "created_at"],
    )
    op.create_index(
        "ix_stash_transactions_user_created",
        "stash_transactions",
        ["user_id", "created_at"],
    )

    op.create_table(
        "month_budget",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("year_month", sa.String(7), nullable=False),
        sa.Column("budget_set_cents", sa.Integer(), nullable=False),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("budget_set_cents > 0", name="ck_month_budget_set_positive"),
        sa.CheckConstraint(YEAR_MONTH_CHECK, name="ck_month_budget_year_month_format"),
    )
    op.create_index(
        "uq_month_budget_user_month_active",
        "month_budget",
        ["user_id", "year_month"],
        unique=True,
        sqlite_where=ACTIVE_ROWS,
        postgresql_where=ACTIVE_ROWS,
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column(
            "category_id",
            sa.String(36),
            sa.ForeignKey("expense_categories.id", ondelete="RESTRICT"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("year_month", sa.String(7), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("amount_cents > 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint(YEAR_MONTH_CHECK, name="ck_expenses_year_month_format"),
    )
    op.create_index("ix_expenses_user_date", "expenses", ["user_id", "expense_date"])
    op.create_index(
        "ix_expenses_user_year_month", "expenses", ["user_id", "year_month"]
    )
    op.create_index(
        "ix_expenses_user_category", "expenses", ["user_id", "category_id"]
    )

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    op.bulk_insert(
        categories,
        [
            {
                "id": str(uuid4()),
                "name": name,
                "slug": slug,
                "display_name": display_name,
                "created_at": now,
            }
            for name, slug, display_name in SEED_CATEGORIES
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_expenses_user_category", table_name="expenses")
    op.drop_index("ix_expenses_user_year_month", table_name="expenses")
    op.drop_index("ix_expenses_user_date", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("uq_month_budget_user_month_active", table_name="month_budget")
    op.drop_table("month_budget")
    op.drop_index("ix_stash_transactions_user_created", table_name="stash_transactions")
    op.drop_index(
        "ix_stash_transactions_stash_created", table_name="stash_transactions"
    )
    op.drop_table("stash_transactions")
    op.drop_index("ix_stashes_user_created", table_name="stashes")
    op.drop_index("uq_stashes_user_name_active", table_name="stashes")
    op.drop_table("stashes")
    op.drop_table("expense_categories")
