from datetime import date, datetime
from decimal import Decimal
from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import TransactionType
from months import parse_year_month

T = TypeVar("T")

MAX_AMOUNT = Decimal("9999999999.99")

SortOrder = Literal["asc", "desc"]


class StashIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)


class StashListQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort: Literal["created_at", "name"] = "created_at"
    order: SortOrder = "desc"


class TransactionIn(BaseModel):
    transaction_type: TransactionType
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=1000)


class TransactionListQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    type: Optional[TransactionType] = None
    created_from: Optional[datetime] = Field(default=None, alias="from")
    created_to: Optional[datetime] = Field(default=None, alias="to")
    order: SortOrder = "desc"


class BudgetIn(BaseModel):
    budget_set: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)


class BudgetListQuery(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=12, ge=1, le=60)
    year: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    order: SortOrder = "desc"


class ExpenseIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    category_id: Optional[str] = None
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT, decimal_places=2)
    expense_date: date
    description: str = Field(..., min_length=1, max_length=500)


class ExpenseUpdate(BaseModel):
    """Partial update; only fields present in the payload are applied.

    ``category_id`` may be sent as null to clear the category, the other
    fields cannot be cleared.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    category_id: Optional[str] = None
    amount: Optional[Decimal] = Field(
        default=None, gt=0, le=MAX_AMOUNT, decimal_places=2
    )
    expense_date: Optional[date] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)

    @model_validator(mode="after")
    def _check_fields(self) -> "ExpenseUpdate":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        for name in ("amount", "expense_date", "description"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class ExpenseListQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    date_from: Optional[date] = Field(default=None, alias="from")
    date_to: Optional[date] = Field(default=None, alias="to")
    category_id: Optional[str] = None
    year_month: Optional[str] = None
    search: Optional[str] = Field(default=None, min_length=1, max_length=200)
    sort: Literal["expense_date", "amount"] = "expense_date"
    order: SortOrder = "desc"

    @field_validator("year_month")
    @classmethod
    def _check_year_month(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            parse_year_month(value)
        return value

    @model_validator(mode="after")
    def _check_ranges(self) -> "ExpenseListQuery":
        if self.year_month and (self.date_from or self.date_to):
            raise ValueError(
                "Cannot use year_month filter together with from/to date range"
            )
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("from date must be less than or equal to to date")
        return self


class ExpenseCategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    slug: str
    display_name: str
    created_at: datetime


class StashOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    current_balance: Decimal
    created_at: datetime
    updated_at: datetime


class StashTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    stash_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: Optional[str]
    created_at: datetime


class StashDetailsOut(StashOut):
    transactions: Optional[list[StashTransactionOut]] = None


class MonthBudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    year_month: str
    budget_set: Decimal
    current_balance: Decimal
    created_at: datetime
    updated_at: datetime


class BudgetUpsertOut(BaseModel):
    item: MonthBudgetOut
    created: bool


class ExpenseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    category_id: Optional[str]
    amount: Decimal
    expense_date: date
    year_month: str
    description: str
    created_at: datetime


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int


class PageOut(BaseModel, Generic[T]):
    data: list[T]
    pagination: PaginationOut


class StashSummaryOut(BaseModel):
    total_stashes: int
    total_balance: Decimal
    stashes: list[StashOut]


class BudgetSummaryOut(BaseModel):
    year_month: str
    budget_set: Optional[Decimal]
    total_expenses: Decimal
    current_balance: Optional[Decimal]
    has_no_budget: bool


class DashboardOut(BaseModel):
    stashes: StashSummaryOut
    budget: BudgetSummaryOut
