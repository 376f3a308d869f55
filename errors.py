from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    not_found = "not_found"
    validation = "validation"
    conflict = "conflict"
    insufficient_balance = "insufficient_balance"
    unprocessable = "unprocessable"
    internal = "internal"


class LedgerError(ValueError):
    """Base for every failure a service operation reports to its caller.

    Callers dispatch on ``kind`` rather than on the concrete class, the
    subclasses only carry a default message.
    """

    kind: ErrorKind = ErrorKind.internal
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFound(LedgerError):
    kind = ErrorKind.not_found
    default_message = "Not found"


class StashNotFound(NotFound):
    default_message = "Stash not found"


class TransactionNotFound(NotFound):
    default_message = "Transaction not found"


class ExpenseNotFound(NotFound):
    default_message = "Expense not found"


class CategoryNotFound(NotFound):
    default_message = "Expense category not found"


class BudgetNotFound(NotFound):
    default_message = "No budget found for this month"


class ValidationError(LedgerError):
    kind = ErrorKind.validation
    default_message = "Validation failed"


class Conflict(LedgerError):
    kind = ErrorKind.conflict
    default_message = "Conflict"


class DuplicateStashName(Conflict):
    default_message = "A stash with this name already exists"


class BudgetConflict(Conflict):
    default_message = "Budget for this month was modified concurrently"


class InsufficientBalance(LedgerError):
    kind = ErrorKind.insufficient_balance
    default_message = "Insufficient balance for withdrawal"


class Unprocessable(LedgerError):
    kind = ErrorKind.unprocessable
    default_message = "The data violates a ledger constraint"


class InternalError(LedgerError):
    kind = ErrorKind.internal
    default_message = "Unexpected persistence failure"
