from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models import DocumentType
from periods import MonthKey


class NotFound(ValueError):
    pass


class BudgetNotFound(NotFound):
    def __init__(self, budget_id: str) -> None:
        super().__init__(f"Budget not found: {budget_id}")
        self.budget_id = budget_id


class MonthNotFound(NotFound):
    """Raised when a month document is missing.

    ``deleted`` distinguishes a month listed in the budget's month map whose
    document has gone (abort) from one that simply does not exist yet and may
    be created through ``get_or_create_month``.
    """

    def __init__(
        self, budget_id: str, year: int, month: int, *, deleted: bool = False
    ) -> None:
        state = "was deleted" if deleted else "does not exist yet"
        super().__init__(f"Month {year}/{month} of budget {budget_id} {state}")
        self.budget_id = budget_id
        self.year = year
        self.month = month
        self.deleted = deleted


class TransactionNotFound(NotFound):
    pass


class AccountNotFound(NotFound):
    pass


class CategoryNotFound(NotFound):
    pass


class OutOfSequence(ValueError):
    def __init__(
        self, message: str, target: MonthKey, redirect: Optional[MonthKey]
    ) -> None:
        super().__init__(message)
        self.target = target
        self.redirect = redirect


class AllocationError(ValueError):
    pass


class BalanceInvariantError(ValueError):
    pass


class StoreWriteFailure(RuntimeError):
    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class RecalculationAborted(RuntimeError):
    def __init__(self, budget_id: str, phase: str, ordinal: Optional[str]) -> None:
        where = f" at month {ordinal}" if ordinal else ""
        super().__init__(f"Recalculation of budget {budget_id} aborted in {phase}{where}")
        self.budget_id = budget_id
        self.phase = phase
        self.ordinal = ordinal


@dataclass(frozen=True)
class SyncConflict:
    budget_id: str
    doc_type: DocumentType
    year: Optional[int]
    month: Optional[int]
    local_updated_at: Optional[datetime]
    remote_updated_at: Optional[datetime]

    @property
    def message(self) -> str:
        if self.doc_type == DocumentType.budget:
            name = "Budget document"
        else:
            name = f"Month {self.year}/{self.month}"
        return f"{name} has been updated remotely (you have unsaved local changes)"
