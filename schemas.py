import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AllocationType, DocumentType, RecalcStatus, TransactionKind
from periods import MonthKey, bounds, sorted_labels


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# Stored transactions. Amounts are not range-checked here: documents written
# by other clients may carry anything, the calculator decides what to count.


class IncomeTransaction(_Frozen):
    id: str
    amount_cents: int
    account_id: Optional[str] = None
    date: Optional[dt.date] = None
    payee: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class ExpenseTransaction(IncomeTransaction):
    category_id: Optional[str] = None
    cleared: bool = False


class TransferTransaction(_Frozen):
    id: str
    amount_cents: int
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    from_category_id: Optional[str] = None
    to_category_id: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class AdjustmentTransaction(_Frozen):
    id: str
    amount_cents: int
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None


TRANSACTION_MODELS: dict[TransactionKind, type[_Frozen]] = {
    TransactionKind.income: IncomeTransaction,
    TransactionKind.expense: ExpenseTransaction,
    TransactionKind.transfer: TransferTransaction,
    TransactionKind.adjustment: AdjustmentTransaction,
}


class AccountMonthBalance(_Frozen):
    account_id: str
    start_balance: int = 0
    income: int = 0
    expenses: int = 0
    transfers: int = 0
    adjustments: int = 0
    net_change: int = 0
    end_balance: int = 0


class CategoryMonthBalance(_Frozen):
    category_id: str
    start_balance: int = 0
    allocated: int = 0
    spent: int = 0
    transfers: int = 0
    adjustments: int = 0
    end_balance: int = 0


class MonthDocument(_Frozen):
    budget_id: str
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    year_month_ordinal: int = 0
    income: list[IncomeTransaction] = Field(default_factory=list)
    expenses: list[ExpenseTransaction] = Field(default_factory=list)
    transfers: list[TransferTransaction] = Field(default_factory=list)
    adjustments: list[AdjustmentTransaction] = Field(default_factory=list)
    allocations: dict[str, int] = Field(default_factory=dict)
    are_allocations_finalized: bool = False
    category_balances_stale: bool = False
    account_balances_stale: bool = False
    previous_month_income: int = 0
    account_balances: dict[str, AccountMonthBalance] = Field(default_factory=dict)
    category_balances: dict[str, CategoryMonthBalance] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_ordinal(cls, data):
        if isinstance(data, dict) and not data.get("year_month_ordinal"):
            year = data.get("year")
            month = data.get("month")
            if isinstance(year, int) and isinstance(month, int):
                data = {**data, "year_month_ordinal": year * 100 + month}
        return data

    @property
    def key(self) -> MonthKey:
        return MonthKey(self.year, self.month)

    @property
    def label(self) -> str:
        return self.key.label

    @property
    def recalc_status(self) -> RecalcStatus:
        return RecalcStatus.from_flags(
            self.category_balances_stale, self.account_balances_stale
        )

    @property
    def total_income(self) -> int:
        return sum(t.amount_cents for t in self.income if t.amount_cents > 0)

    def transactions(self, kind: TransactionKind) -> list:
        return list(getattr(self, kind.field))

    def with_status(self, status: RecalcStatus) -> "MonthDocument":
        return self.model_copy(
            update={
                "category_balances_stale": status.categories_stale,
                "account_balances_stale": status.accounts_stale,
            }
        )

    def to_store(self) -> dict:
        return self.model_dump(mode="json")


class Account(_Frozen):
    name: str
    account_group_id: Optional[str] = None
    sort_order: int = 0
    opening_balance_cents: int = 0
    balance_cents: int = 0
    on_budget: bool = True
    is_active: bool = True


class AccountGroup(_Frozen):
    name: str
    sort_order: int = 0
    expected_balance: Literal["positive", "negative", "any"] = "any"


class Category(_Frozen):
    name: str
    description: Optional[str] = None
    category_group_id: Optional[str] = None
    sort_order: int = 0
    allocation_type: AllocationType = AllocationType.fixed
    default_amount_cents: int = Field(default=0, ge=0)
    default_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    balance_cents: int = 0


class CategoryGroup(_Frozen):
    name: str
    sort_order: int = 0


class MonthMapEntry(_Frozen):
    needs_recalculation: bool = False


class BudgetDocument(_Frozen):
    id: str
    name: str
    owner_id: str
    user_ids: list[str] = Field(default_factory=list)
    accounts: dict[str, Account] = Field(default_factory=dict)
    account_groups: dict[str, AccountGroup] = Field(default_factory=dict)
    categories: dict[str, Category] = Field(default_factory=dict)
    category_groups: dict[str, CategoryGroup] = Field(default_factory=dict)
    month_map: dict[str, MonthMapEntry] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def month_labels(self) -> list[str]:
        return sorted_labels(self.month_map.keys())

    @property
    def earliest_month(self) -> Optional[MonthKey]:
        return bounds(self.month_map.keys())[0]

    @property
    def latest_month(self) -> Optional[MonthKey]:
        return bounds(self.month_map.keys())[1]

    @property
    def stale_labels(self) -> list[str]:
        return [
            label
            for label in self.month_labels
            if self.month_map[label].needs_recalculation
        ]

    def is_first_month(self, key: MonthKey) -> bool:
        earliest = self.earliest_month
        return earliest is None or key.ordinal <= earliest.ordinal

    def to_store(self) -> dict:
        return self.model_dump(mode="json")


class BudgetIn(BaseModel):
    id: Optional[str] = Field(default=None, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    owner_id: str = Field(..., min_length=1)
    user_ids: list[str] = Field(default_factory=list)


class AccountIn(BaseModel):
    id: Optional[str] = Field(default=None, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    account_group_id: Optional[str] = None
    sort_order: int = 0
    opening_balance_cents: int = 0
    on_budget: bool = True


class CategoryIn(BaseModel):
    id: Optional[str] = Field(default=None, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)
    category_group_id: Optional[str] = None
    sort_order: int = 0
    allocation_type: AllocationType = AllocationType.fixed
    default_amount_cents: int = Field(default=0, ge=0)
    default_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class IncomeIn(BaseModel):
    amount_cents: int = Field(..., ge=0)
    account_id: str = Field(..., min_length=1)
    date: Optional[dt.date] = None
    payee: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)


class ExpenseIn(IncomeIn):
    category_id: str = Field(..., min_length=1)
    cleared: bool = False


class TransferIn(BaseModel):
    amount_cents: int = Field(..., gt=0)
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    from_category_id: Optional[str] = None
    to_category_id: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_pairs(self) -> "TransferIn":
        has_accounts = bool(self.from_account_id or self.to_account_id)
        has_categories = bool(self.from_category_id or self.to_category_id)
        if not has_accounts and not has_categories:
            raise ValueError("Transfer needs an account pair or a category pair")
        if has_accounts and not (self.from_account_id and self.to_account_id):
            raise ValueError("Account transfer needs both source and destination")
        if has_categories and not (self.from_category_id and self.to_category_id):
            raise ValueError("Category transfer needs both source and destination")
        if has_accounts and self.from_account_id == self.to_account_id:
            raise ValueError("Cannot transfer an account to itself")
        if has_categories and self.from_category_id == self.to_category_id:
            raise ValueError("Cannot transfer a category to itself")
        return self


class AdjustmentIn(BaseModel):
    amount_cents: int
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    date: Optional[dt.date] = None
    description: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_target(self) -> "AdjustmentIn":
        if not self.account_id and not self.category_id:
            raise ValueError("Adjustment needs an account or a category")
        return self


TRANSACTION_INPUTS: dict[TransactionKind, type[BaseModel]] = {
    TransactionKind.income: IncomeIn,
    TransactionKind.expense: ExpenseIn,
    TransactionKind.transfer: TransferIn,
    TransactionKind.adjustment: AdjustmentIn,
}


class AllocationsIn(BaseModel):
    amounts: Optional[dict[str, int]] = None

    @model_validator(mode="after")
    def _non_negative(self) -> "AllocationsIn":
        for category_id, amount in (self.amounts or {}).items():
            if amount < 0:
                raise ValueError(f"Allocation for {category_id} must not be negative")
        return self


class AllocationEditIn(BaseModel):
    amount_cents: int = Field(..., ge=0)


class ConflictResolutionIn(BaseModel):
    doc_type: DocumentType
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    keep: Literal["local", "remote"]
