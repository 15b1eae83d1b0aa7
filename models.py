from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


BUDGETS = "budgets"
MONTHS = "months"

NO_ACCOUNT_ID = "__NO_ACCOUNT__"
NO_CATEGORY_ID = "__NO_CATEGORY__"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_doc_id(budget_id: str, year: int, month: int) -> str:
    return f"{budget_id}_{year}_{month}"


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"
    adjustment = "adjustment"

    @property
    def field(self) -> str:
        if self == TransactionKind.income:
            return "income"
        if self == TransactionKind.expense:
            return "expenses"
        if self == TransactionKind.transfer:
            return "transfers"
        return "adjustments"


class AllocationType(str, Enum):
    fixed = "fixed"
    percentage = "percentage"


class DocumentType(str, Enum):
    budget = "budget"
    month = "month"
    draft_allocations = "draft_allocations"


class RecalcStatus(str, Enum):
    fresh = "fresh"
    stale_categories = "stale_categories"
    stale_accounts = "stale_accounts"
    stale_both = "stale_both"

    @classmethod
    def from_flags(cls, categories: bool, accounts: bool) -> "RecalcStatus":
        if categories and accounts:
            return cls.stale_both
        if categories:
            return cls.stale_categories
        if accounts:
            return cls.stale_accounts
        return cls.fresh

    @property
    def categories_stale(self) -> bool:
        return self in (RecalcStatus.stale_categories, RecalcStatus.stale_both)

    @property
    def accounts_stale(self) -> bool:
        return self in (RecalcStatus.stale_accounts, RecalcStatus.stale_both)

    @property
    def is_stale(self) -> bool:
        return self != RecalcStatus.fresh

    def combine(self, other: "RecalcStatus") -> "RecalcStatus":
        return RecalcStatus.from_flags(
            self.categories_stale or other.categories_stale,
            self.accounts_stale or other.accounts_stale,
        )

    def covers(self, other: "RecalcStatus") -> bool:
        return self.combine(other) == self


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class Document(Base, TimestampMixin):
    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    budget_id: Mapped[Optional[str]] = mapped_column(String(100))
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_documents_collection_budget", "collection", "budget_id"),
    )
