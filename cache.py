from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from models import DocumentType
from schemas import BudgetDocument, MonthDocument


@dataclass(frozen=True)
class CacheKey:
    budget_id: str
    doc_type: DocumentType
    year: Optional[int] = None
    month: Optional[int] = None

    @classmethod
    def for_budget(cls, budget_id: str) -> "CacheKey":
        return cls(budget_id, DocumentType.budget)

    @classmethod
    def for_month(cls, budget_id: str, year: int, month: int) -> "CacheKey":
        return cls(budget_id, DocumentType.month, year, month)

    @classmethod
    def for_drafts(cls, budget_id: str, year: int, month: int) -> "CacheKey":
        return cls(budget_id, DocumentType.draft_allocations, year, month)


class LocalCache:
    """Synchronous key-value cache of budget and month documents.

    Entries are replaced whole, never mutated in place. Month and budget
    values are frozen models; draft allocations are stored as a private copy.
    """

    def __init__(self) -> None:
        self._entries: dict[CacheKey, Any] = {}
        self._pending: Counter = Counter()

    def get(self, key: CacheKey) -> Any:
        value = self._entries.get(key)
        if isinstance(value, dict):
            return dict(value)
        return value

    def set(self, key: CacheKey, value: Any) -> None:
        if isinstance(value, dict):
            value = dict(value)
        self._entries[key] = value

    def remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def keys(self, budget_id: Optional[str] = None) -> list[CacheKey]:
        return [k for k in self._entries if budget_id is None or k.budget_id == budget_id]

    def get_budget(self, budget_id: str) -> Optional[BudgetDocument]:
        return self._entries.get(CacheKey.for_budget(budget_id))

    def set_budget(self, budget: BudgetDocument) -> None:
        self.set(CacheKey.for_budget(budget.id), budget)

    def get_month(self, budget_id: str, year: int, month: int) -> Optional[MonthDocument]:
        return self._entries.get(CacheKey.for_month(budget_id, year, month))

    def set_month(self, month: MonthDocument) -> None:
        self.set(CacheKey.for_month(month.budget_id, month.year, month.month), month)

    def months(self, budget_id: str) -> list[MonthDocument]:
        found = [
            value
            for key, value in self._entries.items()
            if key.budget_id == budget_id and key.doc_type == DocumentType.month
        ]
        return sorted(found, key=lambda m: m.year_month_ordinal)

    def snapshot(self, keys: Iterable[CacheKey]) -> dict[CacheKey, Any]:
        return {key: self._entries.get(key) for key in keys}

    def restore(self, snapshot: dict[CacheKey, Any]) -> None:
        for key, value in snapshot.items():
            if value is None:
                self._entries.pop(key, None)
            else:
                self._entries[key] = value

    def mark_pending(self, keys: Iterable[CacheKey]) -> None:
        for key in keys:
            self._pending[key] += 1

    def clear_pending(self, keys: Iterable[CacheKey]) -> None:
        for key in keys:
            self._pending[key] -= 1
            if self._pending[key] <= 0:
                del self._pending[key]

    def has_pending(self, key: CacheKey) -> bool:
        return self._pending.get(key, 0) > 0

    def dump(self, budget_id: Optional[str] = None) -> dict[CacheKey, Any]:
        """Plain-data copy of the cache, for comparisons."""
        result = {}
        for key in self.keys(budget_id):
            value = self._entries[key]
            if hasattr(value, "model_dump"):
                value = value.model_dump(mode="json")
            result[key] = value
        return result
