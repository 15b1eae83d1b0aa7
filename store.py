import asyncio
import copy
import logging
import operator
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from database import SessionLocal, session_scope
from models import BUDGETS, Document, utcnow

logger = logging.getLogger(__name__)


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


# Placed as a value in a merge write, removes that key from the stored document.
DELETE_FIELD = _DeleteField()

OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, data: dict) -> bool:
        if self.field not in data:
            return False
        current = data[self.field]
        if current is None and self.op != "==":
            return False
        try:
            return OPERATORS[self.op](current, self.value)
        except TypeError:
            return False


def merge_documents(existing: dict, patch: dict) -> dict:
    """Apply a field-level patch.

    Top-level keys replace the stored field. A dotted key such as
    ``month_map.202405.needs_recalculation`` addresses a nested field and
    leaves its siblings untouched.
    """
    result = copy.deepcopy(existing)
    for path, value in patch.items():
        parts = path.split(".")
        target = result
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        if value is DELETE_FIELD:
            target.pop(parts[-1], None)
        else:
            target[parts[-1]] = _strip_deletes(copy.deepcopy(value))
    return result


def _strip_deletes(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_deletes(v) for k, v in value.items() if v is not DELETE_FIELD}
    return value


def _stamp(data: dict, existing: Optional[dict]) -> dict:
    now = utcnow().isoformat()
    data["updated_at"] = now
    if existing and existing.get("created_at"):
        data["created_at"] = existing["created_at"]
    elif not data.get("created_at"):
        data["created_at"] = now
    return data


def _matches_all(data: dict, filters: Sequence[Filter]) -> bool:
    return all(f.matches(data) for f in filters)


class DocumentStore:
    """Last-write-wins document store keyed by (collection, id).

    Every write stamps ``updated_at`` and returns the stored document.
    """

    async def read(self, collection: str, doc_id: str) -> Optional[dict]:
        raise NotImplementedError

    async def write(
        self, collection: str, doc_id: str, data: dict, *, merge: bool = False
    ) -> dict:
        raise NotImplementedError

    async def query(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> list[dict]:
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str) -> None:
        raise NotImplementedError

    async def write_many(
        self, writes: Iterable[tuple[str, str, dict]], *, merge: bool = True
    ) -> list[dict]:
        results = []
        for collection, doc_id, data in writes:
            results.append(await self.write(collection, doc_id, data, merge=merge))
        return results


class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._docs: dict[tuple[str, str], dict] = {}
        self.write_log: list[tuple[str, str]] = []

    async def read(self, collection: str, doc_id: str) -> Optional[dict]:
        data = self._docs.get((collection, doc_id))
        return copy.deepcopy(data) if data is not None else None

    async def write(
        self, collection: str, doc_id: str, data: dict, *, merge: bool = False
    ) -> dict:
        existing = self._docs.get((collection, doc_id))
        if merge and existing is not None:
            stored = merge_documents(existing, data)
        else:
            stored = merge_documents({}, data)
        stored = _stamp(stored, existing)
        self._docs[(collection, doc_id)] = stored
        self.write_log.append((collection, doc_id))
        return copy.deepcopy(stored)

    async def query(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> list[dict]:
        return [
            copy.deepcopy(data)
            for (coll, _doc_id), data in self._docs.items()
            if coll == collection and _matches_all(data, filters)
        ]

    async def delete(self, collection: str, doc_id: str) -> None:
        self._docs.pop((collection, doc_id), None)


class SQLDocumentStore(DocumentStore):
    """Documents table accessed through blocking sessions run in worker threads."""

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.session_factory = session_factory or SessionLocal
        self._lock = threading.Lock()

    async def read(self, collection: str, doc_id: str) -> Optional[dict]:
        return await asyncio.to_thread(self._read, collection, doc_id)

    async def write(
        self, collection: str, doc_id: str, data: dict, *, merge: bool = False
    ) -> dict:
        return await asyncio.to_thread(self._write, collection, doc_id, data, merge)

    async def query(
        self, collection: str, filters: Sequence[Filter] = ()
    ) -> list[dict]:
        return await asyncio.to_thread(self._query, collection, list(filters))

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.to_thread(self._delete, collection, doc_id)

    def _read(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock, session_scope(self.session_factory) as session:
            row = session.get(Document, (collection, doc_id))
            return copy.deepcopy(row.data) if row is not None else None

    def _write(self, collection: str, doc_id: str, data: dict, merge: bool) -> dict:
        with self._lock, session_scope(self.session_factory) as session:
            row = session.get(Document, (collection, doc_id))
            existing = row.data if row is not None else None
            if merge and existing is not None:
                stored = merge_documents(existing, data)
            else:
                stored = merge_documents({}, data)
            stored = _stamp(stored, existing)
            budget_id = doc_id if collection == BUDGETS else stored.get("budget_id")
            if row is None:
                row = Document(
                    collection=collection,
                    doc_id=doc_id,
                    budget_id=budget_id,
                    data=stored,
                )
                session.add(row)
            else:
                # A new dict object so the JSON column is flagged dirty.
                row.data = stored
                row.budget_id = budget_id
            logger.debug(f"document_write: collection={collection} id={doc_id} merge={merge}")
            return copy.deepcopy(stored)

    def _query(self, collection: str, filters: list[Filter]) -> list[dict]:
        stmt = select(Document).where(Document.collection == collection)
        remaining = []
        for f in filters:
            if f.field == "budget_id" and f.op == "==":
                stmt = stmt.where(Document.budget_id == f.value)
            else:
                remaining.append(f)
        with self._lock, session_scope(self.session_factory) as session:
            rows = session.scalars(stmt).all()
            return [
                copy.deepcopy(row.data)
                for row in rows
                if _matches_all(row.data, remaining)
            ]

    def _delete(self, collection: str, doc_id: str) -> None:
        with self._lock, session_scope(self.session_factory) as session:
            row = session.get(Document, (collection, doc_id))
            if row is not None:
                session.delete(row)
