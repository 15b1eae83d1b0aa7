from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from balances import (
    ALLOCATION_CHANNELS,
    EMPTY,
    PreviousBalances,
    account_effects,
    balances_changed,
    default_allocations,
    diff_effects,
    recalculate_month,
    retotal_month,
    stale_channels,
)
from cache import CacheKey, LocalCache
from config import get_settings
from errors import (
    AccountNotFound,
    AllocationError,
    BalanceInvariantError,
    BudgetNotFound,
    CategoryNotFound,
    MonthNotFound,
    NotFound,
    OutOfSequence,
    RecalculationAborted,
    StoreWriteFailure,
    SyncConflict,
    TransactionNotFound,
)
from models import (
    BUDGETS,
    MONTHS,
    NO_ACCOUNT_ID,
    NO_CATEGORY_ID,
    DocumentType,
    RecalcStatus,
    TransactionKind,
    month_doc_id,
    utcnow,
)
from periods import MonthKey
from schemas import (
    TRANSACTION_MODELS,
    Account,
    AccountIn,
    BudgetDocument,
    BudgetIn,
    Category,
    CategoryIn,
    MonthDocument,
)
from store import DELETE_FIELD, DocumentStore, Filter, SQLDocumentStore

logger = logging.getLogger(__name__)

# Fields of a month document written by save_month. Anything else stored on
# the document (created_at, fields added by other clients) is left alone.
MONTH_FIELDS = (
    "budget_id",
    "year",
    "month",
    "year_month_ordinal",
    "income",
    "expenses",
    "transfers",
    "adjustments",
    "allocations",
    "are_allocations_finalized",
    "category_balances_stale",
    "account_balances_stale",
    "previous_month_income",
    "account_balances",
    "category_balances",
)


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


def _new_id() -> str:
    return uuid.uuid4().hex


def _month_filters(budget_id: str, from_ordinal: int) -> list[Filter]:
    return [
        Filter("budget_id", "==", budget_id),
        Filter("year_month_ordinal", ">=", from_ordinal),
    ]


class BudgetService:
    def __init__(self, store: DocumentStore, cache: LocalCache) -> None:
        self.store = store
        self.cache = cache

    async def create_budget(self, data: BudgetIn) -> BudgetDocument:
        budget_id = data.id or _new_id()
        if await self.store.read(BUDGETS, budget_id) is not None:
            raise ValueError(f"Budget already exists: {budget_id}")
        budget = BudgetDocument(
            id=budget_id,
            name=data.name,
            owner_id=data.owner_id,
            user_ids=data.user_ids or [data.owner_id],
        )
        stored = await self.store.write(BUDGETS, budget_id, budget.to_store())
        budget = BudgetDocument.model_validate(stored)
        self.cache.set_budget(budget)
        logger.info(f"budget_created: budget={budget_id}")
        return budget

    async def load_budget(self, budget_id: str, *, refresh: bool = False) -> BudgetDocument:
        if not refresh:
            cached = self.cache.get_budget(budget_id)
            if cached is not None:
                return cached
        data = await self.store.read(BUDGETS, budget_id)
        if data is None:
            raise BudgetNotFound(budget_id)
        budget = BudgetDocument.model_validate(data)
        self.cache.set_budget(budget)
        return budget

    async def patch_budget(self, budget_id: str, patch: dict) -> BudgetDocument:
        stored = await self.store.write(BUDGETS, budget_id, patch, merge=True)
        budget = BudgetDocument.model_validate(stored)
        self.cache.set_budget(budget)
        return budget

    async def add_account(self, budget_id: str, data: AccountIn) -> tuple[str, Account]:
        budget = await self.load_budget(budget_id)
        account_id = data.id or _new_id()
        if account_id in budget.accounts or account_id == NO_ACCOUNT_ID:
            raise ValueError(f"Account already exists: {account_id}")
        account = Account(
            name=data.name,
            account_group_id=data.account_group_id,
            sort_order=data.sort_order,
            opening_balance_cents=data.opening_balance_cents,
            balance_cents=data.opening_balance_cents,
            on_budget=data.on_budget,
        )
        await self.patch_budget(
            budget_id, {f"accounts.{account_id}": account.model_dump(mode="json")}
        )
        logger.info(f"account_added: budget={budget_id} account={account_id}")
        return account_id, account

    async def add_category(self, budget_id: str, data: CategoryIn) -> tuple[str, Category]:
        budget = await self.load_budget(budget_id)
        category_id = data.id or _new_id()
        if category_id in budget.categories or category_id == NO_CATEGORY_ID:
            raise ValueError(f"Category already exists: {category_id}")
        category = Category(
            name=data.name,
            description=data.description,
            category_group_id=data.category_group_id,
            sort_order=data.sort_order,
            allocation_type=data.allocation_type,
            default_amount_cents=data.default_amount_cents,
            default_percentage=data.default_percentage,
        )
        await self.patch_budget(
            budget_id, {f"categories.{category_id}": category.model_dump(mode="json")}
        )
        logger.info(f"category_added: budget={budget_id} category={category_id}")
        return category_id, category


class MonthService:
    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        budgets: BudgetService,
        *,
        today: Optional[Callable[[], date]] = None,
        max_future_months: Optional[int] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.budgets = budgets
        self.today = today or local_today
        if max_future_months is None:
            max_future_months = get_settings().max_future_months
        self.max_future_months = max_future_months

    async def read_month(self, budget_id: str, year: int, month: int) -> MonthDocument:
        data = await self.store.read(MONTHS, month_doc_id(budget_id, year, month))
        if data is None:
            budget = await self.budgets.load_budget(budget_id)
            label = MonthKey(year, month).label
            raise MonthNotFound(budget_id, year, month, deleted=label in budget.month_map)
        doc = MonthDocument.model_validate(data)
        self.cache.set_month(doc)
        return doc

    async def load_month(self, budget_id: str, year: int, month: int) -> MonthDocument:
        cached = self.cache.get_month(budget_id, year, month)
        if cached is not None:
            return cached
        return await self.read_month(budget_id, year, month)

    def check_creation(self, budget: BudgetDocument, key: MonthKey) -> None:
        earliest, latest = budget.earliest_month, budget.latest_month
        limit = MonthKey.from_date(self.today()).shift(self.max_future_months)
        if key.ordinal > limit.ordinal:
            redirect = latest if latest is not None and latest <= limit else limit
            raise OutOfSequence(
                f"Cannot open {key.display}: at most {self.max_future_months} "
                "months ahead of today",
                key,
                redirect,
            )
        if earliest is None or latest is None:
            return
        if key == latest.next() or key == earliest.prev():
            return
        redirect = earliest if key < earliest else latest
        raise OutOfSequence(
            f"Cannot open {key.display}: months must be added next to "
            f"{earliest.display} or {latest.display}",
            key,
            redirect,
        )

    async def get_or_create_month(self, budget_id: str, year: int, month: int) -> MonthDocument:
        key = MonthKey(year, month)
        budget = await self.budgets.load_budget(budget_id)
        if key.label in budget.month_map:
            return await self.load_month(budget_id, year, month)

        self.check_creation(budget, key)
        doc = MonthDocument(budget_id=budget_id, year=year, month=month)
        latest = budget.latest_month
        if latest is not None and key == latest.next():
            previous = await self.load_month(budget_id, latest.year, latest.month)
            doc = recalculate_month(doc, PreviousBalances.from_month_end(previous), budget)
            doc = doc.with_status(previous.recalc_status)
        else:
            doc = recalculate_month(doc, EMPTY, budget)

        stored = await self.store.write(MONTHS, month_doc_id(budget_id, year, month), doc.to_store())
        doc = MonthDocument.model_validate(stored)
        self.cache.set_month(doc)
        await self.budgets.patch_budget(
            budget_id,
            {f"month_map.{key.label}": {"needs_recalculation": doc.recalc_status.is_stale}},
        )
        logger.info(
            f"month_created: budget={budget_id} month={key.label} "
            f"status={doc.recalc_status.value}"
        )
        return doc

    async def save_month(self, budget_id: str, month: MonthDocument) -> MonthDocument:
        if month.budget_id != budget_id:
            raise ValueError("Month belongs to a different budget")
        data = month.to_store()
        patch = {name: data[name] for name in MONTH_FIELDS}
        stored = await self.store.write(
            MONTHS, month_doc_id(budget_id, month.year, month.month), patch, merge=True
        )
        doc = MonthDocument.model_validate(stored)
        self.cache.set_month(doc)
        return doc

    async def delete_future_months(self, budget_id: str, after_ordinal: int) -> list[str]:
        """Remove empty months from the end of the chain, newest first."""
        budget = await self.budgets.load_budget(budget_id, refresh=True)
        deleted: list[str] = []
        for label in reversed(budget.month_labels):
            key = MonthKey.parse(label)
            if key.ordinal <= after_ordinal:
                break
            data = await self.store.read(MONTHS, month_doc_id(budget_id, key.year, key.month))
            if data is not None:
                doc = MonthDocument.model_validate(data)
                has_activity = any(
                    doc.transactions(kind) for kind in TransactionKind
                ) or doc.are_allocations_finalized
                if has_activity:
                    break
                await self.store.delete(MONTHS, month_doc_id(budget_id, key.year, key.month))
            self.cache.remove(CacheKey.for_month(budget_id, key.year, key.month))
            self.cache.remove(CacheKey.for_drafts(budget_id, key.year, key.month))
            deleted.append(label)
        if deleted:
            await self.budgets.patch_budget(
                budget_id, {f"month_map.{label}": DELETE_FIELD for label in deleted}
            )
            logger.info(f"future_months_deleted: budget={budget_id} months={','.join(deleted)}")
        return deleted

    async def rebuild_month_map(self, budget_id: str) -> BudgetDocument:
        await self.budgets.load_budget(budget_id, refresh=True)
        docs = await self.store.query(MONTHS, [Filter("budget_id", "==", budget_id)])
        month_map = {}
        for data in docs:
            doc = MonthDocument.model_validate(data)
            month_map[doc.label] = {"needs_recalculation": doc.recalc_status.is_stale}
        budget = await self.budgets.patch_budget(budget_id, {"month_map": month_map})
        logger.info(f"month_map_rebuilt: budget={budget_id} months={len(month_map)}")
        return budget


class StalenessService:
    def __init__(self, store: DocumentStore, cache: LocalCache) -> None:
        self.store = store
        self.cache = cache
        # budget id -> (ordinal, channels) of the last marking the store confirmed
        self._confirmed: dict[str, tuple[int, RecalcStatus]] = {}
        # budget id -> earliest ordinal edited while a recalculation watches
        self._watched: dict[str, Optional[int]] = {}
        self._passes: Counter = Counter()

    def forget(self, budget_id: str) -> None:
        self._confirmed.pop(budget_id, None)

    def passes(self, budget_id: str) -> int:
        return self._passes[budget_id]

    def watch(self, budget_id: str) -> None:
        self._passes[budget_id] += 1
        self._watched[budget_id] = None

    def edited_since_watch(self, budget_id: str) -> Optional[int]:
        return self._watched.get(budget_id)

    def unwatch(self, budget_id: str) -> Optional[int]:
        return self._watched.pop(budget_id, None)

    def record_edit(self, budget_id: str, key: MonthKey) -> None:
        """Note that months after ``key`` have new inputs."""
        if budget_id not in self._watched:
            return
        ordinal = key.next().ordinal
        current = self._watched[budget_id]
        self._watched[budget_id] = ordinal if current is None else min(current, ordinal)

    async def settle_edit(
        self, budget_id: str, key: MonthKey, status: RecalcStatus, passes_before: int
    ) -> None:
        """Run once an edited month is written.

        A recalculation pass that started during the edit may have cleared
        flags using the month as it was, so later months are flagged again.
        """
        if not status.is_stale:
            return
        if budget_id in self._watched:
            self.record_edit(budget_id, key)
        elif self._passes[budget_id] != passes_before:
            self.forget(budget_id)
            await self.mark_stale_in_store(budget_id, key, status)

    def mark_stale_in_cache(
        self, budget_id: str, key: MonthKey, status: RecalcStatus
    ) -> list[str]:
        if not status.is_stale:
            return []
        self.record_edit(budget_id, key)
        marked = []
        for month in self.cache.months(budget_id):
            if month.year_month_ordinal <= key.ordinal:
                continue
            combined = month.recalc_status.combine(status)
            if combined != month.recalc_status:
                self.cache.set_month(month.with_status(combined))
                marked.append(month.label)

        budget = self.cache.get_budget(budget_id)
        if budget is not None:
            later = {
                label: entry.model_copy(update={"needs_recalculation": True})
                for label, entry in budget.month_map.items()
                if MonthKey.parse(label).ordinal > key.ordinal
                and not entry.needs_recalculation
            }
            if later:
                self.cache.set_budget(
                    budget.model_copy(update={"month_map": {**budget.month_map, **later}})
                )
        return marked

    async def mark_stale_in_store(
        self, budget_id: str, key: MonthKey, status: RecalcStatus
    ) -> list[str]:
        if not status.is_stale:
            return []
        self.record_edit(budget_id, key)
        confirmed = self._confirmed.get(budget_id)
        if confirmed is not None and confirmed[0] <= key.ordinal and confirmed[1].covers(status):
            logger.debug(f"staleness_skipped: budget={budget_id} from={key.label}")
            return []

        docs = await self.store.query(MONTHS, _month_filters(budget_id, key.ordinal))
        writes = []
        later_labels = []
        for data in docs:
            month = MonthDocument.model_validate(data)
            if month.year_month_ordinal <= key.ordinal:
                continue
            later_labels.append(month.label)
            if month.recalc_status.covers(status):
                continue
            combined = month.recalc_status.combine(status)
            writes.append(
                (
                    MONTHS,
                    month_doc_id(budget_id, month.year, month.month),
                    {
                        "category_balances_stale": combined.categories_stale,
                        "account_balances_stale": combined.accounts_stale,
                    },
                )
            )
        await self.store.write_many(writes, merge=True)

        budget_data = await self.store.read(BUDGETS, budget_id)
        if budget_data is not None and later_labels:
            month_map = budget_data.get("month_map") or {}
            patch = {
                f"month_map.{label}.needs_recalculation": True
                for label in later_labels
                if not (month_map.get(label) or {}).get("needs_recalculation")
            }
            if patch:
                await self.store.write(BUDGETS, budget_id, patch, merge=True)

        if confirmed is not None and confirmed[0] == key.ordinal:
            status = status.combine(confirmed[1])
        self._confirmed[budget_id] = (key.ordinal, status)
        marked = [w[1] for w in writes]
        logger.info(
            f"staleness_marked: budget={budget_id} after={key.label} "
            f"channels={status.value} months_written={len(marked)}"
        )
        return marked

    async def mark_stale_from(
        self, budget_id: str, year: int, month: int, status: RecalcStatus
    ) -> list[str]:
        key = MonthKey(year, month)
        self.mark_stale_in_cache(budget_id, key, status)
        return await self.mark_stale_in_store(budget_id, key, status)


PHASE_READING_BUDGET = "reading-budget"
PHASE_FETCHING_MONTHS = "fetching-months"
PHASE_RECALCULATING = "recalculating"
PHASE_SAVING = "saving"
PHASE_COMPLETE = "complete"
PHASE_FAILED = "failed"

RECALC_MAX_PASSES = 5


@dataclass(frozen=True)
class RecalculationProgress:
    phase: str
    processed: int = 0
    total: int = 0
    current: Optional[str] = None

    @property
    def percent(self) -> int:
        if self.phase == PHASE_COMPLETE:
            return 100
        if not self.total:
            return 0
        return int(self.processed * 100 / self.total)


@dataclass
class RecalculationResult:
    budget_id: str
    from_label: Optional[str] = None
    months: list[MonthDocument] = field(default_factory=list)
    saved: list[str] = field(default_factory=list)


ProgressCallback = Callable[[RecalculationProgress], None]


class RecalculationService:
    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        budgets: BudgetService,
        staleness: StalenessService,
    ) -> None:
        self.store = store
        self.cache = cache
        self.budgets = budgets
        self.staleness = staleness
        self._in_flight: dict[str, asyncio.Task] = {}

    def is_running(self, budget_id: str) -> bool:
        task = self._in_flight.get(budget_id)
        return task is not None and not task.done()

    async def trigger(
        self,
        budget_id: str,
        from_ordinal: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RecalculationResult:
        task = self._in_flight.get(budget_id)
        if task is not None and not task.done():
            logger.info(f"recalculation_joined: budget={budget_id}")
            return await asyncio.shield(task)
        task = asyncio.ensure_future(self._run(budget_id, from_ordinal, on_progress))
        self._in_flight[budget_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._in_flight.get(budget_id) is task:
                del self._in_flight[budget_id]

    async def _run(
        self,
        budget_id: str,
        from_ordinal: Optional[int],
        on_progress: Optional[ProgressCallback],
    ) -> RecalculationResult:
        def report(phase: str, processed: int = 0, total: int = 0, current: Optional[str] = None):
            if on_progress is not None:
                on_progress(RecalculationProgress(phase, processed, total, current))

        def abort(phase: str, label: Optional[str], exc: BaseException) -> RecalculationAborted:
            report(PHASE_FAILED, current=label)
            logger.error(
                f"recalculation_aborted: budget={budget_id} phase={phase} "
                f"month={label} error={exc}"
            )
            return RecalculationAborted(budget_id, phase, label)

        result = RecalculationResult(budget_id)
        for attempt in range(1, RECALC_MAX_PASSES + 1):
            self.staleness.watch(budget_id)
            try:
                result = await self._pass(budget_id, from_ordinal, report, abort)
            finally:
                edited_from = self.staleness.unwatch(budget_id)
            if edited_from is None:
                break
            logger.info(
                f"recalculation_restarted: budget={budget_id} pass={attempt} "
                f"edited_from={MonthKey.parse(edited_from).label}"
            )
            if result.from_label is not None:
                edited_from = min(edited_from, MonthKey.parse(result.from_label).ordinal)
            from_ordinal = edited_from
        else:
            # Edits kept landing; leave the range flagged for the next trigger.
            prior = MonthKey.parse(from_ordinal).prev()
            try:
                await self.staleness.mark_stale_from(
                    budget_id, prior.year, prior.month, RecalcStatus.stale
                )
            except Exception as exc:
                raise abort(PHASE_SAVING, None, exc) from exc
            logger.warning(
                f"recalculation_superseded: budget={budget_id} passes={RECALC_MAX_PASSES}"
            )

        total = len(result.months)
        report(PHASE_COMPLETE, total, total)
        logger.info(
            f"recalculation_complete: budget={budget_id} from={result.from_label} "
            f"months={total} saved={len(result.saved)}"
        )
        return result

    async def _pass(
        self,
        budget_id: str,
        from_ordinal: Optional[int],
        report: Callable[..., None],
        abort: Callable[..., RecalculationAborted],
    ) -> RecalculationResult:
        report(PHASE_READING_BUDGET)
        try:
            budget = await self.budgets.load_budget(budget_id, refresh=True)
        except Exception as exc:
            raise abort(PHASE_READING_BUDGET, None, exc) from exc

        lower = 0 if from_ordinal is None else MonthKey.parse(from_ordinal).prev().ordinal
        report(PHASE_FETCHING_MONTHS)
        try:
            docs = await self.store.query(MONTHS, _month_filters(budget_id, lower))
        except Exception as exc:
            label = None if from_ordinal is None else MonthKey.parse(from_ordinal).label
            raise abort(PHASE_FETCHING_MONTHS, label, exc) from exc
        by_ordinal = {}
        for data in docs:
            doc = MonthDocument.model_validate(data)
            by_ordinal[doc.year_month_ordinal] = doc

        if from_ordinal is None:
            # A month's own flags count even when its month_map entry was never set.
            flagged = [MonthKey.parse(label).ordinal for label in budget.stale_labels]
            flagged += [o for o, doc in by_ordinal.items() if doc.recalc_status.is_stale]
            if not flagged:
                return RecalculationResult(budget_id)
            start = MonthKey.parse(min(flagged))
        else:
            start = MonthKey.parse(from_ordinal)

        for label in budget.month_labels:
            key = MonthKey.parse(label)
            if key.ordinal >= start.ordinal and key.ordinal not in by_ordinal:
                missing = MonthNotFound(budget_id, key.year, key.month, deleted=True)
                raise abort(PHASE_FETCHING_MONTHS, label, missing) from missing

        previous = EMPTY
        prior = by_ordinal.get(start.prev().ordinal)
        if prior is not None:
            previous = PreviousBalances.from_month_end(prior)
        chain = [by_ordinal[o] for o in sorted(by_ordinal) if o >= start.ordinal]
        total = len(chain)

        staged: list[tuple[MonthDocument, MonthDocument]] = []
        for index, month in enumerate(chain):
            report(PHASE_RECALCULATING, index, total, month.label)
            try:
                updated = recalculate_month(month, previous, budget)
            except BalanceInvariantError as exc:
                raise abort(PHASE_RECALCULATING, month.label, exc) from exc
            staged.append((month, updated.with_status(RecalcStatus.fresh)))
            previous = PreviousBalances.from_month_end(updated)

        result = RecalculationResult(budget_id, from_label=start.label)
        cleared: list[str] = []
        failure: Optional[RecalculationAborted] = None
        for index, (before, after) in enumerate(staged):
            if self.staleness.edited_since_watch(budget_id) is not None:
                break
            report(PHASE_SAVING, index, total, after.label)
            if not balances_changed(before, after) and not before.recalc_status.is_stale:
                self.cache.set_month(before)
                result.months.append(before)
                cleared.append(before.label)
                continue
            patch = {
                "account_balances": {
                    k: v.model_dump(mode="json") for k, v in after.account_balances.items()
                },
                "category_balances": {
                    k: v.model_dump(mode="json") for k, v in after.category_balances.items()
                },
                "previous_month_income": after.previous_month_income,
                "category_balances_stale": False,
                "account_balances_stale": False,
            }
            try:
                stored = await self.store.write(
                    MONTHS, month_doc_id(budget_id, after.year, after.month), patch, merge=True
                )
            except Exception as exc:
                failure = abort(PHASE_SAVING, after.label, exc)
                failure.__cause__ = exc
                break
            saved = MonthDocument.model_validate(stored)
            self.cache.set_month(saved)
            result.months.append(saved)
            result.saved.append(saved.label)
            cleared.append(saved.label)

        if failure is None and self.staleness.edited_since_watch(budget_id) is not None:
            # Inputs changed under this pass; the edit's flags stay as written.
            self.staleness.forget(budget_id)
            return result

        budget_patch: dict[str, Any] = {
            f"month_map.{label}.needs_recalculation": False
            for label in cleared
            if label in budget.month_map and budget.month_map[label].needs_recalculation
        }
        if failure is None and result.months:
            last = result.months[-1]
            for account_id, account in budget.accounts.items():
                row = last.account_balances.get(account_id)
                if row is not None and row.end_balance != account.balance_cents:
                    budget_patch[f"accounts.{account_id}.balance_cents"] = row.end_balance
            for category_id, category in budget.categories.items():
                row = last.category_balances.get(category_id)
                if row is not None and row.end_balance != category.balance_cents:
                    budget_patch[f"categories.{category_id}.balance_cents"] = row.end_balance
        if budget_patch:
            try:
                await self.budgets.patch_budget(budget_id, budget_patch)
            except Exception as exc:
                if failure is None:
                    raise abort(PHASE_SAVING, None, exc) from exc
                logger.error(f"month_map_clear_failed: budget={budget_id} error={exc}")
        self.staleness.forget(budget_id)
        if failure is not None:
            raise failure

        return result


@dataclass
class MutationResult:
    operation: str
    ok: bool
    value: Any = None
    error: Optional[StoreWriteFailure] = None

    def raise_for_error(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class MutationGateway:
    def __init__(self, cache: LocalCache) -> None:
        self.cache = cache

    async def mutate(
        self,
        operation: str,
        keys: Iterable[CacheKey],
        optimistic_update: Callable[[], None],
        store_write: Callable[[], Awaitable[Any]],
        reconcile: Optional[Callable[[Any], None]] = None,
    ) -> MutationResult:
        keys = list(dict.fromkeys(keys))
        snapshot = self.cache.snapshot(keys)
        try:
            optimistic_update()
        except Exception:
            self.cache.restore(snapshot)
            raise
        self.cache.mark_pending(keys)
        try:
            value = await store_write()
        except Exception as exc:
            self.cache.restore(snapshot)
            logger.warning(f"mutation_rolled_back: operation={operation} error={exc}")
            return MutationResult(operation, False, error=StoreWriteFailure(operation, exc))
        finally:
            self.cache.clear_pending(keys)
        if reconcile is not None:
            reconcile(value)
        return MutationResult(operation, True, value)


def _later_month_keys(cache: LocalCache, budget_id: str, key: MonthKey) -> list[CacheKey]:
    return [
        CacheKey.for_month(budget_id, m.year, m.month)
        for m in cache.months(budget_id)
        if m.year_month_ordinal > key.ordinal
    ]


def _check_references(budget: BudgetDocument, data: BaseModel) -> None:
    values = data.model_dump()
    for name in ("account_id", "from_account_id", "to_account_id"):
        account_id = values.get(name)
        if account_id and account_id != NO_ACCOUNT_ID and account_id not in budget.accounts:
            raise AccountNotFound(f"Account not found: {account_id}")
    for name in ("category_id", "from_category_id", "to_category_id"):
        category_id = values.get(name)
        if category_id and category_id != NO_CATEGORY_ID and category_id not in budget.categories:
            raise CategoryNotFound(f"Category not found: {category_id}")


class TransactionService:
    def __init__(
        self,
        store: DocumentStore,
        cache: LocalCache,
        budgets: BudgetService,
        months: MonthService,
        staleness: StalenessService,
        gateway: MutationGateway,
    ) -> None:
        self.store = store
        self.cache = cache
        self.budgets = budgets
        self.months = months
        self.staleness = staleness
        self.gateway = gateway

    async def add(
        self, budget_id: str, year: int, month: int, kind: TransactionKind, data: BaseModel
    ) -> MutationResult:
        budget = await self.budgets.load_budget(budget_id)
        _check_references(budget, data)
        doc = await self.months.load_month(budget_id, year, month)
        txn = TRANSACTION_MODELS[kind](id=_new_id(), created_at=utcnow(), **data.model_dump())
        return await self._apply(budget_id, doc, kind, None, txn, f"add_{kind.value}")

    async def update(
        self,
        budget_id: str,
        year: int,
        month: int,
        kind: TransactionKind,
        txn_id: str,
        data: BaseModel,
    ) -> MutationResult:
        budget = await self.budgets.load_budget(budget_id)
        _check_references(budget, data)
        doc = await self.months.load_month(budget_id, year, month)
        existing = self._find(doc, kind, txn_id)
        txn = TRANSACTION_MODELS[kind](
            id=txn_id, created_at=existing.created_at, **data.model_dump()
        )
        return await self._apply(budget_id, doc, kind, existing, txn, f"update_{kind.value}")

    async def delete(
        self, budget_id: str, year: int, month: int, kind: TransactionKind, txn_id: str
    ) -> MutationResult:
        await self.budgets.load_budget(budget_id)
        doc = await self.months.load_month(budget_id, year, month)
        existing = self._find(doc, kind, txn_id)
        return await self._apply(budget_id, doc, kind, existing, None, f"delete_{kind.value}")

    @staticmethod
    def _find(doc: MonthDocument, kind: TransactionKind, txn_id: str):
        for txn in doc.transactions(kind):
            if txn.id == txn_id:
                return txn
        raise TransactionNotFound(f"Transaction not found: {txn_id}")

    async def _apply(
        self,
        budget_id: str,
        doc: MonthDocument,
        kind: TransactionKind,
        before,
        after,
        operation: str,
    ) -> MutationResult:
        key = doc.key
        if before is None:
            items = doc.transactions(kind) + [after]
        elif after is None:
            items = [t for t in doc.transactions(kind) if t.id != before.id]
        else:
            items = [after if t.id == before.id else t for t in doc.transactions(kind)]

        channels = RecalcStatus.fresh
        for txn in (before, after):
            if txn is not None:
                channels = channels.combine(stale_channels(kind, txn))
        delta = diff_effects(
            account_effects(kind, before) if before is not None else {},
            account_effects(kind, after) if after is not None else {},
        )

        keys = [
            CacheKey.for_month(budget_id, key.year, key.month),
            CacheKey.for_budget(budget_id),
            *_later_month_keys(self.cache, budget_id, key),
        ]
        staged: dict[str, Any] = {}

        def optimistic_update() -> None:
            budget = self.cache.get_budget(budget_id)
            updated = retotal_month(doc.model_copy(update={kind.field: items}), budget)
            staged["month"] = updated
            staged["passes"] = self.staleness.passes(budget_id)
            staged["month"] = updated
            self.staleness.mark_stale_in_cache(budget_id, key, channels)
            if delta:
                budget = self.cache.get_budget(budget_id)
                accounts = dict(budget.accounts)
                for account_id, change in delta.items():
                    account = accounts.get(account_id)
                    if account is not None:
                        accounts[account_id] = account.model_copy(
                            update={"balance_cents": account.balance_cents + change}
                        )
                self.cache.set_budget(budget.model_copy(update={"accounts": accounts}))
                staged["balances"] = {
                    account_id: accounts[account_id].balance_cents
                    for account_id in delta
                    if account_id in accounts
                }

        async def store_write() -> MonthDocument:
            # Later months are flagged before the edited month is written.
            await self.staleness.mark_stale_in_store(budget_id, key, channels)
            saved = await self.months.save_month(budget_id, staged["month"])
            if staged.get("balances"):
                await self.store.write(
                    BUDGETS,
                    budget_id,
                    {
                        f"accounts.{account_id}.balance_cents": value
                        for account_id, value in staged["balances"].items()
                    },
                    merge=True,
                )
            await self.staleness.settle_edit(budget_id, key, channels, staged["passes"])
            return saved

        result = await self.gateway.mutate(operation, keys, optimistic_update, store_write)
        if result.ok:
            logger.info(
                f"transaction_saved: budget={budget_id} month={key.label} "
                f"operation={operation} channels={channels.value}"
            )
        return result


class AllocationService:
    def __init__(
        self,
        cache: LocalCache,
        budgets: BudgetService,
        months: MonthService,
        staleness: StalenessService,
        gateway: MutationGateway,
    ) -> None:
        self.cache = cache
        self.budgets = budgets
        self.months = months
        self.staleness = staleness
        self.gateway = gateway

    @staticmethod
    def _check_categories(budget: BudgetDocument, amounts: dict[str, int]) -> None:
        for category_id, amount in amounts.items():
            if category_id not in budget.categories:
                raise CategoryNotFound(f"Category not found: {category_id}")
            if amount < 0:
                raise AllocationError(f"Allocation for {category_id} must not be negative")

    async def finalize(
        self, budget_id: str, year: int, month: int, amounts: Optional[dict[str, int]] = None
    ) -> MutationResult:
        budget = await self.budgets.load_budget(budget_id)
        doc = await self.months.load_month(budget_id, year, month)
        allocations = default_allocations(doc, budget.categories)
        drafts = self.get_draft_allocations(budget_id, year, month)
        if drafts:
            allocations.update(drafts)
        if amounts:
            allocations.update(amounts)
        self._check_categories(budget, allocations)
        return await self._apply(
            budget_id,
            doc,
            {"allocations": allocations, "are_allocations_finalized": True},
            "finalize_allocations",
            clear_drafts=True,
        )

    async def update_allocation(
        self, budget_id: str, year: int, month: int, category_id: str, amount_cents: int
    ) -> MutationResult:
        budget = await self.budgets.load_budget(budget_id)
        doc = await self.months.load_month(budget_id, year, month)
        if not doc.are_allocations_finalized:
            raise AllocationError(f"Allocations for {doc.key.display} are not finalized")
        self._check_categories(budget, {category_id: amount_cents})
        allocations = {**doc.allocations, category_id: amount_cents}
        return await self._apply(
            budget_id, doc, {"allocations": allocations}, "update_allocation"
        )

    async def delete_allocations(self, budget_id: str, year: int, month: int) -> MutationResult:
        await self.budgets.load_budget(budget_id)
        doc = await self.months.load_month(budget_id, year, month)
        if not doc.are_allocations_finalized and not doc.allocations:
            raise AllocationError(f"Allocations for {doc.key.display} are not finalized")
        return await self._apply(
            budget_id,
            doc,
            {"allocations": {}, "are_allocations_finalized": False},
            "delete_allocations",
        )

    def save_draft_allocations(
        self, budget_id: str, year: int, month: int, amounts: dict[str, int]
    ) -> dict[str, int]:
        budget = self.cache.get_budget(budget_id)
        if budget is None:
            raise BudgetNotFound(budget_id)
        self._check_categories(budget, amounts)
        self.cache.set(CacheKey.for_drafts(budget_id, year, month), amounts)
        return dict(amounts)

    def get_draft_allocations(self, budget_id: str, year: int, month: int) -> Optional[dict[str, int]]:
        return self.cache.get(CacheKey.for_drafts(budget_id, year, month))

    def discard_draft_allocations(self, budget_id: str, year: int, month: int) -> None:
        self.cache.remove(CacheKey.for_drafts(budget_id, year, month))

    async def _apply(
        self,
        budget_id: str,
        doc: MonthDocument,
        changes: dict[str, Any],
        operation: str,
        *,
        clear_drafts: bool = False,
    ) -> MutationResult:
        key = doc.key
        drafts_key = CacheKey.for_drafts(budget_id, key.year, key.month)
        keys = [
            CacheKey.for_month(budget_id, key.year, key.month),
            CacheKey.for_budget(budget_id),
            drafts_key,
            *_later_month_keys(self.cache, budget_id, key),
        ]
        staged: dict[str, Any] = {}

        def optimistic_update() -> None:
            budget = self.cache.get_budget(budget_id)
            updated = retotal_month(doc.model_copy(update=changes), budget)
            self.cache.set_month(updated)
            staged["month"] = updated
            staged["passes"] = self.staleness.passes(budget_id)
            if clear_drafts:
                self.cache.remove(drafts_key)
            self.staleness.mark_stale_in_cache(budget_id, key, ALLOCATION_CHANNELS)

        async def store_write() -> MonthDocument:
            await self.staleness.mark_stale_in_store(budget_id, key, ALLOCATION_CHANNELS)
            saved = await self.months.save_month(budget_id, staged["month"])
            await self.staleness.settle_edit(
                budget_id, key, ALLOCATION_CHANNELS, staged["passes"]
            )
            return saved

        result = await self.gateway.mutate(operation, keys, optimistic_update, store_write)
        if result.ok:
            logger.info(f"allocations_saved: budget={budget_id} month={key.label} operation={operation}")
        return result


def _is_newer(remote: Optional[datetime], local: Optional[datetime]) -> bool:
    if remote is None:
        return False
    if local is None:
        return True
    return remote > local


class SyncService:
    def __init__(
        self, store: DocumentStore, cache: LocalCache, staleness: StalenessService
    ) -> None:
        self.store = store
        self.cache = cache
        self.staleness = staleness
        self._loaded: set[str] = set()
        self._conflicts: dict[CacheKey, SyncConflict] = {}

    def mark_initial_load_complete(self, budget_id: str) -> None:
        self._loaded.add(budget_id)

    @property
    def loaded_budgets(self) -> list[str]:
        return sorted(self._loaded)

    def conflicts(self, budget_id: Optional[str] = None) -> list[SyncConflict]:
        return [
            c for c in self._conflicts.values() if budget_id is None or c.budget_id == budget_id
        ]

    def _has_local_changes(self, key: CacheKey) -> bool:
        if self.cache.has_pending(key):
            return True
        if key.doc_type == DocumentType.month:
            drafts = CacheKey.for_drafts(key.budget_id, key.year, key.month)
            return drafts in self.cache
        return False

    @staticmethod
    def _locate(key: CacheKey) -> tuple[str, str]:
        if key.doc_type == DocumentType.budget:
            return BUDGETS, key.budget_id
        return MONTHS, month_doc_id(key.budget_id, key.year, key.month)

    @staticmethod
    def _parse(key: CacheKey, data: dict):
        if key.doc_type == DocumentType.budget:
            return BudgetDocument.model_validate(data)
        return MonthDocument.model_validate(data)

    async def check(self, budget_id: str) -> list[SyncConflict]:
        if budget_id not in self._loaded:
            return []
        keys = [CacheKey.for_budget(budget_id)] + [
            CacheKey.for_month(budget_id, m.year, m.month) for m in self.cache.months(budget_id)
        ]
        found = []
        for key in keys:
            conflict = await self._check_one(key)
            if conflict is not None:
                found.append(conflict)
        return found

    async def check_all(self) -> list[SyncConflict]:
        found = []
        for budget_id in self.loaded_budgets:
            found.extend(await self.check(budget_id))
        return found

    async def _check_one(self, key: CacheKey) -> Optional[SyncConflict]:
        local = self.cache.get(key)
        if local is None:
            return None
        collection, doc_id = self._locate(key)
        try:
            data = await self.store.read(collection, doc_id)
        except Exception as exc:
            logger.warning(f"sync_fetch_failed: collection={collection} id={doc_id} error={exc}")
            return None
        if data is None:
            return None
        remote = self._parse(key, data)
        if not _is_newer(remote.updated_at, local.updated_at):
            return None
        if self._has_local_changes(key):
            conflict = SyncConflict(
                budget_id=key.budget_id,
                doc_type=key.doc_type,
                year=key.year,
                month=key.month,
                local_updated_at=local.updated_at,
                remote_updated_at=remote.updated_at,
            )
            self._conflicts[key] = conflict
            logger.warning(f"sync_conflict: {conflict.message}")
            return conflict
        self.cache.set(key, remote)
        self.staleness.forget(key.budget_id)
        logger.info(f"sync_adopted: collection={collection} id={doc_id}")
        return None

    async def resolve_conflict(self, key: CacheKey, keep: str) -> Any:
        if key not in self._conflicts:
            raise NotFound(f"No sync conflict for {key}")
        collection, doc_id = self._locate(key)
        if keep == "remote":
            data = await self.store.read(collection, doc_id)
            if data is None:
                raise NotFound(f"Remote document {collection}/{doc_id} is gone")
            value = self._parse(key, data)
            if key.doc_type == DocumentType.month:
                self.cache.remove(CacheKey.for_drafts(key.budget_id, key.year, key.month))
        elif keep == "local":
            local = self.cache.get(key)
            if local is None:
                raise NotFound(f"Local copy of {collection}/{doc_id} is gone")
            stored = await self.store.write(collection, doc_id, local.to_store())
            value = self._parse(key, stored)
        else:
            raise ValueError(f"keep must be 'local' or 'remote', got {keep!r}")
        self.cache.set(key, value)
        self.staleness.forget(key.budget_id)
        del self._conflicts[key]
        logger.info(f"sync_conflict_resolved: collection={collection} id={doc_id} keep={keep}")
        return value


class BudgetLedger:
    """Wires the services around one store and one local cache."""

    def __init__(
        self,
        store: DocumentStore,
        cache: Optional[LocalCache] = None,
        *,
        today: Optional[Callable[[], date]] = None,
        max_future_months: Optional[int] = None,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else LocalCache()
        self.gateway = MutationGateway(self.cache)
        self.staleness = StalenessService(store, self.cache)
        self.budgets = BudgetService(store, self.cache)
        self.months = MonthService(
            store, self.cache, self.budgets, today=today, max_future_months=max_future_months
        )
        self.recalculation = RecalculationService(store, self.cache, self.budgets, self.staleness)
        self.transactions = TransactionService(
            store, self.cache, self.budgets, self.months, self.staleness, self.gateway
        )
        self.allocations = AllocationService(
            self.cache, self.budgets, self.months, self.staleness, self.gateway
        )
        self.sync = SyncService(store, self.cache, self.staleness)

    async def open_month(
        self,
        budget_id: str,
        year: int,
        month: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MonthDocument:
        doc = await self.months.get_or_create_month(budget_id, year, month)
        self.sync.mark_initial_load_complete(budget_id)
        budget = await self.budgets.load_budget(budget_id)
        entry = budget.month_map.get(doc.label)
        if doc.recalc_status.is_stale or (entry is not None and entry.needs_recalculation):
            stale = budget.stale_labels
            from_ordinal = doc.year_month_ordinal
            if stale:
                from_ordinal = min(from_ordinal, MonthKey.parse(stale[0]).ordinal)
            await self.recalculation.trigger(
                budget_id, from_ordinal=from_ordinal, on_progress=on_progress
            )
            doc = await self.months.load_month(budget_id, year, month)
        return doc

    async def add_account(self, budget_id: str, data: AccountIn) -> tuple[str, Account]:
        budget = await self.budgets.load_budget(budget_id)
        account_id, account = await self.budgets.add_account(budget_id, data)
        earliest = budget.earliest_month
        if earliest is not None and account.opening_balance_cents:
            prior = earliest.prev()
            await self.staleness.mark_stale_from(
                budget_id, prior.year, prior.month, RecalcStatus.stale_accounts
            )
        return account_id, account


def build_ledger(store: Optional[DocumentStore] = None, **kwargs) -> BudgetLedger:
    if store is None:
        store = SQLDocumentStore()
    return BudgetLedger(store, **kwargs)
