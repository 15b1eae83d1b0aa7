import asyncio
from datetime import date
from decimal import Decimal

import pytest

from cache import CacheKey, LocalCache
from errors import AccountNotFound, AllocationError, StoreWriteFailure, TransactionNotFound
from models import MONTHS, AllocationType, TransactionKind, month_doc_id
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    ExpenseIn,
    IncomeIn,
    MonthDocument,
)
from services import BudgetLedger, MutationGateway
from store import MemoryDocumentStore


class RefusingStore(MemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.refused: set[str] = set()

    async def write(self, collection, doc_id, data, *, merge=False):
        if doc_id in self.refused:
            raise ConnectionError("offline")
        return await super().write(collection, doc_id, data, merge=merge)


async def _setup(store=None) -> BudgetLedger:
    ledger = BudgetLedger(
        store or MemoryDocumentStore(), today=lambda: date(2024, 6, 15), max_future_months=3
    )
    await ledger.budgets.create_budget(BudgetIn(id="home", name="Home", owner_id="user-1"))
    await ledger.add_account(
        "home", AccountIn(id="checking", name="Checking", opening_balance_cents=100_000)
    )
    await ledger.budgets.add_category("home", CategoryIn(id="groceries", name="Groceries"))
    await ledger.budgets.add_category(
        "home",
        CategoryIn(
            id="savings",
            name="Savings",
            allocation_type=AllocationType.percentage,
            default_percentage=Decimal("10"),
        ),
    )
    await ledger.months.get_or_create_month("home", 2024, 5)
    await ledger.months.get_or_create_month("home", 2024, 6)
    await ledger.months.get_or_create_month("home", 2024, 7)
    return ledger


def test_failed_write_restores_cache_exactly() -> None:
    async def scenario():
        store = RefusingStore()
        ledger = await _setup(store)
        before = ledger.cache.dump()
        store.refused.add(month_doc_id("home", 2024, 5))
        result = await ledger.transactions.add(
            "home", 2024, 5, TransactionKind.expense,
            ExpenseIn(amount_cents=2_500, account_id="checking", category_id="groceries"),
        )
        june = MonthDocument.model_validate(
            await store.read(MONTHS, month_doc_id("home", 2024, 6))
        )
        return before, ledger.cache.dump(), result, june

    before, after, result, june = asyncio.run(scenario())
    assert result.ok is False
    assert isinstance(result.error, StoreWriteFailure)
    assert isinstance(result.error.cause, ConnectionError)
    assert after == before
    with pytest.raises(StoreWriteFailure):
        result.raise_for_error()
    # Later months were flagged before the month write failed.
    assert june.recalc_status.is_stale


def test_gateway_removes_entries_that_did_not_exist_before() -> None:
    cache = LocalCache()
    gateway = MutationGateway(cache)
    key = CacheKey.for_drafts("home", 2024, 5)
    seen_pending = []

    def optimistic():
        cache.set(key, {"groceries": 100})

    async def write():
        seen_pending.append(cache.has_pending(key))
        raise TimeoutError("slow store")

    result = asyncio.run(gateway.mutate("draft", [key], optimistic, write))
    assert result.ok is False
    assert key not in cache
    assert seen_pending == [True]
    assert cache.has_pending(key) is False


def test_gateway_reconciles_with_write_result() -> None:
    cache = LocalCache()
    gateway = MutationGateway(cache)
    key = CacheKey.for_drafts("home", 2024, 5)

    async def write():
        return {"groceries": 250}

    result = asyncio.run(
        gateway.mutate(
            "draft",
            [key],
            lambda: cache.set(key, {"groceries": 200}),
            write,
            reconcile=lambda value: cache.set(key, value),
        )
    )
    assert result.ok is True
    assert cache.get(key) == {"groceries": 250}


def test_month_write_happens_after_later_months_are_flagged() -> None:
    async def scenario():
        ledger = await _setup()
        ledger.store.write_log.clear()
        await ledger.transactions.add(
            "home", 2024, 5, TransactionKind.income,
            IncomeIn(amount_cents=1_000, account_id="checking"),
        )
        return [doc_id for coll, doc_id in ledger.store.write_log if coll == MONTHS]

    month_writes = asyncio.run(scenario())
    assert month_writes == ["home_2024_6", "home_2024_7", "home_2024_5"]


def test_update_adjusts_running_balance_by_delta() -> None:
    async def scenario():
        ledger = await _setup()
        added = await ledger.transactions.add(
            "home", 2024, 5, TransactionKind.expense,
            ExpenseIn(amount_cents=20_000, account_id="checking", category_id="groceries"),
        )
        txn_id = added.raise_for_error().expenses[0].id
        after_add = ledger.cache.get_budget("home").accounts["checking"].balance_cents
        await ledger.transactions.update(
            "home", 2024, 5, TransactionKind.expense, txn_id,
            ExpenseIn(amount_cents=15_000, account_id="checking", category_id="groceries"),
        )
        after_update = ledger.cache.get_budget("home").accounts["checking"].balance_cents
        deleted = await ledger.transactions.delete(
            "home", 2024, 5, TransactionKind.expense, txn_id
        )
        after_delete = ledger.cache.get_budget("home").accounts["checking"].balance_cents
        stored = await ledger.store.read("budgets", "home")
        return after_add, after_update, after_delete, deleted.value, stored

    after_add, after_update, after_delete, may, stored = asyncio.run(scenario())
    assert after_add == 80_000
    assert after_update == 85_000
    assert after_delete == 100_000
    assert may.expenses == []
    assert may.account_balances["checking"].end_balance == 100_000
    assert stored["accounts"]["checking"]["balance_cents"] == 100_000


def test_unknown_references_are_rejected_before_any_change() -> None:
    async def scenario():
        ledger = await _setup()
        before = ledger.cache.dump()
        with pytest.raises(AccountNotFound):
            await ledger.transactions.add(
                "home", 2024, 5, TransactionKind.income,
                IncomeIn(amount_cents=1_000, account_id="missing"),
            )
        with pytest.raises(TransactionNotFound):
            await ledger.transactions.delete("home", 2024, 5, TransactionKind.income, "nope")
        return before, ledger.cache.dump()

    before, after = asyncio.run(scenario())
    assert before == after


def test_percentage_allocation_is_fixed_at_finalization() -> None:
    async def scenario():
        ledger = await _setup()
        added = await ledger.transactions.add(
            "home", 2024, 5, TransactionKind.income,
            IncomeIn(amount_cents=200_000, account_id="checking"),
        )
        income_id = added.raise_for_error().income[0].id
        await ledger.open_month("home", 2024, 6)
        finalized = (await ledger.allocations.finalize("home", 2024, 6)).raise_for_error()

        await ledger.transactions.update(
            "home", 2024, 5, TransactionKind.income, income_id,
            IncomeIn(amount_cents=300_000, account_id="checking"),
        )
        june = await ledger.open_month("home", 2024, 6)
        return finalized, june

    finalized, june = asyncio.run(scenario())
    assert finalized.allocations["savings"] == 20_000
    assert june.previous_month_income == 300_000
    assert june.allocations["savings"] == 20_000
    assert june.category_balances["savings"].allocated == 20_000


def test_draft_allocations_stay_in_cache_until_finalized() -> None:
    async def scenario():
        ledger = await _setup()
        writes_before = len(ledger.store.write_log)
        ledger.allocations.save_draft_allocations("home", 2024, 5, {"groceries": 7_500})
        writes_after_draft = len(ledger.store.write_log)
        stored = await ledger.store.read(MONTHS, month_doc_id("home", 2024, 5))
        with pytest.raises(AllocationError):
            await ledger.allocations.update_allocation("home", 2024, 5, "groceries", 1)
        may = (await ledger.allocations.finalize("home", 2024, 5)).raise_for_error()
        draft_left = ledger.allocations.get_draft_allocations("home", 2024, 5)
        return writes_before, writes_after_draft, stored, may, draft_left

    writes_before, writes_after_draft, stored, may, draft_left = asyncio.run(scenario())
    assert writes_before == writes_after_draft
    assert stored["allocations"] == {}
    assert may.allocations["groceries"] == 7_500
    assert may.are_allocations_finalized is True
    assert draft_left is None


def test_delete_allocations_marks_later_category_balances_stale() -> None:
    async def scenario():
        ledger = await _setup()
        (await ledger.allocations.finalize("home", 2024, 5, {"groceries": 5_000})).raise_for_error()
        await ledger.recalculation.trigger("home")
        may = (await ledger.allocations.delete_allocations("home", 2024, 5)).raise_for_error()
        return may, ledger.cache.get_month("home", 2024, 6)

    may, june = asyncio.run(scenario())
    assert may.allocations == {}
    assert may.are_allocations_finalized is False
    assert june.recalc_status.categories_stale
    assert not june.recalc_status.accounts_stale
