import asyncio
from datetime import date

import pytest

from errors import MonthNotFound, OutOfSequence
from models import MONTHS, RecalcStatus, TransactionKind, month_doc_id
from periods import MonthKey
from schemas import AccountIn, BudgetIn, CategoryIn, IncomeIn
from services import BudgetLedger
from store import MemoryDocumentStore


def _ledger(today: date = date(2024, 8, 1)) -> BudgetLedger:
    return BudgetLedger(MemoryDocumentStore(), today=lambda: today, max_future_months=3)


async def _budget(ledger: BudgetLedger) -> None:
    await ledger.budgets.create_budget(BudgetIn(id="home", name="Home", owner_id="user-1"))
    await ledger.add_account(
        "home", AccountIn(id="checking", name="Checking", opening_balance_cents=100_000)
    )
    await ledger.budgets.add_category("home", CategoryIn(id="groceries", name="Groceries"))


async def _open_range(ledger: BudgetLedger, first: MonthKey, count: int) -> None:
    key = first
    for _ in range(count):
        await ledger.months.get_or_create_month("home", key.year, key.month)
        key = key.next()


def test_out_of_sequence_month_redirects_to_nearest_boundary() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await _open_range(ledger, MonthKey(2024, 5), 4)

        with pytest.raises(OutOfSequence) as before:
            await ledger.months.get_or_create_month("home", 2024, 3)
        with pytest.raises(OutOfSequence) as after:
            await ledger.months.get_or_create_month("home", 2024, 10)
        budget = await ledger.budgets.load_budget("home", refresh=True)
        return before.value, after.value, budget

    before, after, budget = asyncio.run(scenario())
    assert before.redirect == MonthKey(2024, 5)
    assert after.redirect == MonthKey(2024, 8)
    assert budget.month_labels == ["202405", "202406", "202407", "202408"]


def test_months_can_be_added_on_either_side_across_year_boundary() -> None:
    async def scenario():
        ledger = _ledger(today=date(2024, 1, 10))
        await _budget(ledger)
        await ledger.months.get_or_create_month("home", 2024, 1)
        await ledger.months.get_or_create_month("home", 2023, 12)
        await ledger.months.get_or_create_month("home", 2024, 2)
        return await ledger.budgets.load_budget("home")

    budget = asyncio.run(scenario())
    assert budget.month_labels == ["202312", "202401", "202402"]


def test_months_too_far_ahead_of_today_are_refused() -> None:
    async def scenario():
        ledger = _ledger(today=date(2024, 8, 1))
        await _budget(ledger)
        await _open_range(ledger, MonthKey(2024, 8), 4)
        with pytest.raises(OutOfSequence) as exc:
            await ledger.months.get_or_create_month("home", 2024, 12)
        return exc.value

    exc = asyncio.run(scenario())
    assert exc.target == MonthKey(2024, 12)
    assert exc.redirect == MonthKey(2024, 11)


def test_new_month_inherits_previous_end_balances_and_stale_status() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await ledger.months.get_or_create_month("home", 2024, 5)
        await ledger.months.get_or_create_month("home", 2024, 6)
        result = await ledger.transactions.add(
            "home", 2024, 5, TransactionKind.income,
            IncomeIn(amount_cents=40_000, account_id="checking"),
        )
        result.raise_for_error()
        july = await ledger.months.get_or_create_month("home", 2024, 7)
        budget = await ledger.budgets.load_budget("home", refresh=True)
        return july, budget

    july, budget = asyncio.run(scenario())
    # June was flagged by the May edit, so July is created stale as well.
    assert july.recalc_status == RecalcStatus.stale_accounts
    assert july.account_balances["checking"].start_balance == 100_000
    assert budget.month_map["202407"].needs_recalculation is True


def test_month_created_before_earliest_starts_from_opening_balances() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await ledger.months.get_or_create_month("home", 2024, 5)
        return await ledger.months.get_or_create_month("home", 2024, 4)

    april = asyncio.run(scenario())
    assert april.account_balances["checking"].start_balance == 100_000
    assert april.recalc_status == RecalcStatus.fresh


def test_deleted_month_is_distinguished_from_missing_month() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await ledger.months.get_or_create_month("home", 2024, 5)
        await ledger.store.delete(MONTHS, month_doc_id("home", 2024, 5))
        with pytest.raises(MonthNotFound) as deleted:
            await ledger.months.read_month("home", 2024, 5)
        with pytest.raises(MonthNotFound) as missing:
            await ledger.months.read_month("home", 2024, 6)
        return deleted.value, missing.value

    deleted, missing = asyncio.run(scenario())
    assert deleted.deleted is True
    assert missing.deleted is False


def test_save_month_keeps_fields_it_does_not_own() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        may = await ledger.months.get_or_create_month("home", 2024, 5)
        doc_id = month_doc_id("home", 2024, 5)
        await ledger.store.write(MONTHS, doc_id, {"notes": "from another client"}, merge=True)
        await ledger.months.save_month(
            "home", may.model_copy(update={"allocations": {"groceries": 1_000}})
        )
        return await ledger.store.read(MONTHS, doc_id)

    stored = asyncio.run(scenario())
    assert stored["notes"] == "from another client"
    assert stored["allocations"] == {"groceries": 1_000}


def test_delete_future_months_stops_at_months_with_activity() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await _open_range(ledger, MonthKey(2024, 5), 4)
        (
            await ledger.transactions.add(
                "home", 2024, 6, TransactionKind.income,
                IncomeIn(amount_cents=1_000, account_id="checking"),
            )
        ).raise_for_error()
        deleted = await ledger.months.delete_future_months("home", 202405)
        budget = await ledger.budgets.load_budget("home", refresh=True)
        return deleted, budget

    deleted, budget = asyncio.run(scenario())
    assert deleted == ["202408", "202407"]
    assert budget.month_labels == ["202405", "202406"]


def test_rebuild_month_map_follows_month_documents() -> None:
    async def scenario():
        ledger = _ledger()
        await _budget(ledger)
        await _open_range(ledger, MonthKey(2024, 5), 3)
        await ledger.budgets.patch_budget("home", {"month_map": {}})
        return await ledger.months.rebuild_month_map("home")

    budget = asyncio.run(scenario())
    assert budget.month_labels == ["202405", "202406", "202407"]
    assert budget.stale_labels == []
