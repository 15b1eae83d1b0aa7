import asyncio
from datetime import date

from database import init_db, make_engine, make_session_factory
from models import BUDGETS, MONTHS, TransactionKind, month_doc_id
from schemas import AccountIn, BudgetIn, ExpenseIn, CategoryIn
from services import BudgetLedger
from store import DELETE_FIELD, Filter, SQLDocumentStore


def _store() -> SQLDocumentStore:
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    return SQLDocumentStore(make_session_factory(engine))


def test_write_read_merge_and_delete() -> None:
    async def scenario():
        store = _store()
        first = await store.write(BUDGETS, "home", {"name": "Home", "month_map": {"202405": {}}})
        merged = await store.write(
            BUDGETS,
            "home",
            {"month_map.202405.needs_recalculation": True, "owner_id": "user-1"},
            merge=True,
        )
        trimmed = await store.write(BUDGETS, "home", {"owner_id": DELETE_FIELD}, merge=True)
        await store.delete(BUDGETS, "home")
        gone = await store.read(BUDGETS, "home")
        return first, merged, trimmed, gone

    first, merged, trimmed, gone = asyncio.run(scenario())
    assert merged["name"] == "Home"
    assert merged["month_map"] == {"202405": {"needs_recalculation": True}}
    assert merged["created_at"] == first["created_at"]
    assert merged["updated_at"] >= first["updated_at"]
    assert "owner_id" not in trimmed
    assert gone is None


def test_query_filters_by_budget_and_range() -> None:
    async def scenario():
        store = _store()
        for budget_id in ("home", "work"):
            for ordinal in (202405, 202406, 202407):
                await store.write(
                    MONTHS,
                    f"{budget_id}_{ordinal}",
                    {"budget_id": budget_id, "year_month_ordinal": ordinal},
                )
        return await store.query(
            MONTHS,
            [Filter("budget_id", "==", "home"), Filter("year_month_ordinal", ">", 202405)],
        )

    found = asyncio.run(scenario())
    assert sorted(d["year_month_ordinal"] for d in found) == [202406, 202407]
    assert {d["budget_id"] for d in found} == {"home"}


def test_ledger_runs_on_the_sql_store() -> None:
    async def scenario():
        store = _store()
        ledger = BudgetLedger(store, today=lambda: date(2024, 6, 15), max_future_months=3)
        await ledger.budgets.create_budget(BudgetIn(id="home", name="Home", owner_id="user-1"))
        await ledger.add_account(
            "home", AccountIn(id="checking", name="Checking", opening_balance_cents=100_000)
        )
        await ledger.budgets.add_category("home", CategoryIn(id="groceries", name="Groceries"))
        await ledger.months.get_or_create_month("home", 2024, 5)
        await ledger.months.get_or_create_month("home", 2024, 6)
        (
            await ledger.transactions.add(
                "home", 2024, 5, TransactionKind.expense,
                ExpenseIn(amount_cents=20_000, account_id="checking", category_id="groceries"),
            )
        ).raise_for_error()

        fresh = BudgetLedger(store, today=lambda: date(2024, 6, 15), max_future_months=3)
        june = await fresh.open_month("home", 2024, 6)
        stored = await store.read(MONTHS, month_doc_id("home", 2024, 6))
        return june, stored

    june, stored = asyncio.run(scenario())
    assert june.account_balances["checking"].start_balance == 80_000
    assert stored["account_balances_stale"] is False
    assert stored["category_balances"]["groceries"]["start_balance"] == -20_000
