import logging
from functools import lru_cache
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException

from cache import CacheKey
from database import init_db
from errors import NotFound, OutOfSequence, RecalculationAborted, StoreWriteFailure
from models import TransactionKind
from periods import MonthKey
from scheduler import SchedulerManager
from schemas import (
    TRANSACTION_INPUTS,
    AccountIn,
    AllocationEditIn,
    AllocationsIn,
    BudgetDocument,
    BudgetIn,
    CategoryIn,
    ConflictResolutionIn,
    MonthDocument,
)
from services import BudgetLedger, MutationResult, RecalculationProgress, build_ledger

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Ledger")

LEDGER_ERRORS = (ValueError, StoreWriteFailure, RecalculationAborted)


@lru_cache(maxsize=1)
def get_ledger() -> BudgetLedger:
    init_db()
    return build_ledger()


def _resolve_ledger() -> BudgetLedger:
    return app.dependency_overrides.get(get_ledger, get_ledger)()


scheduler_manager: Optional[SchedulerManager] = None


@app.on_event("startup")
async def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager(_resolve_ledger())
    scheduler_manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, OutOfSequence):
        redirect = None
        if exc.redirect is not None:
            redirect = {
                "year": exc.redirect.year,
                "month": exc.redirect.month,
                "label": exc.redirect.label,
            }
        return HTTPException(
            status_code=409, detail={"message": str(exc), "redirect": redirect}
        )
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (StoreWriteFailure, RecalculationAborted)):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _month_out(doc: MonthDocument) -> dict:
    data = doc.model_dump(mode="json")
    data["recalc_status"] = doc.recalc_status.value
    data["label"] = doc.label
    return data


def _budget_out(budget: BudgetDocument) -> dict:
    return budget.model_dump(mode="json")


def _mutation_out(result: MutationResult) -> dict:
    try:
        value = result.raise_for_error()
    except StoreWriteFailure as exc:
        raise _http_error(exc) from exc
    return {"operation": result.operation, "month": _month_out(value)}


@app.post("/api/budgets")
async def create_budget(data: BudgetIn, ledger: BudgetLedger = Depends(get_ledger)):
    try:
        budget = await ledger.budgets.create_budget(data)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _budget_out(budget)


@app.get("/api/budgets/{budget_id}")
async def read_budget(budget_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    try:
        budget = await ledger.budgets.load_budget(budget_id)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _budget_out(budget)


@app.post("/api/budgets/{budget_id}/accounts")
async def add_account(
    budget_id: str, data: AccountIn, ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        account_id, account = await ledger.add_account(budget_id, data)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"id": account_id, **account.model_dump(mode="json")}


@app.post("/api/budgets/{budget_id}/categories")
async def add_category(
    budget_id: str, data: CategoryIn, ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        category_id, category = await ledger.budgets.add_category(budget_id, data)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"id": category_id, **category.model_dump(mode="json")}


@app.get("/api/budgets/{budget_id}/months/{year}/{month}")
async def open_month(
    budget_id: str, year: int, month: int, ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        doc = await ledger.open_month(budget_id, year, month)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _month_out(doc)


def _transaction_input(kind: TransactionKind, payload: dict):
    try:
        return TRANSACTION_INPUTS[kind].model_validate(payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/api/budgets/{budget_id}/months/{year}/{month}/transactions/{kind}")
async def add_transaction(
    budget_id: str,
    year: int,
    month: int,
    kind: TransactionKind,
    payload: dict = Body(...),
    ledger: BudgetLedger = Depends(get_ledger),
):
    data = _transaction_input(kind, payload)
    try:
        result = await ledger.transactions.add(budget_id, year, month, kind, data)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.put("/api/budgets/{budget_id}/months/{year}/{month}/transactions/{kind}/{txn_id}")
async def update_transaction(
    budget_id: str,
    year: int,
    month: int,
    kind: TransactionKind,
    txn_id: str,
    payload: dict = Body(...),
    ledger: BudgetLedger = Depends(get_ledger),
):
    data = _transaction_input(kind, payload)
    try:
        result = await ledger.transactions.update(budget_id, year, month, kind, txn_id, data)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.delete("/api/budgets/{budget_id}/months/{year}/{month}/transactions/{kind}/{txn_id}")
async def delete_transaction(
    budget_id: str,
    year: int,
    month: int,
    kind: TransactionKind,
    txn_id: str,
    ledger: BudgetLedger = Depends(get_ledger),
):
    try:
        result = await ledger.transactions.delete(budget_id, year, month, kind, txn_id)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.post("/api/budgets/{budget_id}/months/{year}/{month}/allocations/finalize")
async def finalize_allocations(
    budget_id: str,
    year: int,
    month: int,
    data: AllocationsIn,
    ledger: BudgetLedger = Depends(get_ledger),
):
    try:
        result = await ledger.allocations.finalize(budget_id, year, month, data.amounts)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.put("/api/budgets/{budget_id}/months/{year}/{month}/allocations/draft")
async def save_draft_allocations(
    budget_id: str,
    year: int,
    month: int,
    data: AllocationsIn,
    ledger: BudgetLedger = Depends(get_ledger),
):
    try:
        await ledger.budgets.load_budget(budget_id)
        amounts = ledger.allocations.save_draft_allocations(
            budget_id, year, month, data.amounts or {}
        )
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"amounts": amounts}


@app.put("/api/budgets/{budget_id}/months/{year}/{month}/allocations/{category_id}")
async def update_allocation(
    budget_id: str,
    year: int,
    month: int,
    category_id: str,
    data: AllocationEditIn,
    ledger: BudgetLedger = Depends(get_ledger),
):
    try:
        result = await ledger.allocations.update_allocation(
            budget_id, year, month, category_id, data.amount_cents
        )
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.delete("/api/budgets/{budget_id}/months/{year}/{month}/allocations")
async def delete_allocations(
    budget_id: str, year: int, month: int, ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        result = await ledger.allocations.delete_allocations(budget_id, year, month)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return _mutation_out(result)


@app.post("/api/budgets/{budget_id}/recalculate")
async def recalculate(
    budget_id: str,
    from_ordinal: Optional[int] = None,
    ledger: BudgetLedger = Depends(get_ledger),
):
    phases: list[str] = []

    def on_progress(progress: RecalculationProgress) -> None:
        if not phases or phases[-1] != progress.phase:
            phases.append(progress.phase)

    try:
        result = await ledger.recalculation.trigger(
            budget_id, from_ordinal=from_ordinal, on_progress=on_progress
        )
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {
        "from": result.from_label,
        "months": [m.label for m in result.months],
        "saved": result.saved,
        "phases": phases,
    }


@app.post("/api/budgets/{budget_id}/sync")
async def sync_check(budget_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    conflicts = await ledger.sync.check(budget_id)
    return {"conflicts": [_conflict_out(c) for c in conflicts]}


def _conflict_out(conflict) -> dict:
    return {
        "budget_id": conflict.budget_id,
        "doc_type": conflict.doc_type.value,
        "year": conflict.year,
        "month": conflict.month,
        "local_updated_at": conflict.local_updated_at.isoformat()
        if conflict.local_updated_at
        else None,
        "remote_updated_at": conflict.remote_updated_at.isoformat()
        if conflict.remote_updated_at
        else None,
        "message": conflict.message,
    }


@app.get("/api/budgets/{budget_id}/conflicts")
async def list_conflicts(budget_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    return {"conflicts": [_conflict_out(c) for c in ledger.sync.conflicts(budget_id)]}


@app.post("/api/budgets/{budget_id}/conflicts/resolve")
async def resolve_conflict(
    budget_id: str,
    data: ConflictResolutionIn,
    ledger: BudgetLedger = Depends(get_ledger),
):
    key = CacheKey(budget_id, data.doc_type, data.year, data.month)
    try:
        value = await ledger.sync.resolve_conflict(key, data.keep)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    if isinstance(value, MonthDocument):
        return _month_out(value)
    return _budget_out(value)


@app.post("/api/budgets/{budget_id}/admin/delete-future-months")
async def admin_delete_future_months(
    budget_id: str, after: str, ledger: BudgetLedger = Depends(get_ledger)
):
    try:
        after_key = MonthKey.parse(after)
        deleted = await ledger.months.delete_future_months(budget_id, after_key.ordinal)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"deleted": deleted}


@app.post("/api/budgets/{budget_id}/admin/rebuild-month-map")
async def admin_rebuild_month_map(budget_id: str, ledger: BudgetLedger = Depends(get_ledger)):
    try:
        budget = await ledger.months.rebuild_month_map(budget_id)
    except LEDGER_ERRORS as exc:
        raise _http_error(exc) from exc
    return {"month_map": {k: v.model_dump() for k, v in budget.month_map.items()}}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
