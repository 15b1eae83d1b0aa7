from datetime import date

from fastapi.testclient import TestClient

from main import app, get_ledger
from services import BudgetLedger
from store import MemoryDocumentStore


class RefusingStore(MemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.refuse = False

    async def write(self, collection, doc_id, data, *, merge=False):
        if self.refuse:
            raise ConnectionError("offline")
        return await super().write(collection, doc_id, data, merge=merge)


def _client(store=None) -> TestClient:
    ledger = BudgetLedger(
        store or MemoryDocumentStore(), today=lambda: date(2024, 6, 15), max_future_months=3
    )
    app.dependency_overrides[get_ledger] = lambda: ledger
    client = TestClient(app)
    client.post("/api/budgets", json={"id": "home", "name": "Home", "owner_id": "user-1"})
    client.post(
        "/api/budgets/home/accounts",
        json={"id": "checking", "name": "Checking", "opening_balance_cents": 100_000},
    )
    client.post("/api/budgets/home/categories", json={"id": "groceries", "name": "Groceries"})
    return client


def test_open_month_and_record_expense() -> None:
    client = _client()
    res = client.get("/api/budgets/home/months/2024/5")
    assert res.status_code == 200
    assert res.json()["recalc_status"] == "fresh"

    res = client.post(
        "/api/budgets/home/months/2024/5/transactions/expense",
        json={"amount_cents": 2_000, "account_id": "checking", "category_id": "groceries"},
    )
    assert res.status_code == 200
    month = res.json()["month"]
    assert month["account_balances"]["checking"]["end_balance"] == 98_000
    txn_id = month["expenses"][0]["id"]

    res = client.put(
        f"/api/budgets/home/months/2024/5/transactions/expense/{txn_id}",
        json={"amount_cents": 500, "account_id": "checking", "category_id": "groceries"},
    )
    assert res.json()["month"]["account_balances"]["checking"]["end_balance"] == 99_500

    res = client.delete(f"/api/budgets/home/months/2024/5/transactions/expense/{txn_id}")
    assert res.json()["month"]["expenses"] == []
    app.dependency_overrides.clear()


def test_out_of_sequence_month_returns_redirect() -> None:
    client = _client()
    client.get("/api/budgets/home/months/2024/5")
    res = client.get("/api/budgets/home/months/2024/8")
    assert res.status_code == 409
    assert res.json()["detail"]["redirect"]["label"] == "202405"
    app.dependency_overrides.clear()


def test_error_mapping() -> None:
    store = RefusingStore()
    client = _client(store)
    client.get("/api/budgets/home/months/2024/5")

    res = client.post(
        "/api/budgets/home/months/2024/5/transactions/transfer",
        json={"amount_cents": 100, "from_account_id": "checking"},
    )
    assert res.status_code == 422

    res = client.delete("/api/budgets/home/months/2024/5/transactions/income/missing")
    assert res.status_code == 404

    res = client.get("/api/budgets/unknown")
    assert res.status_code == 404

    store.refuse = True
    res = client.post(
        "/api/budgets/home/months/2024/5/transactions/income",
        json={"amount_cents": 100, "account_id": "checking"},
    )
    assert res.status_code == 503
    app.dependency_overrides.clear()


def test_allocations_recalculation_and_admin_endpoints() -> None:
    client = _client()
    client.get("/api/budgets/home/months/2024/5")
    client.get("/api/budgets/home/months/2024/6")

    res = client.put(
        "/api/budgets/home/months/2024/5/allocations/draft",
        json={"amounts": {"groceries": 3_000}},
    )
    assert res.json() == {"amounts": {"groceries": 3_000}}

    res = client.post("/api/budgets/home/months/2024/5/allocations/finalize", json={})
    assert res.json()["month"]["allocations"]["groceries"] == 3_000

    res = client.put(
        "/api/budgets/home/months/2024/5/allocations/groceries", json={"amount_cents": 4_000}
    )
    assert res.json()["month"]["category_balances"]["groceries"]["end_balance"] == 4_000

    res = client.post("/api/budgets/home/recalculate")
    body = res.json()
    assert body["months"] == ["202406"]
    assert body["phases"][-1] == "complete"

    res = client.get("/api/budgets/home/months/2024/6")
    assert res.json()["category_balances"]["groceries"]["start_balance"] == 4_000

    res = client.get("/api/budgets/home/conflicts")
    assert res.json() == {"conflicts": []}
    res = client.post(
        "/api/budgets/home/conflicts/resolve",
        json={"doc_type": "month", "year": 2024, "month": 6, "keep": "remote"},
    )
    assert res.status_code == 404

    res = client.post("/api/budgets/home/admin/delete-future-months", params={"after": "202405"})
    assert res.json() == {"deleted": ["202406"]}
    res = client.post("/api/budgets/home/admin/rebuild-month-map")
    assert list(res.json()["month_map"]) == ["202405"]
    app.dependency_overrides.clear()
