import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import export_transactions
from database import init_db
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    CategoryIn,
    CategoryMoveIn,
    CategoryOverrideIn,
    ConnectIn,
    ManualTransactionIn,
    PayeeRenameIn,
    StartingBalanceIn,
    Transaction,
)
from services import (
    BudgetStore,
    CategoryAmbiguous,
    CategoryNotFound,
    PeriodMisalignedError,
)
from store import BudgetState, TransactionNotFound

logger = logging.getLogger(__name__)

app = FastAPI(title="Paycheck Budget")

budget_store = BudgetStore()
scheduler_manager = SchedulerManager(budget_store)


def get_store() -> BudgetStore:
    return budget_store


def require_csrf(x_csrf_token: str = Header(default="")) -> None:
    if not validate_csrf_token(x_csrf_token):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


@app.on_event("startup")
def startup_event():
    init_db()
    budget_store.load()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


def _transaction_item(state: BudgetState, txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "amount": str(txn.amount),
        "payee": state.payee_for(txn),
        "category": state.category_name(txn),
        "memo": txn.memo,
        "is_pending": txn.is_pending,
        "is_manual": txn.is_manual,
        "hidden": txn.id in state.hidden_ids,
    }


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"token": generate_csrf_token()}


@app.get("/api/summary")
def api_summary(on: Optional[date] = None, store: BudgetStore = Depends(get_store)):
    return store.budgets().summary(on)


@app.get("/api/periods")
def api_period(
    on: Optional[date] = None,
    steps: int = 0,
    store: BudgetStore = Depends(get_store),
):
    budgets = store.budgets()
    day = on or budgets.today
    if steps:
        day = budgets.adjacent_period_date(day, steps)
    period = budgets.period_for(day)
    return {
        "key": period.key,
        "start": period.start.isoformat(),
        "end": period.end.isoformat() if period.end else None,
        "relation": budgets.relation(period).value,
    }


@app.get("/api/transactions")
def api_transactions(
    on: Optional[date] = None,
    category: Optional[str] = None,
    store: BudgetStore = Depends(get_store),
):
    budgets = store.budgets()
    period = budgets.period_for(on or budgets.today)
    items = budgets.period_transactions(period, category)
    return {
        "period": period.key,
        "items": [_transaction_item(budgets.state, txn) for txn in items],
    }


@app.post("/api/transactions", dependencies=[Depends(require_csrf)])
def api_add_transaction(
    data: ManualTransactionIn, store: BudgetStore = Depends(get_store)
):
    try:
        txn = store.add_manual_transaction(data)
    except (CategoryNotFound, CategoryAmbiguous) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _transaction_item(store.state, txn)


@app.post(
    "/api/transactions/{transaction_id}/hide", dependencies=[Depends(require_csrf)]
)
def api_hide_transaction(transaction_id: str, store: BudgetStore = Depends(get_store)):
    try:
        store.hide_transaction(transaction_id)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.post(
    "/api/transactions/{transaction_id}/restore", dependencies=[Depends(require_csrf)]
)
def api_restore_transaction(
    transaction_id: str, store: BudgetStore = Depends(get_store)
):
    store.restore_transaction(transaction_id)
    return {"ok": True}


@app.put(
    "/api/transactions/{transaction_id}/category",
    dependencies=[Depends(require_csrf)],
)
def api_override_category(
    transaction_id: str,
    data: CategoryOverrideIn,
    store: BudgetStore = Depends(get_store),
):
    try:
        store.override_category(transaction_id, data.category)
    except TransactionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"ok": True}


@app.put(
    "/api/transactions/{transaction_id}/payee", dependencies=[Depends(require_csrf)]
)
async def api_rename_payee(
    transaction_id: str,
    data: PayeeRenameIn,
    store: BudgetStore = Depends(get_store),
):
    ok, message = await store.rename_payee(transaction_id, data.payee)
    if not ok:
        status = 404 if message == "Transaction not found." else 400
        raise HTTPException(status_code=status, detail=message)
    return {"ok": True}


@app.get("/api/transactions/export.csv")
def api_export_transactions(
    on: Optional[date] = None, store: BudgetStore = Depends(get_store)
):
    budgets = store.budgets()
    period = budgets.period_for(on or budgets.today)
    state = budgets.state
    csv_text = export_transactions(
        budgets.period_transactions(period),
        category_for=state.category_name,
        payee_for=state.payee_for,
    )
    filename = f"transactions_{period.key}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/categories")
def api_categories(on: Optional[date] = None, store: BudgetStore = Depends(get_store)):
    budgets = store.budgets()
    period = budgets.period_for(on or budgets.today)
    return {"period": period.key, "items": budgets.category_lines(period)}


@app.post("/api/categories", dependencies=[Depends(require_csrf)])
def api_add_category(data: CategoryIn, store: BudgetStore = Depends(get_store)):
    store.add_category(data.name, data.amount)
    return {"ok": True}


@app.delete("/api/categories/{name}", dependencies=[Depends(require_csrf)])
def api_remove_category(name: str, store: BudgetStore = Depends(get_store)):
    store.remove_category(name)
    return {"ok": True}


@app.post("/api/categories/move", dependencies=[Depends(require_csrf)])
def api_move_category(data: CategoryMoveIn, store: BudgetStore = Depends(get_store)):
    try:
        store.move_category(data.name, data.position)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True}


@app.put("/api/budgets", dependencies=[Depends(require_csrf)])
def api_update_budget(data: BudgetIn, store: BudgetStore = Depends(get_store)):
    period_key = store.update_budget(data.category, data.amount, data.date)
    return {"ok": True, "period": period_key}


@app.put("/api/starting-balance", dependencies=[Depends(require_csrf)])
def api_starting_balance(
    data: StartingBalanceIn, store: BudgetStore = Depends(get_store)
):
    store.set_starting_balance(data.amount)
    return {"ok": True}


@app.get("/api/reports")
def api_reports(start: date, end: date, store: BudgetStore = Depends(get_store)):
    try:
        return store.budgets().totals(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/api/sync", dependencies=[Depends(require_csrf)])
async def api_sync(
    since: Optional[date] = None, store: BudgetStore = Depends(get_store)
):
    return await store.sync(since=since)


@app.post("/api/connect", dependencies=[Depends(require_csrf)])
async def api_connect(data: ConnectIn, store: BudgetStore = Depends(get_store)):
    try:
        return await store.connect(data)
    except PeriodMisalignedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.post("/api/alerts/evaluate", dependencies=[Depends(require_csrf)])
def api_evaluate_alerts(store: BudgetStore = Depends(get_store)):
    return {"alerts": store.evaluate_alerts()}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
