import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from csv_utils import export_transactions
from database import SessionLocal
from errors import (
    ConcurrencyConflict,
    DownstreamUnavailable,
    LedgerError,
    NotFoundError,
    RateLimited,
    ValidationError,
)
from models import TransactionType
from periods import Period, resolve_period
from recurrence import WorkItem
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BulkDeleteIn,
    RecurringEventIn,
    TransactionIn,
    TransactionOut,
    UserIn,
)
from services import (
    AccountService,
    BudgetService,
    TransactionFilters,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Ledger")

_STATUS_BY_ERROR: dict[type, int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConcurrencyConflict: 409,
    RateLimited: 429,
    DownstreamUnavailable: 503,
}


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = next(
        (code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)),
        400,
    )
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc.code}")
    return JSONResponse(
        status_code=status, content={"error": exc.code, "detail": str(exc)}
    )


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def period_from_request(request: Request) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    account_param = request.query_params.get("account")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param)
        except ValueError:
            txn_type = None
    account_id = None
    if account_param:
        try:
            account_id = int(account_param)
        except ValueError:
            account_id = None
    return TransactionFilters(
        account_id=account_id,
        type=txn_type,
        category=request.query_params.get("category") or None,
        recurring_only=request.query_params.get("recurring") == "1",
    )


class DefaultFlagIn(BaseModel):
    is_default: bool


@app.put("/profile")
def upsert_profile(data: UserIn, db: Session = Depends(get_db)):
    user = UserService(db).upsert(data)
    return {"id": user.id, "email": user.email, "name": user.name}


@app.get("/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(data)


@app.post("/accounts/{account_id}/default", response_model=AccountOut)
def update_default_account(
    account_id: int, data: DefaultFlagIn, db: Session = Depends(get_db)
):
    service = AccountService(db)
    if data.is_default:
        return service.set_default(account_id)
    service.unset_default(account_id)
    return service.get(account_id)


@app.post("/accounts/{account_id}/reconcile")
def reconcile_account(
    account_id: int, repair: bool = False, db: Session = Depends(get_db)
):
    result = AccountService(db).reconcile(account_id, repair=repair)
    return {
        "account_id": result.account_id,
        "cached_cents": result.cached_cents,
        "computed_cents": result.computed_cents,
        "drift_cents": result.drift_cents,
        "repaired": result.repaired,
    }


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    request: Request,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    return TransactionService(db).list(
        period_from_request(request),
        filters_from_request(request),
        limit=min(max(limit, 1), 500),
        offset=max(offset, 0),
    )


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return TransactionService(db).create(data)


@app.get("/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    transactions = TransactionService(db).list(
        period, filters_from_request(request), limit=100_000
    )
    csv_text = export_transactions(transactions)
    filename = f"transactions_{period.start}_{period.end}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/transactions/bulk-delete")
def bulk_delete_transactions(data: BulkDeleteIn, db: Session = Depends(get_db)):
    deleted = TransactionService(db).bulk_delete(data.transaction_ids)
    return {"deleted": deleted}


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).get(transaction_id)


@app.put("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    return TransactionService(db).update(transaction_id, data)


@app.get(
    "/transactions/{transaction_id}/occurrences",
    response_model=list[TransactionOut],
)
def list_occurrences(transaction_id: int, db: Session = Depends(get_db)):
    return TransactionService(db).occurrences_of(transaction_id)


@app.get("/budget")
def get_budget(today: Optional[date] = None, db: Session = Depends(get_db)):
    service = BudgetService(db)
    budget = service.get()
    return {
        "id": budget.id if budget else None,
        "last_alert_sent": budget.last_alert_sent if budget else None,
        **service.progress_for_month(today),
    }


@app.put("/budget")
def upsert_budget(data: BudgetIn, db: Session = Depends(get_db)):
    budget = BudgetService(db).upsert(data)
    return {"id": budget.id, "amount_cents": budget.amount_cents}


@app.post("/recurring/process")
def process_recurring_event(data: RecurringEventIn):
    item = WorkItem(template_id=data.template_id, user_id=data.user_id)
    report = scheduler_manager.dispatcher.dispatch([item])
    if report.deferred:
        raise RateLimited("Too many recurring events for this user, retry later")
    if report.failed:
        raise DownstreamUnavailable("Recurring event failed, retry later")
    outcome = "materialized" if report.materialized else "skipped"
    return {"template_id": item.template_id, "outcome": outcome}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
