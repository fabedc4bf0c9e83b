import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import SessionLocal
from models import TransactionType
from periods import Period, local_today, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountUpdate,
    BalanceIn,
    BillKeyIn,
    BillOut,
    BillStatusIn,
    BillUpdate,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    HybridAccountIn,
    PayBillIn,
    TransactionIn,
    TransactionOut,
    TransactionUpdate,
)
from services import (
    AccountService,
    AnalyticsService,
    BillService,
    CategoryService,
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    PartialWorkflowFailure,
    PaymentService,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
    rebuild_balances,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Personal Ledger")


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


def _status_for(exc: LedgerError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, InsufficientFundsError):
        return 409
    if isinstance(exc, PartialWorkflowFailure):
        return 500
    return 400


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.info(f"ledger_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=_status_for(exc),
        content={
            "ok": False,
            "error": str(exc),
            "partial": isinstance(exc, PartialWorkflowFailure),
        },
    )


def period_from_request(request: Request) -> Optional[Period]:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _int_param(request: Request, name: str) -> Optional[int]:
    raw = request.query_params.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def filters_from_request(request: Request) -> TransactionFilters:
    type_param = request.query_params.get("type")
    txn_type = None
    if type_param:
        try:
            txn_type = TransactionType(type_param.upper())
        except ValueError:
            txn_type = None
    return TransactionFilters(
        type=txn_type,
        account_id=_int_param(request, "account"),
        bill_id=_int_param(request, "bill"),
        category_id=_int_param(request, "category"),
        query=request.query_params.get("q"),
    )


def _dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(mode="json")


# accounts


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    accounts = AccountService(db).list_all()
    return {"items": [_dump(AccountOut, a) for a in accounts]}


@app.post("/api/accounts", status_code=201)
def api_create_account(data: AccountIn, db: Session = Depends(get_db)):
    account = AccountService(db).create(data)
    return {"ok": True, "account": _dump(AccountOut, account)}


@app.post("/api/accounts/hybrid", status_code=201)
def api_create_hybrid_account(data: HybridAccountIn, db: Session = Depends(get_db)):
    checking, card = AccountService(db).create_hybrid(data)
    return {
        "ok": True,
        "accounts": [_dump(AccountOut, checking), _dump(AccountOut, card)],
    }


@app.post("/api/accounts/rebuild-balances")
def api_rebuild_balances(db: Session = Depends(get_db)):
    rebuild_balances(db, get_current_user_id())
    return {"ok": True}


@app.patch("/api/accounts/{account_id}")
def api_update_account(
    account_id: int, data: AccountUpdate, db: Session = Depends(get_db)
):
    account = AccountService(db).update(account_id, data)
    return {"ok": True, "account": _dump(AccountOut, account)}


@app.put("/api/accounts/{account_id}/balance")
def api_set_balance(account_id: int, data: BalanceIn, db: Session = Depends(get_db)):
    account = AccountService(db).set_balance(account_id, data.balance_cents)
    return {"ok": True, "account": _dump(AccountOut, account)}


@app.delete("/api/accounts/{account_id}")
def api_delete_account(account_id: int, db: Session = Depends(get_db)):
    AccountService(db).delete(account_id)
    return {"ok": True}


# categories


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    categories = CategoryService(db).list_all()
    return {"items": [_dump(CategoryOut, c) for c in categories]}


@app.post("/api/categories", status_code=201)
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    category = CategoryService(db).create(data)
    return {"ok": True, "category": _dump(CategoryOut, category)}


@app.patch("/api/categories/{category_id}")
def api_update_category(
    category_id: int, data: CategoryUpdate, db: Session = Depends(get_db)
):
    category = CategoryService(db).update(category_id, data)
    return {"ok": True, "category": _dump(CategoryOut, category)}


@app.delete("/api/categories/{category_id}")
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)
    return {"ok": True}


# bills


@app.get("/api/bills")
def api_bills(db: Session = Depends(get_db)):
    bills = BillService(db).list_all()
    return {"items": [_dump(BillOut, b) for b in bills]}


@app.post("/api/bills")
def api_get_or_create_bill(data: BillKeyIn, db: Session = Depends(get_db)):
    bill = BillService(db).get_or_create(data.account_id, data.month, data.year)
    return {"ok": True, "bill": _dump(BillOut, bill)}


@app.patch("/api/bills/{bill_id}")
def api_update_bill(bill_id: int, data: BillUpdate, db: Session = Depends(get_db)):
    bill = BillService(db).update(bill_id, data)
    return {"ok": True, "bill": _dump(BillOut, bill)}


@app.put("/api/bills/{bill_id}/status")
def api_update_bill_status(
    bill_id: int, data: BillStatusIn, db: Session = Depends(get_db)
):
    bill = BillService(db).update_status(bill_id, data.status)
    return {"ok": True, "bill": _dump(BillOut, bill)}


@app.delete("/api/bills/{bill_id}")
def api_delete_bill(bill_id: int, db: Session = Depends(get_db)):
    BillService(db).delete(bill_id)
    return {"ok": True}


@app.post("/api/bills/{bill_id}/pay")
def api_pay_bill(bill_id: int, data: PayBillIn, db: Session = Depends(get_db)):
    transfer = PaymentService(db).pay_bill(bill_id, data.source_account_id)
    return {"ok": True, "transfer": _dump(TransactionOut, transfer)}


@app.post("/api/bills/{bill_id}/revert")
def api_revert_bill_payment(bill_id: int, db: Session = Depends(get_db)):
    bill = PaymentService(db).revert_bill_payment(bill_id)
    return {"ok": True, "bill": _dump(BillOut, bill)}


# transactions


@app.get("/api/transactions")
def api_transactions(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    filters = filters_from_request(request)
    page = max(_int_param(request, "page") or 1, 1)
    limit = _int_param(request, "limit") or 50
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    items = TransactionService(db).list(
        filters, period, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]

    return {
        "items": [_dump(TransactionOut, txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    txn = TransactionService(db).create(data)
    return {"ok": True, "transaction": _dump(TransactionOut, txn)}


@app.patch("/api/transactions/{transaction_id}")
def api_update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    txn = TransactionService(db).update(transaction_id, data)
    return {"ok": True, "transaction": _dump(TransactionOut, txn)}


@app.delete("/api/transactions/{transaction_id}")
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return {"ok": True}


# analytics


@app.get("/api/analytics")
def api_analytics(db: Session = Depends(get_db)):
    return AnalyticsService(db).overview(local_today())


@app.get("/api/forecast")
def api_forecast(db: Session = Depends(get_db)):
    return AnalyticsService(db).forecast(local_today())
