import logging
from typing import Optional, Type, TypeVar

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from errors import BudgetNotFound, ErrorKind, LedgerError
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetListQuery,
    BudgetUpsertOut,
    DashboardOut,
    ExpenseCategoryOut,
    ExpenseIn,
    ExpenseListQuery,
    ExpenseOut,
    ExpenseUpdate,
    MonthBudgetOut,
    PageOut,
    PaginationOut,
    StashDetailsOut,
    StashIn,
    StashListQuery,
    StashOut,
    StashTransactionOut,
    TransactionIn,
    TransactionListQuery,
)
from services import (
    BudgetService,
    CategoryService,
    DashboardService,
    ExpenseService,
    Page,
    StashService,
    TransactionService,
)

logger = logging.getLogger(__name__)

Q = TypeVar("Q", bound=BaseModel)

STATUS_BY_KIND = {
    ErrorKind.not_found: 404,
    ErrorKind.validation: 400,
    ErrorKind.conflict: 409,
    ErrorKind.insufficient_balance: 422,
    ErrorKind.unprocessable: 422,
    ErrorKind.internal: 500,
}

app = FastAPI(title="Stashbook")


@app.exception_handler(LedgerError)
async def ledger_error_handler(_request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, 500),
        content={"error": exc.kind.value, "detail": exc.message},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": ErrorKind.validation.value,
            "detail": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                for err in exc.errors()
            ],
        },
    )


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id.strip()


def query_from_request(request: Request, model: Type[Q]) -> Q:
    try:
        return model.model_validate(dict(request.query_params))
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail=[
                {"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()
            ],
        ) from exc


def page_out(page: Page, item_model: Type[BaseModel]) -> dict[str, object]:
    return {
        "data": [item_model.model_validate(item) for item in page.items],
        "pagination": PaginationOut(page=page.page, limit=page.limit, total=page.total),
    }


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().reconcile_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/stashes", response_model=PageOut[StashOut])
def api_list_stashes(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    query = query_from_request(request, StashListQuery)
    return page_out(StashService(db, user_id).list(query), StashOut)


@app.post("/api/stashes", response_model=StashOut, status_code=201)
def api_create_stash(
    payload: StashIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return StashService(db, user_id).create(payload)


@app.get("/api/stashes/{stash_id}", response_model=StashDetailsOut)
def api_get_stash(
    stash_id: str,
    include_transactions: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    details = StashService(db, user_id).get(
        stash_id, include_transactions=include_transactions
    )
    transactions = None
    if details.transactions is not None:
        transactions = [
            StashTransactionOut.model_validate(txn) for txn in details.transactions
        ]
    return StashDetailsOut(
        **StashOut.model_validate(details.stash).model_dump(),
        transactions=transactions,
    )


@app.put("/api/stashes/{stash_id}", response_model=StashOut)
def api_rename_stash(
    stash_id: str,
    payload: StashIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return StashService(db, user_id).rename(stash_id, payload)


@app.delete("/api/stashes/{stash_id}", status_code=204)
def api_delete_stash(
    stash_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    StashService(db, user_id).soft_delete(stash_id)
    return Response(status_code=204)


@app.get(
    "/api/stashes/{stash_id}/transactions",
    response_model=PageOut[StashTransactionOut],
)
def api_list_transactions(
    stash_id: str,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    query = query_from_request(request, TransactionListQuery)
    page = TransactionService(db, user_id).list(stash_id, query)
    return page_out(page, StashTransactionOut)


@app.post(
    "/api/stashes/{stash_id}/transactions",
    response_model=StashTransactionOut,
    status_code=201,
)
def api_create_transaction(
    stash_id: str,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return TransactionService(db, user_id).create(stash_id, payload)


@app.delete("/api/stashes/{stash_id}/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    stash_id: str,
    transaction_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    TransactionService(db, user_id).soft_delete(stash_id, transaction_id)
    return Response(status_code=204)


@app.get("/api/month-budgets", response_model=PageOut[MonthBudgetOut])
def api_list_budgets(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    query = query_from_request(request, BudgetListQuery)
    return page_out(BudgetService(db, user_id).list(query), MonthBudgetOut)


@app.get("/api/month-budgets/{year_month}", response_model=MonthBudgetOut)
def api_get_budget(
    year_month: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    budget = BudgetService(db, user_id).get(year_month)
    if budget is None:
        raise BudgetNotFound()
    return budget


@app.put("/api/month-budgets/{year_month}", response_model=BudgetUpsertOut)
def api_upsert_budget(
    year_month: str,
    payload: BudgetIn,
    response: Response,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    result = BudgetService(db, user_id).upsert(year_month, payload)
    response.status_code = 201 if result.created else 200
    return BudgetUpsertOut(
        item=MonthBudgetOut.model_validate(result.item), created=result.created
    )


@app.get("/api/expenses", response_model=PageOut[ExpenseOut])
def api_list_expenses(
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    query = query_from_request(request, ExpenseListQuery)
    return page_out(ExpenseService(db, user_id).list(query), ExpenseOut)


@app.post("/api/expenses", response_model=ExpenseOut, status_code=201)
def api_create_expense(
    payload: ExpenseIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return ExpenseService(db, user_id).create(payload)


@app.get("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_get_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return ExpenseService(db, user_id).get(expense_id)


@app.patch("/api/expenses/{expense_id}", response_model=ExpenseOut)
def api_update_expense(
    expense_id: str,
    payload: ExpenseUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return ExpenseService(db, user_id).update(expense_id, payload)


@app.delete("/api/expenses/{expense_id}", status_code=204)
def api_delete_expense(
    expense_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    ExpenseService(db, user_id).soft_delete(expense_id)
    return Response(status_code=204)


@app.get("/api/expense-categories", response_model=list[ExpenseCategoryOut])
def api_list_categories(db: Session = Depends(get_db)):
    return CategoryService(db).list_all()


@app.get("/api/dashboard", response_model=DashboardOut)
def api_dashboard(
    year_month: Optional[str] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    summary = DashboardService(db, user_id).summary(year_month)
    return DashboardOut.model_validate(summary, from_attributes=True)
