from datetime import date
from typing import Callable, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from sqlalchemy.orm import Session

from analytics import AnalyticsService, build_dashboard
from database import SessionLocal, session_scope
from models import AccountType, CategoryType, TransactionType
from scheduler import SchedulerManager
from schemas import (
    AccountBalanceIn,
    AccountIn,
    AccountOut,
    AccountPatch,
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    CategoryIn,
    CategoryOut,
    GoalIn,
    GoalOut,
    GoalPatch,
    GoalProgressIn,
    TransactionIn,
    TransactionOut,
    TransactionPage,
    TransactionPatch,
    TransactionQuery,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ForbiddenError,
    GoalService,
    NotFoundError,
    TransactionService,
    ensure_default_categories,
)


app = FastAPI(title="Finance Tracker")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def current_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        ensure_default_categories(session)
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


# Accounts


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    payload: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).create(payload)


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AccountService(db, user_id).list_all()


@app.get("/api/accounts/summary")
def account_summary(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AccountService(db, user_id).summary()


@app.get("/api/accounts/net-worth")
def account_net_worth(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return {"net_worth_cents": AccountService(db, user_id).net_worth()}


@app.get("/api/accounts/type/{account_type}", response_model=list[AccountOut])
def accounts_by_type(
    account_type: AccountType,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return AccountService(db, user_id).list_by_type(account_type)


@app.post("/api/accounts/reconcile")
def reconcile_accounts(
    repair: bool = False,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    drifted = AccountService(db, user_id).reconcile(repair=repair)
    return {"repaired": repair, "drifted": drifted}


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(
    account_id: int,
    payload: AccountPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/accounts/{account_id}/balance", response_model=AccountOut)
def set_account_balance(
    account_id: int,
    payload: AccountBalanceIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).set_balance(
            account_id, payload.balance_cents
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        AccountService(db, user_id).remove(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Categories


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    type: Optional[CategoryType] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).list_all(type)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(
    payload: CategoryIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return CategoryService(db, user_id).create(payload)


# Transactions


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    payload: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/transactions", response_model=TransactionPage)
def list_transactions(
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    account_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    min_amount_cents: Optional[int] = None,
    max_amount_cents: Optional[int] = None,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=500),
    sort_by: str = "date",
    sort_order: str = "desc",
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    query = TransactionQuery(
        type=type,
        category_id=category_id,
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        search=search,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order="asc" if sort_order.lower() == "asc" else "desc",
    )
    return TransactionService(db, user_id).list(query)


@app.get("/api/transactions/summary")
def transaction_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    type: Optional[TransactionType] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return TransactionService(db, user_id).summary(start_date, end_date, type)


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return TransactionService(db, user_id).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user_id).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Budgets


@app.post("/api/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    payload: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/budgets", response_model=list[BudgetOut])
def list_budgets(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return BudgetService(db, user_id).list_all()


@app.get("/api/budgets/summary")
def budget_summary(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return BudgetService(db, user_id).summary()


@app.get("/api/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, user_id).get(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, user_id).update(budget_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user_id).remove(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Goals


@app.post("/api/goals", response_model=GoalOut, status_code=201)
def create_goal(
    payload: GoalIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return GoalService(db, user_id).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/goals", response_model=list[GoalOut])
def list_goals(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return GoalService(db, user_id).list_all()


@app.get("/api/goals/summary")
def goal_summary(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return GoalService(db, user_id).summary()


@app.get("/api/goals/{goal_id}", response_model=GoalOut)
def get_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return GoalService(db, user_id).get(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    payload: GoalPatch,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return GoalService(db, user_id).update(goal_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch("/api/goals/{goal_id}/progress", response_model=GoalOut)
def update_goal_progress(
    goal_id: int,
    payload: GoalProgressIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return GoalService(db, user_id).update_progress(
            goal_id, payload.current_amount_cents
        )
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete("/api/goals/{goal_id}", status_code=204)
def delete_goal(
    goal_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        GoalService(db, user_id).remove(goal_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Analytics


@app.get("/api/analytics/health-metrics")
def analytics_health_metrics(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).health_metrics()


@app.get("/api/analytics/expense-analysis")
def analytics_expense_analysis(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AnalyticsService(db, user_id).expense_analysis(start_date, end_date)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/analytics/income-analysis")
def analytics_income_analysis(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AnalyticsService(db, user_id).income_analysis(start_date, end_date)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/analytics/budget-analysis")
def analytics_budget_analysis(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    return AnalyticsService(db, user_id).budget_analysis()


@app.get("/api/analytics/dashboard")
async def analytics_dashboard(
    user_id: int = Depends(current_user_id),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    return await build_dashboard(session_factory, user_id)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
