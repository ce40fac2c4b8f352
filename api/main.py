"""FastAPI application for the BitTrade trading core.

This module provides the HTTP surface over the engines:
- GET /health - Liveness and storage connectivity
- /users/{user_id}/orders - Market and limit orders
- /users/{user_id}/loan - Collateral, borrow, repay, liquidation, status
- /users/{user_id}/dca-plans - Recurring buy/sell plans
- GET /users/{user_id}/dashboard - Balances, rates, loan and open orders
- /admin/... - Deposits, withdrawals, forced liquidation, order cancellation

Requirements:
- DATABASE_URL selects PostgreSQL storage (in-memory otherwise)
- No authentication; PIN/session checks belong to the caller
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Annotated, Any, AsyncIterator, Literal, Optional

from fastapi import FastAPI, HTTPException, Path, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.errors import (
    EngineError,
    InsufficientFunds,
    InvalidAmount,
    InvalidPlanState,
    InvariantViolation,
    LoanAlreadyActive,
    LoanNotFound,
    LtvExceeded,
    NoActiveLoan,
    OracleUnavailable,
    OrderNotCancellable,
    OrderNotFound,
    PlanNotFound,
    StalePrice,
)
from core.platform import Platform
from core.scheduling.runner import BackgroundScheduler
from core.types import OperationStatus

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[type[EngineError], int] = {
    InvalidAmount: 400,
    InsufficientFunds: 400,
    LtvExceeded: 400,
    OrderNotFound: 404,
    LoanNotFound: 404,
    NoActiveLoan: 404,
    PlanNotFound: 404,
    OrderNotCancellable: 409,
    LoanAlreadyActive: 409,
    InvalidPlanState: 409,
    StalePrice: 503,
    OracleUnavailable: 503,
    InvariantViolation: 500,
}

# Global platform instance (initialized lazily or injected by tests)
_platform: Platform | None = None

# Background scheduler, only when BITTRADE_RUN_SCHEDULERS is enabled
_scheduler: BackgroundScheduler | None = None


def _get_platform() -> Platform:
    """Get or initialize the platform singleton."""
    global _platform
    if _platform is None:
        _platform = Platform.from_env()
    return _platform


def set_platform(platform: Platform | None) -> None:
    """Replace the platform singleton (tests, embedding)."""
    global _platform
    _platform = platform


def _schedulers_enabled() -> bool:
    return os.environ.get("BITTRADE_RUN_SCHEDULERS", "false").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    global _scheduler
    if _schedulers_enabled():
        _scheduler = BackgroundScheduler(_get_platform())
        _scheduler.start()
    try:
        yield
    finally:
        if _scheduler is not None:
            await _scheduler.stop()
            _scheduler = None


app = FastAPI(
    title="BitTrade API",
    description="BTC/INR trading, DCA plans and BTC-backed loans",
    version="1.0.0",
    lifespan=lifespan,
)


def status_code_for(exc: EngineError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 400


@app.exception_handler(EngineError)
async def engine_error_handler(_request, exc: EngineError) -> JSONResponse:
    """Map engine errors to JSON with a stable `error` kind."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("Engine error: %s", exc.to_dict())
    body = exc.to_dict()
    if status_code == 500:
        # Internal state details stay in the logs.
        body = {"error": exc.kind, "message": "Internal ledger error"}
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(Exception)
async def global_exception_handler(_request, exc):
    """Global exception handler to ensure consistent error responses."""
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


# ---- Request models


class OrderRequest(BaseModel):
    """Request body for submitting an order."""

    type: str = Field(..., min_length=1, description="MARKET_BUY, MARKET_SELL, LIMIT_BUY or LIMIT_SELL")
    amount: int = Field(..., gt=0, description="INR for buys, satoshis for sells")
    limit_price: Optional[int] = Field(None, gt=0, description="INR per BTC (limit orders only)")


class AmountRequest(BaseModel):
    amount: int = Field(..., gt=0, description="INR (borrow/repay) or satoshis (collateral/liquidation)")


class DcaPlanRequest(BaseModel):
    plan_type: Literal["DCA_BUY", "DCA_SELL"]
    amount_per_execution: int = Field(..., gt=0)
    frequency: Literal["HOURLY", "DAILY", "WEEKLY", "MONTHLY"]
    total_executions: Optional[int] = Field(None, gt=0)
    max_price: Optional[int] = Field(None, gt=0)
    min_price: Optional[int] = Field(None, gt=0)


class FundingRequest(BaseModel):
    currency: Literal["INR", "BTC"]
    amount: int = Field(..., gt=0)
    note: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=200)


UserId = Annotated[int, Path(gt=0, description="User ID")]


# ---- Health


@app.get("/health")
def health() -> dict[str, Any]:
    """Health check endpoint.

    Raises:
        HTTPException: If the database is configured but unreachable.
    """
    platform = _get_platform()
    stores = platform.stores
    storage = type(stores).__name__
    database: dict[str, Any] = {"configured": hasattr(stores, "ping")}

    if database["configured"]:
        try:
            stores.ping()
            database["connected"] = True
        except Exception as e:
            raise HTTPException(
                status_code=503,
                detail={"status": "error", "database": {"connected": False, "error": str(e)}},
            ) from e

    return {
        "status": "ok",
        "storage": storage,
        "database": database,
        "config_version": platform.config.version,
        "schedulers_running": _scheduler is not None and _scheduler.running,
    }


# ---- Orders


@app.post("/users/{user_id}/orders")
def submit_order(request: OrderRequest, user_id: UserId) -> dict[str, Any]:
    """Submit a market or limit order."""
    operation = _get_platform().submit_order(user_id, request.type, request.amount, request.limit_price)
    return {"success": True, "order": operation.to_dict()}


@app.get("/users/{user_id}/orders")
def list_orders(
    user_id: UserId,
    status: Optional[Literal["PENDING", "EXECUTED", "CANCELLED", "EXPIRED"]] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    parsed = OperationStatus(status) if status else None
    orders = _get_platform().orders.list_orders(user_id, parsed, limit=limit)
    return {"orders": [o.to_dict() for o in orders]}


@app.delete("/users/{user_id}/orders/{operation_id}")
def cancel_order(
    user_id: UserId,
    operation_id: int = Path(..., gt=0),
    reason: Optional[str] = Query(None, max_length=200),
) -> dict[str, Any]:
    operation = _get_platform().cancel_order(user_id, operation_id, reason)
    return {"success": True, "order": operation.to_dict()}


@app.get("/users/{user_id}/operations")
def list_operations(
    user_id: UserId,
    type: Optional[str] = Query(None, description="Operation type filter"),
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    """Transaction history, newest first."""
    try:
        operations = _get_platform().list_operations(user_id, op_type=type, limit=limit)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "validation_error", "message": f"Unknown operation type: {type}"},
        ) from e
    return {"operations": [o.to_dict() for o in operations]}


# ---- Loans


@app.post("/users/{user_id}/loan/collateral")
def deposit_collateral(request: AmountRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.deposit_collateral(user_id, request.amount)
    return {"success": True, "loan": loan.to_dict()}


@app.post("/users/{user_id}/loan/add-collateral")
def add_collateral(request: AmountRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.add_collateral(user_id, request.amount)
    return {"success": True, "loan": loan.to_dict()}


@app.post("/users/{user_id}/loan/borrow")
def borrow(request: AmountRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.borrow(user_id, request.amount)
    return {"success": True, "loan": loan.to_dict()}


@app.post("/users/{user_id}/loan/repay")
def repay(request: AmountRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.repay(user_id, request.amount)
    return {"success": True, "loan": loan.to_dict()}


@app.post("/users/{user_id}/loan/partial-liquidation")
def partial_liquidation(request: AmountRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.partial_liquidate(user_id, request.amount)
    return {"success": True, "loan": loan.to_dict()}


@app.get("/users/{user_id}/loan")
def loan_status(user_id: UserId) -> dict[str, Any]:
    return _get_platform().loans.get_loan_status(user_id)


@app.get("/users/{user_id}/loan/history")
def loan_history(user_id: UserId, loan_id: Optional[int] = Query(None, gt=0)) -> dict[str, Any]:
    operations = _get_platform().loans.get_loan_history(user_id, loan_id)
    return {"operations": [o.to_dict() for o in operations]}


# ---- Dashboard


@app.get("/users/{user_id}/dashboard")
def dashboard(user_id: UserId) -> dict[str, Any]:
    return _get_platform().get_dashboard(user_id)


# ---- DCA plans


@app.get("/users/{user_id}/dca-plans")
def list_dca_plans(user_id: UserId) -> dict[str, Any]:
    plans = _get_platform().dca.get_plans(user_id)
    return {"plans": [p.to_dict() for p in plans]}


@app.post("/users/{user_id}/dca-plans")
def create_dca_plan(request: DcaPlanRequest, user_id: UserId) -> dict[str, Any]:
    plan = _get_platform().dca.create_plan(
        user_id,
        request.plan_type,
        request.amount_per_execution,
        request.frequency,
        total_executions=request.total_executions,
        max_price=request.max_price,
        min_price=request.min_price,
    )
    return {"success": True, "plan": plan.to_dict()}


@app.patch("/users/{user_id}/dca-plans/{plan_id}/pause")
def pause_dca_plan(user_id: UserId, plan_id: int = Path(..., gt=0)) -> dict[str, Any]:
    plan = _get_platform().dca.pause_plan(user_id, plan_id)
    return {"success": True, "plan": plan.to_dict()}


@app.patch("/users/{user_id}/dca-plans/{plan_id}/resume")
def resume_dca_plan(user_id: UserId, plan_id: int = Path(..., gt=0)) -> dict[str, Any]:
    plan = _get_platform().dca.resume_plan(user_id, plan_id)
    return {"success": True, "plan": plan.to_dict()}


@app.delete("/users/{user_id}/dca-plans/{plan_id}")
def delete_dca_plan(user_id: UserId, plan_id: int = Path(..., gt=0)) -> dict[str, Any]:
    plan = _get_platform().dca.delete_plan(user_id, plan_id)
    return {"success": True, "plan": plan.to_dict()}


# ---- Admin


@app.post("/admin/users/{user_id}/deposit")
def admin_deposit(request: FundingRequest, user_id: UserId) -> dict[str, Any]:
    operation = _get_platform().deposit(user_id, request.currency, request.amount, note=request.note)
    return {"success": True, "operation": operation.to_dict()}


@app.post("/admin/users/{user_id}/withdraw")
def admin_withdraw(request: FundingRequest, user_id: UserId) -> dict[str, Any]:
    operation = _get_platform().withdraw(user_id, request.currency, request.amount, note=request.note)
    return {"success": True, "operation": operation.to_dict()}


@app.post("/admin/users/{user_id}/loan/liquidate")
def admin_liquidate(request: ReasonRequest, user_id: UserId) -> dict[str, Any]:
    loan = _get_platform().loans.full_liquidate(user_id, reason=request.reason or "admin")
    return {"success": True, "loan": loan.to_dict()}


@app.post("/admin/orders/{operation_id}/cancel")
def admin_cancel_order(request: ReasonRequest, operation_id: int = Path(..., gt=0)) -> dict[str, Any]:
    operation = _get_platform().admin_cancel_order(operation_id, request.reason)
    return {"success": True, "order": operation.to_dict()}


@app.get("/admin/users/{user_id}/ledger")
def admin_ledger(user_id: UserId) -> dict[str, Any]:
    """Balance next to event-replayed totals (conservation check)."""
    ledger = _get_platform().ledger
    balance = ledger.get_balance(user_id)
    totals = {"INR": ledger.ledger_total(user_id, "INR"), "BTC": ledger.ledger_total(user_id, "BTC")}
    return {
        "balance": balance.to_dict(),
        "ledger_totals": totals,
        "consistent": totals["INR"] == balance.inr_balance and totals["BTC"] == balance.btc_balance,
        "events": len(ledger.events(user_id)),
    }
