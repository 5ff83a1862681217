import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import get_settings
from db.db import get_conn
from db.store import PostgresStore
from distribution_engine import (
    distribute_for_all_sold_plots,
    distribute_for_plot,
    projected_commission_wallet,
    recalculate_for_plot,
    record_payment,
    reverse_plot_financials,
)
from errors import InvalidStateError, NotFoundError, StoreFailure
from upline_engine import assign_upline

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version="0.1.0")

# CORS middleware to allow the CRM frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_store():
    """
    one connection per request; commit when the handler finished,
    roll back if it raised.
    """
    with get_conn() as conn:
        try:
            yield PostgresStore(conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise


# ---------
# pydantic models (requests)
# ---------


class RecalculateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plot_id: str = Field(..., alias="plotId", description="Plot to recalculate commission for")


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal = Field(..., gt=0, description="Amount received")
    payment_date: Optional[date] = Field(None, alias="paymentDate")
    note: Optional[str] = Field(None, description="Free-text note")


class UplineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    upline_id: str = Field(..., alias="uplineId", description="Profile that sponsors this one")


class ReverseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_status: Optional[Literal["available", "booked", "sold"]] = Field(None, alias="newStatus")


# ---------
# response helpers
# ---------


# configured rates keep their full precision (0.125 must not become 0.13)
RATE_FIELDS = frozenset({"rate", "percentage"})


def _jsonable(value: Any) -> Any:
    """money decimals as 2-dp strings, dates as ISO 8601."""
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {
            k: str(v) if k in RATE_FIELDS and isinstance(v, Decimal) else _jsonable(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _ok(message: str, data: Any = None) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": _jsonable(data)}


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "data": None},
    )


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, NotFoundError):
        return _fail(404, str(e))
    if isinstance(e, InvalidStateError):
        return _fail(400, str(e))
    if isinstance(e, StoreFailure):
        logger.error("store failure: %s", e)
        return _fail(503, "Storage temporarily unavailable")
    logger.exception("unexpected error")
    return _fail(500, "Internal server error")


# ---------
# endpoints
# ---------


@app.post("/api/recalculate-commission")
def recalculate_commission(payload: RecalculateRequest, store=Depends(get_store)):
    """
    recalculate one plot's commission in place (wallets move by the delta,
    original timestamps are kept).
    """
    try:
        result = recalculate_for_plot(store, payload.plot_id)
    except Exception as e:
        return _error_response(e)

    return _ok(f"Commission recalculated for plot {payload.plot_id}", result)


@app.get("/api/recalculate-commission")
def recalculate_all_commissions(
    recalculate: bool = Query(
        False,
        description="Force recalculation of every sold plot instead of distributing pending ones",
    ),
    store=Depends(get_store),
):
    """
    batch run over all sold plots. per-plot failures are reported in the
    summary, they do not fail the request.
    """
    try:
        summary = distribute_for_all_sold_plots(store, recalculate=recalculate)
    except Exception as e:
        return _error_response(e)

    message = (
        f"Processed {summary['processed']} plots "
        f"({summary['skipped']} already paid, {summary['failed']} failed). "
        f"Total commission distributed: {summary['total_distributed']:.2f}"
    )
    return _ok(message, summary)


@app.post("/api/plots/{plot_id}/distribute")
def distribute_commission(plot_id: str, store=Depends(get_store)):
    try:
        result = distribute_for_plot(store, plot_id)
    except Exception as e:
        return _error_response(e)

    if result["status"] == "already_paid":
        return _ok(f"Commission already paid for plot {plot_id}", result)
    return _ok(f"Commission distributed for plot {plot_id}", result)


@app.post("/api/plots/{plot_id}/payments")
def add_payment(plot_id: str, payload: PaymentRequest, store=Depends(get_store)):
    """
    record a payment against a booked plot; crossing the threshold
    distributes commission, reaching 100% marks the plot sold.
    """
    try:
        result = record_payment(
            store,
            plot_id,
            payload.amount,
            payment_date=payload.payment_date,
            note=payload.note,
        )
    except Exception as e:
        return _error_response(e)

    return _ok(f"Payment recorded, plot {plot_id} is {result['paid_percentage']:.2f}% paid", result)


@app.post("/api/plots/{plot_id}/reverse")
def reverse_plot(plot_id: str, payload: Optional[ReverseRequest] = None, store=Depends(get_store)):
    try:
        result = reverse_plot_financials(
            store, plot_id, new_status=payload.new_status if payload else None
        )
    except Exception as e:
        return _error_response(e)

    return _ok(f"Financials reversed for plot {plot_id}", result)


@app.post("/api/profiles/{profile_id}/upline")
def link_upline(profile_id: str, payload: UplineRequest, store=Depends(get_store)):
    try:
        result = assign_upline(store, profile_id, payload.upline_id)
    except Exception as e:
        return _error_response(e)

    return _ok(f"Profile {profile_id} linked under {payload.upline_id}", result)


@app.get("/api/brokers/{broker_id}/projected-commission")
def projected_commission(broker_id: str, store=Depends(get_store)):
    try:
        result = projected_commission_wallet(store, broker_id)
    except Exception as e:
        return _error_response(e)

    return _ok(f"{result['total_plots']} booked plots below threshold", result)


@app.get("/api/brokers/{broker_id}/commissions")
def broker_commissions(broker_id: str, store=Depends(get_store)):
    try:
        rows = store.list_commissions(receiver_id=broker_id)
    except Exception as e:
        return _error_response(e)

    return _ok(f"{len(rows)} commission records", {"broker_id": broker_id, "commissions": rows})


@app.get("/api/brokers/{broker_id}/transactions")
def broker_transactions(broker_id: str, store=Depends(get_store)):
    """
    the broker's wallet ledger, oldest first. reversed credits are listed
    next to the debit rows that undid them.
    """
    try:
        if store.get_profile(broker_id) is None:
            raise NotFoundError(f"Profile {broker_id} not found")
        rows = store.list_transactions(wallet_id=broker_id, include_reversed=True)
    except Exception as e:
        return _error_response(e)

    return _ok(f"{len(rows)} transactions", {"broker_id": broker_id, "transactions": rows})


@app.get("/api/plots/{plot_id}/payments")
def plot_payments(plot_id: str, store=Depends(get_store)):
    try:
        plot = store.get_plot(plot_id)
        if plot is None:
            raise NotFoundError(f"Plot {plot_id} not found")
        rows = store.list_payments(plot_id)
    except Exception as e:
        return _error_response(e)

    return _ok(
        f"{len(rows)} payments",
        {
            "plot_id": plot_id,
            "total_price": plot.get("total_price"),
            "total_paid": sum((Decimal(str(p["amount"])) for p in rows), Decimal("0")),
            "payments": rows,
        },
    )


@app.get("/api/wallets/{owner_id}")
def wallet(owner_id: str, store=Depends(get_store)):
    """
    wallet balances for a profile; a profile that never earned anything
    gets an all-zero wallet.
    """
    try:
        row = store.get_wallet(owner_id)
        if row is None:
            if store.get_profile(owner_id) is None:
                raise NotFoundError(f"Profile {owner_id} not found")
            row = {
                "owner_id": owner_id,
                "direct_sale_balance": Decimal("0"),
                "downline_sale_balance": Decimal("0"),
                "total_balance": Decimal("0"),
            }
    except Exception as e:
        return _error_response(e)

    return _ok("Wallet found", row)
