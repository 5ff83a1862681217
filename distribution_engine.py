import logging
from datetime import date
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, Optional

from commission_engine import compute_distribution
from config import Settings, get_settings
from errors import CommissionError, InvalidStateError, NotFoundError
from ledger import MODE_INITIAL, MODE_RECALCULATE, apply_distribution, reverse_distribution
from rate_policy import SALE_TYPE_SOLD, CommissionRates, commission_breakdown
from upline_engine import resolve_chain

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "available"
STATUS_BOOKED = "booked"
STATUS_SOLD = "sold"

COMMISSION_PENDING = "pending"
COMMISSION_PAID = "paid"

HUNDRED = Decimal("100")
ZERO = Decimal("0")


def _decimal(value) -> Decimal:
    if value is None or value == "":
        return ZERO
    return Decimal(str(value))


def _load_plot(store, plot_id, for_update: bool = False) -> Dict[str, Any]:
    plot = store.get_plot(plot_id, for_update=for_update)
    if plot is None:
        raise NotFoundError(f"Plot {plot_id} not found")
    return plot


def _policy(settings: Optional[Settings], rates: Optional[CommissionRates]):
    settings = settings or get_settings()
    return settings, rates or CommissionRates.from_settings(settings)


def is_commission_eligible(plot: Dict[str, Any], threshold: Decimal) -> bool:
    """sold plots, or booked plots paid at or above the threshold (inclusive)."""
    status = (plot.get("status") or "").lower()
    if status == STATUS_SOLD:
        return True
    return status == STATUS_BOOKED and _decimal(plot.get("paid_percentage")) >= threshold


def _prepare_distribution(store, plot, settings: Settings, rates: CommissionRates):
    """
    validate the plot, resolve the seller's chain and compute the
    sold-mode distribution. area rates never reach the ledger.
    """
    broker_id = plot.get("broker_id")
    if not broker_id:
        raise InvalidStateError(f"Plot {plot['id']} has no broker/seller set")

    sale_amount = _decimal(plot.get("total_price"))
    if sale_amount <= 0:
        raise InvalidStateError(f"Plot {plot['id']} has no sale amount")

    chain = resolve_chain(store, broker_id, max_depth=settings.MAX_UPLINE_DEPTH)
    if not chain:
        raise NotFoundError(f"Seller profile {broker_id} not found for plot {plot['id']}")

    sale_context = {
        "sale_type": SALE_TYPE_SOLD,
        "sale_amount": sale_amount,
        "area": plot.get("area"),
    }
    distribution = compute_distribution(sale_context, chain, rates)
    return chain, distribution


def distribute_for_plot(
    store,
    plot_id,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    distribute commission for one plot.

    returns {"status": "applied", ...apply result} or
            {"status": "already_paid", ...} when commission was paid before.
    raises NotFoundError / InvalidStateError for plots that cannot be processed.
    """
    settings, rates = _policy(settings, rates)

    with store.transaction():
        plot = _load_plot(store, plot_id, for_update=True)

        # 1) idempotency: a paid plot is only touched by recalculation
        if plot.get("commission_status") == COMMISSION_PAID:
            return {
                "status": "already_paid",
                "plot_id": plot_id,
                "total_distributed": ZERO,
                "credited": [],
                "skipped": [],
                "warnings": [],
            }

        # 2) eligibility
        if not is_commission_eligible(plot, settings.COMMISSION_THRESHOLD):
            raise InvalidStateError(
                f"Plot {plot_id} is not eligible for commission "
                f"(status={plot.get('status')}, paid={plot.get('paid_percentage')}%)"
            )

        # 3) chain + amounts, 4) ledger
        chain, distribution = _prepare_distribution(store, plot, settings, rates)
        result = apply_distribution(
            store, plot, distribution, MODE_INITIAL, seller_name=chain[0]["name"]
        )

    return {"status": "applied", **result}


def recalculate_for_plot(
    store,
    plot_id,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    recompute the plot's commission from its current data and re-apply it
    in place, whatever its commission_status. wallets move by the delta only
    and original timestamps survive.
    """
    settings, rates = _policy(settings, rates)

    with store.transaction():
        plot = _load_plot(store, plot_id, for_update=True)
        if not is_commission_eligible(plot, settings.COMMISSION_THRESHOLD):
            raise InvalidStateError(
                f"Plot {plot_id} is not eligible for commission "
                f"(status={plot.get('status')}, paid={plot.get('paid_percentage')}%)"
            )

        chain, distribution = _prepare_distribution(store, plot, settings, rates)
        result = apply_distribution(
            store, plot, distribution, MODE_RECALCULATE, seller_name=chain[0]["name"]
        )

    return {"status": "recalculated", **result}


def distribute_for_all_sold_plots(
    store,
    recalculate: bool = False,
    should_stop: Optional[Callable[[], bool]] = None,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    run the single-plot path for every sold plot, one transaction each.
    a failing plot is recorded and the loop moves on. `should_stop` is
    checked between plots (the current plot always finishes).
    """
    settings, rates = _policy(settings, rates)
    handler = recalculate_for_plot if recalculate else distribute_for_plot

    summary: Dict[str, Any] = {
        "processed": 0,
        "skipped": 0,
        "failed": 0,
        "total_distributed": ZERO,
        "partial": [],
        "errors": [],
        "cancelled": False,
    }

    plots = store.list_plots(status=STATUS_SOLD)
    logger.info("batch commission run over %d sold plots (recalculate=%s)", len(plots), recalculate)

    for plot in plots:
        if should_stop is not None and should_stop():
            summary["cancelled"] = True
            logger.info("batch commission run cancelled after %d plots", summary["processed"])
            break

        try:
            result = handler(store, plot["id"], settings=settings, rates=rates)
        except CommissionError as e:
            summary["failed"] += 1
            summary["errors"].append({"plot_id": plot["id"], "error": str(e)})
            logger.warning("commission failed for plot %s: %s", plot["id"], e)
            continue
        except Exception as e:
            summary["failed"] += 1
            summary["errors"].append({"plot_id": plot["id"], "error": str(e)})
            logger.exception("unexpected error distributing commission for plot %s", plot["id"])
            continue

        if result["status"] == "already_paid":
            summary["skipped"] += 1
            continue

        summary["processed"] += 1
        summary["total_distributed"] += result["total_distributed"]
        if result["skipped"]:
            summary["partial"].append(
                {"plot_id": plot["id"], "skipped": result["skipped"]}
            )

    logger.info(
        "batch commission run done: %d processed, %d skipped, %d failed, total %s",
        summary["processed"],
        summary["skipped"],
        summary["failed"],
        summary["total_distributed"],
    )
    return summary


def on_payment_recorded(
    store,
    plot_id,
    paid_percentage,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    threshold checks after a payment changed the plot's paid percentage.

      booked, pending, paid < threshold   -> nothing (projection only)
      booked, pending, paid >= threshold  -> distribute, stays booked
      booked, paid >= 100                 -> status becomes sold

    a failed distribution is logged and reported but does not undo the
    payment; the plot stays pending for the batch run to pick up.
    """
    settings, rates = _policy(settings, rates)
    paid = _decimal(paid_percentage)
    actions = []
    distribution = None
    commission_error = None

    with store.transaction():
        plot = _load_plot(store, plot_id, for_update=True)
        if _decimal(plot.get("paid_percentage")) != paid:
            store.update_plot(plot_id, paid_percentage=paid)
            plot["paid_percentage"] = paid

        status = (plot.get("status") or "").lower()

        if (
            status == STATUS_BOOKED
            and plot.get("commission_status") == COMMISSION_PENDING
            and paid >= settings.COMMISSION_THRESHOLD
        ):
            logger.info("plot %s reached %s%% paid, distributing commission", plot_id, paid)
            try:
                distribution = distribute_for_plot(store, plot_id, settings=settings, rates=rates)
                actions.append("distributed")
            except CommissionError as e:
                commission_error = str(e)
                logger.error(
                    "commission distribution failed for plot %s, payment kept: %s", plot_id, e
                )

        if status == STATUS_BOOKED and paid >= HUNDRED:
            store.update_plot(plot_id, status=STATUS_SOLD)
            actions.append("marked_sold")
            logger.info("plot %s fully paid, marked sold", plot_id)

        plot = _load_plot(store, plot_id)

    return {
        "plot_id": plot_id,
        "paid_percentage": paid,
        "status": plot["status"],
        "commission_status": plot["commission_status"],
        "actions": actions,
        "distribution": distribution,
        "commission_error": commission_error,
    }


def record_payment(
    store,
    plot_id,
    amount,
    payment_date: Optional[date] = None,
    note: Optional[str] = None,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    append a payment to a booked plot, recompute paid_percentage from the
    full payment history and run the threshold checks.
    """
    amount = _decimal(amount)
    if amount <= 0:
        raise InvalidStateError("Payment amount must be positive")

    with store.transaction():
        plot = _load_plot(store, plot_id, for_update=True)
        if (plot.get("status") or "").lower() != STATUS_BOOKED:
            raise InvalidStateError("Can only add payments to booked plots")

        total_price = _decimal(plot.get("total_price"))
        if total_price <= 0:
            raise InvalidStateError(f"Plot {plot_id} has no total price set")

        paid_so_far = sum((_decimal(p["amount"]) for p in store.list_payments(plot_id)), ZERO)
        remaining = total_price - paid_so_far
        if amount > remaining:
            raise InvalidStateError(
                f"Payment amount cannot exceed remaining balance of {remaining}"
            )

        payment = store.insert_payment(
            {
                "plot_id": plot_id,
                "amount": amount,
                "payment_date": payment_date or date.today(),
                "note": note,
            }
        )

        # truncate so 74.999% never reads as 75%
        paid_percentage = min(
            ((paid_so_far + amount) * HUNDRED / total_price).quantize(
                Decimal("0.01"), rounding=ROUND_DOWN
            ),
            HUNDRED,
        )
        store.update_plot(plot_id, paid_percentage=paid_percentage)

        outcome = on_payment_recorded(
            store, plot_id, paid_percentage, settings=settings, rates=rates
        )

    return {
        "payment": payment,
        "remaining": remaining - amount,
        **outcome,
    }


def reverse_plot_financials(store, plot_id, new_status: Optional[str] = None) -> Dict[str, Any]:
    """
    undo a plot's distributed commission (e.g. a cancelled sale) and put
    commission_status back to pending. optionally move the plot to
    `new_status` in the same transaction.
    """
    if new_status is not None and new_status not in (STATUS_AVAILABLE, STATUS_BOOKED, STATUS_SOLD):
        raise InvalidStateError(f"Unknown plot status: {new_status}")

    with store.transaction():
        plot = _load_plot(store, plot_id, for_update=True)
        result = reverse_distribution(store, plot)
        if new_status is not None:
            store.update_plot(plot_id, status=new_status)

    return {"status": "reversed", **result}


def projected_commission_wallet(
    store,
    broker_id,
    settings: Optional[Settings] = None,
    rates: Optional[CommissionRates] = None,
) -> Dict[str, Any]:
    """
    display-only estimate of direct commission on the broker's booked plots
    that have not reached the threshold yet, at the per-area rates.
    nothing is written.
    """
    settings, rates = _policy(settings, rates)

    projected_plots = []
    for plot in store.list_plots(status=STATUS_BOOKED, broker_id=broker_id):
        paid = _decimal(plot.get("paid_percentage"))
        if paid >= settings.COMMISSION_THRESHOLD:
            continue
        breakdown = commission_breakdown(plot.get("area"), rates)
        projected_plots.append(
            {
                "id": plot["id"],
                "plot_number": plot.get("plot_number"),
                "project_name": plot.get("project_name"),
                "area": plot.get("area"),
                "paid_percentage": paid,
                "projected_commission": breakdown["direct"],
            }
        )

    return {
        "broker_id": broker_id,
        "total_projected_amount": sum(
            (p["projected_commission"] for p in projected_plots), ZERO
        ),
        "total_plots": len(projected_plots),
        "plots": projected_plots,
    }
