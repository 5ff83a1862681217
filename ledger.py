import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from errors import InvalidStateError

logger = logging.getLogger(__name__)

MODE_INITIAL = "initial"
MODE_RECALCULATE = "recalculate"

WALLET_DIRECT = "direct"
WALLET_DOWNLINE = "downline"

CENT = Decimal("0.01")
ZERO = Decimal("0")

_BALANCE_FIELDS = {
    WALLET_DIRECT: "direct_sale_balance",
    WALLET_DOWNLINE: "downline_sale_balance",
}


def quantize_amount(amount) -> Decimal:
    """round to the currency minor unit; only called when writing."""
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def wallet_type_for_level(level: int) -> str:
    return WALLET_DIRECT if level == 0 else WALLET_DOWNLINE


def apply_wallet_delta(
    wallet: Dict[str, Any],
    wallet_type: str,
    delta: Decimal,
) -> Tuple[Dict[str, Any], bool]:
    """
    add `delta` to the sub-balance for wallet_type and recompute the total.
    returns (new_wallet, overdrawn). a sub-balance that would go negative
    is clamped at 0 and reported as overdrawn.
    """
    field = _BALANCE_FIELDS[wallet_type]
    updated = dict(wallet)
    direct = Decimal(str(wallet.get("direct_sale_balance") or 0))
    downline = Decimal(str(wallet.get("downline_sale_balance") or 0))
    balances = {"direct_sale_balance": direct, "downline_sale_balance": downline}

    new_value = balances[field] + delta
    overdrawn = new_value < 0
    balances[field] = max(new_value, ZERO)

    updated.update(balances)
    updated["total_balance"] = balances["direct_sale_balance"] + balances["downline_sale_balance"]
    return updated, overdrawn


def _adjust_wallet(store, owner_id, wallet_type: str, delta: Decimal, result: Dict[str, Any]):
    wallet = store.get_wallet(owner_id, for_update=True)
    if wallet is None:
        wallet = store.create_wallet(owner_id)

    updated, overdrawn = apply_wallet_delta(wallet, wallet_type, delta)
    if overdrawn:
        warning = {
            "kind": "negative_balance",
            "owner_id": owner_id,
            "wallet_type": wallet_type,
            "delta": delta,
        }
        result["warnings"].append(warning)
        logger.warning(
            "wallet %s %s balance would go negative (delta %s); clamped at 0",
            owner_id,
            wallet_type,
            delta,
            extra={"consistency_warning": warning},
        )

    store.update_wallet(
        owner_id,
        direct_sale_balance=updated["direct_sale_balance"],
        downline_sale_balance=updated["downline_sale_balance"],
        total_balance=updated["total_balance"],
    )
    return updated


def _describe(plot: Dict[str, Any], level: int, seller_name: str) -> str:
    where = f"plot #{plot.get('plot_number')} - {plot.get('project_name')}"
    if level == 0:
        return f"Direct sale from {where}"
    return f"Level {level} downline sale by {seller_name} from {where}"


def _empty_result(plot_id, mode: str) -> Dict[str, Any]:
    return {
        "plot_id": plot_id,
        "mode": mode,
        "credited": [],
        "skipped": [],
        "warnings": [],
        "previous_total": ZERO,
        "total_distributed": ZERO,
    }


def apply_distribution(
    store,
    plot: Dict[str, Any],
    distribution: List[Dict[str, Any]],
    mode: str = MODE_INITIAL,
    seller_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    write a computed distribution for one plot to the ledger.

    initial:
      insert commission + credit transaction per entry, credit wallets,
      mark the plot's commission as paid.

    recalculate:
      1) load existing commissions / live credit transactions by (receiver, level)
      2) reverse every existing commission from its wallet
      3) delete the live credit transactions, remembering created_at per key
      4) update commissions in place (created_at untouched) or insert
      5) re-credit wallets with the new amounts
      6) insert credit transactions, stamped with the remembered created_at

    everything runs in one store transaction: either the whole plot is
    written or nothing is.
    """
    if mode not in (MODE_INITIAL, MODE_RECALCULATE):
        raise ValueError(f"Unknown apply mode: {mode!r}")

    plot_id = plot["id"]
    seller_id = plot.get("broker_id")
    if seller_name is None:
        seller_name = next(
            (e["receiver_name"] for e in distribution if e["level"] == 0), "Unknown"
        )
    sale_amount = quantize_amount(plot.get("total_price") or 0)
    result = _empty_result(plot_id, mode)

    with store.transaction():
        existing_by_key: Dict[Tuple[Any, int], Dict[str, Any]] = {}
        tx_timestamps: Dict[Tuple[Any, int], Any] = {}

        existing = store.list_commissions(plot_id=plot_id)
        if mode == MODE_INITIAL and existing:
            raise InvalidStateError(
                f"Plot {plot_id} already has {len(existing)} commission records; "
                "use recalculation instead."
            )

        if mode == MODE_RECALCULATE:
            # 1) + 2): oldest first so a duplicate key keeps the original row
            for comm in sorted(existing, key=lambda c: c["created_at"]):
                key = (comm["receiver_id"], comm["level"])
                amount = Decimal(str(comm["amount"]))
                _adjust_wallet(
                    store,
                    comm["receiver_id"],
                    wallet_type_for_level(comm["level"]),
                    -amount,
                    result,
                )
                result["previous_total"] += amount

                if key in existing_by_key:
                    warning = {
                        "kind": "duplicate_commission",
                        "plot_id": plot_id,
                        "receiver_id": comm["receiver_id"],
                        "level": comm["level"],
                        "commission_id": comm["id"],
                    }
                    result["warnings"].append(warning)
                    logger.warning(
                        "duplicate commission %s for plot %s receiver %s level %s; removed",
                        comm["id"],
                        plot_id,
                        comm["receiver_id"],
                        comm["level"],
                        extra={"consistency_warning": warning},
                    )
                    store.delete_commission(comm["id"])
                    continue
                existing_by_key[key] = comm

            # 3)
            for tx in store.list_transactions(plot_id, tx_type="credit"):
                key = (tx["wallet_id"], tx["level"])
                if key not in tx_timestamps or tx["created_at"] < tx_timestamps[key]:
                    tx_timestamps[key] = tx["created_at"]
            store.delete_transactions(plot_id, tx_type="credit")

        # 4) .. 6)
        for entry in distribution:
            receiver_id = entry["receiver_id"]
            level = entry["level"]
            key = (receiver_id, level)

            receiver = store.get_profile(receiver_id)
            if receiver is None:
                logger.warning(
                    "receiver %s (level %s) for plot %s not found; credit skipped",
                    receiver_id,
                    level,
                    plot_id,
                )
                result["skipped"].append(
                    {"receiver_id": receiver_id, "level": level, "reason": "profile not found"}
                )
                continue

            amount = quantize_amount(entry["amount"])
            receiver_name = receiver.get("full_name") or entry["receiver_name"]
            fields = {
                "seller_id": seller_id,
                "seller_name": seller_name,
                "receiver_name": receiver_name,
                "percentage": entry["rate"],
                "sale_amount": sale_amount,
                "amount": amount,
            }

            current = existing_by_key.pop(key, None)
            if current is not None:
                store.update_commission(current["id"], **fields)
            else:
                store.insert_commission(
                    {"plot_id": plot_id, "receiver_id": receiver_id, "level": level, **fields}
                )

            wallet_type = wallet_type_for_level(level)
            _adjust_wallet(store, receiver_id, wallet_type, amount, result)

            store.insert_transaction(
                {
                    "wallet_id": receiver_id,
                    "type": "credit",
                    "wallet_type": wallet_type,
                    "level": level,
                    "amount": amount,
                    "description": _describe(plot, level, seller_name),
                    "plot_id": plot_id,
                },
                created_at=tx_timestamps.get(key),
            )

            result["credited"].append(
                {
                    "receiver_id": receiver_id,
                    "receiver_name": receiver_name,
                    "level": level,
                    "rate": entry["rate"],
                    "amount": amount,
                    "updated": current is not None,
                }
            )
            result["total_distributed"] += amount

        # commissions whose key left the chain were already reversed above
        for stale in existing_by_key.values():
            logger.info(
                "removing stale commission %s (receiver %s level %s) for plot %s",
                stale["id"],
                stale["receiver_id"],
                stale["level"],
                plot_id,
            )
            store.delete_commission(stale["id"])

        store.update_plot(plot_id, commission_status="paid")

    logger.info(
        "commission %s for plot %s: %d credited, %d skipped, total %s (previous %s)",
        mode,
        plot_id,
        len(result["credited"]),
        len(result["skipped"]),
        result["total_distributed"],
        result["previous_total"],
    )
    return result


def reverse_distribution(store, plot: Dict[str, Any]) -> Dict[str, Any]:
    """
    undo every commission of a plot: debit the wallets, append a debit
    transaction per commission, flag the original credits as reversed and
    delete the commission records. the credit rows stay as audit history.
    """
    plot_id = plot["id"]
    result = _empty_result(plot_id, "reverse")
    reversed_entries = []

    with store.transaction():
        for comm in store.list_commissions(plot_id=plot_id):
            amount = Decimal(str(comm["amount"]))
            wallet_type = wallet_type_for_level(comm["level"])
            _adjust_wallet(store, comm["receiver_id"], wallet_type, -amount, result)
            store.insert_transaction(
                {
                    "wallet_id": comm["receiver_id"],
                    "type": "debit",
                    "wallet_type": wallet_type,
                    "level": comm["level"],
                    "amount": amount,
                    "description": "Reversal: " + _describe(plot, comm["level"], comm.get("seller_name")),
                    "plot_id": plot_id,
                }
            )
            store.delete_commission(comm["id"])
            reversed_entries.append(
                {"receiver_id": comm["receiver_id"], "level": comm["level"], "amount": amount}
            )
            result["previous_total"] += amount

        store.mark_transactions_reversed(plot_id)
        store.update_plot(plot_id, commission_status="pending")

    result["reversed"] = reversed_entries
    logger.info(
        "reversed %d commissions for plot %s, total %s",
        len(reversed_entries),
        plot_id,
        result["previous_total"],
    )
    return result
