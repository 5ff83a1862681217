from decimal import Decimal
from typing import Any, Dict, List

from rate_policy import DEFAULT_RATES, SALE_TYPE_SOLD, CommissionRates, get_rates


def _as_decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def compute_distribution(
    sale_context: Dict[str, Any],
    chain: List[Dict[str, Any]],
    rates: CommissionRates = DEFAULT_RATES,
) -> List[Dict[str, Any]]:
    """
    sale_context: {"sale_type": "sold" | "booked", "sale_amount": ..., "area": ...}
    chain: output of resolve_chain, [{"id", "name", "level"}, ...]

    returns one entry per chain member that has a rate:
        {"receiver_id", "receiver_name", "level", "rate", "amount"}

    amounts are NOT rounded here; the ledger quantizes on write so
    rounding never compounds across levels.
    """
    rate_by_level = {level: rate for level, _, rate in get_rates(sale_context, rates)}

    if sale_context.get("sale_type") == SALE_TYPE_SOLD:
        base = _as_decimal(sale_context.get("sale_amount"))
        divisor = Decimal("100")
    else:
        base = _as_decimal(sale_context.get("area"))
        divisor = Decimal("1")
    if base < 0:
        base = Decimal("0")

    distribution = []
    for member in chain:
        rate = rate_by_level.get(member["level"])
        if rate is None:
            continue
        distribution.append(
            {
                "receiver_id": member["id"],
                "receiver_name": member["name"],
                "level": member["level"],
                "rate": rate,
                "amount": base * rate / divisor,
            }
        )

    return distribution
