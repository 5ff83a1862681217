from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from config import Settings, get_settings

SALE_TYPE_SOLD = "sold"
SALE_TYPE_BOOKED = "booked"

# role name per level: level 0 is the seller, 1..n are uplines
LEVEL_ROLES = ("direct", "level1", "level2")


@dataclass(frozen=True)
class CommissionRates:
    """
    rate schedule for one deployment.

    percentage: % of sale amount per level, used for actual ledger writes.
    area: currency per unit of plot area per level, used for projections
          of booked plots that have not crossed the threshold yet.
    """

    percentage: Tuple[Decimal, ...] = (Decimal("6"), Decimal("2"), Decimal("0.5"))
    area: Tuple[Decimal, ...] = (Decimal("1000"), Decimal("200"), Decimal("50"))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CommissionRates":
        settings = settings or get_settings()
        return cls(
            percentage=(settings.DIRECT_RATE, settings.LEVEL1_RATE, settings.LEVEL2_RATE),
            area=(
                settings.DIRECT_AREA_RATE,
                settings.LEVEL1_AREA_RATE,
                settings.LEVEL2_AREA_RATE,
            ),
        )


DEFAULT_RATES = CommissionRates()


def get_rates(
    context: Dict[str, Any],
    rates: CommissionRates = DEFAULT_RATES,
) -> List[Tuple[int, str, Decimal]]:
    """
    context: {"sale_type": "sold" | "booked", "area": optional number}
    returns [(level, role, rate), ...] ordered by level.

    sold   -> percentage rates
    booked -> per-area rates
    """
    sale_type = context.get("sale_type")
    if sale_type == SALE_TYPE_SOLD:
        table = rates.percentage
    elif sale_type == SALE_TYPE_BOOKED:
        table = rates.area
    else:
        raise ValueError(f"Unknown sale type: {sale_type!r}")

    return [
        (level, LEVEL_ROLES[level] if level < len(LEVEL_ROLES) else f"level{level}", Decimal(rate))
        for level, rate in enumerate(table)
    ]


def commission_breakdown(area, rates: CommissionRates = DEFAULT_RATES) -> Dict[str, Decimal]:
    """
    per-area projection for a plot of `area` units:
    {"direct": ..., "level1": ..., "level2": ..., "total": ...}
    a missing or non-positive area projects to zero everywhere.
    """
    size = Decimal(str(area)) if area else Decimal("0")
    if size < 0:
        size = Decimal("0")

    breakdown: Dict[str, Decimal] = {}
    for level, role, rate in get_rates({"sale_type": SALE_TYPE_BOOKED}, rates):
        breakdown[role] = size * rate
    breakdown["total"] = sum(breakdown.values(), Decimal("0"))
    return breakdown
