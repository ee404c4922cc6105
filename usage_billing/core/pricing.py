"""
Local revenue estimates for price plans.

Mirrors how rate cards turn metered usage into billable amounts so plans
can be checked before they are created. The remote service remains the
source of truth for invoiced revenue.
"""

from decimal import Decimal, ROUND_UP
from typing import Dict, List, Mapping, Sequence, Tuple

from .errors import ValidationError
from .models import CreatePricePlanRequest, PriceType, PricingModel, RateCard, Slab


def slab_for_quantity(slabs: Sequence[Slab], quantity: float) -> Slab:
    """Return the slab a usage level falls into.

    A quantity belongs to the last slab whose ``start_after`` it has
    reached, so with thresholds [0, 10000] the value 9999.999 stays in the
    first slab and 10000 moves to the second.

    Raises:
        ValidationError: If quantity is negative or no slabs are given
    """
    if quantity < 0:
        raise ValidationError("quantity must be >= 0")
    if not slabs:
        raise ValidationError("no slabs to choose from")
    chosen = slabs[0]
    for slab in slabs:
        if quantity >= slab.start_after:
            chosen = slab
        else:
            break
    return chosen


def _slab_charge(slab: Slab, units: Decimal) -> Decimal:
    if units <= 0:
        return Decimal("0")
    if slab.price_type == PriceType.FLAT:
        return Decimal(str(slab.rate))
    return units * Decimal(str(slab.rate))


def tier_breakdown(slabs: Sequence[Slab], quantity: float) -> List[Tuple[Slab, Decimal]]:
    """Split ``quantity`` into the units charged by each slab (tiered model)."""
    if quantity < 0:
        raise ValidationError("quantity must be >= 0")
    total = Decimal(str(quantity))
    breakdown = []
    for index, slab in enumerate(slabs):
        lower = Decimal(str(slab.start_after))
        if index + 1 < len(slabs):
            upper = min(total, Decimal(str(slabs[index + 1].start_after)))
        else:
            upper = total
        breakdown.append((slab, max(Decimal("0"), upper - lower)))
    return breakdown


def calculate_revenue(rate_card: RateCard, quantity: float) -> float:
    """Amount billed for ``quantity`` units under one rate card.

    Returns:
        Amount rounded UP to 2 decimal places
    """
    slabs = rate_card.rate_config.slabs
    if rate_card.pricing_model == PricingModel.VOLUME:
        slab = slab_for_quantity(slabs, quantity)
        amount = _slab_charge(slab, Decimal(str(quantity)))
    else:
        amount = sum(
            (_slab_charge(slab, units) for slab, units in tier_breakdown(slabs, quantity)),
            Decimal("0"),
        )
    return float(amount.quantize(Decimal("0.01"), rounding=ROUND_UP))


def estimate_plan_revenue(
    plan: CreatePricePlanRequest,
    usage_by_meter: Mapping[str, float],
) -> Dict[str, float]:
    """Estimate revenue per rate card for the given metered usage.

    Meters missing from ``usage_by_meter`` count as zero usage.
    """
    estimates: Dict[str, float] = {}
    for card in plan.rate_cards:
        quantity = usage_by_meter.get(card.rate_config.usage_meter_name, 0.0)
        estimates[card.display_name] = calculate_revenue(card, quantity)
    return estimates
