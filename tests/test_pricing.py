"""
Unit tests for local revenue estimation.

Tests slab selection at tier boundaries, tiered and volume pricing, and
rounding behavior.
"""

import pytest

from usage_billing.core.errors import ValidationError
from usage_billing.core.models import (
    CreatePricePlanRequest,
    PriceType,
    PricingCycleConfig,
    PricingModel,
    RateCard,
    RateConfig,
    Slab,
)
from usage_billing.core.pricing import (
    calculate_revenue,
    estimate_plan_revenue,
    slab_for_quantity,
    tier_breakdown,
)

SMS_SLABS = (
    Slab(rate=0.2, start_after=0, order=1),
    Slab(rate=0.1, start_after=10000, order=2),
)


def _card(model=PricingModel.TIERED, slabs=SMS_SLABS, meter="message_count", name="sms-charges"):
    return RateCard(display_name=name, rate_config=RateConfig(meter, slabs), pricing_model=model)


class TestSlabSelection:
    """Test which slab a usage level falls into."""

    def test_just_below_boundary_stays_in_first_slab(self):
        assert slab_for_quantity(SMS_SLABS, 9999.999).order == 1

    def test_boundary_moves_to_second_slab(self):
        assert slab_for_quantity(SMS_SLABS, 10000).order == 2

    def test_zero_is_first_slab(self):
        assert slab_for_quantity(SMS_SLABS, 0).order == 1

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValidationError, match="quantity"):
            slab_for_quantity(SMS_SLABS, -1)

    def test_tier_breakdown_splits_usage(self):
        breakdown = tier_breakdown(SMS_SLABS, 15000)
        assert [float(units) for _, units in breakdown] == [10000.0, 5000.0]


class TestTieredRevenue:
    """Test the tiered model, where each slab prices its own share."""

    def test_single_message(self):
        """One US message costs 0.2."""
        assert calculate_revenue(_card(), 1) == 0.2

    def test_no_usage(self):
        assert calculate_revenue(_card(), 0) == 0.0

    def test_first_tier_filled(self):
        assert calculate_revenue(_card(), 10000) == 2000.0

    def test_usage_spanning_tiers(self):
        assert calculate_revenue(_card(), 15000) == 2500.0

    def test_flat_slab_charged_once(self):
        slabs = (
            Slab(rate=5, start_after=0, order=1, price_type=PriceType.FLAT),
            Slab(rate=0.01, start_after=100, order=2),
        )
        assert calculate_revenue(_card(slabs=slabs), 150) == 5.5
        assert calculate_revenue(_card(slabs=slabs), 0) == 0.0


class TestVolumeRevenue:
    """Test the volume model, where all usage is priced at one slab."""

    def test_below_boundary(self):
        assert calculate_revenue(_card(PricingModel.VOLUME), 9999) == 1999.8

    def test_above_boundary(self):
        assert calculate_revenue(_card(PricingModel.VOLUME), 15000) == 1500.0


class TestRounding:
    """Test that amounts round up to the cent."""

    def test_fraction_of_cent_rounds_up(self):
        assert calculate_revenue(_card(), 0.01) == 0.01

    def test_exact_cents_unchanged(self):
        assert calculate_revenue(_card(), 3) == 0.6


class TestPlanEstimate:
    """Test per-rate-card estimates for a whole plan."""

    def _plan(self):
        return CreatePricePlanRequest(
            name="price-plan",
            pricing_cycle=PricingCycleConfig(),
            rate_cards=(
                _card(),
                _card(meter="mms_count", name="mms-charges"),
            ),
        )

    def test_estimate_by_card(self):
        estimates = estimate_plan_revenue(self._plan(), {"message_count": 1, "mms_count": 15000})
        assert estimates == {"sms-charges": 0.2, "mms-charges": 2500.0}

    def test_missing_meter_counts_as_zero(self):
        estimates = estimate_plan_revenue(self._plan(), {"message_count": 2})
        assert estimates["mms-charges"] == 0.0
        assert estimates["sms-charges"] == 0.4
