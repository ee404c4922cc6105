"""
Unit tests for request and response models.

Tests construction-time validation and wire payloads.
"""

from datetime import date, datetime, timezone

import pytest

from usage_billing.core.errors import ValidationError
from usage_billing.core.expressions import constant, dimension, equals
from usage_billing.core.models import (
    AssociatePricePlanRequest,
    Computation,
    CreateCustomerRequest,
    CreateEventSchemaRequest,
    CreatePricePlanRequest,
    CreateUsageMeterRequest,
    EventAttribute,
    EventSchema,
    PriceType,
    PricingCycleConfig,
    PricingCycleInterval,
    RateCard,
    RateConfig,
    SchemaAttribute,
    SchemaDimension,
    Slab,
    UsageEvent,
    UsageMeterAggregation,
    format_timestamp,
)


def _schema():
    return CreateEventSchemaRequest(
        name="message_sent",
        attributes=(SchemaAttribute("sms_id"),),
        dimensions=(SchemaDimension("country"),),
    )


def _slabs():
    return (
        Slab(rate=0.2, start_after=0, order=1),
        Slab(rate=0.1, start_after=10000, order=2),
    )


class TestEventSchema:
    """Test event schema requests."""

    def test_payload(self):
        payload = _schema().to_payload()
        assert payload == {
            "name": "message_sent",
            "attributes": [{"name": "sms_id"}],
            "dimensions": [{"name": "country"}],
        }

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError, match="event schema name"):
            CreateEventSchemaRequest(name=" ", dimensions=(SchemaDimension("country"),))

    def test_needs_a_field(self):
        with pytest.raises(ValidationError, match="at least one"):
            CreateEventSchemaRequest(name="empty")

    def test_duplicate_dimension_rejected(self):
        with pytest.raises(ValidationError, match="duplicate dimension"):
            CreateEventSchemaRequest(
                name="s", dimensions=(SchemaDimension("country"), SchemaDimension("country"))
            )

    def test_from_api_reads_status(self):
        schema = EventSchema.from_api({
            "name": "message_sent",
            "attributes": [{"name": "sms_id"}],
            "dimensions": [{"name": "country"}],
            "status": "active",
        })
        assert schema.dimensions == ("country",)
        assert schema.status.value == "ACTIVE"


class TestUsageMeter:
    """Test usage meter requests."""

    def test_computation_accepts_text(self):
        computation = Computation(
            matcher='{"==": [{"var": "dimensions.country"}, "US"]}',
            computation="1",
        )
        assert computation.matcher == equals(dimension("country"), "US")
        assert computation.to_payload()["computation"] == "1"

    def test_matcher_must_be_boolean(self):
        with pytest.raises(ValidationError, match="boolean"):
            Computation(matcher=constant(1), computation=constant(1))

    def test_enum_fields_coerced_from_wire_values(self):
        meter = CreateUsageMeterRequest(
            name="message_count",
            computations=(Computation(equals(dimension("country"), "US"), constant(1)),),
            type="counter",
            aggregation="SUM",
        )
        assert meter.aggregation == UsageMeterAggregation.SUM

    def test_unknown_aggregation_rejected(self):
        with pytest.raises(ValidationError, match="'aggregation' must be one of"):
            CreateUsageMeterRequest(
                name="message_count",
                computations=(Computation(equals(dimension("country"), "US"), constant(1)),),
                aggregation="AVERAGE",
            )

    def test_validate_against_schema(self):
        meter = CreateUsageMeterRequest(
            name="by_region",
            computations=(Computation(equals(dimension("region"), "EU"), constant(1)),),
        )
        with pytest.raises(ValidationError, match="region"):
            meter.validate_against(_schema())


class TestPricePlan:
    """Test price plan requests."""

    def test_payload_nests_plan_details(self):
        plan = CreatePricePlanRequest(
            name="price-plan",
            pricing_cycle=PricingCycleConfig(interval="monthly", grace_period=1),
            rate_cards=(RateCard("sms-charges", RateConfig("message_count", _slabs())),),
        )
        payload = plan.to_payload()
        details = payload["pricePlanDetails"]
        assert details["pricingCycleConfig"] == {
            "interval": "MONTHLY",
            "startType": "STATIC",
            "startOffset": {"dayOffset": "1", "monthOffset": "NIL"},
            "gracePeriod": 1,
        }
        card = details["rateCards"][0]
        assert card["pricingModel"] == "TIERED"
        assert card["rateConfig"]["usageMeterName"] == "message_count"
        assert [s["startAfter"] for s in card["rateConfig"]["slabs"]] == [0, 10000]
        assert plan.usage_meter_names == ("message_count",)

    def test_unknown_interval_rejected(self):
        with pytest.raises(ValidationError, match="'interval' must be one of"):
            PricingCycleConfig(interval="FORTNIGHTLY")
        assert PricingCycleConfig(interval=PricingCycleInterval.ANNUALLY).interval.value == "ANNUALLY"

    def test_first_slab_starts_at_zero(self):
        with pytest.raises(ValidationError, match="first slab"):
            RateConfig("message_count", (Slab(rate=0.2, start_after=10, order=1),))

    def test_slab_order_strictly_increasing(self):
        with pytest.raises(ValidationError, match="order must be strictly increasing"):
            RateConfig("message_count", (
                Slab(rate=0.2, start_after=0, order=2),
                Slab(rate=0.1, start_after=100, order=2),
            ))

    def test_slab_thresholds_strictly_increasing(self):
        with pytest.raises(ValidationError, match="start_after must be strictly increasing"):
            RateConfig("message_count", (
                Slab(rate=0.2, start_after=0, order=1),
                Slab(rate=0.1, start_after=0, order=2),
            ))

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError, match="rate"):
            Slab(rate=-1, start_after=0, order=1)

    def test_price_type_coerced(self):
        assert Slab(rate=5, start_after=0, order=1, price_type="flat").price_type == PriceType.FLAT


class TestCustomerAndAssociation:
    """Test customer and price plan association requests."""

    def test_customer_email_checked(self):
        with pytest.raises(ValidationError, match="primary_email"):
            CreateCustomerRequest(id="1", name="customer1", primary_email="not-an-email")

    def test_customer_payload(self):
        customer = CreateCustomerRequest(
            id="1", name="customer1", primary_email="email@example.com", billing_address="address"
        )
        assert customer.to_payload() == {
            "id": "1",
            "name": "customer1",
            "primaryEmail": "email@example.com",
            "billingAddress": "address",
        }

    def test_far_future_until_is_open_ended(self):
        association = AssociatePricePlanRequest(
            price_plan_name="price-plan",
            effective_from=date(2024, 3, 1),
            effective_until=date(9999, 1, 1),
        )
        assert association.is_open_ended
        assert association.covers(date(2100, 1, 1))
        assert not association.covers(date(2024, 2, 29))
        assert association.to_payload()["effectiveUntil"] == "9999-01-01"

    def test_bounded_association(self):
        association = AssociatePricePlanRequest(
            price_plan_name="price-plan",
            effective_from="2024-03-01",
            effective_until="2024-03-31",
        )
        assert not association.is_open_ended
        assert association.covers(date(2024, 3, 31))
        assert not association.covers(date(2024, 4, 1))

    def test_until_before_from_rejected(self):
        with pytest.raises(ValidationError, match="effective_until"):
            AssociatePricePlanRequest(
                price_plan_name="price-plan",
                effective_from=date(2024, 3, 2),
                effective_until=date(2024, 3, 1),
            )


class TestUsageEvent:
    """Test usage events."""

    def test_id_generated_once(self):
        """The id is fixed at construction and reused on every payload."""
        event = UsageEvent(
            schema_name="message_sent",
            account_id="1",
            attributes=(EventAttribute("sms_id", "a1"),),
            dimensions={"country": "US"},
        )
        assert event.id
        assert event.to_payload()["id"] == event.id
        assert event.to_payload()["id"] == event.id

    def test_distinct_events_get_distinct_ids(self):
        first = UsageEvent(schema_name="message_sent", account_id="1")
        second = UsageEvent(schema_name="message_sent", account_id="1")
        assert first.id != second.id

    def test_payload_shape(self):
        event = UsageEvent(
            id="evt-1",
            schema_name="message_sent",
            account_id="1",
            attributes=(EventAttribute("sms_id", "a1"),),
            dimensions={"country": "US"},
            timestamp=datetime(2024, 3, 1, 12, 30, 0, 250000, tzinfo=timezone.utc),
        )
        assert event.to_payload() == {
            "id": "evt-1",
            "schemaName": "message_sent",
            "timestamp": "2024-03-01T12:30:00.250Z",
            "accountId": "1",
            "attributes": [{"name": "sms_id", "value": "a1"}],
            "dimensions": {"country": "US"},
        }

    def test_naive_timestamp_is_utc(self):
        event = UsageEvent(
            schema_name="message_sent", account_id="1", timestamp="2024-03-01T00:00:00"
        )
        assert event.timestamp.tzinfo is not None
        assert format_timestamp(event.timestamp) == "2024-03-01T00:00:00.000Z"

    def test_undeclared_dimension_rejected(self):
        event = UsageEvent(
            schema_name="message_sent", account_id="1", dimensions={"region": "EU"}
        )
        with pytest.raises(ValidationError, match="region"):
            event.validate_against(_schema())

    def test_wrong_schema_rejected(self):
        event = UsageEvent(schema_name="other", account_id="1")
        with pytest.raises(ValidationError, match="targets schema"):
            event.validate_against(_schema())
