# usage_billing/demo/sms_pricing.py
"""
Pricing for an API-based SMS service, charged per message sent to the US.

Schema ``message_sent`` carries an ``sms_id`` attribute and a ``country``
dimension; the ``message_count`` meter counts US messages; ``price-plan``
bills 0.2 per message up to 10000 and 0.1 beyond.
"""

from datetime import date, datetime
from typing import Optional

from usage_billing.core.expressions import constant, dimension_filter
from usage_billing.core.models import (
    AssociatePricePlanRequest,
    Computation,
    CreateCustomerRequest,
    CreateEventSchemaRequest,
    CreatePricePlanRequest,
    CreateUsageMeterRequest,
    EventAttribute,
    PriceType,
    PricingCycleConfig,
    PricingCycleInterval,
    PricingModel,
    RateCard,
    RateConfig,
    SchemaAttribute,
    SchemaDimension,
    Slab,
    StartOffset,
    StartType,
    UsageEvent,
    UsageMeterAggregation,
    UsageMeterType,
    new_event_id,
)
from usage_billing.core.workflow import WorkflowBlueprint

SCHEMA_NAME = "message_sent"
METER_NAME = "message_count"
PLAN_NAME = "price-plan"
CUSTOMER_ID = "1"


def build_sms_blueprint(
    today: Optional[date] = None,
    event_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> WorkflowBlueprint:
    today = today or date.today()

    schema = CreateEventSchemaRequest(
        name=SCHEMA_NAME,
        attributes=(SchemaAttribute("sms_id"),),
        dimensions=(SchemaDimension("country"),),
    )
    meter = CreateUsageMeterRequest(
        name=METER_NAME,
        type=UsageMeterType.COUNTER,
        aggregation=UsageMeterAggregation.COUNT,
        computations=(
            Computation(matcher=dimension_filter({"country": "US"}), computation=constant(1)),
        ),
    )
    plan = CreatePricePlanRequest(
        name=PLAN_NAME,
        pricing_cycle=PricingCycleConfig(
            interval=PricingCycleInterval.MONTHLY,
            start_type=StartType.STATIC,
            start_offset=StartOffset(day_offset="1", month_offset="NIL"),
            grace_period=1,
        ),
        rate_cards=(
            RateCard(
                display_name="sms-charges",
                pricing_model=PricingModel.TIERED,
                rate_config=RateConfig(
                    usage_meter_name=METER_NAME,
                    slabs=(
                        Slab(rate=0.2, start_after=0.0, price_type=PriceType.PER_UNIT, order=1),
                        Slab(rate=0.1, start_after=10000.0, price_type=PriceType.PER_UNIT, order=2),
                    ),
                ),
            ),
        ),
    )
    customer = CreateCustomerRequest(
        id=CUSTOMER_ID,
        name="customer1",
        billing_address="address",
        primary_email="email@togai.com",
    )
    association = AssociatePricePlanRequest(
        price_plan_name=PLAN_NAME,
        effective_from=today,
        effective_until=date(9999, 1, 1),
    )

    event_kwargs = {}
    if timestamp is not None:
        event_kwargs["timestamp"] = timestamp
    event = UsageEvent(
        id=event_id or new_event_id(),
        schema_name=SCHEMA_NAME,
        account_id=CUSTOMER_ID,
        attributes=(EventAttribute("sms_id", new_event_id()),),
        dimensions={"country": "US"},
        **event_kwargs,
    )

    return WorkflowBlueprint(
        event_schema=schema,
        usage_meters=(meter,),
        price_plan=plan,
        customer=customer,
        association=association,
        events=(event,),
    )
