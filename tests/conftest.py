"""
Shared fixtures: an in-memory billing service that behaves like the backend.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from usage_billing.core.errors import RemoteRejection
from usage_billing.core.metrics import (
    CUSTOMER_ID_FILTER,
    MetricDataPoint,
    MetricName,
    MetricQueryResult,
    MetricsResponse,
)
from usage_billing.core.models import (
    Customer,
    EventSchema,
    IngestResult,
    PricePlan,
    PricePlanAssociation,
    UsageMeter,
)
from usage_billing.core.pricing import calculate_revenue
from usage_billing.sdk.service import BillingService


class InMemoryBillingService(BillingService):
    """Backend stand-in that meters, rates and lags like the real service.

    Once ready, every day of the queried window gets a bucket, zero or not.
    Metrics stay empty until ``get_metrics`` has been called
    ``usage_ready_after`` (usage) or ``revenue_ready_after`` (revenue) times.
    """

    def __init__(self, usage_ready_after: int = 1, revenue_ready_after: int = 1):
        self.usage_ready_after = usage_ready_after
        self.revenue_ready_after = revenue_ready_after
        self.calls: List[Tuple[str, tuple]] = []
        self.schemas = {}
        self.active_schemas = set()
        self.meters = {}
        self.active_meters = set()
        self.plans = {}
        self.active_plans = set()
        self.customers = {}
        self.associations = {}
        self.events = {}
        self.ingest_attempts: List[str] = []
        self.metric_calls: Dict[MetricName, int] = defaultdict(int)

    def _log(self, operation, *args):
        self.calls.append((operation, args))

    @property
    def operations(self) -> List[str]:
        return [operation for operation, _ in self.calls]

    async def create_event_schema(self, request, timeout=None):
        self._log("createEventSchema", request.name)
        if request.name in self.schemas:
            raise RemoteRejection(409, f"event schema {request.name} already exists")
        self.schemas[request.name] = request
        return EventSchema(
            name=request.name,
            attributes=request.attribute_names,
            dimensions=request.dimension_names,
        )

    async def activate_event_schema(self, name, timeout=None):
        self._log("activateEventSchema", name)
        if name not in self.schemas:
            raise RemoteRejection(404, f"event schema {name} not found")
        self.active_schemas.add(name)

    async def create_usage_meter(self, schema_name, request, timeout=None):
        self._log("createUsageMeter", schema_name, request.name)
        if schema_name not in self.active_schemas:
            raise RemoteRejection(400, f"event schema {schema_name} is not active")
        self.meters[request.name] = (schema_name, request)
        return UsageMeter(
            name=request.name,
            type=request.type.value,
            aggregation=request.aggregation.value,
        )

    async def activate_usage_meter(self, schema_name, meter_name, timeout=None):
        self._log("activateUsageMeter", schema_name, meter_name)
        self.active_meters.add(meter_name)

    async def create_price_plan(self, request, timeout=None):
        self._log("createPricePlan", request.name)
        for meter_name in request.usage_meter_names:
            if meter_name not in self.active_meters:
                raise RemoteRejection(400, f"usage meter {meter_name} is not active")
        self.plans[request.name] = request
        return PricePlan(name=request.name)

    async def activate_price_plan(self, name, timeout=None):
        self._log("activatePricePlan", name)
        self.active_plans.add(name)

    async def create_customer(self, request, timeout=None):
        self._log("createCustomer", request.id)
        self.customers[request.id] = request
        return Customer(
            id=request.id,
            name=request.name,
            primary_email=request.primary_email,
            billing_address=request.billing_address,
        )

    async def associate_price_plan(self, customer_id, account_id, request, timeout=None):
        self._log("associatePricePlan", customer_id, account_id, request.price_plan_name)
        if request.price_plan_name not in self.active_plans:
            raise RemoteRejection(400, f"price plan {request.price_plan_name} is not active")
        self.associations[account_id] = request
        return PricePlanAssociation(
            customer_id=customer_id,
            account_id=account_id,
            price_plan_name=request.price_plan_name,
            effective_from=request.effective_from,
            effective_until=request.effective_until,
        )

    async def ingest(self, event, timeout=None):
        self._log("ingest", event.id)
        self.ingest_attempts.append(event.id)
        key = (event.schema_name, event.id)
        status = "DUPLICATE" if key in self.events else "ACCEPTED"
        self.events.setdefault(key, event)
        return IngestResult(event_id=event.id, status=status)

    def _usage_by_day(self, start, end, customers: Optional[Tuple[str, ...]]):
        """{(account, day, meter): quantity} for events inside the window."""
        usage = defaultdict(float)
        for (schema_name, _), event in self.events.items():
            if not (start <= event.timestamp <= end):
                continue
            if customers is not None and event.account_id not in customers:
                continue
            for meter_name, (meter_schema, meter) in self.meters.items():
                if meter_schema != schema_name or meter_name not in self.active_meters:
                    continue
                data = event.as_logic_data()
                for computation in meter.computations:
                    if computation.matcher.evaluate(data):
                        value = computation.computation.evaluate(data)
                        usage[(event.account_id, event.timestamp.date(), meter_name)] += float(value)
                        break
        return usage

    def _revenue(self, usage):
        revenue = defaultdict(float)
        for (account_id, day, meter_name), quantity in usage.items():
            association = self.associations.get(account_id)
            if association is None or not association.covers(day):
                continue
            plan = self.plans[association.price_plan_name]
            for card in plan.rate_cards:
                if card.rate_config.usage_meter_name == meter_name:
                    revenue[day] += calculate_revenue(card, quantity)
        return revenue

    async def get_metrics(self, request, timeout=None):
        self._log("getMetrics", tuple(q.id for q in request.metric_queries))
        results = []
        for query in request.metric_queries:
            self.metric_calls[query.name] += 1
            ready_after = (
                self.revenue_ready_after
                if query.name == MetricName.REVENUE
                else self.usage_ready_after
            )
            if self.metric_calls[query.name] < ready_after:
                results.append(MetricQueryResult(id=query.id, name=query.name))
                continue

            customers = query.filter_map.get(CUSTOMER_ID_FILTER)
            usage = self._usage_by_day(request.start_time, request.end_time, customers)
            if query.name == MetricName.REVENUE:
                by_day = self._revenue(usage)
            else:
                by_day = defaultdict(float)
                for (_, day, _), quantity in usage.items():
                    by_day[day] += quantity
            day = request.start_time.date()
            while day <= request.end_time.date():
                by_day.setdefault(day, 0.0)
                day += timedelta(days=1)
            points = tuple(
                MetricDataPoint(
                    timestamp=datetime(day.year, day.month, day.day, tzinfo=timezone.utc),
                    value=round(value, 10),
                )
                for day, value in sorted(by_day.items())
            )
            results.append(MetricQueryResult(id=query.id, name=query.name, points=points))
        return MetricsResponse(results=tuple(results))


@pytest.fixture
def fake_service():
    return InMemoryBillingService()


@pytest.fixture
def make_fake_service():
    return InMemoryBillingService
