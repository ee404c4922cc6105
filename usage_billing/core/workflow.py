"""
Onboarding workflow for usage-based billing.

Runs the eleven stages that take a product from an event schema to
queryable revenue:

1. create event schema        7. create customer
2. activate event schema      8. associate price plan
3. create usage meter         9. ingest usage events
4. activate usage meter      10. query usage metrics
5. create price plan         11. query revenue metrics
6. activate price plan

Each stage may only reference entities produced (and, where applicable,
activated) by an earlier stage of the same workflow instance. Violations
are rejected locally before any network call. The first remote failure
aborts the run; nothing is retried here.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .consistency import FixedDelay, WaitStrategy, metrics_ready
from .errors import ConsistencyNotYetAvailable, OrderingError, StageFailure, ValidationError
from .metrics import GetMetricsRequest, MetricName, MetricQuery, MetricsResponse
from .models import (
    AssociatePricePlanRequest,
    CreateCustomerRequest,
    CreateEventSchemaRequest,
    CreatePricePlanRequest,
    CreateUsageMeterRequest,
    Customer,
    EventSchema,
    IngestResult,
    PricePlan,
    PricePlanAssociation,
    UsageEvent,
    UsageMeter,
)

logger = logging.getLogger(__name__)


class Stage(Enum):
    CREATE_EVENT_SCHEMA = "create_event_schema"
    ACTIVATE_EVENT_SCHEMA = "activate_event_schema"
    CREATE_USAGE_METER = "create_usage_meter"
    ACTIVATE_USAGE_METER = "activate_usage_meter"
    CREATE_PRICE_PLAN = "create_price_plan"
    ACTIVATE_PRICE_PLAN = "activate_price_plan"
    CREATE_CUSTOMER = "create_customer"
    ASSOCIATE_PRICE_PLAN = "associate_price_plan"
    INGEST_EVENTS = "ingest_events"
    QUERY_USAGE_METRICS = "query_usage_metrics"
    QUERY_REVENUE_METRICS = "query_revenue_metrics"


def summarize(payload: Any, limit: int = 160) -> str:
    """Compact one-line rendering of a request payload for error messages."""
    text = json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))
    return text if len(text) <= limit else text[: limit - 3] + "..."


def default_metric_queries(customer_id: str) -> Tuple[Tuple[MetricQuery, ...], Tuple[MetricQuery, ...]]:
    """Usage and revenue queries used when a blueprint names none."""
    usage = (MetricQuery(id="usage-metrics", name=MetricName.USAGE),)
    revenue = (
        MetricQuery(id="revenue-metrics", name=MetricName.REVENUE),
        MetricQuery.for_customer("customer-revenue-metrics", MetricName.REVENUE, customer_id),
    )
    return usage, revenue


@dataclass(frozen=True)
class WorkflowBlueprint:
    """Everything one onboarding run creates, checked for consistency up front."""
    event_schema: CreateEventSchemaRequest
    usage_meters: Tuple[CreateUsageMeterRequest, ...]
    price_plan: CreatePricePlanRequest
    customer: CreateCustomerRequest
    association: AssociatePricePlanRequest
    events: Tuple[UsageEvent, ...] = ()
    account_id: Optional[str] = None
    usage_queries: Tuple[MetricQuery, ...] = ()
    revenue_queries: Tuple[MetricQuery, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "usage_meters", tuple(self.usage_meters))
        object.__setattr__(self, "events", tuple(self.events))
        if self.account_id is None:
            object.__setattr__(self, "account_id", self.customer.id)
        if not self.usage_meters:
            raise ValidationError("blueprint needs at least one usage meter")

        for meter in self.usage_meters:
            meter.validate_against(self.event_schema)
        meter_names = {meter.name for meter in self.usage_meters}
        for name in self.price_plan.usage_meter_names:
            if name not in meter_names:
                raise ValidationError(f"price plan references unknown usage meter '{name}'")
        if self.association.price_plan_name != self.price_plan.name:
            raise ValidationError(
                f"association targets plan '{self.association.price_plan_name}', "
                f"blueprint creates '{self.price_plan.name}'"
            )

        ids = [event.id for event in self.events]
        if len(set(ids)) != len(ids):
            raise ValidationError("event ids must be unique within a blueprint")
        for event in self.events:
            event.validate_against(self.event_schema)
            if event.account_id != self.account_id:
                raise ValidationError(
                    f"event {event.id} is for account '{event.account_id}', "
                    f"blueprint associates '{self.account_id}'"
                )

        if not self.usage_queries and not self.revenue_queries:
            usage, revenue = default_metric_queries(self.customer.id)
            object.__setattr__(self, "usage_queries", usage)
            object.__setattr__(self, "revenue_queries", revenue)
        else:
            object.__setattr__(self, "usage_queries", tuple(self.usage_queries))
            object.__setattr__(self, "revenue_queries", tuple(self.revenue_queries))


@dataclass
class WorkflowState:
    """Identifiers produced so far by one workflow instance."""
    schemas: Dict[str, EventSchema] = field(default_factory=dict)
    schema_requests: Dict[str, CreateEventSchemaRequest] = field(default_factory=dict)
    active_schemas: Set[str] = field(default_factory=set)
    meters: Dict[str, UsageMeter] = field(default_factory=dict)
    meter_schema: Dict[str, str] = field(default_factory=dict)
    active_meters: Set[str] = field(default_factory=set)
    plans: Dict[str, PricePlan] = field(default_factory=dict)
    active_plans: Set[str] = field(default_factory=set)
    customers: Dict[str, Customer] = field(default_factory=dict)
    associations: Dict[str, PricePlanAssociation] = field(default_factory=dict)
    ingested: List[IngestResult] = field(default_factory=list)
    completed: List[Stage] = field(default_factory=list)


@dataclass
class WorkflowResult:
    event_schema: EventSchema
    usage_meters: Tuple[UsageMeter, ...]
    price_plan: PricePlan
    customer: Customer
    association: PricePlanAssociation
    ingest_results: Tuple[IngestResult, ...]
    usage_metrics: Optional[MetricsResponse] = None
    revenue_metrics: Optional[MetricsResponse] = None
    pending: Tuple[Stage, ...] = ()
    completed: Tuple[Stage, ...] = ()


class UsageBillingWorkflow:
    """Drives one onboarding run against a ``BillingService``.

    Instances own their state; run several instances concurrently to
    onboard several customers.
    """

    def __init__(
        self,
        service,
        usage_wait: Optional[WaitStrategy] = None,
        revenue_wait: Optional[WaitStrategy] = None,
        call_timeout: Optional[float] = None,
        ledger=None,
    ):
        """Initialize the workflow.

        Args:
            service: BillingService implementation (required)
            usage_wait: Strategy applied before trusting usage metrics
            revenue_wait: Strategy applied before trusting revenue metrics
            call_timeout: Per-call deadline in seconds passed to the service
            ledger: Optional IngestionLedger recording submitted event ids
        """
        if service is None:
            raise ValidationError("service is required")
        self.service = service
        self.usage_wait = usage_wait or FixedDelay(0)
        self.revenue_wait = revenue_wait or FixedDelay(0)
        self.call_timeout = call_timeout
        self.ledger = ledger
        self.state = WorkflowState()

    async def _execute(self, stage: Stage, summary: str, call: Callable[[], Awaitable[Any]]) -> Any:
        logger.info("Stage %s started", stage.value)
        logger.debug("Stage %s payload: %s", stage.value, summary)
        try:
            result = await call()
        except (ValidationError, ConsistencyNotYetAvailable):
            raise
        except Exception as e:
            logger.error("Stage %s failed: %s", stage.value, e)
            raise StageFailure(stage, summary, e) from e
        self.state.completed.append(stage)
        logger.info("Stage %s completed", stage.value)
        return result

    # ----------------------------------------------------------------
    # Ordering checks
    # ----------------------------------------------------------------

    def _require_active_schema(self, schema_name: str) -> None:
        if schema_name not in self.state.schemas:
            raise OrderingError(f"event schema '{schema_name}' has not been created")
        if schema_name not in self.state.active_schemas:
            raise OrderingError(f"event schema '{schema_name}' is not active")

    def _require_active_meter(self, meter_name: str) -> None:
        if meter_name not in self.state.meters:
            raise OrderingError(f"usage meter '{meter_name}' has not been created")
        if meter_name not in self.state.active_meters:
            raise OrderingError(f"usage meter '{meter_name}' is not active")

    def _require_active_plan(self, plan_name: str) -> None:
        if plan_name not in self.state.plans:
            raise OrderingError(f"price plan '{plan_name}' has not been created")
        if plan_name not in self.state.active_plans:
            raise OrderingError(f"price plan '{plan_name}' is not active")

    def _require_ingested(self) -> None:
        if not self.state.ingested:
            raise OrderingError("metrics can only be queried after events were ingested")

    # ----------------------------------------------------------------
    # Stages
    # ----------------------------------------------------------------

    async def create_event_schema(self, request: CreateEventSchemaRequest) -> EventSchema:
        schema = await self._execute(
            Stage.CREATE_EVENT_SCHEMA,
            summarize(request.to_payload()),
            lambda: self.service.create_event_schema(request, timeout=self.call_timeout),
        )
        self.state.schemas[schema.name] = schema
        self.state.schema_requests[schema.name] = request
        return schema

    async def activate_event_schema(self, name: str) -> None:
        if name not in self.state.schemas:
            raise OrderingError(f"event schema '{name}' has not been created")
        await self._execute(
            Stage.ACTIVATE_EVENT_SCHEMA,
            f"name={name}",
            lambda: self.service.activate_event_schema(name, timeout=self.call_timeout),
        )
        self.state.active_schemas.add(name)

    async def create_usage_meter(
        self, schema_name: str, request: CreateUsageMeterRequest
    ) -> UsageMeter:
        self._require_active_schema(schema_name)
        request.validate_against(self.state.schema_requests[schema_name])
        meter = await self._execute(
            Stage.CREATE_USAGE_METER,
            summarize({"schema": schema_name, **request.to_payload()}),
            lambda: self.service.create_usage_meter(
                schema_name, request, timeout=self.call_timeout
            ),
        )
        self.state.meters[meter.name] = meter
        self.state.meter_schema[meter.name] = schema_name
        return meter

    async def activate_usage_meter(self, schema_name: str, meter_name: str) -> None:
        if self.state.meter_schema.get(meter_name) != schema_name:
            raise OrderingError(
                f"usage meter '{meter_name}' has not been created on schema '{schema_name}'"
            )
        await self._execute(
            Stage.ACTIVATE_USAGE_METER,
            f"schema={schema_name} meter={meter_name}",
            lambda: self.service.activate_usage_meter(
                schema_name, meter_name, timeout=self.call_timeout
            ),
        )
        self.state.active_meters.add(meter_name)

    async def create_price_plan(self, request: CreatePricePlanRequest) -> PricePlan:
        for meter_name in request.usage_meter_names:
            self._require_active_meter(meter_name)
        plan = await self._execute(
            Stage.CREATE_PRICE_PLAN,
            summarize(request.to_payload()),
            lambda: self.service.create_price_plan(request, timeout=self.call_timeout),
        )
        self.state.plans[plan.name] = plan
        return plan

    async def activate_price_plan(self, name: str) -> None:
        if name not in self.state.plans:
            raise OrderingError(f"price plan '{name}' has not been created")
        await self._execute(
            Stage.ACTIVATE_PRICE_PLAN,
            f"name={name}",
            lambda: self.service.activate_price_plan(name, timeout=self.call_timeout),
        )
        self.state.active_plans.add(name)

    async def create_customer(self, request: CreateCustomerRequest) -> Customer:
        customer = await self._execute(
            Stage.CREATE_CUSTOMER,
            summarize({"id": request.id, "name": request.name}),
            lambda: self.service.create_customer(request, timeout=self.call_timeout),
        )
        self.state.customers[customer.id] = customer
        return customer

    async def associate_price_plan(
        self,
        customer_id: str,
        request: AssociatePricePlanRequest,
        account_id: Optional[str] = None,
    ) -> PricePlanAssociation:
        """Bind an account to an active plan; the account defaults to the customer id."""
        account_id = account_id or customer_id
        if customer_id not in self.state.customers:
            raise OrderingError(f"customer '{customer_id}' has not been created")
        self._require_active_plan(request.price_plan_name)
        association = await self._execute(
            Stage.ASSOCIATE_PRICE_PLAN,
            summarize({"customer": customer_id, "account": account_id, **request.to_payload()}),
            lambda: self.service.associate_price_plan(
                customer_id, account_id, request, timeout=self.call_timeout
            ),
        )
        self.state.associations[account_id] = association
        return association

    async def ingest(self, events: Tuple[UsageEvent, ...]) -> List[IngestResult]:
        """Submit events in order, each with the id it was built with."""
        if not events:
            raise ValidationError("at least one event is required")
        for event in events:
            self._require_active_schema(event.schema_name)
            event.validate_against(self.state.schema_requests[event.schema_name])
            if event.account_id not in self.state.associations:
                raise OrderingError(
                    f"account '{event.account_id}' has no price plan association"
                )

        accepted: List[IngestResult] = []

        async def submit() -> List[IngestResult]:
            for event in events:
                if self.ledger is not None and self.ledger.has_event(event.schema_name, event.id):
                    logger.warning("Event %s was ingested before; resubmitting same id", event.id)
                result = await self.service.ingest(event, timeout=self.call_timeout)
                if self.ledger is not None:
                    self.ledger.record(event, result)
                accepted.append(result)
            return accepted

        try:
            await self._execute(
                Stage.INGEST_EVENTS,
                summarize([event.id for event in events]),
                submit,
            )
        except StageFailure as e:
            e.accepted_ids = tuple(result.event_id for result in accepted)
            raise
        finally:
            self.state.ingested.extend(accepted)
        return list(accepted)

    async def _query_metrics(
        self,
        stage: Stage,
        strategy: WaitStrategy,
        request: GetMetricsRequest,
        is_ready: Callable[[MetricsResponse], bool],
    ) -> MetricsResponse:
        self._require_ingested()
        label = "usage" if stage == Stage.QUERY_USAGE_METRICS else "revenue"
        return await self._execute(
            stage,
            summarize(request.to_payload()),
            lambda: strategy.wait_for(
                lambda: self.service.get_metrics(request, timeout=self.call_timeout),
                is_ready,
                label,
            ),
        )

    async def query_usage_metrics(
        self,
        request: GetMetricsRequest,
        is_ready: Callable[[MetricsResponse], bool] = metrics_ready,
    ) -> MetricsResponse:
        return await self._query_metrics(
            Stage.QUERY_USAGE_METRICS, self.usage_wait, request, is_ready
        )

    async def query_revenue_metrics(
        self,
        request: GetMetricsRequest,
        is_ready: Callable[[MetricsResponse], bool] = metrics_ready,
    ) -> MetricsResponse:
        return await self._query_metrics(
            Stage.QUERY_REVENUE_METRICS, self.revenue_wait, request, is_ready
        )

    # ----------------------------------------------------------------
    # Full run
    # ----------------------------------------------------------------

    async def run(
        self,
        blueprint: WorkflowBlueprint,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> WorkflowResult:
        """Execute all stages for ``blueprint``.

        Metrics that are still incomplete when their wait strategy gives up
        are reported in ``WorkflowResult.pending`` instead of failing the run.

        Raises:
            ValidationError: If a request fails local checks
            StageFailure: If the remote service rejects a stage or times out
        """
        schema = await self.create_event_schema(blueprint.event_schema)
        await self.activate_event_schema(schema.name)

        meters = []
        for meter_request in blueprint.usage_meters:
            meter = await self.create_usage_meter(schema.name, meter_request)
            await self.activate_usage_meter(schema.name, meter.name)
            meters.append(meter)

        plan = await self.create_price_plan(blueprint.price_plan)
        await self.activate_price_plan(plan.name)

        customer = await self.create_customer(blueprint.customer)
        association = await self.associate_price_plan(
            customer.id, blueprint.association, blueprint.account_id
        )

        ingest_results: List[IngestResult] = []
        if blueprint.events:
            ingest_results = await self.ingest(blueprint.events)

        result = WorkflowResult(
            event_schema=schema,
            usage_meters=tuple(meters),
            price_plan=plan,
            customer=customer,
            association=association,
            ingest_results=tuple(ingest_results),
        )
        if not ingest_results:
            result.completed = tuple(self.state.completed)
            return result

        end_time = end_time or datetime.now(timezone.utc)
        start_time = start_time or end_time - timedelta(days=1)
        pending: List[Stage] = []

        if blueprint.usage_queries:
            try:
                result.usage_metrics = await self.query_usage_metrics(
                    GetMetricsRequest(start_time, end_time, blueprint.usage_queries)
                )
            except ConsistencyNotYetAvailable as e:
                logger.warning("%s", e)
                result.usage_metrics = e.last_result
                pending.append(Stage.QUERY_USAGE_METRICS)

        if blueprint.revenue_queries:
            try:
                result.revenue_metrics = await self.query_revenue_metrics(
                    GetMetricsRequest(start_time, end_time, blueprint.revenue_queries)
                )
            except ConsistencyNotYetAvailable as e:
                logger.warning("%s", e)
                result.revenue_metrics = e.last_result
                pending.append(Stage.QUERY_REVENUE_METRICS)

        result.pending = tuple(pending)
        result.completed = tuple(self.state.completed)
        return result
