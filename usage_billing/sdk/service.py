"""
Capability interface of the remote billing service.

The workflow depends only on this interface, so the transport behind it
can be swapped without touching orchestration logic.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..core.metrics import GetMetricsRequest, MetricsResponse
from ..core.models import (
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


class BillingService(ABC):
    """Create, activate and query operations offered by the backend.

    Every method accepts an optional per-call ``timeout`` in seconds; it is
    the only way a call is cancelled short of cancelling the task.
    """

    @abstractmethod
    async def create_event_schema(
        self, request: CreateEventSchemaRequest, timeout: Optional[float] = None
    ) -> EventSchema:
        ...

    @abstractmethod
    async def activate_event_schema(self, name: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def create_usage_meter(
        self,
        schema_name: str,
        request: CreateUsageMeterRequest,
        timeout: Optional[float] = None,
    ) -> UsageMeter:
        ...

    @abstractmethod
    async def activate_usage_meter(
        self, schema_name: str, meter_name: str, timeout: Optional[float] = None
    ) -> None:
        ...

    @abstractmethod
    async def create_price_plan(
        self, request: CreatePricePlanRequest, timeout: Optional[float] = None
    ) -> PricePlan:
        ...

    @abstractmethod
    async def activate_price_plan(self, name: str, timeout: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def create_customer(
        self, request: CreateCustomerRequest, timeout: Optional[float] = None
    ) -> Customer:
        ...

    @abstractmethod
    async def associate_price_plan(
        self,
        customer_id: str,
        account_id: str,
        request: AssociatePricePlanRequest,
        timeout: Optional[float] = None,
    ) -> PricePlanAssociation:
        ...

    @abstractmethod
    async def ingest(self, event: UsageEvent, timeout: Optional[float] = None) -> IngestResult:
        ...

    @abstractmethod
    async def get_metrics(
        self, request: GetMetricsRequest, timeout: Optional[float] = None
    ) -> MetricsResponse:
        ...
