"""
HTTP implementation of the billing service.

Talks JSON to the REST API with a bearer token. Non-success responses
become ``RemoteRejection`` and deadline overruns become ``RemoteTimeout``;
nothing is retried here.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..core.errors import RemoteRejection, RemoteTimeout, RemoteUnavailable, ValidationError
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
from .service import BillingService

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://sandbox-api.togai.com"


def _segment(value: str) -> str:
    return quote(value, safe="")


def _reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "reason", "detail"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase


class HttpBillingService(BillingService):
    """Billing service client over ``httpx.AsyncClient``.

    Use as an async context manager so the connection pool is closed::

        async with HttpBillingService(base_url, token) as service:
            await service.create_customer(request)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: API endpoint root (required)
            api_token: Bearer token (required)
            timeout: Default per-call deadline in seconds
            transport: Optional httpx transport, mainly for tests

        Raises:
            ValidationError: If base_url or api_token is missing
        """
        if not base_url or not base_url.strip():
            raise ValidationError("base_url is required and cannot be empty")
        if not api_token or not api_token.strip():
            raise ValidationError("api_token is required and cannot be empty")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
        )

    async def __aenter__(self) -> "HttpBillingService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        logger.debug("%s %s (%s)", method, path, operation)
        try:
            response = await self._client.request(
                method,
                path,
                json=payload,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            raise RemoteTimeout(operation, timeout if timeout is not None else self.timeout) from e
        except httpx.TransportError as e:
            raise RemoteUnavailable(operation, str(e) or type(e).__name__) from e

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise RemoteRejection(response.status_code, _reason(response), body)

        if not response.content:
            return {}
        return response.json()

    async def create_event_schema(
        self, request: CreateEventSchemaRequest, timeout: Optional[float] = None
    ) -> EventSchema:
        data = await self._request(
            "POST", "/event_schema", "createEventSchema", request.to_payload(), timeout
        )
        return EventSchema.from_api(data or request.to_payload())

    async def activate_event_schema(self, name: str, timeout: Optional[float] = None) -> None:
        await self._request(
            "POST", f"/event_schema/{_segment(name)}/activate", "activateEventSchema",
            timeout=timeout,
        )

    async def create_usage_meter(
        self,
        schema_name: str,
        request: CreateUsageMeterRequest,
        timeout: Optional[float] = None,
    ) -> UsageMeter:
        data = await self._request(
            "POST",
            f"/event_schema/{_segment(schema_name)}/usage_meters",
            "createUsageMeter",
            request.to_payload(),
            timeout,
        )
        return UsageMeter.from_api(data or request.to_payload())

    async def activate_usage_meter(
        self, schema_name: str, meter_name: str, timeout: Optional[float] = None
    ) -> None:
        await self._request(
            "POST",
            f"/event_schema/{_segment(schema_name)}/usage_meters/{_segment(meter_name)}/activate",
            "activateUsageMeter",
            timeout=timeout,
        )

    async def create_price_plan(
        self, request: CreatePricePlanRequest, timeout: Optional[float] = None
    ) -> PricePlan:
        data = await self._request(
            "POST", "/price_plans", "createPricePlan", request.to_payload(), timeout
        )
        return PricePlan.from_api(data or request.to_payload())

    async def activate_price_plan(self, name: str, timeout: Optional[float] = None) -> None:
        await self._request(
            "POST", f"/price_plans/{_segment(name)}/activate", "activatePricePlan",
            timeout=timeout,
        )

    async def create_customer(
        self, request: CreateCustomerRequest, timeout: Optional[float] = None
    ) -> Customer:
        data = await self._request(
            "POST", "/customers", "createCustomer", request.to_payload(), timeout
        )
        return Customer.from_api(data or request.to_payload())

    async def associate_price_plan(
        self,
        customer_id: str,
        account_id: str,
        request: AssociatePricePlanRequest,
        timeout: Optional[float] = None,
    ) -> PricePlanAssociation:
        data = await self._request(
            "POST",
            f"/customers/{_segment(customer_id)}/accounts/{_segment(account_id)}/price_plans",
            "associatePricePlan",
            request.to_payload(),
            timeout,
        )
        return PricePlanAssociation.from_api(data or {}, customer_id, account_id, request)

    async def ingest(self, event: UsageEvent, timeout: Optional[float] = None) -> IngestResult:
        data = await self._request(
            "POST", "/ingest", "ingest", {"event": event.to_payload()}, timeout
        )
        return IngestResult.from_api(data or {}, event)

    async def get_metrics(
        self, request: GetMetricsRequest, timeout: Optional[float] = None
    ) -> MetricsResponse:
        data = await self._request(
            "POST", "/metrics", "getMetrics", request.to_payload(), timeout
        )
        return MetricsResponse.from_api(data or {})
