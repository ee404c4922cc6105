"""
Typed request and response shapes for billing entities.

Every request validates itself on construction, so an object that exists
can be sent. Enumerated fields accept either the enum member or its wire
value and reject anything else before it reaches the network.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from .errors import ValidationError
from .expressions import (
    Expression,
    from_json_logic,
    parse_expression,
    validate_references,
)

E = TypeVar("E", bound=Enum)

# Association end dates at or beyond this are treated as open-ended
OPEN_ENDED_UNTIL = date(9999, 1, 1)


class ActivationStatus(Enum):
    """Lifecycle state of schemas, meters and plans."""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class UsageMeterType(Enum):
    COUNTER = "COUNTER"


class UsageMeterAggregation(Enum):
    COUNT = "COUNT"
    SUM = "SUM"


class PricingCycleInterval(Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    HALF_YEARLY = "HALF_YEARLY"
    ANNUALLY = "ANNUALLY"


class StartType(Enum):
    STATIC = "STATIC"
    ANCHORED = "ANCHORED"


class PricingModel(Enum):
    """How slabs combine: TIERED splits usage across slabs, VOLUME prices all usage at one slab."""
    TIERED = "TIERED"
    VOLUME = "VOLUME"


class PriceType(Enum):
    PER_UNIT = "PER_UNIT"
    FLAT = "FLAT"


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Convert a wire value or member into ``enum_cls``.

    Raises:
        ValidationError: If the value is not one of the enumerated values
    """
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.upper())
        except ValueError:
            pass
    valid = [member.value for member in enum_cls]
    raise ValidationError(f"'{field_name}' must be one of: {valid}, got {value!r}")


def require_name(value: Optional[str], field_name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and cannot be empty")


def parse_date(value: Union[str, date], field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ValidationError(f"'{field_name}' is not an ISO-8601 date: {value!r}") from e


def parse_datetime(value: Union[str, datetime], field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(
                f"'{field_name}' is not an ISO-8601 timestamp: {value!r}"
            ) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def _unique(names: List[str], what: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValidationError(f"duplicate {what} name: '{name}'")
        seen.add(name)


# --------------------------------------------------------------------
# Event schema
# --------------------------------------------------------------------

@dataclass(frozen=True)
class SchemaAttribute:
    name: str
    unit: Optional[str] = None

    def __post_init__(self):
        require_name(self.name, "attribute name")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name}
        if self.unit:
            payload["unit"] = self.unit
        return payload


@dataclass(frozen=True)
class SchemaDimension:
    name: str

    def __post_init__(self):
        require_name(self.name, "dimension name")

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class CreateEventSchemaRequest:
    """Declared shape of usage events: attributes plus filterable dimensions."""
    name: str
    attributes: Tuple[SchemaAttribute, ...] = ()
    dimensions: Tuple[SchemaDimension, ...] = ()
    description: Optional[str] = None

    def __post_init__(self):
        require_name(self.name, "event schema name")
        object.__setattr__(self, "attributes", tuple(self.attributes))
        object.__setattr__(self, "dimensions", tuple(self.dimensions))
        if not self.attributes and not self.dimensions:
            raise ValidationError("event schema needs at least one attribute or dimension")
        _unique([a.name for a in self.attributes], "attribute")
        _unique([d.name for d in self.dimensions], "dimension")

    @property
    def attribute_names(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.attributes)

    @property
    def dimension_names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dimensions)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "attributes": [a.to_payload() for a in self.attributes],
            "dimensions": [d.to_payload() for d in self.dimensions],
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class EventSchema:
    name: str
    attributes: Tuple[str, ...] = ()
    dimensions: Tuple[str, ...] = ()
    status: ActivationStatus = ActivationStatus.DRAFT
    version: Optional[int] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "EventSchema":
        return cls(
            name=data.get("name", ""),
            attributes=tuple(a.get("name", "") for a in data.get("attributes") or []),
            dimensions=tuple(d.get("name", "") for d in data.get("dimensions") or []),
            status=_status(data.get("status")),
            version=data.get("version"),
        )


def _status(value: Any) -> ActivationStatus:
    if value is None:
        return ActivationStatus.DRAFT
    try:
        return ActivationStatus(str(value).upper())
    except ValueError:
        return ActivationStatus.DRAFT


# --------------------------------------------------------------------
# Usage meter
# --------------------------------------------------------------------

@dataclass(frozen=True)
class Computation:
    """One matcher/computation pair of a usage meter."""
    matcher: Expression
    computation: Expression

    def __post_init__(self):
        for name in ("matcher", "computation"):
            value = getattr(self, name)
            if isinstance(value, str):
                object.__setattr__(self, name, parse_expression(value))
            elif not isinstance(value, Expression):
                object.__setattr__(self, name, from_json_logic(value))
        if not self.matcher.is_boolean:
            raise ValidationError("matcher must be a boolean expression")
        if not self.computation.is_numeric:
            raise ValidationError("computation must be a numeric expression")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "matcher": self.matcher.serialize(),
            "computation": self.computation.serialize(),
        }


@dataclass(frozen=True)
class CreateUsageMeterRequest:
    name: str
    computations: Tuple[Computation, ...]
    type: UsageMeterType = UsageMeterType.COUNTER
    aggregation: UsageMeterAggregation = UsageMeterAggregation.COUNT
    description: Optional[str] = None

    def __post_init__(self):
        require_name(self.name, "usage meter name")
        object.__setattr__(self, "type", coerce_enum(UsageMeterType, self.type, "type"))
        object.__setattr__(
            self, "aggregation",
            coerce_enum(UsageMeterAggregation, self.aggregation, "aggregation"),
        )
        object.__setattr__(self, "computations", tuple(self.computations))
        if not self.computations:
            raise ValidationError("usage meter needs at least one computation")

    def validate_against(self, schema: Union[CreateEventSchemaRequest, EventSchema]) -> None:
        """Check every matcher and computation against the schema's fields."""
        if isinstance(schema, CreateEventSchemaRequest):
            dimensions, attributes = schema.dimension_names, schema.attribute_names
        else:
            dimensions, attributes = schema.dimensions, schema.attributes
        for item in self.computations:
            validate_references(item.matcher, dimensions, attributes)
            validate_references(item.computation, dimensions, attributes)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "type": self.type.value,
            "aggregation": self.aggregation.value,
            "computations": [c.to_payload() for c in self.computations],
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class UsageMeter:
    name: str
    type: Optional[str] = None
    aggregation: Optional[str] = None
    status: ActivationStatus = ActivationStatus.DRAFT

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "UsageMeter":
        return cls(
            name=data.get("name", ""),
            type=data.get("type"),
            aggregation=data.get("aggregation"),
            status=_status(data.get("status")),
        )


# --------------------------------------------------------------------
# Price plan
# --------------------------------------------------------------------

@dataclass(frozen=True)
class StartOffset:
    day_offset: str = "1"
    month_offset: str = "NIL"

    def __post_init__(self):
        require_name(str(self.day_offset), "day_offset")
        require_name(str(self.month_offset), "month_offset")

    def to_payload(self) -> Dict[str, Any]:
        return {"dayOffset": str(self.day_offset), "monthOffset": str(self.month_offset)}


@dataclass(frozen=True)
class PricingCycleConfig:
    interval: PricingCycleInterval = PricingCycleInterval.MONTHLY
    start_type: StartType = StartType.STATIC
    start_offset: StartOffset = field(default_factory=StartOffset)
    grace_period: int = 0

    def __post_init__(self):
        object.__setattr__(
            self, "interval", coerce_enum(PricingCycleInterval, self.interval, "interval")
        )
        object.__setattr__(
            self, "start_type", coerce_enum(StartType, self.start_type, "start_type")
        )
        if not isinstance(self.grace_period, int) or self.grace_period < 0:
            raise ValidationError("grace_period must be a non-negative integer")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "interval": self.interval.value,
            "startType": self.start_type.value,
            "startOffset": self.start_offset.to_payload(),
            "gracePeriod": self.grace_period,
        }


@dataclass(frozen=True)
class Slab:
    """Rate segment that applies to usage beyond ``start_after``."""
    rate: float
    start_after: float
    order: int
    price_type: PriceType = PriceType.PER_UNIT

    def __post_init__(self):
        object.__setattr__(
            self, "price_type", coerce_enum(PriceType, self.price_type, "price_type")
        )
        if self.rate < 0:
            raise ValidationError("slab rate must be >= 0")
        if self.start_after < 0:
            raise ValidationError("slab start_after must be >= 0")
        if not isinstance(self.order, int) or self.order < 1:
            raise ValidationError("slab order must be a positive integer")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "rate": self.rate,
            "startAfter": self.start_after,
            "priceType": self.price_type.value,
            "order": self.order,
        }


@dataclass(frozen=True)
class RateConfig:
    usage_meter_name: str
    slabs: Tuple[Slab, ...]

    def __post_init__(self):
        require_name(self.usage_meter_name, "usage_meter_name")
        object.__setattr__(self, "slabs", tuple(self.slabs))
        if not self.slabs:
            raise ValidationError("rate config needs at least one slab")
        if self.slabs[0].start_after != 0:
            raise ValidationError("first slab must start after 0")
        for previous, current in zip(self.slabs, self.slabs[1:]):
            if current.order <= previous.order:
                raise ValidationError(
                    f"slab order must be strictly increasing ({previous.order} -> {current.order})"
                )
            if current.start_after <= previous.start_after:
                raise ValidationError(
                    f"slab start_after must be strictly increasing "
                    f"({previous.start_after} -> {current.start_after})"
                )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "usageMeterName": self.usage_meter_name,
            "slabs": [s.to_payload() for s in self.slabs],
        }


@dataclass(frozen=True)
class RateCard:
    display_name: str
    rate_config: RateConfig
    pricing_model: PricingModel = PricingModel.TIERED

    def __post_init__(self):
        require_name(self.display_name, "rate card display_name")
        object.__setattr__(
            self, "pricing_model", coerce_enum(PricingModel, self.pricing_model, "pricing_model")
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "pricingModel": self.pricing_model.value,
            "rateConfig": self.rate_config.to_payload(),
        }


@dataclass(frozen=True)
class CreatePricePlanRequest:
    name: str
    pricing_cycle: PricingCycleConfig
    rate_cards: Tuple[RateCard, ...]
    description: Optional[str] = None

    def __post_init__(self):
        require_name(self.name, "price plan name")
        object.__setattr__(self, "rate_cards", tuple(self.rate_cards))
        if not self.rate_cards:
            raise ValidationError("price plan needs at least one rate card")
        _unique([card.display_name for card in self.rate_cards], "rate card")

    @property
    def usage_meter_names(self) -> Tuple[str, ...]:
        names: List[str] = []
        for card in self.rate_cards:
            if card.rate_config.usage_meter_name not in names:
                names.append(card.rate_config.usage_meter_name)
        return tuple(names)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "pricePlanDetails": {
                "pricingCycleConfig": self.pricing_cycle.to_payload(),
                "rateCards": [card.to_payload() for card in self.rate_cards],
            },
        }
        if self.description:
            payload["description"] = self.description
        return payload


@dataclass(frozen=True)
class PricePlan:
    name: str
    status: ActivationStatus = ActivationStatus.DRAFT

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "PricePlan":
        return cls(name=data.get("name", ""), status=_status(data.get("status")))


# --------------------------------------------------------------------
# Customers and associations
# --------------------------------------------------------------------

@dataclass(frozen=True)
class CreateCustomerRequest:
    id: str
    name: str
    primary_email: str
    billing_address: Optional[str] = None

    def __post_init__(self):
        require_name(self.id, "customer id")
        require_name(self.name, "customer name")
        if not isinstance(self.primary_email, str) or "@" not in self.primary_email:
            raise ValidationError(f"primary_email is not a valid address: {self.primary_email!r}")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "primaryEmail": self.primary_email,
        }
        if self.billing_address:
            payload["billingAddress"] = self.billing_address
        return payload


@dataclass(frozen=True)
class Customer:
    id: str
    name: str = ""
    primary_email: Optional[str] = None
    billing_address: Optional[str] = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Customer":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            primary_email=data.get("primaryEmail"),
            billing_address=data.get("billingAddress"),
        )


@dataclass(frozen=True)
class AssociatePricePlanRequest:
    """Binds an account to a plan from ``effective_from`` until ``effective_until``."""
    price_plan_name: str
    effective_from: date
    effective_until: Optional[date] = None

    def __post_init__(self):
        require_name(self.price_plan_name, "price_plan_name")
        object.__setattr__(
            self, "effective_from", parse_date(self.effective_from, "effective_from")
        )
        if self.effective_until is not None:
            object.__setattr__(
                self, "effective_until", parse_date(self.effective_until, "effective_until")
            )
            if self.effective_until < self.effective_from:
                raise ValidationError("effective_until must not be before effective_from")

    @property
    def is_open_ended(self) -> bool:
        return self.effective_until is None or self.effective_until >= OPEN_ENDED_UNTIL

    def covers(self, day: date) -> bool:
        if day < self.effective_from:
            return False
        return self.is_open_ended or day <= self.effective_until

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "pricePlanName": self.price_plan_name,
            "effectiveFrom": self.effective_from.isoformat(),
        }
        if self.effective_until is not None:
            payload["effectiveUntil"] = self.effective_until.isoformat()
        return payload


@dataclass(frozen=True)
class PricePlanAssociation:
    customer_id: str
    account_id: str
    price_plan_name: str
    effective_from: date
    effective_until: Optional[date] = None

    @classmethod
    def from_api(
        cls,
        data: Mapping[str, Any],
        customer_id: str,
        account_id: str,
        request: AssociatePricePlanRequest,
    ) -> "PricePlanAssociation":
        details = data.get("pricePlanDetails") or {}
        until = data.get("effectiveUntil", request.effective_until)
        return cls(
            customer_id=customer_id,
            account_id=str(data.get("id", account_id)),
            price_plan_name=details.get("name") or data.get("pricePlanName") or request.price_plan_name,
            effective_from=parse_date(
                data.get("effectiveFrom", request.effective_from), "effectiveFrom"
            ),
            effective_until=parse_date(until, "effectiveUntil") if until else None,
        )


# --------------------------------------------------------------------
# Usage events
# --------------------------------------------------------------------

def new_event_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventAttribute:
    name: str
    value: Union[str, float, int]
    unit: Optional[str] = None

    def __post_init__(self):
        require_name(self.name, "event attribute name")

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "value": self.value}
        if self.unit:
            payload["unit"] = self.unit
        return payload


@dataclass(frozen=True)
class UsageEvent:
    """A single usage occurrence.

    The id is the idempotency key: it is generated once, when the event is
    built, and is sent unchanged on every submission.
    """
    schema_name: str
    account_id: str
    attributes: Tuple[EventAttribute, ...] = ()
    dimensions: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=new_event_id)

    def __post_init__(self):
        require_name(self.id, "event id")
        require_name(self.schema_name, "event schema_name")
        require_name(self.account_id, "event account_id")
        object.__setattr__(self, "attributes", tuple(self.attributes))
        object.__setattr__(self, "dimensions", dict(self.dimensions))
        object.__setattr__(self, "timestamp", parse_datetime(self.timestamp, "timestamp"))
        _unique([a.name for a in self.attributes], "event attribute")

    def validate_against(self, schema: Union[CreateEventSchemaRequest, EventSchema]) -> None:
        if isinstance(schema, CreateEventSchemaRequest):
            dimensions, attributes = schema.dimension_names, schema.attribute_names
        else:
            dimensions, attributes = schema.dimensions, schema.attributes
        if self.schema_name != schema.name:
            raise ValidationError(
                f"event {self.id} targets schema '{self.schema_name}', not '{schema.name}'"
            )
        for attr in self.attributes:
            if attr.name not in attributes:
                raise ValidationError(f"event attribute '{attr.name}' is not declared on the schema")
        for name in self.dimensions:
            if name not in dimensions:
                raise ValidationError(f"event dimension '{name}' is not declared on the schema")

    def as_logic_data(self) -> Dict[str, Any]:
        """The event as seen by matcher and computation expressions."""
        return {
            "dimensions": dict(self.dimensions),
            "attributes": {a.name: a.value for a in self.attributes},
        }

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "schemaName": self.schema_name,
            "timestamp": format_timestamp(self.timestamp),
            "accountId": self.account_id,
            "attributes": [a.to_payload() for a in self.attributes],
            "dimensions": dict(self.dimensions),
        }


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    status: str = "ACCEPTED"

    @classmethod
    def from_api(cls, data: Mapping[str, Any], event: UsageEvent) -> "IngestResult":
        returned = data.get("event") or {}
        return cls(
            event_id=str(returned.get("id", event.id)),
            status=str(data.get("status", "ACCEPTED")),
        )
