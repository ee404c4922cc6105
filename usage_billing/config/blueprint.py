"""
Blueprint files describing one onboarding run.

A blueprint names the schema, meters, plan, customer, association window,
events and metric queries of a run. Loading applies the same strict checks
as the runtime configuration and produces fully validated request objects.
"""

from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core.expressions import dimension_filter, from_json_logic, parse_expression
from ..core.metrics import MetricFilter, MetricName, MetricQuery
from ..core.models import (
    AssociatePricePlanRequest,
    Computation,
    CreateCustomerRequest,
    CreateEventSchemaRequest,
    CreatePricePlanRequest,
    CreateUsageMeterRequest,
    EventAttribute,
    PricingCycleConfig,
    RateCard,
    RateConfig,
    SchemaAttribute,
    SchemaDimension,
    Slab,
    StartOffset,
    UsageEvent,
)
from ..core.workflow import WorkflowBlueprint

TODAY = "today"


def load_blueprint(path: str, today: Optional[date] = None) -> WorkflowBlueprint:
    """Load and validate a blueprint from a YAML file.

    Args:
        path: Path to YAML blueprint
        today: Date substituted for the keyword ``today``

    Raises:
        FileNotFoundError: If blueprint file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If the blueprint is invalid
    """
    blueprint_path = Path(path)
    if not blueprint_path.exists():
        raise FileNotFoundError(f"Blueprint file not found: {path}")

    with open(blueprint_path, 'r', encoding='utf-8') as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in blueprint {path}: {e}")

    if not raw:
        raise ValueError("Blueprint file is empty")
    return parse_blueprint(raw, today=today)


def parse_blueprint(raw: Dict[str, Any], today: Optional[date] = None) -> WorkflowBlueprint:
    """Build a blueprint from already-decoded data."""
    if not isinstance(raw, dict):
        raise ValueError("Blueprint must be a dictionary")
    _check_keys(
        raw,
        required={'event_schema', 'usage_meters', 'price_plan', 'customer', 'association'},
        optional={'events', 'account_id', 'metrics'},
        path="blueprint",
    )
    today = today or date.today()

    schema = _parse_event_schema(_mapping(raw['event_schema'], "event_schema"))
    meters = tuple(
        _parse_usage_meter(_mapping(item, f"usage_meters[{i}]"), f"usage_meters[{i}]")
        for i, item in enumerate(_sequence(raw['usage_meters'], "usage_meters"))
    )
    plan = _parse_price_plan(_mapping(raw['price_plan'], "price_plan"))
    customer = _parse_customer(_mapping(raw['customer'], "customer"))
    association = _parse_association(
        _mapping(raw['association'], "association"), plan.name, today
    )

    account_id = str(raw.get('account_id') or customer.id)
    events = tuple(
        _parse_event(_mapping(item, f"events[{i}]"), schema.name, account_id, f"events[{i}]")
        for i, item in enumerate(_sequence(raw.get('events') or [], "events"))
    )

    usage_queries: Tuple[MetricQuery, ...] = ()
    revenue_queries: Tuple[MetricQuery, ...] = ()
    if 'metrics' in raw:
        metrics = _mapping(raw['metrics'], "metrics")
        _check_keys(metrics, required=set(), optional={'usage', 'revenue'}, path="metrics")
        usage_queries = _parse_queries(metrics.get('usage') or [], MetricName.USAGE, "metrics.usage")
        revenue_queries = _parse_queries(
            metrics.get('revenue') or [], MetricName.REVENUE, "metrics.revenue"
        )

    return WorkflowBlueprint(
        event_schema=schema,
        usage_meters=meters,
        price_plan=plan,
        customer=customer,
        association=association,
        events=events,
        account_id=account_id,
        usage_queries=usage_queries,
        revenue_queries=revenue_queries,
    )


def _check_keys(data: Dict[str, Any], required: set, optional: set, path: str) -> None:
    unknown_keys = set(data.keys()) - required - optional
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    missing = required - set(data.keys())
    if missing:
        raise ValueError(f"Missing required keys in {path}: {missing}")


def _mapping(value: Any, path: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return value


def _sequence(value: Any, path: str) -> List[Any]:
    if not isinstance(value, list):
        raise ValueError(f"'{path}' must be a list")
    return value


def _named(items: List[Any], path: str) -> List[Dict[str, Any]]:
    """Accept ``[name, ...]`` or ``[{name: ...}, ...]``."""
    named = []
    for item in _sequence(items, path):
        named.append({'name': item} if isinstance(item, str) else _mapping(item, path))
    return named


def _parse_event_schema(data: Dict[str, Any]) -> CreateEventSchemaRequest:
    _check_keys(data, required={'name'}, optional={'attributes', 'dimensions', 'description'},
                path="event_schema")
    return CreateEventSchemaRequest(
        name=data['name'],
        attributes=tuple(
            SchemaAttribute(name=item['name'], unit=item.get('unit'))
            for item in _named(data.get('attributes') or [], "event_schema.attributes")
        ),
        dimensions=tuple(
            SchemaDimension(name=item['name'])
            for item in _named(data.get('dimensions') or [], "event_schema.dimensions")
        ),
        description=data.get('description'),
    )


def _parse_computation(data: Dict[str, Any], path: str) -> Computation:
    """A computation names its matcher either as ``match`` (dimension -> value)
    or as ``matcher`` (JSON-logic text or mapping)."""
    _check_keys(data, required={'computation'}, optional={'match', 'matcher'}, path=path)
    if ('match' in data) == ('matcher' in data):
        raise ValueError(f"{path} needs exactly one of 'match' or 'matcher'")

    if 'match' in data:
        matcher = dimension_filter(_mapping(data['match'], f"{path}.match"))
    elif isinstance(data['matcher'], str):
        matcher = parse_expression(data['matcher'])
    else:
        matcher = from_json_logic(data['matcher'])

    raw_computation = data['computation']
    if isinstance(raw_computation, str):
        computation = parse_expression(raw_computation)
    else:
        computation = from_json_logic(raw_computation)
    return Computation(matcher=matcher, computation=computation)


def _parse_usage_meter(data: Dict[str, Any], path: str) -> CreateUsageMeterRequest:
    _check_keys(data, required={'name', 'computations'},
                optional={'type', 'aggregation', 'description'}, path=path)
    computations = tuple(
        _parse_computation(_mapping(item, f"{path}.computations[{i}]"), f"{path}.computations[{i}]")
        for i, item in enumerate(_sequence(data['computations'], f"{path}.computations"))
    )
    return CreateUsageMeterRequest(
        name=data['name'],
        computations=computations,
        type=data.get('type', 'COUNTER'),
        aggregation=data.get('aggregation', 'COUNT'),
        description=data.get('description'),
    )


def _parse_price_plan(data: Dict[str, Any]) -> CreatePricePlanRequest:
    _check_keys(data, required={'name', 'rate_cards'},
                optional={'pricing_cycle', 'description'}, path="price_plan")

    cycle = _mapping(data.get('pricing_cycle') or {}, "price_plan.pricing_cycle")
    _check_keys(
        cycle, required=set(),
        optional={'interval', 'start_type', 'day_offset', 'month_offset', 'grace_period'},
        path="price_plan.pricing_cycle",
    )
    pricing_cycle = PricingCycleConfig(
        interval=cycle.get('interval', 'MONTHLY'),
        start_type=cycle.get('start_type', 'STATIC'),
        start_offset=StartOffset(
            day_offset=str(cycle.get('day_offset', '1')),
            month_offset=str(cycle.get('month_offset', 'NIL')),
        ),
        grace_period=cycle.get('grace_period', 0),
    )

    rate_cards = []
    for i, item in enumerate(_sequence(data['rate_cards'], "price_plan.rate_cards")):
        path = f"price_plan.rate_cards[{i}]"
        card = _mapping(item, path)
        _check_keys(card, required={'display_name', 'usage_meter', 'slabs'},
                    optional={'pricing_model'}, path=path)
        slabs = []
        for j, raw_slab in enumerate(_sequence(card['slabs'], f"{path}.slabs")):
            slab = _mapping(raw_slab, f"{path}.slabs[{j}]")
            _check_keys(slab, required={'rate', 'start_after'},
                        optional={'price_type', 'order'}, path=f"{path}.slabs[{j}]")
            slabs.append(Slab(
                rate=float(slab['rate']),
                start_after=float(slab['start_after']),
                order=int(slab.get('order', j + 1)),
                price_type=slab.get('price_type', 'PER_UNIT'),
            ))
        rate_cards.append(RateCard(
            display_name=card['display_name'],
            pricing_model=card.get('pricing_model', 'TIERED'),
            rate_config=RateConfig(usage_meter_name=card['usage_meter'], slabs=tuple(slabs)),
        ))

    return CreatePricePlanRequest(
        name=data['name'],
        pricing_cycle=pricing_cycle,
        rate_cards=tuple(rate_cards),
        description=data.get('description'),
    )


def _parse_customer(data: Dict[str, Any]) -> CreateCustomerRequest:
    _check_keys(data, required={'id', 'name', 'primary_email'},
                optional={'billing_address'}, path="customer")
    return CreateCustomerRequest(
        id=str(data['id']),
        name=data['name'],
        primary_email=data['primary_email'],
        billing_address=data.get('billing_address'),
    )


def _date_value(value: Any, today: date) -> Any:
    if isinstance(value, str) and value.strip().lower() == TODAY:
        return today
    return value


def _parse_association(data: Dict[str, Any], plan_name: str, today: date) -> AssociatePricePlanRequest:
    _check_keys(data, required=set(),
                optional={'price_plan', 'effective_from', 'effective_until'}, path="association")
    until = data.get('effective_until')
    return AssociatePricePlanRequest(
        price_plan_name=data.get('price_plan', plan_name),
        effective_from=_date_value(data.get('effective_from', TODAY), today),
        effective_until=_date_value(until, today) if until is not None else None,
    )


def _parse_event(data: Dict[str, Any], schema_name: str, account_id: str, path: str) -> UsageEvent:
    _check_keys(data, required=set(),
                optional={'id', 'timestamp', 'attributes', 'dimensions'}, path=path)
    attributes = _mapping(data.get('attributes') or {}, f"{path}.attributes")
    dimensions = _mapping(data.get('dimensions') or {}, f"{path}.dimensions")
    kwargs: Dict[str, Any] = {}
    if 'id' in data:
        kwargs['id'] = str(data['id'])
    if 'timestamp' in data:
        kwargs['timestamp'] = data['timestamp']
    return UsageEvent(
        schema_name=schema_name,
        account_id=account_id,
        attributes=tuple(EventAttribute(name=k, value=v) for k, v in attributes.items()),
        dimensions={k: str(v) for k, v in dimensions.items()},
        **kwargs,
    )


def _parse_queries(items: Any, name: MetricName, path: str) -> Tuple[MetricQuery, ...]:
    queries = []
    for i, item in enumerate(_sequence(items, path)):
        query = _mapping(item, f"{path}[{i}]")
        _check_keys(query, required={'id'}, optional={'aggregation_period', 'filters'},
                    path=f"{path}[{i}]")
        filters = _mapping(query.get('filters') or {}, f"{path}[{i}].filters")
        queries.append(MetricQuery(
            id=str(query['id']),
            name=name,
            aggregation_period=query.get('aggregation_period', 'DAY'),
            filters=tuple(
                MetricFilter(field_name=field, field_values=tuple(
                    values if isinstance(values, list) else [values]
                ))
                for field, values in filters.items()
            ),
        ))
    return tuple(queries)
