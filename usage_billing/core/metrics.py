"""
Metric queries and time-bucketed results.

Handles usage and revenue metric requests and parsing of their responses.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import parse_datetime, require_name, coerce_enum, format_timestamp

CUSTOMER_ID_FILTER = "CUSTOMER_ID"


class MetricName(Enum):
    USAGE = "USAGE"
    REVENUE = "REVENUE"
    EVENTS = "EVENTS"


class AggregationPeriod(Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


@dataclass(frozen=True)
class MetricFilter:
    """Restrict a query to rows whose ``field_name`` is one of ``field_values``."""
    field_name: str
    field_values: Tuple[str, ...]

    def __post_init__(self):
        require_name(self.field_name, "filter field_name")
        object.__setattr__(self, "field_values", tuple(str(v) for v in self.field_values))
        if not self.field_values:
            raise ValidationError(f"filter '{self.field_name}' needs at least one value")

    def to_payload(self) -> Dict[str, Any]:
        return {"fieldName": self.field_name, "fieldValues": list(self.field_values)}


@dataclass(frozen=True)
class MetricQuery:
    id: str
    name: MetricName
    aggregation_period: AggregationPeriod = AggregationPeriod.DAY
    filters: Tuple[MetricFilter, ...] = ()

    def __post_init__(self):
        require_name(self.id, "metric query id")
        object.__setattr__(self, "name", coerce_enum(MetricName, self.name, "name"))
        object.__setattr__(
            self, "aggregation_period",
            coerce_enum(AggregationPeriod, self.aggregation_period, "aggregation_period"),
        )
        object.__setattr__(self, "filters", tuple(self.filters))

    @classmethod
    def for_customer(
        cls,
        id: str,
        name: MetricName,
        customer_id: str,
        aggregation_period: AggregationPeriod = AggregationPeriod.DAY,
    ) -> "MetricQuery":
        return cls(
            id=id,
            name=name,
            aggregation_period=aggregation_period,
            filters=(MetricFilter(CUSTOMER_ID_FILTER, (customer_id,)),),
        )

    @property
    def filter_map(self) -> Dict[str, Tuple[str, ...]]:
        return {f.field_name: f.field_values for f in self.filters}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name.value,
            "aggregationPeriod": self.aggregation_period.value,
        }
        if self.filters:
            payload["filters"] = [f.to_payload() for f in self.filters]
        return payload


@dataclass(frozen=True)
class GetMetricsRequest:
    start_time: datetime
    end_time: datetime
    metric_queries: Tuple[MetricQuery, ...]

    def __post_init__(self):
        object.__setattr__(self, "start_time", parse_datetime(self.start_time, "start_time"))
        object.__setattr__(self, "end_time", parse_datetime(self.end_time, "end_time"))
        object.__setattr__(self, "metric_queries", tuple(self.metric_queries))
        if self.end_time <= self.start_time:
            raise ValidationError("end_time must be after start_time")
        if not self.metric_queries:
            raise ValidationError("at least one metric query is required")
        ids = [q.id for q in self.metric_queries]
        if len(set(ids)) != len(ids):
            raise ValidationError(f"metric query ids must be unique: {ids}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "metricQueries": [q.to_payload() for q in self.metric_queries],
        }


@dataclass(frozen=True)
class MetricDataPoint:
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class MetricQueryResult:
    id: str
    name: Optional[MetricName]
    points: Tuple[MetricDataPoint, ...] = ()

    @property
    def total(self) -> float:
        return sum(point.value for point in self.points)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "MetricQueryResult":
        name: Optional[MetricName]
        try:
            name = MetricName(str(data.get("name", "")).upper())
        except ValueError:
            name = None
        points: List[MetricDataPoint] = []
        for series in data.get("data") or []:
            timestamps = series.get("timestamps") or []
            values = series.get("metricValues") or []
            for stamp, value in zip(timestamps, values):
                points.append(MetricDataPoint(
                    timestamp=parse_datetime(stamp, "timestamp"),
                    value=float(value or 0),
                ))
        return cls(id=data.get("id", ""), name=name, points=tuple(points))


@dataclass(frozen=True)
class MetricsResponse:
    results: Tuple[MetricQueryResult, ...] = ()

    def get(self, query_id: str) -> MetricQueryResult:
        for result in self.results:
            if result.id == query_id:
                return result
        raise KeyError(f"No result for metric query '{query_id}'")

    def total(self, query_id: str) -> float:
        return self.get(query_id).total

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "MetricsResponse":
        return cls(
            results=tuple(MetricQueryResult.from_api(item) for item in data.get("results") or [])
        )
