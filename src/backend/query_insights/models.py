from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class UserCategory(str, Enum):
    NEW = "new"
    RETURNING = "returning"

    @property
    def label(self) -> str:
        return "First-time" if self is UserCategory.NEW else "Returning"


@dataclass(frozen=True)
class StageTokens:
    """
    Token counters reported by one pipeline stage.

    Every counter is optional: ``None`` means the stage did not report it,
    which is different from a reported ``0``.
    """

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass(frozen=True)
class Event:
    """
    One logged assistant query in canonical form.

    Instances are only built by ``normalization.normalize_event`` so that all
    "missing / wrapped / wrong type" handling lives at that boundary.
    ``occurred_at`` is ``None`` when the raw timestamp could not be parsed.
    """

    id: str
    occurred_at: Optional[datetime]
    occurred_at_raw: Optional[str] = None
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    restaurant_id: Optional[str] = None
    user_category: UserCategory = UserCategory.RETURNING
    question: Optional[str] = None
    succeeded: bool = False
    error_text: Optional[str] = None
    latency_ms: Optional[float] = None
    token_usage: Dict[str, StageTokens] = field(default_factory=dict)
    stage_timings: Dict[str, float] = field(default_factory=dict)
    request_type: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return sum(stage.total_tokens or 0 for stage in self.token_usage.values())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "occurredAt": self.occurred_at.isoformat() if self.occurred_at else self.occurred_at_raw,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "restaurantId": self.restaurant_id,
            "userType": self.user_category.label,
            "question": self.question,
            "succeeded": self.succeeded,
            "errorText": self.error_text,
            "latencyMs": self.latency_ms,
            "requestType": self.request_type,
            "totalTokens": self.total_tokens,
        }


@dataclass(frozen=True)
class DashboardFilters:
    """
    Optional population filters shared by every dashboard view.

    ``None`` means "all". Filters are applied before any aggregation so the
    windows and lifetime totals see the same population.
    """

    request_type: Optional[str] = None
    user_category: Optional[UserCategory] = None

    @classmethod
    def from_params(cls, request_type: Optional[str] = None, user_type: Optional[str] = None) -> "DashboardFilters":
        category = None
        if user_type and user_type.lower() != "all":
            try:
                category = UserCategory(user_type.lower())
            except ValueError as exc:
                raise ValueError(f"Unsupported user type filter: {user_type}") from exc
        if request_type and request_type.lower() == "all":
            request_type = None
        return cls(request_type=request_type or None, user_category=category)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _serialize(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        renames = getattr(obj, "_json_names", {})
        return {
            renames.get(item.name, _camel(item.name)): _serialize(getattr(obj, item.name))
            for item in fields(obj)
        }
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, dict):
        return {key: _serialize(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize(item) for item in obj]
    return obj


# ---------------------------------------------------------------- overview --


@dataclass(frozen=True)
class KpiSummary:
    total_users: int = 0
    total_queries: int = 0
    success_count: int = 0
    success_rate: float = 0
    avg_response_time: float = 0
    total_restaurants: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class WeekStats:
    queries: int = 0
    users: int = 0
    returning_users: int = 0
    avg_response_time: float = 0
    success_rate: float = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class WeeklyGrowth:
    """
    ``success_rate`` is a percentage-point difference, every other field is a
    relative growth percentage.
    """

    queries: float = 0
    users: float = 0
    returning_users: float = 0
    response_time: float = 0
    success_rate: float = 0
    tokens: float = 0
    current_week: WeekStats = field(default_factory=WeekStats)
    previous_week: WeekStats = field(default_factory=WeekStats)


@dataclass(frozen=True)
class VolumePoint:
    date: str
    queries: int
    avg_response_time: float
    success_rate: float


@dataclass(frozen=True)
class RestaurantRow:
    name: str
    restaurant_id: str
    queries: int
    success_rate: float
    avg_response_time: float
    unique_users: int


@dataclass(frozen=True)
class CategoryShare:
    name: str
    value: int
    avg_response_time: float


@dataclass(frozen=True)
class UserGrowthPoint:
    date: str
    new_users: int = 0
    returning_users: int = 0


@dataclass(frozen=True)
class LatestFailure:
    error: str = "No recent errors"
    timestamp: Optional[str] = None


@dataclass(frozen=True)
class DataRange:
    _json_names = {"start": "from", "end": "to"}

    start: datetime
    end: datetime


@dataclass(frozen=True)
class OverviewReport:
    kpis: KpiSummary = field(default_factory=KpiSummary)
    weekly_growth: WeeklyGrowth = field(default_factory=WeeklyGrowth)
    query_volume: Sequence[VolumePoint] = field(default_factory=list)
    top_restaurants: Sequence[RestaurantRow] = field(default_factory=list)
    request_distribution: Sequence[CategoryShare] = field(default_factory=list)
    user_growth: Sequence[UserGrowthPoint] = field(default_factory=list)
    active_users: int = 0
    peak_hour: Any = "N/A"
    latest_error: str = "No recent errors"
    error_timestamp: Optional[str] = None
    timestamp: Optional[datetime] = None
    data_range: Optional[DataRange] = None

    def as_dict(self) -> Dict[str, Any]:
        return _serialize(self)


# --------------------------------------------------------------- analytics --


@dataclass(frozen=True)
class PhaseTiming:
    name: str
    time: float


@dataclass(frozen=True)
class TokenShare:
    name: str
    value: int


@dataclass(frozen=True)
class RequestTypeMetric:
    name: str
    avg_response_time: float
    success_rate: float


@dataclass(frozen=True)
class LatencyPercentiles:
    p50: float = 0
    p95: float = 0
    p99: float = 0


@dataclass(frozen=True)
class ErrorTrend:
    name: str
    count: int


@dataclass(frozen=True)
class ResourceUsage:
    name: str
    total_tokens: int
    avg_tokens_per_query: Optional[float]


@dataclass(frozen=True)
class AnalyticsReport:
    phase_breakdown: Sequence[PhaseTiming] = field(default_factory=list)
    token_breakdown: Sequence[TokenShare] = field(default_factory=list)
    request_type_metrics: Sequence[RequestTypeMetric] = field(default_factory=list)
    latency_percentiles: LatencyPercentiles = field(default_factory=LatencyPercentiles)
    error_trends: Sequence[ErrorTrend] = field(default_factory=list)
    resource_utilization: Sequence[ResourceUsage] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return _serialize(self)


# ------------------------------------------------------------------- users --


@dataclass(frozen=True)
class UserTypeCount:
    _json_names = {"label": "_id"}

    label: str
    count: int


@dataclass(frozen=True)
class UserActivity:
    email: str
    query_count: int = 0
    last_activity: Optional[str] = None


@dataclass(frozen=True)
class SessionStats:
    queries_per_session: List[int] = field(default_factory=list)
    durations: List[int] = field(default_factory=list)

    @property
    def avg_queries_per_session(self) -> float:
        if not self.queries_per_session:
            return 0
        return sum(self.queries_per_session) / len(self.queries_per_session)


@dataclass(frozen=True)
class HistogramBucket:
    range: str
    count: int


@dataclass(frozen=True)
class DuplicateQuestion:
    query: str
    count: int
    users: List[str]


@dataclass(frozen=True)
class RetentionPoint:
    week: str
    users: int


@dataclass(frozen=True)
class ComplexityRow:
    user_type: str
    avg_length: float
    avg_tokens: float
    count: int


@dataclass(frozen=True)
class JourneyTransition:
    _json_names = {"source": "from", "target": "to"}

    source: str
    target: str
    count: int


@dataclass(frozen=True)
class EngagementRow:
    email: str
    query_count: int
    success: int
    success_rate: int
    score: int


@dataclass(frozen=True)
class UsersReport:
    user_types: Sequence[UserTypeCount] = field(default_factory=list)
    user_activity: Sequence[UserActivity] = field(default_factory=list)
    queries_per_session: Sequence[int] = field(default_factory=list)
    durations: Sequence[int] = field(default_factory=list)
    avg_queries_per_session: float = 0
    session_buckets: Sequence[HistogramBucket] = field(default_factory=list)
    duration_buckets: Sequence[HistogramBucket] = field(default_factory=list)
    duplicate_queries: Sequence[DuplicateQuestion] = field(default_factory=list)
    retention_weekly: Sequence[RetentionPoint] = field(default_factory=list)
    query_complexity_by_user_type: Sequence[ComplexityRow] = field(default_factory=list)
    user_journey_transitions: Sequence[JourneyTransition] = field(default_factory=list)
    engagement: Sequence[EngagementRow] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return _serialize(self)


@dataclass(frozen=True)
class DashboardBundle:
    overview: OverviewReport
    analytics: AnalyticsReport
    users: UsersReport

    def as_dict(self) -> Dict[str, Any]:
        return {
            "overview": self.overview.as_dict(),
            "analytics": self.analytics.as_dict(),
            "users": self.users.as_dict(),
        }
