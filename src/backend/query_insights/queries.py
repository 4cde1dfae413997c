from __future__ import annotations

import re
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .dataset import UNKNOWN_LABEL, EventDataset, event_user_key
from .formulas import (
    average,
    bucket_counts,
    engagement_score,
    percentile,
    point_difference,
    round_half_up,
    safe_growth_percent,
    success_rate,
    truncate_label,
    week_key,
)
from .models import (
    CategoryShare,
    ComplexityRow,
    DuplicateQuestion,
    EngagementRow,
    ErrorTrend,
    Event,
    HistogramBucket,
    JourneyTransition,
    KpiSummary,
    LatencyPercentiles,
    LatestFailure,
    PhaseTiming,
    RequestTypeMetric,
    ResourceUsage,
    RestaurantRow,
    RetentionPoint,
    SessionStats,
    TokenShare,
    UserActivity,
    UserCategory,
    UserGrowthPoint,
    UserTypeCount,
    VolumePoint,
    WeeklyGrowth,
    WeekStats,
)

TREND_DAYS = 30
TOP_RESTAURANTS_LIMIT = 10
ACTIVE_WINDOW_MINUTES = 5
ERROR_TRENDS_LIMIT = 5

SESSION_SIZE_BUCKETS = (("1-5", 5), ("6-10", 10), ("11-20", 20), ("21-50", 50), ("50+", None))
SESSION_DURATION_BUCKETS = (("0-30s", 30), ("30-60s", 60), ("1-5m", 300), ("5-15m", 900), ("15m+", None))

_WHITESPACE = re.compile(r"\s+")


def _avg_latency(events: Sequence[Event], decimals: int = 0) -> float:
    mean = average(EventDataset.latencies(events))
    return round_half_up(mean, decimals) if mean is not None else 0


def _day_key(instant: datetime) -> str:
    return instant.strftime("%Y-%m-%d")


# ---------------------------------------------------------------- overview --


def lifetime_kpis(dataset: EventDataset) -> KpiSummary:
    """Totals over every event, including ones with unparseable timestamps."""

    events = list(dataset)
    successes = EventDataset.success_count(events)
    return KpiSummary(
        total_users=dataset.unique_users(),
        total_queries=len(events),
        success_count=successes,
        success_rate=success_rate(successes, len(events)),
        avg_response_time=_avg_latency(events),
        total_restaurants=len({event.restaurant_id for event in events if event.restaurant_id is not None}),
        total_tokens=EventDataset.total_tokens(events),
    )


def week_stats(events: Sequence[Event]) -> WeekStats:
    successes = EventDataset.success_count(events)
    returning = {
        event.user_id
        for event in events
        if event.user_id and event.user_category is UserCategory.RETURNING
    }
    return WeekStats(
        queries=len(events),
        users=len({event.user_id for event in events if event.user_id}),
        returning_users=len(returning),
        avg_response_time=_avg_latency(events),
        success_rate=success_rate(successes, len(events)),
        total_tokens=EventDataset.total_tokens(events),
    )


def weekly_comparison(dataset: EventDataset, now: datetime) -> WeeklyGrowth:
    week = timedelta(days=7)
    current = week_stats(dataset.window(now - week, now))
    previous = week_stats(dataset.window(now - 2 * week, now - week))
    return WeeklyGrowth(
        queries=safe_growth_percent(current.queries, previous.queries),
        users=safe_growth_percent(current.users, previous.users),
        returning_users=safe_growth_percent(current.returning_users, previous.returning_users),
        response_time=safe_growth_percent(current.avg_response_time, previous.avg_response_time),
        success_rate=point_difference(current.success_rate, previous.success_rate),
        tokens=safe_growth_percent(current.total_tokens, previous.total_tokens),
        current_week=current,
        previous_week=previous,
    )


def volume_trend(dataset: EventDataset, now: datetime, days: int = TREND_DAYS) -> List[VolumePoint]:
    by_day: Dict[str, List[Event]] = defaultdict(list)
    for event, instant in dataset.iter_window(now - timedelta(days=days), now):
        by_day[_day_key(instant)].append(event)

    return [
        VolumePoint(
            date=day,
            queries=len(events),
            avg_response_time=_avg_latency(events),
            success_rate=success_rate(EventDataset.success_count(events), len(events)),
        )
        for day, events in sorted(by_day.items())
    ]


def top_restaurants(
    dataset: EventDataset,
    now: datetime,
    days: int = TREND_DAYS,
    limit: int = TOP_RESTAURANTS_LIMIT,
) -> List[RestaurantRow]:
    recent = dataset.window(now - timedelta(days=days), now)
    groups = EventDataset.group_by(recent, lambda event: event.restaurant_id)
    rows = [
        RestaurantRow(
            name=f"Restaurant {restaurant_id}",
            restaurant_id=restaurant_id,
            queries=len(events),
            success_rate=success_rate(EventDataset.success_count(events), len(events)),
            avg_response_time=_avg_latency(events),
            unique_users=dataset.unique_users(events),
        )
        for restaurant_id, events in groups.items()
    ]
    return sorted(rows, key=lambda row: row.queries, reverse=True)[:limit]


def request_distribution(dataset: EventDataset) -> List[CategoryShare]:
    groups = EventDataset.group_by(list(dataset), lambda event: event.request_type or UNKNOWN_LABEL)
    rows = [
        CategoryShare(name=label, value=len(events), avg_response_time=_avg_latency(events))
        for label, events in groups.items()
    ]
    return sorted(rows, key=lambda row: row.value, reverse=True)


def user_growth(dataset: EventDataset, now: datetime, days: int = TREND_DAYS) -> List[UserGrowthPoint]:
    pivot: Dict[str, Counter] = defaultdict(Counter)
    for event, instant in dataset.iter_window(now - timedelta(days=days), now):
        pivot[_day_key(instant)][event.user_category] += 1

    return [
        UserGrowthPoint(
            date=day,
            new_users=counts[UserCategory.NEW],
            returning_users=counts[UserCategory.RETURNING],
        )
        for day, counts in sorted(pivot.items())
    ]


def active_users(dataset: EventDataset, now: datetime, minutes: int = ACTIVE_WINDOW_MINUTES) -> int:
    recent = dataset.window(start=now - timedelta(minutes=minutes))
    return dataset.unique_users(recent)


def latest_failure(dataset: EventDataset) -> LatestFailure:
    failures = [event for event in dataset if not event.succeeded and event.error_text is not None]
    if not failures:
        return LatestFailure()
    newest = EventDataset(failures).newest(1)[0]
    timestamp = newest.occurred_at.isoformat() if newest.occurred_at else newest.occurred_at_raw
    return LatestFailure(error=newest.error_text, timestamp=timestamp)


def peak_hour(dataset: EventDataset, now: datetime, days: int = TREND_DAYS) -> Optional[int]:
    hours: Counter = Counter(instant.hour for _, instant in dataset.iter_window(now - timedelta(days=days), now))
    if not hours:
        return None
    # most_common keeps first-encountered order among equal counts.
    return hours.most_common(1)[0][0]


# ------------------------------------------------------------------- users --


def user_types(dataset: EventDataset) -> List[UserTypeCount]:
    counts = Counter(event.user_category for event in dataset)
    return [
        UserTypeCount(label=UserCategory.NEW.label, count=counts[UserCategory.NEW]),
        UserTypeCount(label=UserCategory.RETURNING.label, count=counts[UserCategory.RETURNING]),
    ]


def user_activity(dataset: EventDataset) -> List[UserActivity]:
    rows = []
    for email, events in EventDataset.group_by(list(dataset), event_user_key).items():
        instants = [event.occurred_at for event in events if event.occurred_at is not None]
        last = max(instants).isoformat() if instants else None
        rows.append(UserActivity(email=email, query_count=len(events), last_activity=last))
    return sorted(rows, key=lambda row: row.query_count, reverse=True)


def _sessions(dataset: EventDataset) -> Dict[str, List[Event]]:
    return EventDataset.group_by(list(dataset), lambda event: event.session_id or None)


def session_stats(dataset: EventDataset) -> SessionStats:
    counts: List[int] = []
    durations: List[int] = []
    for events in _sessions(dataset).values():
        counts.append(len(events))
        instants = [event.occurred_at for event in events if event.occurred_at is not None]
        if len(instants) < 2:
            durations.append(0)
            continue
        elapsed = (max(instants) - min(instants)).total_seconds()
        durations.append(max(0, round_half_up(elapsed)))
    return SessionStats(queries_per_session=counts, durations=durations)


def session_histograms(stats: SessionStats) -> Tuple[List[HistogramBucket], List[HistogramBucket]]:
    sizes = bucket_counts(stats.queries_per_session, SESSION_SIZE_BUCKETS)
    durations = bucket_counts(stats.durations, SESSION_DURATION_BUCKETS)
    return (
        [HistogramBucket(range=label, count=count) for label, count in sizes],
        [HistogramBucket(range=label, count=count) for label, count in durations],
    )


def duplicate_questions(dataset: EventDataset) -> List[DuplicateQuestion]:
    groups = EventDataset.group_by(
        list(dataset),
        lambda event: event.question.lower().strip() if event.question else None,
    )
    rows = []
    for question, events in groups.items():
        if len(events) < 2:
            continue
        users = list(dict.fromkeys(event.user_id for event in events if event.user_id))
        rows.append(DuplicateQuestion(query=question, count=len(events), users=users))
    return sorted(rows, key=lambda row: row.count, reverse=True)


def _token_count(question: str) -> int:
    return len(_WHITESPACE.split(question)) if question else 0


def query_complexity(dataset: EventDataset) -> List[ComplexityRow]:
    rows = []
    for category, events in EventDataset.group_by(list(dataset), lambda event: event.user_category).items():
        questions = [event.question or "" for event in events]
        rows.append(
            ComplexityRow(
                user_type=category.label,
                avg_length=sum(len(question) for question in questions) / len(questions),
                avg_tokens=sum(_token_count(question) for question in questions) / len(questions),
                count=len(questions),
            )
        )
    return sorted(rows, key=lambda row: row.count, reverse=True)


def retention_weekly(dataset: EventDataset, tz: str = "UTC") -> List[RetentionPoint]:
    cohorts: Dict[str, Set[str]] = defaultdict(set)
    for event, instant in dataset.iter_window():
        user = event_user_key(event)
        if user is None:
            continue
        cohorts[week_key(instant, tz)].add(user)
    return [RetentionPoint(week=week, users=len(users)) for week, users in sorted(cohorts.items())]


def journey_transitions(dataset: EventDataset) -> List[JourneyTransition]:
    counts: Counter = Counter()
    for events in _sessions(dataset).values():
        ordered = sorted(
            events,
            key=lambda event: (event.occurred_at is None, event.occurred_at or datetime.max),
        )
        for current, following in zip(ordered, ordered[1:]):
            source = truncate_label(current.question, "Start")
            target = truncate_label(following.question, "Next")
            counts[(source, target)] += 1

    return [
        JourneyTransition(source=source, target=target, count=count)
        for (source, target), count in counts.most_common()
    ]


def engagement_leaderboard(dataset: EventDataset) -> List[EngagementRow]:
    rows = []
    for email, events in EventDataset.group_by(list(dataset), event_user_key).items():
        successes = EventDataset.success_count(events)
        rate = round_half_up(successes / len(events) * 100)
        rows.append(
            EngagementRow(
                email=email,
                query_count=len(events),
                success=successes,
                success_rate=rate,
                score=engagement_score(len(events), rate),
            )
        )
    return sorted(rows, key=lambda row: row.score, reverse=True)


# --------------------------------------------------------------- analytics --


def phase_breakdown(dataset: EventDataset) -> List[PhaseTiming]:
    timings: Dict[str, List[float]] = defaultdict(list)
    for event in dataset:
        for stage, value in event.stage_timings.items():
            timings[stage].append(value)
    return [
        PhaseTiming(name=stage.replace("_", " ").title(), time=round_half_up(average(values), 2))
        for stage, values in timings.items()
    ]


def token_breakdown(dataset: EventDataset) -> List[TokenShare]:
    prompt, completion = 0, 0
    for event in dataset:
        for stage in event.token_usage.values():
            prompt += stage.prompt_tokens or 0
            completion += stage.completion_tokens or 0
    return [
        TokenShare(name="Prompt Tokens", value=prompt),
        TokenShare(name="Completion Tokens", value=completion),
    ]


def latency_percentiles(dataset: EventDataset) -> LatencyPercentiles:
    values = sorted(EventDataset.latencies(list(dataset)))
    if not values:
        return LatencyPercentiles()
    return LatencyPercentiles(
        p50=percentile(values, 0.5),
        p95=percentile(values, 0.95),
        p99=percentile(values, 0.99),
    )


def error_trends(dataset: EventDataset, limit: int = ERROR_TRENDS_LIMIT) -> List[ErrorTrend]:
    counts = Counter(event.error_text for event in dataset if not event.succeeded and event.error_text)
    return [ErrorTrend(name=text, count=count) for text, count in counts.most_common(limit)]


def request_type_metrics(dataset: EventDataset) -> List[RequestTypeMetric]:
    groups = EventDataset.group_by(list(dataset), lambda event: event.request_type or UNKNOWN_LABEL)
    rows = [
        RequestTypeMetric(
            name=label,
            avg_response_time=_avg_latency(events),
            success_rate=success_rate(EventDataset.success_count(events), len(events)),
        )
        for label, events in groups.items()
    ]
    return sorted(rows, key=lambda row: row.avg_response_time, reverse=True)


def resource_utilization(dataset: EventDataset) -> List[ResourceUsage]:
    """
    Per pipeline stage token totals.

    ``avg_tokens_per_query`` divides by the number of events that reported a
    total for the stage; events where the total is absent are left out of the
    denominator, and a stage that never reported one gets ``None``.
    """

    totals: Dict[str, int] = defaultdict(int)
    reported: Dict[str, List[int]] = defaultdict(list)
    for event in dataset:
        for stage, tokens in event.token_usage.items():
            totals[stage] += tokens.total_tokens or 0
            if tokens.total_tokens is not None:
                reported[stage].append(tokens.total_tokens)

    rows = []
    for stage, total in totals.items():
        mean = average(reported.get(stage, []))
        rows.append(
            ResourceUsage(
                name=stage,
                total_tokens=total,
                avg_tokens_per_query=None if mean is None else round_half_up(mean, 1),
            )
        )
    return sorted(rows, key=lambda row: row.total_tokens, reverse=True)
