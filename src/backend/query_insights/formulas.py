"""
Pure metric formulas shared by the aggregation queries.

Rounding is half-up (``floor(x * 10**d + 0.5) / 10**d``) rather than Python's
banker's rounding so that dashboard numbers match the figures the frontend has
always shown.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

Number = Union[int, float]

MS_PER_DAY = 86_400_000


def coerce_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def _as_number(value: Any) -> Number:
    if isinstance(value, bool) or not isinstance(value, Real):
        return 0
    if isinstance(value, float) and math.isnan(value):
        return 0
    return value


def round_half_up(value: Number, decimals: int = 0) -> Number:
    factor = 10 ** decimals
    rounded = math.floor(value * factor + 0.5) / factor
    if decimals == 0:
        return int(rounded)
    return rounded


def safe_growth_percent(current: Any, previous: Any, decimals: int = 1) -> Number:
    current = _as_number(current)
    previous = _as_number(previous)

    if previous == 0 and current == 0:
        return 0
    if previous == 0 and current > 0:
        return 100
    if previous > 0 and current == 0:
        return -100
    if previous == 0:
        # Negative current against a zero baseline has no meaningful ratio.
        return 0
    return round_half_up((current - previous) / previous * 100, decimals)


def point_difference(current: Any, previous: Any) -> Number:
    return round_half_up(_as_number(current) - _as_number(previous), 1)


def success_rate(success_count: int, total: int) -> Number:
    if not total:
        return 0
    return round_half_up(success_count / total * 100, 1)


def average(values: Iterable[Number]) -> Optional[float]:
    values = list(values)
    if not values:
        return None
    return sum(values) / len(values)


def percentile(sorted_values: Sequence[Number], p: float) -> Optional[Number]:
    """
    Nearest-rank percentile over an ascending sequence.

    The rank is ``floor(p * len)`` (0-indexed) clamped to the last index, so
    ``percentile([10, 20, 30, 40, 50], 0.5) == 30``. There is no
    interpolation between neighbours.
    """

    if not sorted_values:
        return None
    index = min(int(math.floor(p * len(sorted_values))), len(sorted_values) - 1)
    return sorted_values[max(index, 0)]


def engagement_score(query_count: Number, success_rate_percent: Number) -> int:
    return round_half_up(query_count * 0.7 + success_rate_percent * 0.3)


def week_key(date: datetime, tz: str = "UTC") -> str:
    """
    Retention cohort key ``YYYY-Www``.

    The week number is anchored on January 1st of the UTC year and offset by
    the weekday (Sunday=0) of local midnight on January 1st, read back in UTC.
    Weeks therefore do not follow ISO 8601; keys from older reports depend on
    this exact arithmetic.
    """

    instant = date.astimezone(timezone.utc) if date.tzinfo else date.replace(tzinfo=timezone.utc)
    year = instant.year
    jan1_utc = datetime(year, 1, 1, tzinfo=timezone.utc)
    jan1_local = datetime(year, 1, 1, tzinfo=coerce_timezone(tz)).astimezone(timezone.utc)
    jan1_weekday = (jan1_local.weekday() + 1) % 7

    elapsed_days = (instant - jan1_utc).total_seconds() * 1000 / MS_PER_DAY
    week = math.ceil((elapsed_days + jan1_weekday + 1) / 7)
    return f"{year}-W{week:02d}"


def truncate_label(text: Optional[str], fallback: str, width: int = 30) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        return fallback
    if len(cleaned) > width:
        return cleaned[:width] + "..."
    return cleaned


def bucket_counts(values: Iterable[Number], buckets: Sequence[Tuple[str, Optional[Number]]]) -> List[Tuple[str, int]]:
    """
    Count ``values`` into histogram buckets given as ``(label, upper_bound)``.

    Bounds are inclusive and ascending; the last bucket may use ``None`` as an
    open upper bound. Each value lands in the first bucket whose bound it does
    not exceed.
    """

    counts = [0] * len(buckets)
    for value in values:
        for index, (_, upper) in enumerate(buckets):
            if upper is None or value <= upper:
                counts[index] += 1
                break
    return [(label, counts[index]) for index, (label, _) in enumerate(buckets)]
