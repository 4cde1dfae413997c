"""Tests for metric formulas."""

from datetime import datetime, timedelta, timezone

import pytest

from backend.query_insights.formulas import (
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


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (0, 0, 0),
        (5, 0, 100),
        (0, 5, -100),
        (150, 100, 50.0),
        (4, 2, 100.0),
        (1, 3, -66.7),
        (None, 4, -100),
        ("12", 0, 0),
    ],
)
def test_safe_growth_percent(current, previous, expected):
    assert safe_growth_percent(current, previous) == expected


def test_safe_growth_percent_respects_decimals():
    assert safe_growth_percent(1, 3, decimals=2) == -66.67


def test_round_half_up_rounds_halves_away_from_even():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(1.25, 1) == 1.3
    assert isinstance(round_half_up(7.2), int)


def test_point_difference():
    assert point_difference(75.0, 66.7) == 8.3
    assert point_difference(0, 50) == -50


def test_success_rate_bounds():
    assert success_rate(0, 0) == 0
    assert success_rate(3, 3) == 100
    assert success_rate(1, 3) == 33.3
    for total in range(1, 20):
        for successes in range(total + 1):
            assert 0 <= success_rate(successes, total) <= 100


def test_percentile_uses_nearest_rank():
    assert percentile([10, 20, 30, 40, 50], 0.5) == 30
    assert percentile([10, 20, 30, 40, 50], 0.95) == 50
    assert percentile([10, 20, 30, 40], 0.5) == 30


def test_percentile_clamps_and_handles_empty():
    assert percentile([1, 2, 3], 1.0) == 3
    assert percentile([], 0.5) is None


def test_engagement_score():
    assert engagement_score(10, 80) == 31
    assert engagement_score(0, 0) == 0


def test_week_key_anchored_on_january_first():
    # Jan 1st 2026 is a Thursday (weekday 4 counting from Sunday).
    assert week_key(datetime(2026, 1, 1, tzinfo=timezone.utc)) == "2026-W01"
    assert week_key(datetime(2026, 1, 4, tzinfo=timezone.utc)) == "2026-W02"
    assert week_key(datetime(2026, 3, 18, 12, tzinfo=timezone.utc)) == "2026-W12"


def test_week_key_weekday_offset_uses_local_midnight():
    # Local midnight in Tokyo is still Wednesday Dec 31st in UTC.
    assert week_key(datetime(2026, 1, 4, tzinfo=timezone.utc), "Asia/Tokyo") == "2026-W01"
    assert week_key(datetime(2026, 1, 4, tzinfo=timezone.utc), "Not/AZone") == "2026-W02"


def test_week_key_is_monotonic_within_a_year():
    day = datetime(2026, 1, 1, tzinfo=timezone.utc)
    keys = []
    while day.year == 2026:
        keys.append(week_key(day))
        day += timedelta(hours=13)
    assert keys == sorted(keys)


def test_truncate_label():
    assert truncate_label("  hello  ", "Start") == "hello"
    assert truncate_label("", "Start") == "Start"
    assert truncate_label(None, "Next") == "Next"
    assert truncate_label("x" * 31, "Start") == "x" * 30 + "..."
    assert truncate_label("x" * 30, "Start") == "x" * 30


def test_bucket_counts():
    buckets = (("1-5", 5), ("6-10", 10), ("10+", None))
    assert bucket_counts([1, 5, 6, 10, 11, 400], buckets) == [("1-5", 2), ("6-10", 2), ("10+", 2)]
    assert bucket_counts([], buckets) == [("1-5", 0), ("6-10", 0), ("10+", 0)]
