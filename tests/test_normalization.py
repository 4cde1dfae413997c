"""Tests for raw document normalization."""

from datetime import datetime, timezone

import pytest

from backend.query_insights.models import StageTokens, UserCategory
from backend.query_insights.normalization import (
    coerce_number,
    normalize_event,
    normalize_events,
    parse_timestamp,
    unwrap,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2026-03-18T10:15:00Z", datetime(2026, 3, 18, 10, 15, tzinfo=timezone.utc)),
        ("2026-03-18T10:15:00.123Z", datetime(2026, 3, 18, 10, 15, 0, 123000, tzinfo=timezone.utc)),
        ("2026-03-18 10:15:00", datetime(2026, 3, 18, 10, 15, tzinfo=timezone.utc)),
        ("2026-03-18T15:45:00+05:30", datetime(2026, 3, 18, 10, 15, tzinfo=timezone.utc)),
        (datetime(2026, 3, 18, 10, 15), datetime(2026, 3, 18, 10, 15, tzinfo=timezone.utc)),
    ],
)
def test_parse_timestamp_accepts_strings_and_datetimes(raw, expected):
    assert parse_timestamp(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "not a date", "2026-13-45", 1710756000000, {"$date": 1}])
def test_parse_timestamp_never_raises(raw):
    assert parse_timestamp(raw) is None


def test_unwrap_and_coerce_number():
    assert unwrap([5]) == 5
    assert unwrap([]) is None
    assert unwrap("x") == "x"
    assert coerce_number([12]) == 12.0
    assert coerce_number(True) is None
    assert coerce_number("abc") is None
    assert coerce_number(float("nan")) is None


def test_numeric_strings_are_not_counted():
    assert coerce_number("1000") is None
    assert coerce_number(["12"]) is None

    event = normalize_event(
        {
            "time": {"total_time": "1000"},
            "token_usage": {"petpooja_dashboard": {"router": {"prompt_tokens": "7", "total_tokens": "9"}}},
        }
    )
    assert event.latency_ms is None
    assert event.token_usage["router"] == StageTokens()
    assert event.total_tokens == 0


@pytest.mark.parametrize(
    "user_type, expected",
    [
        (1, UserCategory.NEW),
        (1.0, UserCategory.NEW),
        (2, UserCategory.RETURNING),
        ("1", UserCategory.RETURNING),
        (True, UserCategory.RETURNING),
        (None, UserCategory.RETURNING),
    ],
)
def test_user_category_only_matches_exact_sentinel(user_type, expected):
    assert normalize_event({"user_type": user_type}).user_category is expected


def test_missing_fields_normalize_to_empty_event():
    event = normalize_event({})
    assert event.id == ""
    assert event.occurred_at is None
    assert event.user_id is None
    assert event.succeeded is False
    assert event.latency_ms is None
    assert event.token_usage == {}
    assert event.total_tokens == 0
    assert event.request_type is None
    assert event.user_category is UserCategory.RETURNING


def test_token_usage_unwraps_array_forms():
    event = normalize_event(
        {
            "token_usage": {
                "petpooja_dashboard": {
                    "query_reformer_token_usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
                    "query_router_token_usage": {"total_tokens": [9]},
                    "request_type_identifier": [{"total_tokens": 11}],
                    "broken_stage": "n/a",
                }
            }
        }
    )
    assert event.token_usage["query_reformer_token_usage"] == StageTokens(4, 2, 6)
    assert event.token_usage["query_router_token_usage"].total_tokens == 9
    assert event.token_usage["request_type_identifier"].total_tokens == 11
    assert event.token_usage["broken_stage"] == StageTokens()
    assert event.total_tokens == 26


def test_custom_pipeline_key():
    document = {"token_usage": {"other": {"stage": {"total_tokens": 3}}}}
    assert normalize_event(document).total_tokens == 0
    assert normalize_event(document, pipeline_key="other").total_tokens == 3


def test_request_type_and_stage_timings():
    event = normalize_event(
        {
            "time": {
                "total_time": 1500,
                "petpooja_dashboard": {
                    "query_reformer": {"context_query_reforming_time": 0.8},
                    "api_function_calling": [{"api_function_calling_time": 1.0, "api_function_calling_total_time": 2.5}],
                    "noise": {"count": 3},
                },
            },
            "petpooja_dashboard": {"request_type_identifier": [{"raw_output": "menu"}]},
        }
    )
    assert event.latency_ms == 1500.0
    assert event.stage_timings == {"query_reformer": 0.8, "api_function_calling": 2.5}
    assert event.request_type == "menu"


def test_error_text_only_for_failures():
    failed = normalize_event({"status": False, "error_message": "boom"})
    assert failed.error_text == "boom"

    fallback = normalize_event({"status": False, "message": "Agent crashed"})
    assert fallback.error_text == "Agent crashed"

    empty_message = normalize_event({"status": False, "message": ""})
    assert empty_message.error_text is None

    blank_error = normalize_event({"status": False, "error_message": "", "message": "Agent crashed"})
    assert blank_error.error_text == "Agent crashed"

    succeeded = normalize_event({"status": True, "error_message": "ignored"})
    assert succeeded.succeeded is True
    assert succeeded.error_text is None


def test_status_string_success_is_accepted():
    assert normalize_event({"status": "SUCCESS"}).succeeded is True
    assert normalize_event({"status": "failed"}).succeeded is False
    assert normalize_event({"status": 1}).succeeded is False


def test_normalize_events_skips_non_mappings():
    events = normalize_events([{"_id": "a"}, None, "junk", {"id": 7}])
    assert [event.id for event in events] == ["a", "7"]
