"""Shared fixtures for the query insights tests."""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from backend.query_insights.dataset import EventDataset
from backend.query_insights.normalization import normalize_events
from backend.query_insights.repository import InMemoryEventRepository

NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)

_ids = count(1)


def make_doc(ago=None, **fields):
    """Raw agent-log document; ``ago`` is a timedelta before ``NOW``."""
    doc = {
        "_id": f"doc-{next(_ids)}",
        "user_email": "alice@example.com",
        "session_id": "s-1",
        "restaurant_id": 101,
        "user_type": 2,
        "question": "Show me today's sales",
        "status": True,
        "time": {"total_time": 1000},
    }
    if ago is not None:
        doc["query_time"] = (NOW - ago).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    doc.update(fields)
    return doc


def dataset_of(*docs):
    return EventDataset(normalize_events(docs))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sample_docs():
    return [
        make_doc(
            timedelta(hours=1),
            user_email="Alice@example.com",
            session_id="s-1",
            question="Show me today's sales",
            user_type=1,
            time={"total_time": 800, "petpooja_dashboard": {"query_router": {"query_routing_time": 0.4}}},
            token_usage={"petpooja_dashboard": {"query_router_token_usage": {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10}}},
            petpooja_dashboard={"request_type_identifier": [{"raw_output": "sales"}]},
        ),
        make_doc(
            timedelta(minutes=58),
            user_email="alice@example.com",
            session_id="s-1",
            question="show me today's sales ",
            time={"total_time": 1200},
            petpooja_dashboard={"request_type_identifier": [{"raw_output": "sales"}]},
        ),
        make_doc(
            timedelta(days=2),
            user_email="bob@example.com",
            session_id="s-2",
            restaurant_id=202,
            question="Which items are out of stock?",
            status=False,
            error_message="Upstream API timeout",
            time={"total_time": 3000},
            petpooja_dashboard={"request_type_identifier": [{"raw_output": "inventory"}]},
        ),
        make_doc(
            timedelta(days=10),
            user_email="carol@example.com",
            session_id="s-3",
            restaurant_id=None,
            question="Top dishes this week",
        ),
        make_doc(
            None,
            _id="broken-time",
            query_time="not a date",
            user_email="dave@example.com",
            session_id="s-4",
            restaurant_id=303,
            question="Refund status",
            time={},
        ),
    ]


@pytest.fixture
def repository(sample_docs):
    return InMemoryEventRepository(sample_docs)
