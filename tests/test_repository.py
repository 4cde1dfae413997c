"""Tests for the event stores."""

import asyncio

import pytest
from sqlalchemy import create_engine

from backend.query_insights.repository import (
    EventRepository,
    InMemoryEventRepository,
    SQLEventRepository,
    build_repository,
)
from backend.query_insights.settings import Settings

from conftest import make_doc


@pytest.fixture
def sql_repository(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'events.db'}")
    yield SQLEventRepository(engine, table_name="agent_logs")
    engine.dispose()


def test_in_memory_add_assigns_ids_and_bumps_marker():
    repository = InMemoryEventRepository()
    marker = repository.change_marker()

    assert repository.add({"question": "hi"}, make_doc(_id="keep-me")) == 2
    documents = repository.load_documents()
    assert len(documents) == 2
    assert documents[0]["_id"]
    assert documents[1]["_id"] == "keep-me"
    assert repository.change_marker() != marker


def test_in_memory_replace():
    repository = InMemoryEventRepository([make_doc(_id="a", question="before")])
    marker = repository.change_marker()

    assert repository.replace("a", {"question": "after"})
    assert repository.load_documents()[0] == {"question": "after", "_id": "a"}
    assert repository.change_marker() != marker
    assert not repository.replace("missing", {})


def test_in_memory_load_returns_a_copy():
    repository = InMemoryEventRepository([make_doc()])
    documents = repository.load_documents()
    documents.clear()
    assert len(repository.load_documents()) == 1


def test_base_repository_is_abstract():
    with pytest.raises(NotImplementedError):
        EventRepository().load_documents()
    with pytest.raises(NotImplementedError):
        EventRepository().ping()


def test_sql_round_trips_documents_in_insert_order(sql_repository):
    first = make_doc(_id="one", token_usage={"petpooja_dashboard": {"router": [{"total_tokens": 4}]}})
    second = make_doc(_id="two", restaurant_id=None)
    sql_repository.add(first, second)

    documents = sql_repository.load_documents()
    assert [document["_id"] for document in documents] == ["one", "two"]
    assert documents[0]["token_usage"] == {"petpooja_dashboard": {"router": [{"total_tokens": 4}]}}
    assert documents[1]["restaurant_id"] is None


def test_sql_marker_changes_on_insert_and_update(sql_repository):
    empty = sql_repository.change_marker()
    assert empty[0] == 0

    sql_repository.add(make_doc(_id="one", question="before"))
    inserted = sql_repository.change_marker()
    assert inserted != empty

    assert sql_repository.replace("one", {"question": "after"})
    assert sql_repository.change_marker() != inserted
    assert sql_repository.load_documents()[0] == {"question": "after", "_id": "one"}
    assert not sql_repository.replace("missing", {})


def test_sql_ping(sql_repository):
    sql_repository.ping()


def test_build_repository_defaults_to_memory(tmp_path):
    assert isinstance(build_repository(Settings()), InMemoryEventRepository)

    settings = Settings(database_url=f"sqlite:///{tmp_path / 'built.db'}", table_name="logs")
    repository = build_repository(settings)
    assert isinstance(repository, SQLEventRepository)
    assert repository.table.name == "logs"


@pytest.mark.asyncio
async def test_watch_yields_once_per_change():
    repository = InMemoryEventRepository()
    changes = repository.watch(0.01)

    pending = asyncio.ensure_future(changes.__anext__())
    await asyncio.sleep(0.05)
    assert not pending.done()

    repository.add(make_doc())
    assert await asyncio.wait_for(pending, timeout=2) == repository.change_marker()
    await changes.aclose()


@pytest.mark.asyncio
async def test_watch_resumes_from_a_known_marker():
    repository = InMemoryEventRepository()
    seen = repository.change_marker()
    repository.add(make_doc())

    changes = repository.watch(0.01, last=seen)
    assert await asyncio.wait_for(changes.__anext__(), timeout=2) == repository.change_marker()
    await changes.aclose()
