from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import JSON as SAJSON
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, create_engine, func, select, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Engine, Row

from .settings import Settings

logger = logging.getLogger(__name__)

NO_MARKER: Any = object()


class EventRepository:
    """
    Interface over the agent log collection.

    Implementations only hand back raw documents; normalization and all
    filtering / grouping happen in Python so the aggregation rules stay the
    same whatever the backing store is. ``change_marker`` must return a value
    that changes whenever documents are inserted or updated.
    """

    def load_documents(self) -> Sequence[Mapping[str, Any]]:
        raise NotImplementedError

    def change_marker(self) -> Hashable:
        raise NotImplementedError

    def ping(self) -> None:
        self.change_marker()

    async def watch(self, interval: float, last: Any = NO_MARKER) -> AsyncIterator[Hashable]:
        """
        Yield the new marker once per detected change, polling ``change_marker``.

        Pass the last marker seen as ``last`` to resume a watch; changes made
        while no watch was running are then reported on the first poll.
        """

        if last is NO_MARKER:
            last = await asyncio.to_thread(self.change_marker)
        while True:
            await asyncio.sleep(interval)
            marker = await asyncio.to_thread(self.change_marker)
            if marker != last:
                last = marker
                yield marker


class InMemoryEventRepository(EventRepository):
    """Thread-safe list of documents, used for tests and local demos."""

    def __init__(self, documents: Optional[Iterable[Mapping[str, Any]]] = None):
        self._lock = threading.Lock()
        self._documents: List[Dict[str, Any]] = []
        self._version = 0
        if documents:
            self.add(*documents)

    def add(self, *documents: Mapping[str, Any]) -> int:
        with self._lock:
            for document in documents:
                record = dict(document)
                record.setdefault("_id", uuid.uuid4().hex)
                self._documents.append(record)
            if documents:
                self._version += 1
        return len(documents)

    def replace(self, document_id: str, document: Mapping[str, Any]) -> bool:
        with self._lock:
            for index, existing in enumerate(self._documents):
                if str(existing.get("_id")) == document_id:
                    record = dict(document)
                    record["_id"] = existing["_id"]
                    self._documents[index] = record
                    self._version += 1
                    return True
        return False

    def load_documents(self) -> Sequence[Mapping[str, Any]]:
        with self._lock:
            return list(self._documents)

    def change_marker(self) -> Hashable:
        with self._lock:
            return self._version


class SQLEventRepository(EventRepository):
    """
    Agent log documents stored as JSON rows.

    Expected table (created when missing):
      - <table_name>(id, document, created_at, updated_at)
    """

    def __init__(self, engine: Engine, table_name: str = "agent_logs"):
        self.engine = engine
        self.metadata = MetaData()
        json_type = SAJSON().with_variant(JSONB, "postgresql")
        self.table = Table(
            table_name,
            self.metadata,
            Column("pk", Integer, primary_key=True, autoincrement=True),
            Column("id", String(64), unique=True, nullable=False),
            Column("document", json_type, nullable=False),
            Column("created_at", DateTime(timezone=True), server_default=func.now()),
            Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
        )
        self.metadata.create_all(self.engine, checkfirst=True)

    def add(self, *documents: Mapping[str, Any]) -> int:
        now = datetime.now(timezone.utc)
        rows = []
        for document in documents:
            record = json.loads(json.dumps(dict(document), default=str))
            record_id = str(record.setdefault("_id", uuid.uuid4().hex))
            rows.append({"id": record_id, "document": record, "created_at": now, "updated_at": now})
        if not rows:
            return 0
        with self.engine.begin() as connection:
            connection.execute(self.table.insert(), rows)
        return len(rows)

    def replace(self, document_id: str, document: Mapping[str, Any]) -> bool:
        record = json.loads(json.dumps(dict(document), default=str))
        record["_id"] = document_id
        with self.engine.begin() as connection:
            result = connection.execute(
                self.table.update()
                .where(self.table.c.id == document_id)
                .values(document=record, updated_at=datetime.now(timezone.utc))
            )
        return result.rowcount > 0

    def load_documents(self) -> Sequence[Mapping[str, Any]]:
        query = select(self.table.c.id, self.table.c.document).order_by(self.table.c.pk)
        with self.engine.connect() as connection:
            rows = connection.execute(query).fetchall()
        return tuple(self._row_to_document(row) for row in rows)

    def change_marker(self) -> Hashable:
        query = select(func.count(self.table.c.pk), func.max(self.table.c.updated_at))
        with self.engine.connect() as connection:
            count, latest = connection.execute(query).one()
        return int(count or 0), latest

    def ping(self) -> None:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    @staticmethod
    def _row_to_document(row: Row) -> Dict[str, Any]:
        document = row.document
        if isinstance(document, str):
            try:
                document = json.loads(document)
            except json.JSONDecodeError:
                document = {}
        if not isinstance(document, dict):
            document = {}
        document.setdefault("_id", row.id)
        return document


def build_repository(settings: Settings) -> EventRepository:
    if settings.database_url:
        engine = create_engine(settings.database_url, future=True, pool_pre_ping=True)
        return SQLEventRepository(engine, table_name=settings.table_name)
    logger.warning("QUERY_INSIGHTS_DATABASE_URL is not configured; serving an empty in-memory event store.")
    return InMemoryEventRepository()
