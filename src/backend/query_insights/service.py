from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from . import queries
from .dataset import EventDataset
from .models import (
    AnalyticsReport,
    DashboardBundle,
    DashboardFilters,
    DataRange,
    Event,
    OverviewReport,
    UsersReport,
)
from .normalization import normalize_events
from .repository import EventRepository
from .settings import Settings

logger = logging.getLogger(__name__)


class QueryInsightsError(Exception):
    """Base error for the query insights backend."""


class DataUnavailableError(QueryInsightsError):
    """The event store could not be read; no partial report is produced."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DashboardService:
    """
    Assembles the Overview, Analytics and Users dashboard payloads.

    Each call reads the store once, normalizes the documents and recomputes
    every aggregate from scratch; nothing is cached between requests.
    """

    def __init__(self, repository: EventRepository, settings: Optional[Settings] = None) -> None:
        self.repository = repository
        self.settings = settings or Settings()

    async def load_events(self) -> List[Event]:
        try:
            documents = await asyncio.to_thread(self.repository.load_documents)
        except Exception as exc:
            logger.exception("Failed to read the event store")
            raise DataUnavailableError(str(exc) or exc.__class__.__name__) from exc
        return normalize_events(documents, self.settings.pipeline_key)

    async def _dataset(self, filters: Optional[DashboardFilters]) -> EventDataset:
        return EventDataset.filtered(await self.load_events(), filters)

    async def overview(self, filters: Optional[DashboardFilters] = None, now: Optional[datetime] = None) -> OverviewReport:
        dataset = await self._dataset(filters)
        return self.build_overview(dataset, now or _utcnow())

    async def analytics(self, filters: Optional[DashboardFilters] = None) -> AnalyticsReport:
        dataset = await self._dataset(filters)
        return self.build_analytics(dataset)

    async def users(self, filters: Optional[DashboardFilters] = None) -> UsersReport:
        dataset = await self._dataset(filters)
        return self.build_users(dataset)

    async def recent_events(self, limit: Optional[int] = None) -> List[Event]:
        dataset = EventDataset(await self.load_events())
        return dataset.newest(self.settings.live_feed_limit if limit is None else limit)

    async def dashboard(self, filters: Optional[DashboardFilters] = None, now: Optional[datetime] = None) -> DashboardBundle:
        """All three views from a single store read, so they share one snapshot."""

        dataset = await self._dataset(filters)
        overview, analytics, users = await asyncio.gather(
            asyncio.to_thread(self.build_overview, dataset, now or _utcnow()),
            asyncio.to_thread(self.build_analytics, dataset),
            asyncio.to_thread(self.build_users, dataset),
        )
        return DashboardBundle(overview=overview, analytics=analytics, users=users)

    def build_overview(self, dataset: EventDataset, now: datetime) -> OverviewReport:
        started = time.perf_counter()
        failure = queries.latest_failure(dataset)
        peak = queries.peak_hour(dataset, now)
        report = OverviewReport(
            kpis=queries.lifetime_kpis(dataset),
            weekly_growth=queries.weekly_comparison(dataset, now),
            query_volume=queries.volume_trend(dataset, now),
            top_restaurants=queries.top_restaurants(dataset, now),
            request_distribution=queries.request_distribution(dataset),
            user_growth=queries.user_growth(dataset, now),
            active_users=queries.active_users(dataset, now),
            peak_hour="N/A" if peak is None else peak,
            latest_error=failure.error,
            error_timestamp=failure.timestamp,
            timestamp=now,
            data_range=DataRange(start=now - timedelta(days=queries.TREND_DAYS), end=now),
        )
        logger.debug("Overview built from %s events in %.1fms", len(dataset), (time.perf_counter() - started) * 1000)
        return report

    def build_analytics(self, dataset: EventDataset) -> AnalyticsReport:
        return AnalyticsReport(
            phase_breakdown=queries.phase_breakdown(dataset),
            token_breakdown=queries.token_breakdown(dataset),
            request_type_metrics=queries.request_type_metrics(dataset),
            latency_percentiles=queries.latency_percentiles(dataset),
            error_trends=queries.error_trends(dataset),
            resource_utilization=queries.resource_utilization(dataset),
        )

    def build_users(self, dataset: EventDataset) -> UsersReport:
        if not len(dataset):
            return UsersReport()

        sessions = queries.session_stats(dataset)
        session_buckets, duration_buckets = queries.session_histograms(sessions)
        return UsersReport(
            user_types=queries.user_types(dataset),
            user_activity=queries.user_activity(dataset),
            queries_per_session=sessions.queries_per_session,
            durations=sessions.durations,
            avg_queries_per_session=sessions.avg_queries_per_session,
            session_buckets=session_buckets,
            duration_buckets=duration_buckets,
            duplicate_queries=queries.duplicate_questions(dataset),
            retention_weekly=queries.retention_weekly(dataset, self.settings.timezone),
            query_complexity_by_user_type=queries.query_complexity(dataset),
            user_journey_transitions=queries.journey_transitions(dataset),
            engagement=queries.engagement_leaderboard(dataset),
        )
