from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Hashable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .models import DashboardFilters, Event

K = TypeVar("K", bound=Hashable)

UNKNOWN_LABEL = "Unknown"


def event_user_key(event: Event) -> Optional[str]:
    """Case-insensitive user identity used by the per-user views."""

    if not event.user_id:
        return None
    return event.user_id.lower()


@dataclass
class EventDataset:
    """
    In-process view over the normalized event collection.

    Provides the filter / window / group / aggregate primitives the
    aggregation queries are written against. Events keep their store order;
    queries that need time order sort explicitly.
    """

    events: Sequence[Event]

    def __post_init__(self) -> None:
        self.events = tuple(self.events)

    @classmethod
    def filtered(cls, events: Sequence[Event], filters: Optional[DashboardFilters]) -> "EventDataset":
        if filters is None:
            return cls(events)
        return cls([event for event in events if cls._matches_filters(event, filters)])

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def iter_window(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Iterator[Tuple[Event, datetime]]:
        """
        Yield ``(event, instant)`` for events inside ``[start, end)``.

        Events whose timestamp failed to parse are never yielded, even for an
        unbounded window. Either bound may be ``None`` to leave it open.
        """

        for event in self.events:
            instant = event.occurred_at
            if instant is None:
                continue
            if start is not None and instant < start:
                continue
            if end is not None and instant >= end:
                continue
            yield event, instant

    def window(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Event]:
        return [event for event, _ in self.iter_window(start, end)]

    def unique_users(self, events: Optional[Sequence[Event]] = None) -> int:
        source = self.events if events is None else events
        return len({event.user_id for event in source if event.user_id})

    @staticmethod
    def group_by(events: Sequence[Event], key: Callable[[Event], Optional[K]]) -> Dict[K, List[Event]]:
        """
        Group events by ``key``; events whose key is ``None`` are dropped.

        Groups keep first-encountered order so stable sorts break ties the
        same way on every run.
        """

        groups: Dict[K, List[Event]] = defaultdict(list)
        for event in events:
            group_key = key(event)
            if group_key is None:
                continue
            groups[group_key].append(event)
        return dict(groups)

    @staticmethod
    def latencies(events: Sequence[Event]) -> List[float]:
        return [event.latency_ms for event in events if event.latency_ms is not None]

    @staticmethod
    def success_count(events: Sequence[Event]) -> int:
        return sum(1 for event in events if event.succeeded)

    @staticmethod
    def total_tokens(events: Sequence[Event]) -> int:
        return sum(event.total_tokens for event in events)

    def newest(self, limit: int) -> List[Event]:
        ordered = sorted(
            self.events,
            key=lambda event: (event.occurred_at is not None, event.occurred_at or datetime.min),
            reverse=True,
        )
        return ordered[: max(0, limit)]

    @staticmethod
    def _matches_filters(event: Event, filters: DashboardFilters) -> bool:
        if filters.request_type is not None and (event.request_type or UNKNOWN_LABEL) != filters.request_type:
            return False
        if filters.user_category is not None and event.user_category is not filters.user_category:
            return False
        return True
