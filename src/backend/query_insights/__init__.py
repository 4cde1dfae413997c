"""
Query insights dashboard backend.

Turns the raw agent-log collection of restaurant assistant queries into the
aggregates behind the Overview, Analytics and Users dashboards, and signals
connected dashboards to re-fetch when the collection changes.
"""

from .dataset import EventDataset  # noqa: F401
from .models import (  # noqa: F401
    AnalyticsReport,
    DashboardBundle,
    DashboardFilters,
    Event,
    OverviewReport,
    StageTokens,
    UserCategory,
    UsersReport,
)
from .normalization import normalize_event, normalize_events, parse_timestamp  # noqa: F401
from .notifier import ChangeNotifier, ChangeWatcher, Subscription  # noqa: F401
from .repository import (  # noqa: F401
    EventRepository,
    InMemoryEventRepository,
    SQLEventRepository,
    build_repository,
)
from .service import DashboardService, DataUnavailableError, QueryInsightsError  # noqa: F401
from .settings import Settings, load_settings  # noqa: F401
