"""
Runtime configuration for the query insights backend.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .normalization import DEFAULT_PIPELINE_KEY

DEFAULT_CORS_ORIGINS = ["http://localhost:8080", "http://localhost:8081", "http://localhost:5173"]


class Settings(BaseModel):
    database_url: Optional[str] = None
    """SQLAlchemy URL of the agent log store; unset means an in-memory store."""

    table_name: str = "agent_logs"

    pipeline_key: str = DEFAULT_PIPELINE_KEY
    """Key under ``time`` / ``token_usage`` that holds per-stage pipeline data."""

    timezone: str = "UTC"
    """Local timezone used by the retention week-key offset."""

    change_poll_seconds: float = 2.0
    watch_enabled: bool = True
    live_feed_limit: int = 10
    cors_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings() -> Settings:
    load_dotenv()
    defaults = Settings()
    return Settings(
        database_url=os.getenv("QUERY_INSIGHTS_DATABASE_URL", defaults.database_url),
        table_name=os.getenv("QUERY_INSIGHTS_TABLE", defaults.table_name),
        pipeline_key=os.getenv("QUERY_INSIGHTS_PIPELINE_KEY", defaults.pipeline_key),
        timezone=os.getenv("QUERY_INSIGHTS_TIMEZONE", defaults.timezone),
        change_poll_seconds=_env_float("QUERY_INSIGHTS_POLL_SECONDS", defaults.change_poll_seconds),
        watch_enabled=_env_bool("QUERY_INSIGHTS_WATCH_ENABLE", defaults.watch_enabled),
        live_feed_limit=_env_int("QUERY_INSIGHTS_LIVE_FEED_LIMIT", defaults.live_feed_limit),
        cors_origins=_env_list("QUERY_INSIGHTS_CORS_ORIGINS", defaults.cors_origins),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
