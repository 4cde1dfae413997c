"""FastAPI app exposing the query insights dashboard reports."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .models import DashboardFilters
from .notifier import ChangeNotifier, ChangeWatcher, Subscription
from .repository import EventRepository, build_repository
from .service import DashboardService, DataUnavailableError
from .settings import Settings, configure_logging, load_settings

logger = logging.getLogger(__name__)

UPDATE_MESSAGE = {"event": "dashboardUpdate", "message": "Data has been updated"}


class HealthResponse(BaseModel):
    status: str
    store: str
    subscribers: int


def _filters(
    request_type: Optional[str] = Query(None, description="Only events of this request type ('all' for every type)"),
    user_type: Optional[str] = Query(None, description="'new', 'returning' or 'all'"),
) -> DashboardFilters:
    try:
        return DashboardFilters.from_params(request_type=request_type, user_type=user_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app(
    repository: Optional[EventRepository] = None,
    settings: Optional[Settings] = None,
    notifier: Optional[ChangeNotifier] = None,
) -> FastAPI:
    settings = settings or load_settings()
    repository = repository or build_repository(settings)
    notifier = notifier or ChangeNotifier()
    service = DashboardService(repository, settings)
    watcher = ChangeWatcher(repository, notifier, interval=settings.change_poll_seconds)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.watch_enabled:
            watcher.start()
        try:
            yield
        finally:
            await watcher.stop()

    app = FastAPI(title="Query Insights Dashboard API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service
    app.state.notifier = notifier
    app.state.watcher = watcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.exception_handler(DataUnavailableError)
    async def _data_unavailable(_: Request, exc: DataUnavailableError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": "data unavailable", "message": str(exc)})

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        try:
            await asyncio.to_thread(repository.ping)
        except Exception as exc:
            logger.warning("Event store health check failed: %s", exc)
            return HealthResponse(status="degraded", store="unavailable", subscribers=notifier.subscriber_count)
        return HealthResponse(status="ok", store="ok", subscribers=notifier.subscriber_count)

    @app.get("/api/overview-data")
    async def overview_data(filters: DashboardFilters = Depends(_filters)) -> Dict[str, Any]:
        report = await service.overview(filters)
        return report.as_dict()

    @app.get("/api/analytics-data")
    async def analytics_data(filters: DashboardFilters = Depends(_filters)) -> Dict[str, Any]:
        report = await service.analytics(filters)
        return report.as_dict()

    @app.get("/api/users-data")
    async def users_data(filters: DashboardFilters = Depends(_filters)) -> Dict[str, Any]:
        report = await service.users(filters)
        return report.as_dict()

    @app.get("/api/live-feed")
    async def live_feed(limit: Optional[int] = Query(None, ge=1, le=100)) -> List[Dict[str, Any]]:
        events = await service.recent_events(limit)
        return [event.as_dict() for event in events]

    @app.websocket("/ws")
    async def updates(websocket: WebSocket) -> None:
        # Register before accepting so a change right after connect is not missed.
        async with notifier.subscribe() as subscription:
            await websocket.accept()
            sender = asyncio.create_task(_forward_signals(websocket, subscription))
            try:
                # Client frames, text or binary, are ignored.
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        break
            finally:
                sender.cancel()
                try:
                    await sender
                except asyncio.CancelledError:
                    pass
                except Exception as exc:
                    logger.debug("Stopped pushing dashboard updates: %s", exc)

    return app


async def _forward_signals(websocket: WebSocket, subscription: Subscription) -> None:
    async for _ in subscription:
        await websocket.send_json(UPDATE_MESSAGE)


def _build_default_app() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(settings=settings)


app = _build_default_app()
