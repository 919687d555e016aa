"""Shared API dependencies: DB session, sync engine, scheduler, broadcaster."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.exceptions import SyncError
from backend.messaging.broadcaster import Broadcaster
from backend.services.scheduler_service import SyncScheduler
from backend.services.sync_service import SyncEngine
from backend.services.token_service import TokenManager

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.database.session_factory
    async with session_factory() as session:
        yield session


def get_sync_engine(request: Request) -> SyncEngine:
    engine: SyncEngine = request.app.state.sync_engine
    return engine


def get_token_manager(request: Request) -> TokenManager:
    engine: SyncEngine = request.app.state.sync_engine
    return engine.tokens


def get_scheduler(request: Request) -> SyncScheduler:
    scheduler: SyncScheduler = request.app.state.scheduler
    return scheduler


def get_broadcaster(request: Request) -> Broadcaster:
    broadcaster: Broadcaster = request.app.state.broadcaster
    return broadcaster


async def sync_before_read(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> None:
    """Opportunistic non-forced sync before serving data.

    Any sync failure is logged and ignored: reads never fail because of the
    remote store.
    """
    try:
        await engine.sync_if_due(force=False)
    except (SyncError, OSError) as exc:
        logger.warning("Sync before read failed, serving local data: %s", exc)
    except Exception:
        logger.exception("Unexpected error in sync before read, serving local data")
