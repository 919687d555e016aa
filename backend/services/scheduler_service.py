"""Background sync activities: remote polling, debounced upload, daily cleanup.

Each activity is an asyncio task owned by one ``SyncScheduler``. The poll and
cleanup loops sleep until their next tick and then run one iteration to
completion. The debounced upload is a one-shot task that a new local mutation
cancels and re-arms while it is still waiting; once the upload started it is
left to finish.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from typing import TYPE_CHECKING

import pendulum
from sqlalchemy.exc import SQLAlchemyError

from backend.exceptions import (
    NetworkError,
    RateLimitedError,
    SyncConflictError,
    SyncError,
)
from backend.messaging.broadcaster import CONSUMED_FOOD_ITEMS_UPDATED
from backend.services.backoff_service import (
    BackoffPolicy,
    BackoffState,
    PollOutcome,
    apply_jitter,
    next_interval,
)
from backend.services.consumption_service import purge_expired_consumed_items
from backend.services.datetime_service import next_daily_run
from backend.services.sync_service import SyncAction

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.config import Settings
    from backend.messaging.broadcaster import Broadcaster
    from backend.services.sync_service import SyncEngine

logger = logging.getLogger(__name__)


def seconds_until_next_cleanup(now: pendulum.DateTime, hour: int = 0, minute: int = 1) -> float:
    """Seconds from ``now`` until the next day's cleanup time."""
    return (next_daily_run(now, hour, minute) - now).total_seconds()


class SyncScheduler:
    """Owns the timers that keep the database synchronized in the background."""

    def __init__(
        self,
        engine: SyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: Broadcaster,
        *,
        policy: BackoffPolicy | None = None,
        first_check_delay: float = 5.0,
        upload_delay: float = 10.0,
        retention_months: int = 3,
        cleanup_hour: int = 0,
        cleanup_minute: int = 1,
        rng: random.Random | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._broadcaster = broadcaster
        self._policy = policy or BackoffPolicy()
        self._first_check_delay = first_check_delay
        self._upload_delay = upload_delay
        self._retention_months = retention_months
        self._cleanup_hour = cleanup_hour
        self._cleanup_minute = cleanup_minute
        self._rng = rng

        # Guards creation and cancellation of the task handles below
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._cleanup_task: asyncio.Task[None] | None = None
        self._pending_upload: asyncio.Task[None] | None = None
        self._running_uploads: set[asyncio.Task[None]] = set()
        self._backoff = BackoffState.initial(self._policy)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        engine: SyncEngine,
        session_factory: async_sessionmaker[AsyncSession],
        broadcaster: Broadcaster,
    ) -> SyncScheduler:
        policy = BackoffPolicy(
            regular_interval=settings.sync_check_interval_seconds,
            initial_backoff=settings.sync_initial_backoff_seconds,
            max_backoff=settings.sync_max_backoff_seconds,
        )
        return cls(
            engine,
            session_factory,
            broadcaster,
            policy=policy,
            first_check_delay=settings.sync_first_check_delay_seconds,
            upload_delay=settings.sync_upload_delay_seconds,
            retention_months=settings.consumed_retention_months,
            cleanup_hour=settings.cleanup_hour,
            cleanup_minute=settings.cleanup_minute,
        )

    @property
    def backoff(self) -> BackoffState:
        return self._backoff

    @property
    def running(self) -> bool:
        with self._lock:
            return self._poll_task is not None

    def start(self) -> None:
        """Start the poll and cleanup loops. Must be called from the event loop."""
        with self._lock:
            if self._poll_task is not None:
                logger.warning("Sync scheduler already running")
                return
            self._loop = asyncio.get_running_loop()
            self._backoff = BackoffState.initial(self._policy)
            self._poll_task = asyncio.create_task(self._poll_loop(), name="sync-poll")
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="sync-cleanup")
        logger.info("Sync scheduler started")

    async def stop(self) -> None:
        """Cancel the loops and any waiting upload, then wait for running uploads."""
        with self._lock:
            tasks = [t for t in (self._poll_task, self._cleanup_task, self._pending_upload) if t]
            self._poll_task = None
            self._cleanup_task = None
            self._pending_upload = None
            running_uploads = list(self._running_uploads)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if running_uploads:
            logger.info("Waiting for %d running upload(s) to finish", len(running_uploads))
            await asyncio.gather(*running_uploads, return_exceptions=True)
        logger.info("Sync scheduler stopped")

    # Debounced upload

    def schedule_delayed_upload(self) -> None:
        """Upload the database once no mutation happened for the upload delay.

        Safe to call from any thread. Does nothing while auto-sync is off; the
        setting is not re-checked when the timer fires.
        """
        if not self._engine.get_auto_sync():
            logger.debug("Auto-sync disabled, not scheduling upload")
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        loop = self._loop or current
        if loop is None:
            logger.warning("No event loop available, upload not scheduled")
            return
        if current is loop:
            self._arm_upload()
        else:
            loop.call_soon_threadsafe(self._arm_upload)

    def _arm_upload(self) -> None:
        with self._lock:
            if self._pending_upload is not None:
                self._pending_upload.cancel()
            self._pending_upload = asyncio.create_task(
                self._delayed_upload(), name="sync-delayed-upload"
            )
        logger.debug("Upload scheduled in %.1fs", self._upload_delay)

    async def _delayed_upload(self) -> None:
        await asyncio.sleep(self._upload_delay)
        task = asyncio.current_task()
        with self._lock:
            # From here on a new mutation arms a fresh timer instead of cancelling us
            if self._pending_upload is task:
                self._pending_upload = None
            if task is not None:
                self._running_uploads.add(task)
        try:
            result = await self._engine.upload_database()
            logger.info("Delayed upload finished: %s", result.status)
        except SyncConflictError:
            logger.warning("Delayed upload skipped: local and remote database diverged")
        except (SyncError, OSError) as exc:
            logger.warning("Delayed upload failed: %s", exc)
        except Exception:
            logger.exception("Unexpected error in delayed upload")
        finally:
            with self._lock:
                self._running_uploads.discard(task)  # type: ignore[arg-type]

    def record_local_mutation(self, *events: str) -> None:
        """Mark the database dirty, notify the UI and schedule an upload."""
        self._engine.mark_local_change()
        for event in events:
            self._broadcaster.publish(event)
        self.schedule_delayed_upload()

    # Remote polling

    async def poll_once(self) -> PollOutcome | None:
        """Check the remote once. Returns None when auto-sync is disabled."""
        if not self._engine.get_auto_sync():
            logger.debug("Auto-sync disabled, skipping remote check")
            return None
        try:
            action = await self._engine.check_remote_changed()
            if action in (SyncAction.DOWNLOAD, SyncAction.AWAIT_INITIAL_DOWNLOAD):
                logger.info("Remote file changed, downloading")
                await self._engine.download_database()
            elif action is SyncAction.CONFLICT:
                self._engine.report_conflict()
        except RateLimitedError as exc:
            logger.warning("Remote check rate limited: %s", exc)
            return PollOutcome.RATE_LIMITED
        except NetworkError as exc:
            logger.warning("Remote check failed: %s", exc)
            return PollOutcome.TRANSIENT_FAILURE
        except SyncConflictError:
            # Raced with a local mutation; the conflict was surfaced
            return PollOutcome.SUCCESS
        except (SyncError, OSError) as exc:
            logger.warning("Remote check failed: %s", exc)
            return PollOutcome.TRANSIENT_FAILURE
        except Exception:
            logger.exception("Unexpected error while checking the remote database")
            return PollOutcome.TRANSIENT_FAILURE
        return PollOutcome.SUCCESS

    async def _poll_loop(self) -> None:
        delay = self._first_check_delay
        while True:
            await asyncio.sleep(delay)
            outcome = await self.poll_once()
            if outcome is None:
                delay = self._policy.regular_interval
                continue
            self._backoff, base = next_interval(self._backoff, outcome, self._policy)
            delay = apply_jitter(base, self._rng)
            logger.debug("Next remote check in %.0fs (%s)", delay, outcome)

    # Daily cleanup

    async def run_cleanup(self) -> int:
        """Sync, then delete expired consumption records. Returns rows removed.

        A failed sync skips the cleanup so deletions never race a pending
        download.
        """
        try:
            await self._engine.sync_if_due(force=False)
        except (SyncError, OSError) as exc:
            logger.warning("Skipping consumption cleanup, sync failed: %s", exc)
            return 0
        except Exception:
            logger.exception("Skipping consumption cleanup, unexpected sync error")
            return 0
        try:
            removed = await purge_expired_consumed_items(
                self._session_factory, self._retention_months
            )
        except SQLAlchemyError as exc:
            logger.error("Consumption cleanup failed: %s", exc)
            return 0
        if removed:
            self.record_local_mutation(CONSUMED_FOOD_ITEMS_UPDATED)
        return removed

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                await self.run_cleanup()
            except Exception:
                logger.exception("Consumption cleanup crashed, retrying at the next run")
            delay = seconds_until_next_cleanup(
                pendulum.now(), self._cleanup_hour, self._cleanup_minute
            )
            logger.info("Next consumption cleanup in %.0fs", delay)
            await asyncio.sleep(delay)
