"""Tests for the background sync scheduler."""

from __future__ import annotations

import asyncio
import json
import threading
from typing import TYPE_CHECKING

import pendulum
import pytest
from sqlalchemy import select

from backend.database import LocalDatabase
from backend.exceptions import (
    InternalServerError,
    NetworkError,
    RateLimitedError,
    Unauthenticated,
)
from backend.messaging.broadcaster import (
    CONSUMED_FOOD_ITEMS_UPDATED,
    REMOTE_FILE_UPDATED,
    SHOW_SYNC_CONFLICT,
)
from backend.models.consumption import ConsumedFoodItem
from backend.schemas.consumption import ConsumedItemCreate
from backend.services.backoff_service import BackoffPolicy, PollOutcome
from backend.services.consumption_service import add_consumed_item
from backend.services.scheduler_service import SyncScheduler, seconds_until_next_cleanup
from tests.conftest import LOCAL_CONTENT, REMOTE_PATH

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from backend.config import Settings
    from backend.services.settings_store import SettingsLedger
    from backend.services.sync_service import SyncEngine
    from tests.conftest import FakeDatabase, FakeRemoteStore, FakeTokens, RecordingBroadcaster

UPLOAD_DELAY = 0.2


@pytest.fixture
async def local_db(test_settings: Settings) -> AsyncGenerator[LocalDatabase]:
    database = LocalDatabase(test_settings)
    await database.create_schema()
    yield database
    await database.dispose()


@pytest.fixture
async def scheduler(
    engine: SyncEngine, local_db: LocalDatabase, broadcaster: RecordingBroadcaster
) -> AsyncGenerator[SyncScheduler]:
    sched = SyncScheduler(
        engine,
        local_db.session_factory,
        broadcaster,
        policy=BackoffPolicy(regular_interval=300, initial_backoff=60, max_backoff=3600),
        first_check_delay=100,
        upload_delay=UPLOAD_DELAY,
    )
    yield sched
    await sched.stop()


class TestDelayedUpload:
    async def test_burst_collapses_into_one_upload_after_last_call(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_remote: FakeRemoteStore
    ) -> None:
        engine.set_auto_sync(True)
        for _ in range(5):
            scheduler.schedule_delayed_upload()
            await asyncio.sleep(0.05)

        # 0.15s after the last call: the window restarted, nothing fired yet
        await asyncio.sleep(0.1)
        assert fake_remote.uploads == 0

        await asyncio.sleep(0.3)
        assert fake_remote.uploads == 1
        assert fake_remote.files[REMOTE_PATH] == LOCAL_CONTENT

    async def test_not_armed_when_auto_sync_disabled(
        self, scheduler: SyncScheduler, fake_remote: FakeRemoteStore
    ) -> None:
        scheduler.schedule_delayed_upload()
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 0

    async def test_disabling_mid_window_still_uploads(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_remote: FakeRemoteStore
    ) -> None:
        engine.set_auto_sync(True)
        scheduler.schedule_delayed_upload()
        engine.set_auto_sync(False)
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 1

    async def test_failed_upload_is_logged_not_raised(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_remote: FakeRemoteStore
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = NetworkError("offline")
        scheduler.schedule_delayed_upload()
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 0

    async def test_unexpected_upload_error_does_not_block_later_uploads(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_remote: FakeRemoteStore
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = json.JSONDecodeError("Expecting value", "<html>", 0)
        scheduler.schedule_delayed_upload()
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 0

        fake_remote.fail_with = None
        scheduler.schedule_delayed_upload()
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 1

    async def test_schedule_from_another_thread(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_remote: FakeRemoteStore
    ) -> None:
        scheduler.start()
        await asyncio.sleep(0.05)
        engine.set_auto_sync(True)
        worker = threading.Thread(target=scheduler.schedule_delayed_upload)
        worker.start()
        worker.join()
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 1

    async def test_record_local_mutation(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        ledger: SettingsLedger,
        broadcaster: RecordingBroadcaster,
        fake_remote: FakeRemoteStore,
    ) -> None:
        ledger.mark_synced("h1")
        engine.set_auto_sync(True)
        scheduler.record_local_mutation(CONSUMED_FOOD_ITEMS_UPDATED)
        assert ledger.load().synced is False
        assert broadcaster.events == [CONSUMED_FOOD_ITEMS_UPDATED]
        await asyncio.sleep(UPLOAD_DELAY + 0.2)
        assert fake_remote.uploads == 1
        assert ledger.load().synced is True


class TestPollOnce:
    async def test_disabled_auto_sync_skips(
        self, scheduler: SyncScheduler, fake_remote: FakeRemoteStore
    ) -> None:
        assert await scheduler.poll_once() is None
        assert fake_remote.metadata_calls == 0

    async def test_remote_change_downloads(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        ledger: SettingsLedger,
        fake_remote: FakeRemoteStore,
        fake_db: FakeDatabase,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        ledger.mark_synced("h-old")
        engine.set_auto_sync(True)
        fake_remote.put(REMOTE_PATH, b"changed elsewhere")

        assert await scheduler.poll_once() is PollOutcome.SUCCESS
        assert fake_db.path().read_bytes() == b"changed elsewhere"
        assert broadcaster.events[0] == REMOTE_FILE_UPDATED
        assert ledger.load().last_hash_check > 0

    async def test_conflict_is_surfaced_without_download(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        ledger: SettingsLedger,
        fake_remote: FakeRemoteStore,
        fake_db: FakeDatabase,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        ledger.mark_synced("h-old")
        engine.set_auto_sync(True)
        engine.mark_local_change()
        fake_remote.put(REMOTE_PATH, b"changed elsewhere")

        assert await scheduler.poll_once() is PollOutcome.SUCCESS
        assert fake_remote.downloads == 0
        assert fake_db.path().read_bytes() == LOCAL_CONTENT
        assert broadcaster.events == [SHOW_SYNC_CONFLICT]

    async def test_local_changes_are_not_uploaded_by_poll(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        ledger: SettingsLedger,
        fake_remote: FakeRemoteStore,
    ) -> None:
        h1 = fake_remote.put(REMOTE_PATH, LOCAL_CONTENT)
        ledger.mark_synced(h1)
        engine.set_auto_sync(True)
        engine.mark_local_change()
        assert await scheduler.poll_once() is PollOutcome.SUCCESS
        assert fake_remote.uploads == 0

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (RateLimitedError("slow down", retry_after=30), PollOutcome.RATE_LIMITED),
            (NetworkError("offline"), PollOutcome.TRANSIENT_FAILURE),
        ],
    )
    async def test_failures_map_to_outcomes(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        fake_remote: FakeRemoteStore,
        error: Exception,
        expected: PollOutcome,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = error
        assert await scheduler.poll_once() is expected

    @pytest.mark.parametrize(
        "error",
        [
            json.JSONDecodeError("Expecting value", "<html>", 0),
            InternalServerError("Stored Dropbox credentials are unreadable"),
            RuntimeError("unexpected"),
        ],
    )
    async def test_unexpected_errors_are_transient(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        fake_remote: FakeRemoteStore,
        error: Exception,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = error
        assert await scheduler.poll_once() is PollOutcome.TRANSIENT_FAILURE

    async def test_poll_loop_keeps_polling_after_unexpected_error(
        self,
        engine: SyncEngine,
        local_db: LocalDatabase,
        broadcaster: RecordingBroadcaster,
        fake_remote: FakeRemoteStore,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = json.JSONDecodeError("Expecting value", "<html>", 0)
        sched = SyncScheduler(
            engine,
            local_db.session_factory,
            broadcaster,
            policy=BackoffPolicy(regular_interval=0.05, initial_backoff=0.05, max_backoff=0.2),
            first_check_delay=0.01,
        )
        sched.start()
        try:
            await asyncio.sleep(0.1)
            calls_while_failing = fake_remote.metadata_calls
            assert calls_while_failing >= 1

            fake_remote.fail_with = None
            await asyncio.sleep(0.4)
            assert fake_remote.metadata_calls > calls_while_failing
        finally:
            await sched.stop()

    async def test_unauthenticated_is_transient(
        self, scheduler: SyncScheduler, engine: SyncEngine, fake_tokens: FakeTokens
    ) -> None:
        engine.set_auto_sync(True)
        fake_tokens.authenticated = False
        assert await scheduler.poll_once() is PollOutcome.TRANSIENT_FAILURE

    async def test_rate_limited_poll_loop_backs_off(
        self,
        engine: SyncEngine,
        local_db: LocalDatabase,
        broadcaster: RecordingBroadcaster,
        fake_remote: FakeRemoteStore,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = RateLimitedError("slow down")
        sched = SyncScheduler(
            engine,
            local_db.session_factory,
            broadcaster,
            first_check_delay=0.01,
        )
        sched.start()
        try:
            await asyncio.sleep(0.2)
            assert sched.backoff.current == 120
        finally:
            await sched.stop()


class TestCleanup:
    async def _add(self, local_db: LocalDatabase, date: str) -> None:
        async with local_db.session_factory() as session:
            await add_consumed_item(
                session, ConsumedItemCreate(barcode="4001234567890", quantity=1.0, date=date)
            )

    async def test_removes_expired_items_and_schedules_upload(
        self,
        scheduler: SyncScheduler,
        local_db: LocalDatabase,
        ledger: SettingsLedger,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        ledger.mark_synced("h1")
        await self._add(local_db, "2000-01-01")
        await self._add(local_db, pendulum.today().to_date_string())

        removed = await scheduler.run_cleanup()

        assert removed == 1
        assert ledger.load().synced is False
        assert broadcaster.events == [CONSUMED_FOOD_ITEMS_UPDATED]
        async with local_db.session_factory() as session:
            dates = (await session.execute(select(ConsumedFoodItem.date))).scalars().all()
        assert dates == [pendulum.today().to_date_string()]

    async def test_nothing_expired_changes_nothing(
        self,
        scheduler: SyncScheduler,
        local_db: LocalDatabase,
        ledger: SettingsLedger,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        ledger.mark_synced("h1")
        await self._add(local_db, pendulum.today().to_date_string())
        assert await scheduler.run_cleanup() == 0
        assert ledger.load().synced is True
        assert broadcaster.events == []

    async def test_failed_sync_skips_cleanup(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        local_db: LocalDatabase,
        fake_remote: FakeRemoteStore,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = NetworkError("offline")
        await self._add(local_db, "2000-01-01")

        assert await scheduler.run_cleanup() == 0
        async with local_db.session_factory() as session:
            remaining = (await session.execute(select(ConsumedFoodItem))).scalars().all()
        assert len(remaining) == 1


    async def test_unexpected_sync_error_skips_cleanup(
        self,
        scheduler: SyncScheduler,
        engine: SyncEngine,
        local_db: LocalDatabase,
        fake_remote: FakeRemoteStore,
    ) -> None:
        engine.set_auto_sync(True)
        fake_remote.fail_with = InternalServerError("Stored Dropbox credentials are unreadable")
        await self._add(local_db, "2000-01-01")
        assert await scheduler.run_cleanup() == 0

    async def test_cleanup_loop_survives_crash(
        self, scheduler: SyncScheduler, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        calls = 0

        async def crashing_cleanup() -> int:
            nonlocal calls
            calls += 1
            raise RuntimeError("disk vanished")

        monkeypatch.setattr(scheduler, "run_cleanup", crashing_cleanup)
        monkeypatch.setattr(
            "backend.services.scheduler_service.seconds_until_next_cleanup",
            lambda now, hour, minute: 0.01,
        )
        scheduler.start()
        await asyncio.sleep(0.1)
        assert calls >= 2

class TestCleanupTiming:
    def test_midday_waits_until_one_past_midnight(self) -> None:
        now = pendulum.datetime(2024, 3, 10, 12, 0, tz="UTC")
        assert seconds_until_next_cleanup(now, 0, 1) == 12 * 3600 + 60

    def test_just_before_midnight(self) -> None:
        now = pendulum.datetime(2024, 3, 10, 23, 59, tz="UTC")
        assert seconds_until_next_cleanup(now, 0, 1) == 120
