"""Shared test fixtures for Nutrack."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from backend.config import Settings
from backend.database import LocalDatabase
from backend.exceptions import Unauthenticated
from backend.main import create_app
from backend.messaging.broadcaster import SSEBroadcaster
from backend.remote.base import RemoteMetadata
from backend.services.content_hash_service import hash_bytes
from backend.services.crypto_service import Credentials
from backend.services.datetime_service import now_utc
from backend.services.scheduler_service import SyncScheduler
from backend.services.settings_store import SettingsLedger
from backend.services.sync_service import SyncEngine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from backend.services.token_service import TokenManager

logger = logging.getLogger(__name__)

LOCAL_CONTENT = b"local database v1"
REMOTE_PATH = "/nutrack.db"


class FakeRemoteStore:
    """In-memory ``RemoteStore`` that counts transfers and can inject failures."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.uploads = 0
        self.downloads = 0
        self.metadata_calls = 0
        self.fail_with: Exception | None = None

    def put(self, path: str, data: bytes) -> str:
        self.files[path] = data
        return hash_bytes(data)

    def _metadata(self, path: str) -> RemoteMetadata:
        data = self.files[path]
        return RemoteMetadata(content_hash=hash_bytes(data), path=path, size=len(data))

    async def get_metadata(self, access_token: str, path: str) -> RemoteMetadata | None:
        self.metadata_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if path not in self.files:
            return None
        return self._metadata(path)

    async def upload(self, access_token: str, path: str, data: bytes) -> RemoteMetadata:
        if self.fail_with is not None:
            raise self.fail_with
        self.uploads += 1
        self.files[path] = data
        return self._metadata(path)

    async def download(self, access_token: str, path: str) -> bytes:
        if self.fail_with is not None:
            raise self.fail_with
        self.downloads += 1
        return self.files[path]


class FakeTokens:
    """Stands in for ``TokenManager`` with fixed credentials."""

    def __init__(self, authenticated: bool = True) -> None:
        self.authenticated = authenticated
        self.logged_out = False

    async def get_valid(self) -> Credentials:
        if not self.authenticated:
            raise Unauthenticated("Not logged in to Dropbox")
        return Credentials(
            access_token="test-access-token",
            refresh_token="test-refresh-token",
            expires_at=now_utc() + timedelta(hours=4),
        )

    async def is_authenticated(self) -> bool:
        return self.authenticated

    def logout(self) -> None:
        self.logged_out = True
        self.authenticated = False


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.events: list[str] = []

    def publish(self, event: str) -> None:
        self.events.append(event)


class FakeDatabase:
    """A database file on disk without an engine behind it."""

    def __init__(self, file_path: Path) -> None:
        self._path = file_path
        self.released = 0

    def path(self) -> Path:
        return self._path

    async def release_connections(self) -> None:
        self.released += 1


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings pointing at a temporary data directory."""
    return Settings(
        _env_file=None,
        debug=True,
        data_dir=tmp_path / "data",
        dropbox_client_id="test-client-id",
        sync_upload_delay_seconds=0.05,
        sync_first_check_delay_seconds=0.01,
        sync_notify_delay_seconds=0,
    )


@pytest.fixture
def ledger(tmp_path: Path) -> SettingsLedger:
    return SettingsLedger(tmp_path / "settings" / "settings.json")


@pytest.fixture
def fake_remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def fake_tokens() -> FakeTokens:
    return FakeTokens()


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def fake_db(tmp_path: Path) -> FakeDatabase:
    db_file = tmp_path / "nutrack.db"
    db_file.write_bytes(LOCAL_CONTENT)
    return FakeDatabase(db_file)


@pytest.fixture
def engine(
    ledger: SettingsLedger,
    fake_tokens: FakeTokens,
    fake_remote: FakeRemoteStore,
    fake_db: FakeDatabase,
    broadcaster: RecordingBroadcaster,
) -> SyncEngine:
    return SyncEngine(
        ledger,
        fake_tokens,  # type: ignore[arg-type]
        fake_remote,
        fake_db,
        broadcaster,
        remote_path=REMOTE_PATH,
        check_interval=300,
        notify_delay=0,
    )


@asynccontextmanager
async def create_test_client(
    settings: Settings,
    remote: FakeRemoteStore | None = None,
    tokens: FakeTokens | TokenManager | None = None,
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan because
    ASGITransport does not trigger it. The Dropbox client and token manager
    are replaced by fakes and the background scheduler is not started.
    """
    app = create_app(settings)
    settings.validate_runtime()

    database = LocalDatabase(settings)
    await database.create_schema()
    app.state.database = database

    broadcaster = SSEBroadcaster()
    app.state.broadcaster = broadcaster

    sync_engine = SyncEngine(
        SettingsLedger(settings.settings_path),
        tokens or FakeTokens(),  # type: ignore[arg-type]
        remote or FakeRemoteStore(),
        database,
        broadcaster,
        remote_path=settings.dropbox_remote_path,
        check_interval=settings.sync_check_interval_seconds,
        notify_delay=0,
    )
    app.state.sync_engine = sync_engine
    app.state.scheduler = SyncScheduler.from_settings(
        settings, sync_engine, database.session_factory, broadcaster
    )

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    await app.state.scheduler.stop()
    await database.dispose()
