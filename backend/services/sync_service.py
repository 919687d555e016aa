"""Sync service: reconciliation policy and database transfers with Dropbox.

The local database file is synchronized as one opaque blob with a single
remote copy. Change detection compares content hashes: the ledger remembers
the hash of the last transferred content and whether the local file changed
since. There is no merge; when both sides changed the engine refuses to pick
a side and tells the UI to ask the user.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from backend.exceptions import SyncConflictError
from backend.messaging.broadcaster import (
    ENTITY_INVALIDATIONS,
    REMOTE_FILE_UPDATED,
    SHOW_SYNC_CONFLICT,
)
from backend.remote.dropbox import DropboxClient
from backend.services.content_hash_service import hash_bytes, hash_file
from backend.services.crypto_service import CredentialVault
from backend.services.settings_store import SettingsLedger
from backend.services.token_service import TokenManager

if TYPE_CHECKING:
    from backend.config import Settings
    from backend.messaging.broadcaster import Broadcaster
    from backend.remote.base import RemoteMetadata, RemoteStore
    from backend.services.settings_store import SyncState

logger = logging.getLogger(__name__)


class SyncAction(StrEnum):
    """What a reconciliation pass decided to do."""

    NO_OP = "no_op"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    CONFLICT = "conflict"
    AWAIT_INITIAL_DOWNLOAD = "await_initial_download"


class TransferStatus(StrEnum):
    """Outcome reported by the transfer primitives."""

    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    UP_TO_DATE = "upToDate"
    NOT_FOUND = "notFound"


@dataclass(frozen=True)
class TransferResult:
    """Result of an upload or download."""

    success: bool
    status: TransferStatus


class DatabaseFile(Protocol):
    """The local database as the sync engine sees it."""

    def path(self) -> Path: ...

    async def release_connections(self) -> None: ...


def reconcile(
    local_hash: str | None, remote: RemoteMetadata | None, state: SyncState
) -> SyncAction:
    """Decide how to bring the local and remote copies together.

    ``local_hash`` may be None when the caller skipped hashing the local
    file; when given and equal to the remote hash the copies are identical
    and nothing needs to move.

    Decision table, evaluated in order:

    ====== =========== ================ ====== ======================
    remote stored hash stored == remote synced action
    ====== =========== ================ ====== ======================
    absent any         any              any    UPLOAD
    exists empty       any              any    AWAIT_INITIAL_DOWNLOAD
    exists set         yes              yes    NO_OP
    exists set         yes              no     UPLOAD
    exists set         no               yes    DOWNLOAD
    exists set         no               no     CONFLICT
    ====== =========== ================ ====== ======================
    """
    if remote is None:
        return SyncAction.UPLOAD
    if local_hash is not None and local_hash == remote.content_hash:
        return SyncAction.NO_OP
    if not state.stored_hash:
        return SyncAction.AWAIT_INITIAL_DOWNLOAD
    if state.stored_hash == remote.content_hash:
        return SyncAction.NO_OP if state.synced else SyncAction.UPLOAD
    return SyncAction.DOWNLOAD if state.synced else SyncAction.CONFLICT


def _replace_file_contents(target: Path, data: bytes) -> str:
    """Stage ``data`` in a temp file, then copy it over ``target``.

    Copying (instead of renaming) keeps working when the temp directory is on
    another filesystem and preserves the target's inode for open handles.
    Returns the content hash of what was written.
    """
    fd, tmp_name = tempfile.mkstemp(prefix="nutrack-", suffix=".db")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        content_hash = hash_file(tmp_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "rb") as src, open(target, "wb") as dst:
            shutil.copyfileobj(src, dst)
            dst.flush()
            os.fsync(dst.fileno())
    finally:
        tmp_path.unlink(missing_ok=True)
    return content_hash


class SyncEngine:
    """Keeps the local database file consistent with its remote copy.

    No lock serializes reconciliation: concurrent passes may both decide to
    upload, which degrades to a redundant transfer because every transfer
    starts by comparing hashes. Only the conflict case is never resolved
    automatically.
    """

    def __init__(
        self,
        ledger: SettingsLedger,
        tokens: TokenManager,
        remote: RemoteStore,
        database: DatabaseFile,
        broadcaster: Broadcaster,
        *,
        remote_path: str = "/nutrack.db",
        check_interval: float = 300.0,
        notify_delay: float = 0.05,
    ) -> None:
        self._ledger = ledger
        self._tokens = tokens
        self._remote = remote
        self._database = database
        self._broadcaster = broadcaster
        self._remote_path = remote_path
        self._check_interval = check_interval
        self._notify_delay = notify_delay

    @property
    def ledger(self) -> SettingsLedger:
        return self._ledger

    @property
    def tokens(self) -> TokenManager:
        return self._tokens

    def get_auto_sync(self) -> bool:
        return self._ledger.load().auto_sync_enabled

    def set_auto_sync(self, enabled: bool) -> None:
        self._ledger.set_auto_sync(enabled)
        logger.info("Auto-sync %s", "enabled" if enabled else "disabled")

    def mark_local_change(self) -> None:
        """Record that the local database was mutated."""
        self._ledger.mark_unsynced()

    async def _local_hash(self) -> str:
        return await asyncio.to_thread(hash_file, self._database.path())

    def report_conflict(self) -> None:
        """Surface a conflict to the UI without transferring anything."""
        logger.warning("Remote file changed while local changes are unsynced: conflict")
        self._broadcaster.publish(SHOW_SYNC_CONFLICT)

    def _ensure_no_conflict(self, local_hash: str | None, remote: RemoteMetadata | None) -> None:
        if reconcile(local_hash, remote, self._ledger.load()) is SyncAction.CONFLICT:
            self.report_conflict()
            raise SyncConflictError("Local and remote database both changed since the last sync")

    async def upload_database(self, *, resolve_conflict: bool = False) -> TransferResult:
        """Upload the local database unless the remote already has identical content.

        With ``resolve_conflict`` the local copy wins a conflict.
        """
        credentials = await self._tokens.get_valid()
        local_hash = await self._local_hash()
        remote = await self._remote.get_metadata(credentials.access_token, self._remote_path)

        if remote is not None and remote.content_hash == local_hash:
            logger.info("No upload needed, marking as synced with hash %s", local_hash)
            self._ledger.mark_synced(local_hash)
            return TransferResult(success=True, status=TransferStatus.UP_TO_DATE)

        if not resolve_conflict:
            self._ensure_no_conflict(local_hash, remote)

        payload = await asyncio.to_thread(self._database.path().read_bytes)
        uploaded_hash = hash_bytes(payload)
        result = await self._remote.upload(credentials.access_token, self._remote_path, payload)
        if result.content_hash and result.content_hash != uploaded_hash:
            logger.warning(
                "Remote reported hash %s after upload, expected %s",
                result.content_hash,
                uploaded_hash,
            )
        logger.info("Upload successful (%d bytes)", len(payload))
        self._ledger.mark_synced(uploaded_hash)
        return TransferResult(success=True, status=TransferStatus.UPLOADED)

    async def download_database(self, *, resolve_conflict: bool = False) -> TransferResult:
        """Replace the local database with the remote copy when they differ.

        With ``resolve_conflict`` the remote copy wins a conflict.
        """
        credentials = await self._tokens.get_valid()
        remote = await self._remote.get_metadata(credentials.access_token, self._remote_path)
        if remote is None:
            return TransferResult(success=False, status=TransferStatus.NOT_FOUND)

        db_path = self._database.path()
        local_hash = await self._local_hash() if db_path.exists() else None
        if local_hash == remote.content_hash:
            logger.info("No download needed, marking as synced with hash %s", remote.content_hash)
            self._ledger.mark_synced(remote.content_hash)
            return TransferResult(success=True, status=TransferStatus.UP_TO_DATE)

        if not resolve_conflict:
            self._ensure_no_conflict(local_hash, remote)

        data = await self._remote.download(credentials.access_token, self._remote_path)
        await self._database.release_connections()
        downloaded_hash = await asyncio.to_thread(_replace_file_contents, db_path, data)
        if downloaded_hash != remote.content_hash:
            logger.warning(
                "Downloaded content hash %s differs from metadata hash %s",
                downloaded_hash,
                remote.content_hash,
            )
        logger.info("Download successful (%d bytes)", len(data))
        self._ledger.mark_synced(downloaded_hash)

        await self._announce_remote_update()
        return TransferResult(success=True, status=TransferStatus.DOWNLOADED)

    async def _announce_remote_update(self) -> None:
        self._broadcaster.publish(REMOTE_FILE_UPDATED)
        for event in ENTITY_INVALIDATIONS:
            # Give subscribers time to process each event in order
            await asyncio.sleep(self._notify_delay)
            self._broadcaster.publish(event)

    async def check_remote_changed(self) -> SyncAction:
        """Fetch remote metadata and classify it against the ledger. Transfers nothing."""
        credentials = await self._tokens.get_valid()
        remote = await self._remote.get_metadata(credentials.access_token, self._remote_path)
        self._ledger.record_hash_check()
        state = self._ledger.load()
        action = reconcile(None, remote, state)
        logger.info(
            "Remote hash %s, stored hash %s, synced %s -> %s",
            remote.content_hash if remote is not None else None,
            state.stored_hash or None,
            state.synced,
            action,
        )
        return action

    async def sync_if_due(self, force: bool = False) -> None:
        """Run one reconciliation pass.

        Does nothing while auto-sync is off, or (unless ``force``) when the
        remote was checked less than one check interval ago.

        Raises:
            SyncConflictError: Both sides changed; the UI was notified.
        """
        if not self.get_auto_sync():
            logger.debug("Auto-sync is disabled")
            return
        if not force and not self._ledger.is_check_due(self._check_interval):
            logger.debug("Remote checked recently, skipping sync")
            return

        action = await self.check_remote_changed()
        if action is SyncAction.UPLOAD:
            await self.upload_database()
        elif action in (SyncAction.DOWNLOAD, SyncAction.AWAIT_INITIAL_DOWNLOAD):
            await self.download_database()
        elif action is SyncAction.CONFLICT:
            self.report_conflict()
            raise SyncConflictError("Remote file changed but local changes are not synced")


def build_sync_engine(
    settings: Settings, database: DatabaseFile, broadcaster: Broadcaster
) -> SyncEngine:
    """Wire the ledger, credential vault, token manager and Dropbox client."""
    ledger = SettingsLedger(settings.settings_path)
    tokens = TokenManager(
        CredentialVault(settings.tokens_dir),
        ledger,
        client_id=settings.dropbox_client_id,
        client_secret=settings.dropbox_client_secret,
        token_url=f"{settings.dropbox_oauth_base.rstrip('/')}/token",
        timeout=settings.http_timeout_seconds,
    )
    remote = DropboxClient(
        api_base=settings.dropbox_api_base,
        content_base=settings.dropbox_content_base,
        timeout=settings.http_timeout_seconds,
    )
    return SyncEngine(
        ledger,
        tokens,
        remote,
        database,
        broadcaster,
        remote_path=settings.dropbox_remote_path,
        check_interval=settings.sync_check_interval_seconds,
        notify_delay=settings.sync_notify_delay_seconds,
    )
