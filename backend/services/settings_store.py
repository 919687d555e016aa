"""Durable JSON ledger of the local sync state.

Every mutation is written through to disk before the call returns so a crash
never loses the synced flag or the last known content hash. All reads and
writes go through one lock.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from backend.services.datetime_service import now_millis

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncState:
    """Sync-relevant fields of the local settings file."""

    stored_hash: str = ""
    synced: bool = False
    last_hash_check: int = 0
    auto_sync_enabled: bool = False


# JSON keys on disk; other keys in the file belong to the rest of the app
_FIELD_KEYS = {
    "stored_hash": "stored_hash",
    "synced": "synced",
    "last_hash_check": "last_hash_check",
    "auto_sync_enabled": "auto_sync_dropbox",
}


class SettingsLedger:
    """Thread-safe, write-through owner of ``SyncState``."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._extra: dict[str, Any] = {}
        self._state = SyncState()
        if path.exists():
            self._state = self._read()
            logger.info("Loaded sync settings from %s: %s", path, self._state)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._write(self._state)
            logger.info("Created default sync settings at %s", path)

    def _read(self) -> SyncState:
        data: dict[str, Any] = json.loads(self._path.read_text(encoding="utf-8"))
        values = {field: data.pop(key) for field, key in _FIELD_KEYS.items() if key in data}
        self._extra = data
        return SyncState(
            stored_hash=str(values.get("stored_hash", "")),
            synced=bool(values.get("synced", False)),
            last_hash_check=int(values.get("last_hash_check", 0)),
            auto_sync_enabled=bool(values.get("auto_sync_enabled", False)),
        )

    def _write(self, state: SyncState) -> None:
        data = dict(self._extra)
        data.update({key: getattr(state, field) for field, key in _FIELD_KEYS.items()})
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)

    def _update(self, **changes: Any) -> SyncState:
        with self._lock:
            new_state = replace(self._state, **changes)
            self._write(new_state)
            self._state = new_state
            return new_state

    def load(self) -> SyncState:
        """Return a snapshot of the current state."""
        with self._lock:
            return self._state

    def mark_synced(self, content_hash: str) -> None:
        """Record that the local file matches the remote copy with ``content_hash``."""
        with self._lock:
            was_synced = self._state.synced
            new_state = replace(self._state, synced=True, stored_hash=content_hash)
            self._write(new_state)
            self._state = new_state
        if was_synced:
            logger.debug("Stored hash updated while synced: %s", content_hash)
        else:
            logger.info("Sync status changed: UNSYNCED -> SYNCED (hash: %s)", content_hash)

    def mark_unsynced(self) -> None:
        """Record that the local file changed since the last transfer."""
        with self._lock:
            if not self._state.synced:
                return
            new_state = replace(self._state, synced=False)
            self._write(new_state)
            self._state = new_state
        logger.info("Sync status changed: SYNCED -> UNSYNCED")

    def set_auto_sync(self, enabled: bool) -> None:
        self._update(auto_sync_enabled=enabled)

    def record_hash_check(self, timestamp_ms: int | None = None) -> None:
        """Store the time of the latest remote metadata poll."""
        self._update(last_hash_check=now_millis() if timestamp_ms is None else timestamp_ms)

    def is_check_due(self, interval_seconds: float, now_ms: int | None = None) -> bool:
        """Whether at least ``interval_seconds`` passed since the last remote poll."""
        state = self.load()
        if state.last_hash_check == 0:
            return True
        current = now_millis() if now_ms is None else now_ms
        return current - state.last_hash_check >= interval_seconds * 1000
