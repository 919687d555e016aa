"""Protocol and data classes for the remote file store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class RemoteMetadata:
    """Metadata of the remote database copy."""

    content_hash: str
    path: str
    size: int
    server_modified: str | None = None


@runtime_checkable
class RemoteStore(Protocol):
    """A file-hosting service holding one remote copy of the database."""

    async def get_metadata(self, access_token: str, path: str) -> RemoteMetadata | None:
        """Return metadata, or None if the remote file does not exist."""
        ...

    async def upload(self, access_token: str, path: str, data: bytes) -> RemoteMetadata:
        """Upload ``data`` to ``path``, overwriting any existing file."""
        ...

    async def download(self, access_token: str, path: str) -> bytes:
        """Return the full contents of the remote file."""
        ...
