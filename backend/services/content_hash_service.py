"""Dropbox-compatible content hashing of the database file.

Dropbox computes ``content_hash`` server-side by splitting the file into
4 MiB blocks, hashing each block with SHA-256, concatenating the binary block
digests and hashing that concatenation again. Local hashes use the same
scheme so they can be compared with remote metadata without a transfer.
See https://www.dropbox.com/developers/reference/content-hash
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

BLOCK_SIZE = 4 * 1024 * 1024


def hash_file(file_path: Path) -> str:
    """Compute the content hash of a file. Raises OSError if it cannot be read."""
    overall = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(BLOCK_SIZE), b""):
            overall.update(hashlib.sha256(block).digest())
    return overall.hexdigest()


def hash_bytes(data: bytes) -> str:
    """Compute the content hash of an in-memory byte string."""
    overall = hashlib.sha256()
    for offset in range(0, len(data), BLOCK_SIZE):
        overall.update(hashlib.sha256(data[offset : offset + BLOCK_SIZE]).digest())
    return overall.hexdigest()
