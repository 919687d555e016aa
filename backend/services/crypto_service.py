"""Encrypted-at-rest storage for Dropbox OAuth credentials.

The Fernet key is generated once per installation and stored unencrypted next
to the ciphertext. This keeps tokens out of casual disk inspection and
backups that only pick up the token file; it does not protect against anyone
who can read the data directory.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken

from backend.exceptions import InternalServerError
from backend.services.datetime_service import format_iso, parse_datetime

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

KEY_FILE = "encryption.key"
TOKENS_FILE = "dropbox_tokens.enc"


def load_or_create_key(key_path: Path) -> bytes:
    """Load the installation's Fernet key, generating it on first use."""
    if key_path.exists():
        return key_path.read_bytes().strip()
    key_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    key = Fernet.generate_key()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("Generated new credential encryption key at %s", key_path)
    return key


def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt a string and return the ciphertext as a URL-safe string."""
    f = Fernet(key)
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, key: bytes) -> str:
    """Decrypt a ciphertext string. Raises ValueError on failure."""
    f = Fernet(key)
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt credential data") from exc


@dataclass
class Credentials:
    """Dropbox OAuth tokens."""

    access_token: str
    refresh_token: str
    expires_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_at": format_iso(self.expires_at),
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> Credentials:
        data = json.loads(raw)
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=parse_datetime(data["expires_at"]),
        )


class CredentialVault:
    """Owns the encrypted credential file; every write replaces it wholesale."""

    def __init__(self, tokens_dir: Path) -> None:
        self._tokens_dir = tokens_dir
        self._tokens_path = tokens_dir / TOKENS_FILE
        self._key = load_or_create_key(tokens_dir / KEY_FILE)
        self._lock = threading.Lock()

    def save(self, credentials: Credentials) -> None:
        """Encrypt and persist credentials, replacing any previous ones."""
        ciphertext = encrypt_value(credentials.to_json(), self._key)
        with self._lock:
            tmp_path = self._tokens_path.with_suffix(".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(ciphertext)
            os.replace(tmp_path, self._tokens_path)

    def load(self) -> Credentials | None:
        """Return stored credentials, or None when nobody is logged in."""
        with self._lock:
            if not self._tokens_path.exists():
                return None
            ciphertext = self._tokens_path.read_text(encoding="utf-8")
        try:
            return Credentials.from_json(decrypt_value(ciphertext, self._key))
        except (ValueError, KeyError) as exc:
            raise InternalServerError(f"Stored Dropbox credentials are unreadable: {exc}") from exc

    def delete(self) -> None:
        """Remove stored credentials (logout)."""
        with self._lock:
            self._tokens_path.unlink(missing_ok=True)
