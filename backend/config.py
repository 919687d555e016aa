"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Nutrack application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)

    # Paths
    data_dir: Path = Path("./data")
    database_filename: str = "nutrack.db"

    # Dropbox
    dropbox_client_id: str = ""
    dropbox_client_secret: str = ""
    dropbox_redirect_uri: str = "http://localhost:3000/dropbox-callback"
    dropbox_remote_path: str = "/nutrack.db"
    dropbox_api_base: str = "https://api.dropboxapi.com/2"
    dropbox_content_base: str = "https://content.dropboxapi.com/2"
    dropbox_oauth_base: str = "https://api.dropboxapi.com/oauth2"
    dropbox_authorize_url: str = "https://www.dropbox.com/oauth2/authorize"
    http_timeout_seconds: float = Field(default=60.0, gt=0)

    # Sync timing
    sync_check_interval_seconds: float = Field(default=300.0, gt=0)
    sync_initial_backoff_seconds: float = Field(default=60.0, gt=0)
    sync_max_backoff_seconds: float = Field(default=3600.0, gt=0)
    sync_first_check_delay_seconds: float = Field(default=5.0, ge=0)
    sync_upload_delay_seconds: float = Field(default=10.0, ge=0)
    sync_notify_delay_seconds: float = Field(default=0.05, ge=0)

    # Retention
    consumed_retention_months: int = Field(default=3, ge=1)
    cleanup_hour: int = Field(default=0, ge=0, le=23)
    cleanup_minute: int = Field(default=1, ge=0, le=59)

    # Notifications: JSON lines on stdout (Electron IPC) instead of SSE
    use_stdio_broadcaster: bool = False

    @property
    def database_path(self) -> Path:
        """Path of the local SQLite database file that gets synchronized."""
        return self.data_dir / self.database_filename

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL for the local database."""
        return f"sqlite+aiosqlite:///{self.database_path}"

    @property
    def settings_path(self) -> Path:
        """Path of the JSON settings ledger."""
        return self.data_dir / "settings" / "settings.json"

    @property
    def tokens_dir(self) -> Path:
        """Directory holding the encrypted credentials and their key."""
        return self.data_dir / "tokens"

    def validate_runtime(self) -> None:
        """Validate that the sync timing settings are consistent."""
        violations: list[str] = []
        if self.sync_max_backoff_seconds < self.sync_initial_backoff_seconds:
            violations.append("SYNC_MAX_BACKOFF_SECONDS must be >= SYNC_INITIAL_BACKOFF_SECONDS")
        if self.sync_max_backoff_seconds < self.sync_check_interval_seconds:
            violations.append("SYNC_MAX_BACKOFF_SECONDS must be >= SYNC_CHECK_INTERVAL_SECONDS")
        if not self.dropbox_remote_path.startswith("/"):
            violations.append("DROPBOX_REMOTE_PATH must be an absolute path starting with '/'")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid configuration: {joined}")
