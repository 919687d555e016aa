"""Dropbox OAuth2 (PKCE) token exchange and transparent refresh."""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from backend.exceptions import RefreshFailed, Unauthenticated
from backend.services.crypto_service import Credentials
from backend.services.datetime_service import now_utc

if TYPE_CHECKING:
    from backend.services.crypto_service import CredentialVault
    from backend.services.settings_store import SettingsLedger

logger = logging.getLogger(__name__)

REFRESH_WINDOW = timedelta(minutes=30)
DEFAULT_EXPIRES_IN = 4 * 60 * 60


class TokenExchangeError(Exception):
    """Raised when exchanging an authorization code fails."""


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def create_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE verifier and its S256 challenge."""
    verifier = _b64url(secrets.token_bytes(48))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def build_authorize_url(
    authorize_url: str, client_id: str, code_challenge: str, redirect_uri: str | None = None
) -> str:
    """Build the Dropbox authorization URL requesting an offline (refreshable) token."""
    params = {
        "client_id": client_id,
        "response_type": "code",
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "token_access_type": "offline",
    }
    if redirect_uri:
        params["redirect_uri"] = redirect_uri
    return f"{authorize_url}?{urlencode(params)}"


def _expires_in(token_data: dict[str, Any]) -> int:
    expires_in = int(token_data.get("expires_in") or 0)
    if expires_in <= 0:
        logger.info("No expires_in received, defaulting to %d seconds", DEFAULT_EXPIRES_IN)
        return DEFAULT_EXPIRES_IN
    return expires_in


class TokenManager:
    """Wraps the credential vault and keeps the access token fresh."""

    def __init__(
        self,
        vault: CredentialVault,
        ledger: SettingsLedger,
        *,
        client_id: str,
        client_secret: str = "",
        token_url: str = "https://api.dropboxapi.com/oauth2/token",
        timeout: float = 30.0,
    ) -> None:
        self._vault = vault
        self._ledger = ledger
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._timeout = timeout

    async def _post_token(self, data: dict[str, str]) -> httpx.Response:
        async with httpx.AsyncClient() as http_client:
            return await http_client.post(self._token_url, data=data, timeout=self._timeout)

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str | None = None
    ) -> Credentials:
        """Exchange an authorization code for tokens and store them.

        The stored expiry is 90% of the lifetime the server granted.
        """
        data = {
            "code": code,
            "grant_type": "authorization_code",
            "client_id": self._client_id,
            "code_verifier": code_verifier,
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        try:
            resp = await self._post_token(data)
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token request failed: {exc}") from exc
        if resp.status_code != 200:
            msg = f"Token exchange failed: HTTP {resp.status_code} — {resp.text[:200]}"
            raise TokenExchangeError(msg)
        try:
            token_data: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise TokenExchangeError(f"Token response is not JSON: {exc}") from exc
        access_token = token_data.get("access_token")
        if not access_token:
            raise TokenExchangeError("Token response missing access_token")

        lifetime = _expires_in(token_data)
        credentials = Credentials(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token") or "",
            expires_at=now_utc() + timedelta(seconds=lifetime * 9 / 10),
        )
        self._vault.save(credentials)
        logger.info("Stored Dropbox credentials (expires at %s)", credentials.expires_at)
        return credentials

    async def get_valid(self) -> Credentials:
        """Return credentials whose access token is valid for at least 30 more minutes.

        Raises:
            Unauthenticated: No credentials, or no refresh token to renew them.
            RefreshFailed: The refresh request failed.
        """
        credentials = self._vault.load()
        if credentials is None or not credentials.access_token:
            raise Unauthenticated("Not logged in to Dropbox")

        time_left = credentials.expires_at - now_utc()
        logger.debug("Dropbox access token expires in %s", time_left)
        if time_left > REFRESH_WINDOW:
            return credentials

        if not credentials.refresh_token:
            raise Unauthenticated("Access token expiring and no refresh token available")

        logger.info("Refreshing Dropbox access token")
        token_data = await self._refresh(credentials.refresh_token)
        refreshed = Credentials(
            access_token=token_data["access_token"],
            # Providers may omit rotation
            refresh_token=token_data.get("refresh_token") or credentials.refresh_token,
            expires_at=now_utc() + timedelta(seconds=_expires_in(token_data)),
        )
        self._vault.save(refreshed)
        logger.info("Saved refreshed Dropbox tokens (expires at %s)", refreshed.expires_at)
        return refreshed

    async def _refresh(self, refresh_token: str) -> dict[str, Any]:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self._client_id,
        }
        if self._client_secret:
            data["client_secret"] = self._client_secret
        try:
            resp = await self._post_token(data)
        except httpx.HTTPError as exc:
            raise RefreshFailed(f"Token refresh request failed: {exc}") from exc
        if resp.status_code != 200:
            msg = f"Token refresh failed: HTTP {resp.status_code} — {resp.text[:200]}"
            raise RefreshFailed(msg)
        try:
            token_data: dict[str, Any] = resp.json()
        except ValueError as exc:
            raise RefreshFailed(f"Refresh response is not JSON: {exc}") from exc
        if not token_data.get("access_token"):
            raise RefreshFailed("Refresh response missing access_token")
        return token_data

    async def is_authenticated(self) -> bool:
        """Whether usable (possibly refreshed) credentials exist."""
        try:
            await self.get_valid()
        except (Unauthenticated, RefreshFailed) as exc:
            logger.info("Dropbox not authenticated: %s", exc)
            return False
        return True

    def logout(self) -> None:
        """Disable auto-sync and forget the stored credentials."""
        self._ledger.set_auto_sync(False)
        self._vault.delete()
        logger.info("Logged out of Dropbox")
