"""Dropbox HTTP API v2 client for the single remote database file."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from backend.exceptions import NetworkError, RateLimitedError, RemoteRejected
from backend.remote.base import RemoteMetadata

logger = logging.getLogger(__name__)

_ERROR_EXCERPT = 200


def _parse_retry_after(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _raise_for_status(resp: httpx.Response, operation: str) -> None:
    """Translate a non-2xx Dropbox response into the sync error taxonomy."""
    if resp.status_code == 429:
        msg = f"Dropbox {operation} rate limited (HTTP 429)"
        raise RateLimitedError(msg, retry_after=_parse_retry_after(resp))
    if not resp.is_success:
        msg = f"Dropbox {operation} failed: HTTP {resp.status_code} — {resp.text[:_ERROR_EXCERPT]}"
        raise RemoteRejected(msg, status_code=resp.status_code)


def _is_path_not_found(resp: httpx.Response) -> bool:
    """Whether a 409 response is Dropbox's ``path/not_found`` error."""
    try:
        body: dict[str, Any] = resp.json()
    except ValueError:
        return False
    error = body.get("error") or {}
    return error.get(".tag") == "path" and (error.get("path") or {}).get(".tag") == "not_found"


def _json_body(resp: httpx.Response, operation: str) -> dict[str, Any]:
    try:
        body: dict[str, Any] = resp.json()
    except ValueError as exc:
        msg = f"Dropbox {operation} returned an unreadable body: {exc}"
        raise RemoteRejected(msg, status_code=resp.status_code) from exc
    return body


def _metadata_from_json(data: dict[str, Any]) -> RemoteMetadata:
    return RemoteMetadata(
        content_hash=data.get("content_hash", ""),
        path=data.get("path_display", ""),
        size=int(data.get("size", 0)),
        server_modified=data.get("server_modified"),
    )


class DropboxClient:
    """Talks to Dropbox's RPC and content endpoints. Implements ``RemoteStore``."""

    def __init__(
        self,
        api_base: str = "https://api.dropboxapi.com/2",
        content_base: str = "https://content.dropboxapi.com/2",
        timeout: float = 60.0,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._content_base = content_base.rstrip("/")
        self._timeout = timeout

    async def _post(self, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient() as http_client:
                return await http_client.post(url, timeout=self._timeout, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"Dropbox {operation} request failed: {exc}"
            raise NetworkError(msg) from exc

    async def get_metadata(self, access_token: str, path: str) -> RemoteMetadata | None:
        """Return metadata for ``path``, or None when the file does not exist."""
        resp = await self._post(
            f"{self._api_base}/files/get_metadata",
            "metadata",
            headers={"Authorization": f"Bearer {access_token}"},
            json={"path": path},
        )
        if resp.status_code == 409 and _is_path_not_found(resp):
            return None
        _raise_for_status(resp, "metadata")
        metadata = _metadata_from_json(_json_body(resp, "metadata"))
        if not metadata.content_hash:
            # Folders and deleted entries carry no content hash
            logger.warning("Remote entry %s has no content hash, treating as absent", path)
            return None
        return metadata

    async def upload(self, access_token: str, path: str, data: bytes) -> RemoteMetadata:
        """Upload ``data`` as ``path`` in overwrite mode."""
        resp = await self._post(
            f"{self._content_base}/files/upload",
            "upload",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/octet-stream",
                "Dropbox-API-Arg": json.dumps({"path": path, "mode": "overwrite"}),
            },
            content=data,
        )
        _raise_for_status(resp, "upload")
        return _metadata_from_json(_json_body(resp, "upload"))

    async def download(self, access_token: str, path: str) -> bytes:
        """Download the full contents of ``path``."""
        resp = await self._post(
            f"{self._content_base}/files/download",
            "download",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Dropbox-API-Arg": json.dumps({"path": path}),
            },
        )
        _raise_for_status(resp, "download")
        return resp.content
