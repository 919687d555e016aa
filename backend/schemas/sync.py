"""Dropbox sync API schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TokenExchangeRequest(BaseModel):
    """Authorization code returned by the Dropbox redirect."""

    code: str = Field(min_length=1)
    code_verifier: str = Field(min_length=43, max_length=128)
    redirect_uri: str | None = None


class AuthorizeUrlResponse(BaseModel):
    url: str


class AuthStatusResponse(BaseModel):
    is_authenticated: bool


class TransferResponse(BaseModel):
    """Result of a manual upload or download."""

    success: bool
    status: str


class AutoSyncRequest(BaseModel):
    enabled: bool


class AutoSyncResponse(BaseModel):
    enabled: bool


class SyncRequest(BaseModel):
    force: bool = False


class SyncStatusResponse(BaseModel):
    """Summary of the local sync ledger."""

    synced: bool
    stored_hash: str | None = None
    last_hash_check: int = 0
    auto_sync_enabled: bool = False
