"""Dropbox sync API endpoints: authentication, manual transfers and auto-sync."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.api.deps import get_settings, get_sync_engine, get_token_manager
from backend.config import Settings
from backend.schemas.sync import (
    AuthorizeUrlResponse,
    AuthStatusResponse,
    AutoSyncRequest,
    AutoSyncResponse,
    SyncRequest,
    SyncStatusResponse,
    TokenExchangeRequest,
    TransferResponse,
)
from backend.services.sync_service import SyncEngine
from backend.services.token_service import (
    TokenExchangeError,
    TokenManager,
    build_authorize_url,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dropbox", tags=["dropbox"])


@router.get("/authorize-url", response_model=AuthorizeUrlResponse)
async def authorize_url(
    settings: Annotated[Settings, Depends(get_settings)],
    code_challenge: Annotated[str, Query(min_length=43, max_length=128)],
) -> AuthorizeUrlResponse:
    """Build the Dropbox authorization URL for a client-generated PKCE challenge."""
    if not settings.dropbox_client_id:
        raise HTTPException(status_code=503, detail="Dropbox client id is not configured")
    url = build_authorize_url(
        settings.dropbox_authorize_url,
        settings.dropbox_client_id,
        code_challenge,
        settings.dropbox_redirect_uri,
    )
    return AuthorizeUrlResponse(url=url)


@router.post("/token", response_model=AuthStatusResponse)
async def exchange_token(
    body: TokenExchangeRequest,
    settings: Annotated[Settings, Depends(get_settings)],
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> AuthStatusResponse:
    """Exchange the authorization code for tokens and store them."""
    try:
        await tokens.exchange_code(
            body.code,
            body.code_verifier,
            body.redirect_uri or settings.dropbox_redirect_uri,
        )
    except TokenExchangeError as exc:
        logger.warning("Dropbox token exchange failed: %s", exc)
        raise HTTPException(status_code=502, detail="Dropbox token exchange failed") from exc
    return AuthStatusResponse(is_authenticated=True)


@router.get("/status", response_model=AuthStatusResponse)
async def auth_status(
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> AuthStatusResponse:
    return AuthStatusResponse(is_authenticated=await tokens.is_authenticated())


@router.post("/logout", status_code=204)
async def logout(
    tokens: Annotated[TokenManager, Depends(get_token_manager)],
) -> None:
    tokens.logout()


@router.get("/sync-status", response_model=SyncStatusResponse)
async def sync_status(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> SyncStatusResponse:
    """Return the local sync ledger."""
    state = engine.ledger.load()
    return SyncStatusResponse(
        synced=state.synced,
        stored_hash=state.stored_hash or None,
        last_hash_check=state.last_hash_check,
        auto_sync_enabled=state.auto_sync_enabled,
    )


@router.post("/upload-database", response_model=TransferResponse)
async def upload_database(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    resolve_conflict: bool = False,
) -> TransferResponse:
    """Upload the local database. With ``resolve_conflict`` the local copy wins."""
    result = await engine.upload_database(resolve_conflict=resolve_conflict)
    return TransferResponse(success=result.success, status=result.status)


@router.post("/download-database", response_model=TransferResponse)
async def download_database(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    resolve_conflict: bool = False,
) -> TransferResponse:
    """Download the remote database. With ``resolve_conflict`` the remote copy wins."""
    result = await engine.download_database(resolve_conflict=resolve_conflict)
    return TransferResponse(success=result.success, status=result.status)


@router.get("/autosync", response_model=AutoSyncResponse)
async def get_autosync(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> AutoSyncResponse:
    return AutoSyncResponse(enabled=engine.get_auto_sync())


@router.post("/autosync", response_model=AutoSyncResponse)
async def set_autosync(
    body: AutoSyncRequest,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> AutoSyncResponse:
    engine.set_auto_sync(body.enabled)
    return AutoSyncResponse(enabled=body.enabled)


@router.post("/sync", status_code=204)
async def sync_now(
    body: SyncRequest,
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
) -> None:
    """Run a reconciliation pass. A conflict is answered with 409."""
    await engine.sync_if_due(force=body.force)
