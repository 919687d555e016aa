"""Consumed food item endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_scheduler, get_session, sync_before_read
from backend.messaging.broadcaster import CONSUMED_FOOD_ITEMS_UPDATED
from backend.schemas.consumption import DATE_PATTERN, ConsumedItemCreate, ConsumedItemResponse
from backend.services.consumption_service import (
    add_consumed_item,
    delete_consumed_item,
    list_consumed_items,
)
from backend.services.scheduler_service import SyncScheduler

router = APIRouter(prefix="/api/consumed", tags=["consumed"])


@router.get(
    "",
    response_model=list[ConsumedItemResponse],
    dependencies=[Depends(sync_before_read)],
)
async def list_items(
    session: Annotated[AsyncSession, Depends(get_session)],
    date: Annotated[str, Query(pattern=DATE_PATTERN)],
    profile_id: str | None = None,
) -> list[ConsumedItemResponse]:
    return await list_consumed_items(session, date, profile_id)


@router.post("", response_model=ConsumedItemResponse, status_code=201)
async def create_item(
    body: ConsumedItemCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> ConsumedItemResponse:
    item = await add_consumed_item(session, body)
    scheduler.record_local_mutation(CONSUMED_FOOD_ITEMS_UPDATED)
    return item


@router.delete("/{item_id}", status_code=204)
async def delete_item(
    item_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[SyncScheduler, Depends(get_scheduler)],
) -> None:
    if not await delete_consumed_item(session, item_id):
        raise HTTPException(status_code=404, detail="Consumed item not found")
    scheduler.record_local_mutation(CONSUMED_FOOD_ITEMS_UPDATED)
