"""Consumption service: CRUD for consumed food items and retention cleanup."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from backend.models.consumption import ConsumedFoodItem
from backend.schemas.consumption import ConsumedItemResponse
from backend.services.datetime_service import format_iso, months_ago, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.schemas.consumption import ConsumedItemCreate

logger = logging.getLogger(__name__)


def _to_response(item: ConsumedFoodItem) -> ConsumedItemResponse:
    return ConsumedItemResponse(
        id=item.id,
        barcode=item.barcode,
        quantity=item.quantity,
        date=item.date,
        profile_id=item.profile_id,
        created_at=item.created_at,
    )


async def list_consumed_items(
    session: AsyncSession, date: str, profile_id: str | None = None
) -> list[ConsumedItemResponse]:
    """List consumptions logged on ``date``, optionally for one profile."""
    stmt = select(ConsumedFoodItem).where(ConsumedFoodItem.date == date)
    if profile_id is not None:
        stmt = stmt.where(ConsumedFoodItem.profile_id == profile_id)
    stmt = stmt.order_by(ConsumedFoodItem.created_at)
    result = await session.execute(stmt)
    return [_to_response(item) for item in result.scalars().all()]


async def add_consumed_item(session: AsyncSession, data: ConsumedItemCreate) -> ConsumedItemResponse:
    """Log a consumption and commit it."""
    item = ConsumedFoodItem(
        id=str(uuid.uuid4()),
        barcode=data.barcode,
        quantity=data.quantity,
        date=data.date,
        profile_id=data.profile_id,
        created_at=format_iso(now_utc()),
    )
    session.add(item)
    await session.commit()
    return _to_response(item)


async def delete_consumed_item(session: AsyncSession, item_id: str) -> bool:
    """Delete one consumption. Returns False when it does not exist."""
    item = await session.get(ConsumedFoodItem, item_id)
    if item is None:
        return False
    await session.delete(item)
    await session.commit()
    return True


async def delete_consumed_items_older_than(session: AsyncSession, cutoff_date: str) -> int:
    """Delete consumptions dated strictly before ``cutoff_date`` (YYYY-MM-DD)."""
    stmt = delete(ConsumedFoodItem).where(ConsumedFoodItem.date < cutoff_date)
    result = await session.execute(stmt)
    await session.commit()
    return result.rowcount or 0


async def purge_expired_consumed_items(
    session_factory: async_sessionmaker[AsyncSession], months: int
) -> int:
    """Delete consumptions older than the retention window of ``months`` months."""
    cutoff = months_ago(months)
    async with session_factory() as session:
        removed = await delete_consumed_items_older_than(session, cutoff)
    if removed:
        logger.info("Deleted %d consumed food items older than %s", removed, cutoff)
    else:
        logger.debug("No consumed food items older than %s", cutoff)
    return removed
