"""Server-Sent Events stream of sync notifications."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from backend.api.deps import get_broadcaster
from backend.messaging.broadcaster import Broadcaster, SSEBroadcaster

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["events"])

KEEPALIVE_SECONDS = 15.0


def format_event(event: str) -> str:
    """Encode one notification as an SSE ``data`` frame."""
    return f"data: {json.dumps({'type': event}, separators=(',', ':'))}\n\n"


async def event_stream(
    request: Request, broadcaster: SSEBroadcaster, keepalive: float = KEEPALIVE_SECONDS
) -> AsyncIterator[str]:
    queue = broadcaster.subscribe()
    logger.debug("SSE client connected (%d total)", broadcaster.subscriber_count)
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive)
            except TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_event(event)
    finally:
        broadcaster.unsubscribe(queue)
        logger.debug("SSE client disconnected")


@router.get("/events")
async def events(
    request: Request,
    broadcaster: Annotated[Broadcaster, Depends(get_broadcaster)],
) -> StreamingResponse:
    if not isinstance(broadcaster, SSEBroadcaster):
        raise HTTPException(status_code=404, detail="Event stream not available")
    return StreamingResponse(
        event_stream(request, broadcaster),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-store"},
    )
