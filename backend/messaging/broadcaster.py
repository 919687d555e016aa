"""Notification bus for telling the UI that data or sync state changed.

Two transports exist for the same messages: a Server-Sent Events fan-out for
the browser UI, and JSON lines on stdout for the Electron shell. One of them
is chosen at startup; the sync engine only sees ``Broadcaster.publish``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import IO, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

REMOTE_FILE_UPDATED = "REMOTE_FILE_UPDATED"
SHOW_SYNC_CONFLICT = "SHOW_SYNC_CONFLICT"
FOOD_ITEMS_UPDATED = "food_items_updated"
CONSUMED_FOOD_ITEMS_UPDATED = "consumed_food_items_updated"
PROFILES_UPDATED = "profiles_updated"
USER_SETTINGS_UPDATED = "user_settings_updated"

# Invalidations sent after the whole database file was replaced
ENTITY_INVALIDATIONS = (
    CONSUMED_FOOD_ITEMS_UPDATED,
    FOOD_ITEMS_UPDATED,
    PROFILES_UPDATED,
    USER_SETTINGS_UPDATED,
)


@runtime_checkable
class Broadcaster(Protocol):
    """Publishes event names to whatever UI is attached."""

    def publish(self, event: str) -> None:
        """Deliver ``event`` without blocking."""
        ...


class SSEBroadcaster:
    """Fan out events to subscribed SSE streams.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    ``publish`` never awaits; a subscriber whose queue is full is dropped.
    """

    def __init__(self, queue_size: int = 32) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[str]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: str) -> None:
        if not self._subscribers:
            logger.debug("No SSE subscribers for event %s", event)
            return
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("SSE subscriber is not keeping up, dropping it")
                self._subscribers.discard(queue)
        logger.debug("Published %s to %d subscriber(s)", event, len(self._subscribers))


class StdioBroadcaster:
    """Write events as JSON lines for a parent process reading our stdout."""

    def __init__(self, stream: IO[str] | None = None) -> None:
        self._stream = stream

    def publish(self, event: str) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        try:
            stream.write(json.dumps({"type": "sse-message", "data": event}) + "\n")
            stream.flush()
        except (OSError, ValueError) as exc:
            logger.error("Failed to write event %s to stdout: %s", event, exc)


def create_broadcaster(use_stdio: bool) -> SSEBroadcaster | StdioBroadcaster:
    """Select the notification transport once at process start."""
    if use_stdio:
        logger.info("Using stdio broadcaster for notifications")
        return StdioBroadcaster()
    logger.info("Using SSE broadcaster for notifications")
    return SSEBroadcaster()
