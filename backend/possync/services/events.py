# Overview: Best-effort change notifications fanned out to per-store rooms.

"""
Every accepted write publishes ``{resource}:{action}`` to the room of its
store. Events are hints for subscribers to refresh their caches, not a
source of data: a subscriber that raises is logged and skipped, and nothing
is retried or persisted.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable

from ..time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_DELETED = "deleted"
ACTION_STOCK_UPDATED = "stock-updated"

Subscriber = Callable[[str, dict], None]


def room_for(store_id: int) -> str:
    return f"store:{store_id}"


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[str, list[Subscriber]] = defaultdict(list)

    def subscribe(self, store_id: int, callback: Subscriber) -> Callable[[], None]:
        """Join a store's room. Returns a function that leaves it."""
        room = room_for(store_id)
        with self._lock:
            self._rooms[room].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._rooms.get(room, []):
                    self._rooms[room].remove(callback)

        return unsubscribe

    def publish(self, store_id: int, resource: str, action: str, record: dict) -> int:
        """Deliver to every subscriber in the room; returns how many succeeded."""
        event = f"{resource}:{action}"
        payload = {
            "id": record.get("serverId"),
            "action": action,
            "data": record,
            "timestamp": to_utc_z(utcnow()),
        }

        with self._lock:
            subscribers = list(self._rooms.get(room_for(store_id), []))

        delivered = 0
        for callback in subscribers:
            try:
                callback(event, payload)
                delivered += 1
            except Exception:
                logger.warning("Change subscriber failed for %s in %s", event, room_for(store_id), exc_info=True)
        return delivered

    def subscriber_count(self, store_id: int) -> int:
        with self._lock:
            return len(self._rooms.get(room_for(store_id), []))
