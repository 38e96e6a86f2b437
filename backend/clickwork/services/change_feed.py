"""In-process change feed keyed by table name.

Services publish after their transaction commits; subscribers (websocket
bridges, cache invalidators, tests) receive ``ChangeEvent`` objects. A failing
subscriber is logged and skipped, never surfaced to the publisher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from clickwork.core.config import get_settings

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event: str
    record: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._lock = Lock()

    def subscribe(self, table: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(table, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(table, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(table, None)

        return _unsubscribe

    def publish(self, table: str, event: str, record: dict[str, Any]) -> int:
        if not get_settings().enable_change_feed:
            return 0
        with self._lock:
            callbacks = list(self._subscribers.get(table, []))
        change = ChangeEvent(table=table, event=event, record=record)
        delivered = 0
        for callback in callbacks:
            try:
                callback(change)
                delivered += 1
            except Exception:
                logger.exception("Change feed subscriber failed table=%s event=%s", table, event)
        return delivered

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()


change_feed = ChangeFeed()
