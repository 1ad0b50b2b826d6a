"""
In-process change feed.

Services publish rows after they are committed; subscribers register a
predicate so they only see the rows they care about (one conversation, one
seller's notifications). Callbacks run on the publishing thread, outside the
subscriber lock, so a callback may subscribe or unsubscribe without deadlocking.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from marketplace.utils.logger import get_logger, log_event

logger = get_logger("realtime")

Predicate = Callable[[Any], bool]
Callback = Callable[[Any], None]

MESSAGES = "messages"
SELLER_NOTIFICATIONS = "seller_notifications"


@dataclass
class Subscription:
    """Handle returned by ChangeFeed.subscribe; pass it back to unsubscribe."""
    table: str
    predicate: Predicate
    callback: Callback
    id: int = 0
    active: bool = field(default=True)


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._next_id = 1

    def subscribe(self, table: str, predicate: Optional[Predicate], callback: Callback) -> Subscription:
        """Register `callback` for rows of `table` accepted by `predicate` (None accepts everything)."""
        sub = Subscription(table=table, predicate=predicate or (lambda row: True), callback=callback)
        with self._lock:
            sub.id = self._next_id
            self._next_id += 1
            self._subscriptions.setdefault(table, []).append(sub)
        log_event(logger, "realtime", "subscribe", level=logging.DEBUG, table=table, subscription_id=sub.id)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.table, [])
            if subscription in subs:
                subs.remove(subscription)
            subscription.active = False
        log_event(logger, "realtime", "unsubscribe", level=logging.DEBUG, table=subscription.table, subscription_id=subscription.id)

    def publish(self, table: str, row: Any) -> int:
        """
        Deliver `row` to every matching subscriber. Returns the number of
        callbacks invoked. A failing predicate or callback is logged and skipped.
        """
        with self._lock:
            targets = list(self._subscriptions.get(table, []))

        delivered = 0
        for sub in targets:
            if not sub.active:
                continue
            try:
                if not sub.predicate(row):
                    continue
                sub.callback(row)
                delivered += 1
            except Exception as e:
                log_event(logger, "realtime", "publish", level=logging.ERROR,
                          table=table, subscription_id=sub.id, result="error", error=e)
        return delivered

    def subscriber_count(self, table: Optional[str] = None) -> int:
        with self._lock:
            if table is not None:
                return len(self._subscriptions.get(table, []))
            return sum(len(subs) for subs in self._subscriptions.values())


# Process-wide feed shared by the API and the websocket handlers
change_feed = ChangeFeed()


def get_change_feed() -> ChangeFeed:
    """FastAPI dependency; tests override it with a fresh feed."""
    return change_feed
