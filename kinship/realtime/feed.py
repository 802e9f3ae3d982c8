"""
Realtime change feed

In-process fan-out of row insert/update/delete notifications, filtered per
subscriber. Delivery is at-least-once from a subscriber's point of view:
receivers merge by row id.
"""

import enum
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from kinship.core.logging import get_logger

logger = get_logger(__name__)


class ChangeType(str, enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: ChangeType
    row: Mapping[str, Any] = field(default_factory=dict)


Handler = Callable[[ChangeEvent], Union[Awaitable[None], None]]


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, (set, frozenset, list, tuple)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class Subscription:
    """Handle for one registered listener.

    Closing is idempotent; a closed subscription never receives another
    callback, even if a fan-out that started before the close is still
    iterating.
    """

    def __init__(self, feed: "ChangeFeed", sub_id: int, table: str, filters: Mapping[str, Any], handler: Handler):
        self._feed = feed
        self.id = sub_id
        self.table = table
        self.filters = dict(filters)
        self._handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def matches(self, event: ChangeEvent) -> bool:
        return self._active and event.table == self.table and _matches(event.row, self.filters)

    async def deliver(self, event: ChangeEvent) -> None:
        result = self._handler(event)
        if inspect.isawaitable(result):
            await result

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"<Subscription {self.id} {self.table} {self.filters} {state}>"


class ChangeFeed:
    def __init__(self):
        # table -> {subscription id -> Subscription}
        self._subscriptions: Dict[str, Dict[int, Subscription]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, table: str, filters: Optional[Mapping[str, Any]], on_event: Handler) -> Subscription:
        subscription = Subscription(self, next(self._ids), table, filters or {}, on_event)
        self._subscriptions.setdefault(table, {})[subscription.id] = subscription
        logger.debug("realtime.subscribed", table=table, subscription_id=subscription.id, filters=subscription.filters)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        table_subs = self._subscriptions.get(subscription.table)
        if table_subs is None:
            return
        table_subs.pop(subscription.id, None)
        if not table_subs:
            del self._subscriptions[subscription.table]
        logger.debug("realtime.released", table=subscription.table, subscription_id=subscription.id)

    async def publish(self, table: str, change_type: ChangeType, row: Mapping[str, Any]) -> int:
        """Deliver an event to every matching subscriber; returns the delivery count."""
        event = ChangeEvent(table=table, type=change_type, row=dict(row))
        delivered = 0
        for subscription in list(self._subscriptions.get(table, {}).values()):
            if not subscription.matches(event):
                continue
            try:
                await subscription.deliver(event)
                delivered += 1
            except Exception as exc:
                logger.exception(
                    "realtime.callback.failed",
                    table=table,
                    change_type=change_type.value,
                    subscription_id=subscription.id,
                    error=str(exc),
                )
        logger.debug("realtime.broadcast", table=table, change_type=change_type.value, targets=delivered)
        return delivered

    def subscription_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, {}))
        return sum(len(subs) for subs in self._subscriptions.values())

    def get_stats(self) -> Dict[str, int]:
        """Return a snapshot of active subscriptions per table"""
        return {table: len(subs) for table, subs in self._subscriptions.items()}


feed = ChangeFeed()
