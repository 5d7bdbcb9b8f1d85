"""
Realtime change notifications.

The backend publishes one ChangeEvent per inserted, updated or deleted row.
Subscribers register per table and get called synchronously from inside the
publishing coroutine, so anything heavier than bookkeeping must be pushed
onto the loop through a TaskSet.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine, Dict, List, Literal, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

EventType = Literal['INSERT', 'UPDATE', 'DELETE']


class ChangeEvent(BaseModel):
    table: str
    type: EventType
    record: Dict[str, Any]


Callback = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(self, hub: "RealtimeHub", table: str, callback: Callback):
        self._hub = hub
        self.table = table
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._hub._remove(self)
            self.active = False


class RealtimeHub:
    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, table: str, callback: Callback) -> Subscription:
        subscription = Subscription(self, table, callback)
        self._subscriptions[table].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.table, [])
        if subscription in subs:
            subs.remove(subscription)

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, []))

    def publish(self, table: str, event_type: EventType, record: Dict[str, Any]) -> None:
        event = ChangeEvent(table=table, type=event_type, record=record)
        for subscription in list(self._subscriptions.get(table, [])):
            try:
                subscription.callback(event)
            except Exception:
                logger.exception("Realtime subscriber for %s failed", table)


class TaskSet:
    """Background coroutines owned by one client context."""

    def __init__(self):
        self._tasks = set()

    def spawn(self, coro: Coroutine) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Nothing to run it on; happens when a change is published from sync code
            logger.debug("No running loop, dropping %s", getattr(coro, "__qualname__", coro))
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        # Tasks may spawn more tasks while we wait
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
