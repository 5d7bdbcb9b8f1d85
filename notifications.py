import logging
from collections import deque
from typing import List

from schemas import Notification

logger = logging.getLogger(__name__)


class Notifier:
    """Short-lived toast messages for one client, newest last."""

    def __init__(self, maxlen: int = 50):
        self._items = deque(maxlen=maxlen)

    def _push(self, level: str, message: str) -> None:
        self._items.append(Notification(level=level, message=message))

    def success(self, message: str) -> None:
        self._push('success', message)

    def info(self, message: str) -> None:
        self._push('info', message)

    def error(self, message: str) -> None:
        logger.info("User-visible error: %s", message)
        self._push('error', message)

    def last_error(self) -> str:
        for item in reversed(self._items):
            if item.level == 'error':
                return item.message
        return ""

    def peek(self) -> List[Notification]:
        return list(self._items)

    def drain(self) -> List[Notification]:
        items = list(self._items)
        self._items.clear()
        return items
