"""
Durable key-value storage for client-side caching.

Values are JSON documents. With a path, the whole map lives in one JSON file
rewritten on every change; without one it is kept in memory. Unreadable data
is logged and treated as missing.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SESSION_KEY = "campusMarketSession"


class LocalStorage:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to read local storage %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.error("Ignoring local storage %s: not a JSON object", self.path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _flush(self) -> None:
        if not self.path:
            return
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self._data, f)
        except OSError as e:
            logger.error("Failed to write local storage %s: %s", self.path, e)

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove_item(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def get_json(self, key: str) -> Optional[Any]:
        raw = self.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.error("Failed to parse stored %s: %s", key, e)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set_item(key, json.dumps(value, default=str))
