"""
Client-side persistence and change notification.

``LocalStorage`` is a small key/value store kept in one JSON file, the way a
mobile app keeps things in its async storage. Values are strings; callers
serialise structured data themselves so every key stays independent.
"""

import json
import logging
import os
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class LocalStorage:
    def __init__(self, path: Optional[str] = None):
        # path=None keeps everything in memory (handy for tests and previews)
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, str] = {}
        self._load()

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Could not read local storage %s: %s", self.path, e)
            return
        if isinstance(data, dict):
            self._data = {str(k): str(v) for k, v in data.items()}

    def _save(self):
        if not self.path:
            return
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f)
        os.replace(tmp, self.path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value
            self._save()

    def remove_item(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                self._save()

    def multi_set(self, pairs: Iterable[Tuple[str, str]]) -> None:
        """Write several keys with a single flush."""
        with self._lock:
            for key, value in pairs:
                self._data[key] = value
            self._save()

    def get_json(self, key: str, default=None):
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable value for '%s'", key)
            return default

    def set_json(self, key: str, value) -> None:
        self.set_item(key, json.dumps(value))


class Observable:
    """Minimal subscribe/notify state holder."""

    def __init__(self):
        self._listeners: List[Callable] = []

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def notify(self) -> None:
        for callback in list(self._listeners):
            callback(self)
