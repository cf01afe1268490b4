"""
Session stores: key-value caches with per-entry time-to-live.

The engine depends only on the get / put-with-TTL / remove contract below
and never on a backend's own concurrency behaviour. Values are JSON-safe
dicts; every get returns a fresh copy, so a caller can never mutate what
is stored without an explicit put.

Backends:
- InMemorySessionStore: single-process dict, evicts lapsed entries itself
- FileSessionStore: one JSON file per key; survives restarts but serves a
  single process, since per-session locking is in-process. Expiry is left
  to the engine's lazy checks and sweeps
"""

import copy
import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from intake.utils.helpers import utc_now

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class SessionStore:
    """
    Contract shared by all backends.

    evicts_expired tells the engine whether sweep() is available, i.e.
    whether the backend knows how to drop lapsed entries on its own.
    """

    evicts_expired = False

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put(self, key: str, value: Dict[str, Any], ttl: timedelta) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> bool:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError

    def sweep(self) -> int:
        """Drop entries whose TTL has lapsed; returns number removed"""
        raise NotImplementedError(f"{type(self).__name__} does not evict expired entries")


class InMemorySessionStore(SessionStore):
    """
    Thread-safe in-process store.

    Entries past their TTL are invisible to get() and are removed on that
    read or by sweep().
    """

    evicts_expired = True

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at)
        self._items: Dict[str, Tuple[Dict[str, Any], datetime]] = {}
        logger.info("InMemorySessionStore initialized")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() > expires_at:
                del self._items[key]
                logger.debug(f"Evicted lapsed entry on read: {key}")
                return None
            return copy.deepcopy(value)

    def put(self, key: str, value: Dict[str, Any], ttl: timedelta) -> None:
        with self._lock:
            self._items[key] = (copy.deepcopy(value), self._clock() + ttl)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return [k for k in self._items if k.startswith(prefix)]

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            lapsed = [k for k, (_, expires_at) in self._items.items() if now > expires_at]
            for key in lapsed:
                del self._items[key]
        if lapsed:
            logger.info(f"Swept {len(lapsed)} lapsed entries")
        return len(lapsed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class FileSessionStore(SessionStore):
    """
    One JSON file per key.

    Layout:
        outputs/sessions/
            diagnostic_session_<uuid>.json
            diagnostic_result_<uuid>.json

    Each file holds {'key', 'expires_at', 'value'}. Writes go to a temp
    file in the same directory and are moved into place, so a reader
    never sees a half-written entry.

    Only one process may use a directory at a time: the engine serializes
    each session with an in-process lock, which another process cannot see.
    """

    KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

    def __init__(self, base_dir: str = "outputs/sessions", clock: Clock = utc_now) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        logger.info(f"FileSessionStore initialized: {self.base_dir}")

    def _path_for(self, key: str) -> Path:
        if not self.KEY_PATTERN.match(key):
            raise ValueError(f"Invalid store key: {key!r}")
        return self.base_dir / f"{key}.json"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path_for(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                envelope = json.load(f)
        except FileNotFoundError:
            return None
        return envelope['value']

    def put(self, key: str, value: Dict[str, Any], ttl: timedelta) -> None:
        path = self._path_for(key)
        envelope = {
            'key': key,
            'expires_at': (self._clock() + ttl).isoformat(),
            'value': value,
        }
        fd, tmp_name = tempfile.mkstemp(dir=self.base_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(envelope, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Saved {path.name}")

    def remove(self, key: str) -> bool:
        path = self._path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(p.stem for p in self.base_dir.glob(f"{prefix}*.json"))
