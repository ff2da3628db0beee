"""
TTL cache for sales fetched from Gestão Click.

Keys are namespaced by ledger user ("<user_id>:<start>:<end>:<filters>") so a
period import called with refresh=True can drop everything cached for that
user with invalidate_user() before fetching. Otherwise entries only age out
after the TTL. The application owns one instance (see get_sync_cache);
tests build their own.
"""
import json
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)


class SyncCache:
    def __init__(self, ttl_seconds: float = 300.0, clock=time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    @staticmethod
    def key(user_id: str, *parts: Any) -> str:
        rendered = [
            json.dumps(p, sort_keys=True, default=str) if isinstance(p, (dict, list)) else str(p)
            for p in parts
        ]
        return ":".join([str(user_id), *rendered])

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        if self._ttl <= 0:
            return
        self._entries[key] = (self._clock() + self._ttl, value)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def invalidate_user(self, user_id: str) -> int:
        prefix = f"{user_id}:"
        stale = [k for k in self._entries if k.startswith(prefix)]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.debug("sync cache: dropped %d entries for user %s", len(stale), user_id)
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


_cache: SyncCache | None = None


def get_sync_cache() -> SyncCache:
    global _cache
    if _cache is None:
        from app.config import settings
        _cache = SyncCache(ttl_seconds=settings.sync_cache_ttl_seconds)
    return _cache
