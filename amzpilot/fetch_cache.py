"""
Persistent TTL-tiered key/value cache for fetched content and AI results.

The TTL is never stored per entry. It is derived at read time from the key's
class prefix:

    wp_*       page / post content      30 minutes
    ai_*       AI product results        7 days
    sitemap_*  sitemap XML               1 hour  (also the default)

Entries expire when ``now - written_at > ttl`` and are deleted lazily on read.
The store is bounded: once ``max_entries`` is exceeded the oldest entries are
evicted first. Writes are coalesced: the file is rewritten at most once per
``persist_interval`` seconds, and ``flush()`` writes pending changes at once.
If persisting to disk fails outright, the store is cleared down to the
newest entry and the write retried once, so a broken cache file never takes
the pipeline down.

Usage:
    from amzpilot.fetch_cache import FetchCache, CacheClass

    cache = FetchCache(path=Path("~/.amzpilot/cache.json"))
    key = cache.make_key(CacheClass.CONTENT, "full", post_id, url)
    cache.set(key, {"html": "..."})
    cache.get(key)
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("fetch_cache")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONTENT_TTL = 30 * 60
AI_TTL = 7 * 24 * 60 * 60
SITEMAP_TTL = 60 * 60

DEFAULT_MAX_ENTRIES = 500
DEFAULT_PERSIST_INTERVAL = 5.0


class CacheClass(str, Enum):
    """TTL tier, selected by key prefix."""

    CONTENT = "wp_"
    AI = "ai_"
    SITEMAP = "sitemap_"

    @property
    def ttl(self) -> float:
        return _CLASS_TTLS[self]

    @classmethod
    def for_key(cls, key: str) -> CacheClass:
        for klass in cls:
            if key.startswith(klass.value):
                return klass
        return cls.SITEMAP


_CLASS_TTLS = {
    CacheClass.CONTENT: CONTENT_TTL,
    CacheClass.AI: AI_TTL,
    CacheClass.SITEMAP: SITEMAP_TTL,
}


def generate_hash(text: str) -> str:
    """Short stable digest used to build cache keys from URLs and titles."""
    return hashlib.sha1((text or "").encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# FetchCache
# ---------------------------------------------------------------------------


class FetchCache:
    """
    Key/value store with class-derived TTLs, optionally persisted as JSON.

    Parameters
    ----------
    path : Path, optional
        JSON file backing the store. ``None`` keeps everything in memory.
    max_entries : int
        Upper bound on stored entries; oldest entries are evicted first.
    persist_interval : float
        Minimum seconds between two writes of the backing file. 0 writes
        on every change.
    clock : callable
        Returns the current time in seconds. Injected by tests.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        persist_interval: float = DEFAULT_PERSIST_INTERVAL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path).expanduser() if path else None
        self.max_entries = max(1, max_entries)
        self.persist_interval = max(0.0, persist_interval)
        self._clock = clock
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._dirty = False
        self._last_persist = float("-inf")
        self._load()

    # -- Keys ---------------------------------------------------------------

    @staticmethod
    def make_key(klass: CacheClass, *parts: Any) -> str:
        """Build ``<prefix><part>_<part>...``; long parts are hashed."""
        rendered = []
        for part in parts:
            text = str(part)
            if len(text) > 32 or "/" in text:
                text = generate_hash(text)
            rendered.append(text)
        return klass.value + "_".join(rendered)

    # -- Public API ---------------------------------------------------------

    def get(self, key: str) -> Optional[Any]:
        """Return the payload for *key*, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        ttl = CacheClass.for_key(key).ttl
        age = self._clock() - entry.get("timestamp", 0)
        if age > ttl:
            logger.debug("Cache expired: %s (age %.0fs > ttl %.0fs)", key, age, ttl)
            self._entries.pop(key, None)
            self._dirty = True
            return None
        return entry.get("data")

    def set(self, key: str, payload: Any) -> None:
        """Store *payload* under *key*, resetting its age to zero."""
        self._entries.pop(key, None)
        self._entries[key] = {"timestamp": self._clock(), "data": payload}
        self._evict_overflow()
        self._dirty = True
        self._flush_if_due()

    def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._dirty = True
            self._flush_if_due()

    def clear(self) -> None:
        """Drop every entry."""
        count = len(self._entries)
        self._entries = {}
        self._dirty = True
        self.flush()
        logger.info("Cache cleared (%d entries)", count)

    def flush(self) -> None:
        """Write pending changes to disk now."""
        if not self._dirty:
            return
        self._last_persist = self._clock()
        self._dirty = False
        if self._persist():
            return

        logger.warning("Cache write failed, clearing %d entries and retrying once", len(self._entries))
        # Insertion order tracks write order, so the last key is the newest.
        newest = next(reversed(self._entries), None)
        self._entries = {newest: self._entries[newest]} if newest is not None else {}
        if not self._persist():
            logger.warning("Cache storage unavailable at %s; continuing in memory", self.path)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def stats(self) -> Dict[str, int]:
        """Entry counts per TTL class, including not-yet-evicted expired ones."""
        counts = {klass.name.lower(): 0 for klass in CacheClass}
        for key in self._entries:
            counts[CacheClass.for_key(key).name.lower()] += 1
        counts["total"] = len(self._entries)
        return counts

    # -- Internals ----------------------------------------------------------

    def _flush_if_due(self) -> None:
        if self._clock() - self._last_persist >= self.persist_interval:
            self.flush()

    def _evict_overflow(self) -> None:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        oldest = sorted(self._entries, key=lambda k: self._entries[k].get("timestamp", 0))
        for key in oldest[:overflow]:
            del self._entries[key]
        logger.debug("Evicted %d oldest cache entries", overflow)

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", self.path, exc)
            return
        if isinstance(data, dict):
            self._entries = {
                k: v for k, v in data.items()
                if isinstance(v, dict) and "timestamp" in v
            }

    def _persist(self) -> bool:
        """Atomically write the store to disk. Returns False on storage failure."""
        if self.path is None:
            return True
        tmp = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(self._entries, fh, default=str)
            tmp.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            logger.debug("Cache persist failed: %s", exc)
            return False
        return True
