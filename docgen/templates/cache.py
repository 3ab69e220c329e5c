"""In-memory template cache.

Templates are keyed by an immutable identifier, so entries never go stale
and are never rewritten. The only removal path is least-recently-used
eviction once the total byte size passes the configured ceiling.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from docgen import settings
from docgen.logging_conf import logger


@dataclass
class CacheEntry:
    template_id: str
    content: bytes
    size_bytes: int
    cached_at: float
    last_accessed_at: float


class TemplateCache:
    """Byte-bounded LRU cache. Safe to share between threads and tasks."""

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = settings.TEMPLATE_CACHE_MAX_BYTES if max_bytes is None else max_bytes
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self._current_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def lookup(self, template_id: str) -> Optional[bytes]:
        """Return cached bytes and refresh recency, or None on a miss."""
        with self._lock:
            entry = self._entries.get(template_id)
            if entry is None:
                self._misses += 1
                return None
            entry.last_accessed_at = time.time()
            self._entries.move_to_end(template_id)
            self._hits += 1
            return entry.content

    def put(self, template_id: str, content: bytes) -> bool:
        """Store a template. Returns False if it was not stored.

        An id already present keeps its original bytes. Content larger than
        the whole ceiling is never stored.
        """
        size = len(content)
        with self._lock:
            if template_id in self._entries:
                return False
            if size > self.max_bytes:
                logger.warning(f"Template {template_id} ({size} bytes) exceeds cache ceiling, not cached")
                return False

            now = time.time()
            self._entries[template_id] = CacheEntry(template_id, content, size, now, now)
            self._current_size += size
            evicted = self._evict_locked()

        if evicted:
            logger.info(f"Evicted {evicted} template(s), cache now {self._current_size} bytes")
        logger.debug(f"Cached template {template_id} ({size} bytes)")
        return True

    def _evict_locked(self) -> int:
        evicted = 0
        while self._current_size > self.max_bytes and self._entries:
            _, entry = self._entries.popitem(last=False)
            self._current_size -= entry.size_bytes
            self._evictions += 1
            evicted += 1
        return evicted

    def __contains__(self, template_id: str) -> bool:
        with self._lock:
            return template_id in self._entries

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "current_size": self._current_size,
                "entry_count": len(self._entries),
                "max_bytes": self.max_bytes,
            }

    def clear(self):
        """Drop all entries. Counters are kept."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._current_size = 0
        logger.info(f"Template cache cleared ({count} entries)")
