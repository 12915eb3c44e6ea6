"""
Reference Record Cache

Read-through TTL cache for slowly changing records (Institution, Program,
Initiative). Process-local; entries expire after ``ttl_seconds`` and the
least recently used are evicted beyond ``max_entries``.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, List, Optional, Tuple

from clients.record_store import RecordFilter, RecordStore, StoreRecord

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_MAX_ENTRIES = 5000


class ReferenceCache:
    """
    Caches record-store reads by id and by filter.

    Only successful reads are cached; errors propagate to the caller and
    absences (None / empty) are not remembered.
    """

    def __init__(
        self,
        store: RecordStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _lookup(self, key: Hashable) -> Tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        stored_at, value = entry
        if self.clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return False, None
        self._entries.move_to_end(key)
        return True, value

    def _store(self, key: Hashable, value: Any):
        now = self.clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]

        self._entries[key] = (now, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def get_by_id(self, table: str, record_id: str) -> Optional[StoreRecord]:
        key = ("id", table, record_id)
        found, value = self._lookup(key)
        if found:
            self.hits += 1
            return value

        self.misses += 1
        record = await self.store.get_by_id(table, record_id)
        if record is not None:
            self._store(key, record)
        return record

    async def find_many(self, table: str, record_filter: RecordFilter) -> List[StoreRecord]:
        key = ("filter", table, record_filter)
        found, value = self._lookup(key)
        if found:
            self.hits += 1
            return value

        self.misses += 1
        records = await self.store.find_many(table, record_filter)
        if records:
            self._store(key, records)
        return records

    def invalidate(self, table: Optional[str] = None):
        """Drop every entry, or only those of ``table``."""
        if table is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k[1] == table]:
            del self._entries[key]
        logger.debug(f"Reference cache invalidated for {table}")

    def __len__(self) -> int:
        return len(self._entries)
