"""
Metadata Synchronizer

Writes identity metadata back to the identity provider, and keeps a
process-local degraded-mode cache so requests in the same process see the
caller's intent while the provider is unreachable.

DegradedMetadataCache is NOT durable: entries are lost on restart and are
not shared across processes or hosts. It is a best-effort read-your-writes
mechanism, never a source of truth.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, Set, Tuple

from clients.identity_provider import IdentityProvider
from utils.retry import RetryExhausted, RetryPolicy, is_transient_error

from .errors import MetadataPersistFailed, TokenAcquisitionFailed
from .models import SyncResult

logger = logging.getLogger(__name__)

DEFAULT_BOOLEAN_KEYS = ("onboardingCompleted",)

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}


def coerce_bool(value: Any) -> bool:
    """
    Strict boolean coercion.

    Only real truthy markers become True; the string "false" is False.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, (int, float)):
        return value != 0
    return False


# ==================== DEGRADED CACHE ====================

@dataclass
class CacheEntry:
    metadata: Dict[str, Any]
    pending: Set[str] = field(default_factory=set)
    stored_at: float = 0.0


class DegradedMetadataCache:
    """
    Bounded in-memory map of subject id -> merged metadata.

    Each entry remembers which keys were written locally but not yet
    confirmed by the provider. Bounded by entry count (least recently used
    evicted first) and entry age.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        ttl_seconds: float = 6 * 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def get(self, subject_id: str) -> Optional[CacheEntry]:
        entry = self._entries.get(subject_id)
        if entry is None:
            return None
        if self.clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[subject_id]
            logger.info(f"Degraded metadata for {subject_id} expired")
            return None
        self._entries.move_to_end(subject_id)
        return CacheEntry(dict(entry.metadata), set(entry.pending), entry.stored_at)

    def _put(self, subject_id: str, entry: CacheEntry):
        self._entries[subject_id] = entry
        self._entries.move_to_end(subject_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted degraded metadata for {evicted}")

    def record_write(self, subject_id: str, merged: Dict[str, Any], written_keys: Iterable[str]):
        """Store ``merged`` and mark ``written_keys`` as unconfirmed."""
        existing = self.get(subject_id)
        pending = set(existing.pending) if existing else set()
        pending.update(written_keys)
        self._put(subject_id, CacheEntry(dict(merged), pending, self.clock()))

    def confirm(self, subject_id: str, persisted: Dict[str, Any]):
        """Provider accepted ``persisted``; nothing is pending any more."""
        self._put(subject_id, CacheEntry(dict(persisted), set(), self.clock()))

    def overlay(self, subject_id: str, provider_metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Provider value with every unconfirmed local write laid on top."""
        merged = dict(provider_metadata or {})
        entry = self.get(subject_id)
        if entry:
            for key in entry.pending:
                if key in entry.metadata:
                    merged[key] = entry.metadata[key]
        return merged

    def fill(self, subject_id: str, fallback_metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Cached value, with keys only ``fallback_metadata`` knows filled in."""
        merged = dict(fallback_metadata or {})
        entry = self.get(subject_id)
        if entry:
            merged.update(entry.metadata)
        return merged

    def has_pending(self, subject_id: str) -> bool:
        entry = self.get(subject_id)
        return bool(entry and entry.pending)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ==================== SYNCHRONIZER ====================

class MetadataSynchronizer:
    """
    Reads and writes provider metadata with degraded-mode fallback.

    Usage:
        sync = MetadataSynchronizer(provider, DegradedMetadataCache())
        result = await sync.sync_metadata("auth0|123", {"onboardingCompleted": True})
    """

    def __init__(
        self,
        provider: IdentityProvider,
        cache: DegradedMetadataCache,
        retry_policy: Optional[RetryPolicy] = None,
        boolean_keys: Sequence[str] = DEFAULT_BOOLEAN_KEYS,
    ):
        self.provider = provider
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay_ms=500)
        self.boolean_keys = set(boolean_keys)

    def coerce_patch(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: coerce_bool(value) if key in self.boolean_keys else value
            for key, value in (patch or {}).items()
        }

    async def read_metadata(
        self,
        subject_id: str,
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], str]:
        """
        Current metadata and where it came from.

        Returns:
            (metadata, source) with source one of "provider", "cache", "session"
        """
        try:
            record = await self.provider.get_user_by_id(subject_id)
        except Exception as e:
            logger.warning(f"Provider metadata read failed for {subject_id}, using degraded cache: {e}")
            if self.cache.get(subject_id):
                return self.cache.fill(subject_id, session_metadata), "cache"
            return dict(session_metadata or {}), "session"

        if record is None:
            base = dict(session_metadata or {})
            source = "session"
        else:
            base = record.user_metadata
            source = "provider"

        if self.cache.has_pending(subject_id):
            return self.cache.overlay(subject_id, base), "cache"
        return dict(base), source

    async def current_metadata(
        self,
        subject_id: str,
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        metadata, _ = await self.read_metadata(subject_id, session_metadata)
        return metadata

    def cached_metadata(
        self,
        subject_id: str,
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Best local view without a provider call: session metadata under the degraded cache."""
        return self.cache.fill(subject_id, session_metadata)

    async def sync_metadata(
        self,
        subject_id: str,
        patch: Dict[str, Any],
        session_metadata: Optional[Dict[str, Any]] = None,
    ) -> SyncResult:
        """
        Merge ``patch`` into the subject's metadata and persist it.

        The merged value always lands in the degraded cache. A persist
        failure is reported as persisted=False; TokenAcquisitionFailed is
        re-raised after the cache write.
        """
        patch = self.coerce_patch(patch)
        current, _ = await self.read_metadata(subject_id, session_metadata)
        merged = {**current, **patch}

        self.cache.record_write(subject_id, merged, patch.keys())

        attempts = 0

        async def persist():
            nonlocal attempts
            attempts += 1
            return await self.provider.patch_user_metadata(subject_id, merged)

        try:
            await self.retry_policy.run(
                persist,
                description=f"metadata persist for {subject_id}",
                is_retryable=is_transient_error,
            )
        except TokenAcquisitionFailed:
            logger.error(f"Cannot persist metadata for {subject_id}: no management token")
            raise
        except RetryExhausted as e:
            failure = MetadataPersistFailed(subject_id, e.attempts, e.last_error)
            logger.warning(f"{failure.message}; serving from degraded cache")
            return SyncResult(subject_id=subject_id, metadata=merged, persisted=False, attempts=e.attempts, error=str(e.last_error))
        except Exception as e:
            failure = MetadataPersistFailed(subject_id, attempts, e)
            logger.warning(f"{failure.message}: {e}; serving from degraded cache")
            return SyncResult(subject_id=subject_id, metadata=merged, persisted=False, attempts=attempts, error=str(e))

        self.cache.confirm(subject_id, merged)
        logger.info(f"Persisted metadata for {subject_id} ({', '.join(sorted(patch))})")
        return SyncResult(subject_id=subject_id, metadata=merged, persisted=True, attempts=attempts)
