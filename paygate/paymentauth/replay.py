# paygate/paymentauth/replay.py
"""
Replay protection for settled payments.

Each settlement transaction hash may admit a protected request at most
once per TTL window. Entries live in an in-memory map guarded by a single
lock; check-and-insert happens in one critical section so that concurrent
presentations of the same hash produce exactly one winner.

Configuration:
- PAYMENT_REPLAY_TTL_SECONDS: How long a used hash stays blocked (default: 300)

This cache is per-process. Several gate instances behind a load balancer
need a shared store offering the same mark_used contract.
"""
import heapq
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from paygate.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 10000
CLEANUP_INTERVAL_SECONDS = 60


@dataclass
class ReplayCacheEntry:
    """A settlement identifier and the monotonic instant it stops blocking."""
    key: str
    expires_at: float


class ReplayCache:
    """
    In-memory at-most-once guard over settlement identifiers.

    Thread-safe for concurrent access. Expired entries are evicted lazily
    on access and by a periodic sweep so memory stays bounded.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES
    ):
        """
        Initialize the cache.

        Args:
            ttl_seconds: Lifetime of a used entry. If None, uses config.
            max_entries: Upper bound on tracked entries.
        """
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._entries: Dict[str, ReplayCacheEntry] = {}
        self._lock = threading.Lock()
        self._last_cleanup = time.monotonic()

    @property
    def ttl_seconds(self) -> float:
        """Get the entry TTL (lazy load from settings if not set)."""
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return settings.PAYMENT_REPLAY_TTL_SECONDS

    def mark_used(self, key: str, ttl_seconds: Optional[float] = None) -> bool:
        """
        Record a settlement identifier as used.

        Args:
            key: The settlement identifier (transaction hash)
            ttl_seconds: Lifetime of this entry. If None, uses the cache TTL.

        Returns:
            True on first use within the window, False for a replay.
            A replay leaves the existing entry's expiry untouched.
        """
        now = time.monotonic()

        with self._lock:
            self._maybe_cleanup(now)

            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                logger.warning(f"Replay detected for settlement {key}")
                return False

            if entry is None and len(self._entries) >= self._max_entries:
                self._evict(now)

            lifetime = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
            self._entries[key] = ReplayCacheEntry(key=key, expires_at=now + lifetime)
            return True

    def is_used(self, key: str) -> bool:
        """Check whether a key is currently blocked, without mutating it."""
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.expires_at > now

    def size(self) -> int:
        """Number of tracked entries, including expired ones not yet swept."""
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Forget all entries."""
        with self._lock:
            self._entries.clear()
        logger.info("Cleared replay cache")

    def _maybe_cleanup(self, now: float) -> None:
        """
        Drop expired entries at most once per cleanup interval.

        Must be called with the lock held.
        """
        interval = min(CLEANUP_INTERVAL_SECONDS, self.ttl_seconds)
        if now - self._last_cleanup < interval:
            return

        self._last_cleanup = now
        removed = self._sweep_expired(now)
        if removed:
            logger.debug(f"Cleaned up {removed} expired replay cache entries")

    def _sweep_expired(self, now: float) -> int:
        stale = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def _evict(self, now: float) -> None:
        """
        Make room for one entry when the cache is full.

        Expired entries go first; otherwise the entries closest to expiry
        are dropped. Must be called with the lock held.
        """
        if self._sweep_expired(now):
            return

        overflow = len(self._entries) - self._max_entries + 1
        for entry in heapq.nsmallest(overflow, self._entries.values(), key=lambda e: e.expires_at):
            del self._entries[entry.key]
        logger.warning(f"Replay cache full, evicted {overflow} live entries")


# Global replay cache instance
_replay_cache: Optional[ReplayCache] = None
_replay_cache_lock = threading.Lock()


def get_replay_cache() -> ReplayCache:
    """
    Get the process-wide replay cache.

    Returns:
        The singleton ReplayCache instance
    """
    global _replay_cache

    if _replay_cache is None:
        with _replay_cache_lock:
            if _replay_cache is None:
                _replay_cache = ReplayCache()

    return _replay_cache


def reset_replay_cache() -> None:
    """Reset the global replay cache (useful for testing)."""
    global _replay_cache
    with _replay_cache_lock:
        if _replay_cache is not None:
            _replay_cache.clear()
        _replay_cache = None
