"""Client-side caches for inode metadata, chunk locations and leases."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

Duration = Union[timedelta, float, int]
Clock = Callable[[], float]

_LEASE_SAFETY_MARGIN = 10.0


def _seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass
class CacheStats:
    """Hit, miss and eviction counters."""

    metadata_hits: int = 0
    metadata_misses: int = 0
    chunk_hits: int = 0
    chunk_misses: int = 0
    evictions: int = 0


@dataclass
class ChunkLocationCacheEntry:
    """Cached handle, replica addresses and version of one chunk."""

    handle: str
    locations: List[str]
    version: int
    expiration: float


@dataclass
class _MetadataEntry:
    inode: Any
    expiration: float


class Cache:
    """TTL cache of inodes and chunk locations, bounded by ``max_entries``."""

    def __init__(
        self,
        metadata_ttl: Duration,
        chunk_loc_ttl: Duration,
        max_entries: int,
        clock: Clock = time.monotonic,
    ) -> None:
        self._metadata: Dict[int, _MetadataEntry] = {}
        self._chunks: Dict[Tuple[int, int], ChunkLocationCacheEntry] = {}
        self._metadata_ttl = _seconds(metadata_ttl)
        self._chunk_loc_ttl = _seconds(chunk_loc_ttl)
        self._max_entries = max_entries
        self._clock = clock
        self._stats = CacheStats()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._metadata) + len(self._chunks)

    def get_inode(self, ino: int) -> Optional[Any]:
        """Return the cached inode, or None if absent or expired."""
        with self._lock:
            entry = self._metadata.get(ino)
            if entry is None or self._clock() > entry.expiration:
                self._stats.metadata_misses += 1
                return None
            self._stats.metadata_hits += 1
            return entry.inode

    def store_inode(self, inode: Any) -> None:
        """Cache an inode under its ``ino``; None is ignored."""
        if inode is None:
            return
        with self._lock:
            if len(self._metadata) >= self._max_entries:
                self._evict_oldest(self._metadata)
            self._metadata[inode.ino] = _MetadataEntry(
                inode=inode, expiration=self._clock() + self._metadata_ttl
            )

    def get_chunk_location(self, ino: int, chunk_index: int) -> Optional[List[str]]:
        """Return a copy of the cached replica addresses, or None."""
        with self._lock:
            entry = self._chunks.get((ino, chunk_index))
            if entry is None or self._clock() > entry.expiration:
                self._stats.chunk_misses += 1
                return None
            self._stats.chunk_hits += 1
            return list(entry.locations)

    def store_chunk_location(
        self,
        ino: int,
        chunk_index: int,
        handle: str,
        locations: List[str],
        version: int,
    ) -> None:
        """Cache chunk locations; ignored if the handle or locations are empty."""
        if not handle or not locations:
            return
        with self._lock:
            if len(self._metadata) + len(self._chunks) >= self._max_entries:
                self._evict_oldest(self._chunks)
            self._chunks[(ino, chunk_index)] = ChunkLocationCacheEntry(
                handle=handle,
                locations=list(locations),
                version=version,
                expiration=self._clock() + self._chunk_loc_ttl,
            )

    def get_chunk_handle(self, ino: int, chunk_index: int) -> Optional[Tuple[str, int]]:
        """Return ``(handle, version)`` for a cached chunk, or None."""
        with self._lock:
            entry = self._chunks.get((ino, chunk_index))
            if entry is None or self._clock() > entry.expiration:
                return None
            return entry.handle, entry.version

    def invalidate(self, ino: int) -> None:
        """Drop the inode and every chunk location cached for it."""
        with self._lock:
            self._metadata.pop(ino, None)
            for key in [key for key in self._chunks if key[0] == ino]:
                del self._chunks[key]

    def get_stats(self) -> CacheStats:
        """Return a snapshot of the counters."""
        with self._lock:
            return dataclasses.replace(self._stats)

    def clean_expired(self) -> None:
        """Remove every expired entry."""
        with self._lock:
            now = self._clock()
            for table in (self._metadata, self._chunks):
                for key in [k for k, entry in table.items() if now > entry.expiration]:
                    del table[key]

    def start_janitor(self, interval: Duration) -> threading.Event:
        """Clean expired entries periodically; set the returned event to stop."""
        period = _seconds(interval)
        stop = threading.Event()

        def run() -> None:
            while not stop.wait(period):
                self.clean_expired()

        threading.Thread(target=run, name="cache-janitor", daemon=True).start()
        return stop

    def _evict_oldest(self, table: Dict[Any, Any]) -> None:
        if not table:
            return
        oldest = min(table, key=lambda key: table[key].expiration)
        del table[oldest]
        self._stats.evictions += 1


@dataclass
class CachedLease:
    """A chunk lease remembered by the client."""

    chunk_handle: str
    primary: str
    replicas: List[str] = field(default_factory=list)
    version: int = 0
    expire_time: float = 0.0


class ChunkLeaseCache:
    """Leases keyed by chunk handle, treated as expired ten seconds early."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._leases: Dict[str, CachedLease] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get_lease(self, chunk_handle: str) -> Optional[CachedLease]:
        """Return the lease if it stays valid for at least ten more seconds."""
        with self._lock:
            lease = self._leases.get(chunk_handle)
            if lease is None:
                return None
            if self._clock() + _LEASE_SAFETY_MARGIN > lease.expire_time:
                return None
            return lease

    def store_lease(
        self,
        chunk_handle: str,
        primary: str,
        replicas: List[str],
        version: int,
        duration: Duration,
    ) -> None:
        """Remember a lease that lasts ``duration`` from now."""
        with self._lock:
            self._leases[chunk_handle] = CachedLease(
                chunk_handle=chunk_handle,
                primary=primary,
                replicas=replicas,
                version=version,
                expire_time=self._clock() + _seconds(duration),
            )

    def invalidate_lease(self, chunk_handle: str) -> None:
        """Forget the lease for a chunk."""
        with self._lock:
            self._leases.pop(chunk_handle, None)