import time
from dataclasses import dataclass
from datetime import timedelta

from chunkfs.cache import Cache, CacheStats, ChunkLeaseCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@dataclass
class FakeInode:
    ino: int


def make_cache(max_entries=100, clock=None):
    return Cache(timedelta(seconds=60), timedelta(seconds=120), max_entries, clock=clock or FakeClock())


def test_inode_store_and_get():
    clock = FakeClock()
    cache = make_cache(clock=clock)
    inode = FakeInode(7)
    cache.store_inode(inode)
    assert cache.get_inode(7) is inode
    assert cache.get_inode(8) is None
    stats = cache.get_stats()
    assert stats.metadata_hits == 1
    assert stats.metadata_misses == 1


def test_inode_expires_after_ttl():
    clock = FakeClock()
    cache = make_cache(clock=clock)
    cache.store_inode(FakeInode(3))
    clock.advance(60)
    assert cache.get_inode(3) is not None
    clock.advance(1)
    assert cache.get_inode(3) is None
    assert cache.get_stats().metadata_misses == 1


def test_store_none_is_ignored():
    cache = make_cache()
    cache.store_inode(None)
    assert len(cache) == 0


def test_metadata_eviction_removes_oldest():
    clock = FakeClock()
    cache = make_cache(max_entries=2, clock=clock)
    cache.store_inode(FakeInode(1))
    clock.advance(1)
    cache.store_inode(FakeInode(2))
    clock.advance(1)
    cache.store_inode(FakeInode(3))
    assert cache.get_inode(1) is None
    assert cache.get_inode(2) is not None
    assert cache.get_inode(3) is not None
    assert cache.get_stats().evictions == 1


def test_chunk_location_round_trip_and_copy():
    cache = make_cache()
    locations = ["a:1", "b:2"]
    cache.store_chunk_location(5, 0, "handle-0", locations, 4)
    locations.append("c:3")
    got = cache.get_chunk_location(5, 0)
    assert got == ["a:1", "b:2"]
    got.append("mutated")
    assert cache.get_chunk_location(5, 0) == ["a:1", "b:2"]
    assert cache.get_chunk_handle(5, 0) == ("handle-0", 4)
    assert cache.get_stats().chunk_hits == 2


def test_chunk_location_miss_and_expiry():
    clock = FakeClock()
    cache = make_cache(clock=clock)
    assert cache.get_chunk_location(1, 1) is None
    cache.store_chunk_location(1, 1, "h", ["a:1"], 1)
    clock.advance(121)
    assert cache.get_chunk_location(1, 1) is None
    assert cache.get_chunk_handle(1, 1) is None
    assert cache.get_stats().chunk_misses == 2


def test_empty_handle_or_locations_not_stored():
    cache = make_cache()
    cache.store_chunk_location(1, 0, "", ["a:1"], 1)
    cache.store_chunk_location(1, 1, "h", [], 1)
    assert len(cache) == 0
    assert cache.get_chunk_handle(1, 0) is None


def test_chunk_eviction_counts_metadata():
    clock = FakeClock()
    cache = make_cache(max_entries=2, clock=clock)
    cache.store_inode(FakeInode(9))
    cache.store_chunk_location(9, 0, "h0", ["a:1"], 1)
    clock.advance(1)
    cache.store_chunk_location(9, 1, "h1", ["a:1"], 1)
    assert cache.get_chunk_handle(9, 0) is None
    assert cache.get_chunk_handle(9, 1) == ("h1", 1)
    assert cache.get_inode(9) is not None
    assert cache.get_stats().evictions == 1


def test_invalidate_removes_inode_and_its_chunks():
    cache = make_cache()
    cache.store_inode(FakeInode(5))
    cache.store_inode(FakeInode(6))
    cache.store_chunk_location(5, 0, "a", ["x:1"], 1)
    cache.store_chunk_location(5, 1, "b", ["x:1"], 1)
    cache.store_chunk_location(6, 0, "c", ["x:1"], 1)
    cache.invalidate(5)
    assert cache.get_inode(5) is None
    assert cache.get_chunk_handle(5, 0) is None
    assert cache.get_chunk_handle(5, 1) is None
    assert cache.get_chunk_handle(6, 0) == ("c", 1)
    assert cache.get_inode(6) is not None


def test_get_stats_returns_snapshot():
    cache = make_cache()
    snapshot = cache.get_stats()
    cache.get_inode(1)
    assert snapshot == CacheStats()
    assert cache.get_stats().metadata_misses == 1


def test_clean_expired():
    clock = FakeClock()
    cache = make_cache(clock=clock)
    cache.store_inode(FakeInode(1))
    cache.store_chunk_location(1, 0, "h", ["a:1"], 1)
    clock.advance(90)
    cache.clean_expired()
    assert len(cache) == 1
    clock.advance(60)
    cache.clean_expired()
    assert len(cache) == 0


def test_janitor_cleans_in_background():
    clock = FakeClock()
    cache = make_cache(clock=clock)
    cache.store_inode(FakeInode(1))
    clock.advance(61)
    stop = cache.start_janitor(0.01)
    deadline = time.monotonic() + 5
    while len(cache) and time.monotonic() < deadline:
        time.sleep(0.01)
    stop.set()
    assert len(cache) == 0


def test_lease_cache_store_get_invalidate():
    clock = FakeClock()
    leases = ChunkLeaseCache(clock=clock)
    leases.store_lease("chunk", "primary:1", ["r:1", "r:2"], 3, timedelta(seconds=60))
    lease = leases.get_lease("chunk")
    assert lease.primary == "primary:1"
    assert lease.replicas == ["r:1", "r:2"]
    assert lease.version == 3
    leases.invalidate_lease("chunk")
    assert leases.get_lease("chunk") is None


def test_lease_cache_safety_margin():
    clock = FakeClock()
    leases = ChunkLeaseCache(clock=clock)
    leases.store_lease("chunk", "p", [], 1, 60)
    clock.advance(50)
    assert leases.get_lease("chunk") is not None
    clock.advance(1)
    assert leases.get_lease("chunk") is None
    assert leases.get_lease("missing") is None