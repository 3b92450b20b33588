from __future__ import annotations

from threading import Thread

from realty_ingest.engine.catalog import SegmentKey
from realty_ingest.engine.dedup import DeduplicationCache

KEY = SegmentKey(1, 1)
OTHER = SegmentKey(1, 2)


def test_partition_splits_novel_and_seen() -> None:
    cache = DeduplicationCache(clock=lambda: 100.0)
    cache.record(KEY, "a")
    novel, seen = cache.partition(KEY, ["a", "b", "c", "b"])
    assert novel == ["b", "c"]
    assert seen == ["a", "b"]
    assert cache.seen(KEY, "a") and not cache.seen(KEY, "b")


def test_buckets_are_isolated_per_segment() -> None:
    cache = DeduplicationCache()
    cache.record(KEY, "a")
    assert cache.partition(OTHER, ["a"]) == (["a"], [])


def test_rotate_discards_everything() -> None:
    cache = DeduplicationCache()
    cache.record(KEY, "a")
    cache.record(OTHER, "b")
    assert cache.rotate() == 2
    assert cache.size() == 0
    assert cache.rotations == 1
    assert cache.partition(KEY, ["a"]) == (["a"], [])


def test_warm_seeds_bucket() -> None:
    cache = DeduplicationCache()
    assert cache.warm(KEY, ["1", "2", 3]) == 3
    assert cache.seen(KEY, "3")
    assert cache.warm(KEY, ["1"]) == 0


def test_concurrent_record_and_rotate() -> None:
    cache = DeduplicationCache()

    def writer(key: SegmentKey) -> None:
        for i in range(500):
            cache.record(key, str(i))

    threads = [Thread(target=writer, args=(key,)) for key in (KEY, OTHER)]
    threads.append(Thread(target=cache.rotate))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert cache.size() <= 1000
