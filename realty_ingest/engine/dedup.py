"""Rotating in-memory deduplication cache keyed by segment."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Hashable, Iterable


@dataclass
class _Bucket:
    lock: Lock = field(default_factory=Lock)
    entries: dict[str, float] = field(default_factory=dict)


class DeduplicationCache:
    """Remember listing ids per segment until the next rotation.

    Each segment owns a bucket guarded by its own lock; :meth:`rotate` swaps
    every bucket for an empty one without carrying anything over.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._buckets: dict[Hashable, _Bucket] = {}
        self._registry_lock = Lock()
        self._clock = clock or time.time
        self.rotations = 0
        self.last_rotated_at: float | None = None

    def _bucket(self, segment_key: Hashable) -> _Bucket:
        with self._registry_lock:
            bucket = self._buckets.get(segment_key)
            if bucket is None:
                bucket = self._buckets[segment_key] = _Bucket()
            return bucket

    def seen(self, segment_key: Hashable, listing_id: str) -> bool:
        bucket = self._bucket(segment_key)
        with bucket.lock:
            return listing_id in bucket.entries

    def record(self, segment_key: Hashable, listing_id: str, ts: float | None = None) -> None:
        bucket = self._bucket(segment_key)
        with bucket.lock:
            bucket.entries[listing_id] = self._clock() if ts is None else ts

    def partition(self, segment_key: Hashable, listing_ids: Iterable[str]) -> tuple[list[str], list[str]]:
        """Split ids into ``(novel, seen)``; repeats inside the batch count as seen."""

        bucket = self._bucket(segment_key)
        novel: list[str] = []
        seen: list[str] = []
        batch: set[str] = set()
        with bucket.lock:
            for listing_id in listing_ids:
                if listing_id in bucket.entries or listing_id in batch:
                    seen.append(listing_id)
                else:
                    novel.append(listing_id)
                    batch.add(listing_id)
        return novel, seen

    def warm(self, segment_key: Hashable, listing_ids: Iterable[str]) -> int:
        bucket = self._bucket(segment_key)
        now = self._clock()
        with bucket.lock:
            before = len(bucket.entries)
            for listing_id in listing_ids:
                bucket.entries.setdefault(str(listing_id), now)
            return len(bucket.entries) - before

    def rotate(self) -> int:
        """Discard every bucket's entries; return how many ids were dropped."""

        with self._registry_lock:
            buckets = list(self._buckets.values())
        dropped = 0
        for bucket in buckets:
            with bucket.lock:
                dropped += len(bucket.entries)
                bucket.entries = {}
        self.rotations += 1
        self.last_rotated_at = self._clock()
        return dropped

    def size(self, segment_key: Hashable | None = None) -> int:
        if segment_key is not None:
            bucket = self._bucket(segment_key)
            with bucket.lock:
                return len(bucket.entries)
        with self._registry_lock:
            buckets = list(self._buckets.values())
        return sum(len(bucket.entries) for bucket in buckets)


__all__ = ["DeduplicationCache"]
