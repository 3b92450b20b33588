"""Engine components orchestrating jitter → fetch → dedup → emit."""

from .catalog import PriceRange, Segment, SegmentKey, resolve_segments
from .client import MarketplaceClient, SearchPage
from .dedup import DeduplicationCache
from .jitter import JitterEngine
from .mapper import ListingRecord, map_offer
from .worker import SegmentStatus, SegmentWorker, WorkerState

__all__ = [
    "DeduplicationCache",
    "JitterEngine",
    "ListingRecord",
    "MarketplaceClient",
    "PriceRange",
    "SearchPage",
    "Segment",
    "SegmentKey",
    "SegmentStatus",
    "SegmentWorker",
    "WorkerState",
    "map_offer",
    "resolve_segments",
]
