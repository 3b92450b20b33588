"""Per-segment worker loop: fetch, dedup, emit, sleep."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from threading import Event, Lock
from typing import TYPE_CHECKING, Any, Callable

import structlog

from ..config import EngineConfig
from ..errors import BlockedError, FetchError, ProxyPoolExhaustedError, SinkError, WorkerFatalError
from ..infra.proxy_pool import ProxyHandle, ProxyPool
from ..infra.rate_limit import TokenBucket
from .antibot import BackoffPolicy
from .catalog import Segment
from .client import MarketplaceClient, SearchPage
from .dedup import DeduplicationCache
from .jitter import JitterEngine
from .mapper import ListingRecord, build_price_history, is_today, map_offer, offer_id

if TYPE_CHECKING:
    from ..sinks.base import BaseSink

PRICE_HISTORY_PAUSE_SECONDS = 0.5


class WorkerState(str, Enum):
    STARTING = "starting"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    EMITTING = "emitting"
    SLEEPING = "sleeping"
    BACKING_OFF = "backing_off"
    ROTATE_PROXY = "rotate_proxy"
    RETRY = "retry"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class SegmentStatus:
    """Observable counters of one worker."""

    segment: str
    state: WorkerState = WorkerState.STARTING
    cycles: int = 0
    novel: int = 0
    seen: int = 0
    filtered: int = 0
    dropped: int = 0
    failure_streak: int = 0
    proxy: str | None = None
    last_error: str | None = None
    last_cycle_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


@dataclass(slots=True)
class PageOutcome:
    novel: int = 0
    seen: int = 0
    filtered: int = 0
    dropped: int = 0
    emitted: list[str] = field(default_factory=list)


class SegmentWorker:
    """Run the ingestion loop for one segment until the stop event is set."""

    def __init__(
        self,
        segment: Segment,
        config: EngineConfig,
        client: MarketplaceClient,
        cache: DeduplicationCache,
        sink: "BaseSink",
        jitter: JitterEngine,
        stop_event: Event,
        proxy_pool: ProxyPool | None = None,
        rate_limiter: TokenBucket | None = None,
        backoff: BackoffPolicy | None = None,
        logger: structlog.BoundLogger | None = None,
        now: Callable[[], float] | None = None,
    ) -> None:
        self.segment = segment
        self.config = config
        self.client = client
        self.cache = cache
        self.sink = sink
        self.jitter = jitter
        self.stop_event = stop_event
        self.proxy_pool = proxy_pool if (proxy_pool is not None and proxy_pool.active and segment.use_proxy) else None
        self.rate_limiter = rate_limiter
        self.backoff = backoff or BackoffPolicy.from_config(config.backoff)
        self.logger = logger or structlog.get_logger("realty_ingest.worker").bind(segment=segment.slug)
        self._now = now or time.time
        self._status = SegmentStatus(segment=str(segment.key))
        self._status_lock = Lock()
        self._block_streak = 0
        self._proxy: ProxyHandle | None = None

    # ------------------------------------------------------------------
    @property
    def status(self) -> SegmentStatus:
        with self._status_lock:
            return replace(self._status)

    def _update(self, **changes: Any) -> None:
        with self._status_lock:
            for key, value in changes.items():
                setattr(self._status, key, value)

    def _bump(self, **increments: int) -> None:
        with self._status_lock:
            for key, value in increments.items():
                setattr(self._status, key, getattr(self._status, key) + value)

    # ------------------------------------------------------------------
    def run(self) -> SegmentStatus:
        """Loop until cancelled; raise :class:`WorkerFatalError` on a failure streak."""

        self._update(state=WorkerState.STARTING)
        self.logger.info("worker_started", rgid=self.segment.rgid, params=dict(self.segment.params))
        self.jitter.reset(self.segment.key)
        if self.config.preload_known_ids:
            self.warm_start()
        self._ensure_proxy()
        try:
            while not self.stop_event.is_set():
                try:
                    self.run_cycle()
                except FetchError as exc:
                    self._handle_failure(exc)
                    continue
                self._update(failure_streak=0)
                self._block_streak = 0
                self._sleep(self.jitter.sleep_seconds(self.segment), WorkerState.SLEEPING)
        except WorkerFatalError:
            self._update(state=WorkerState.FAILED)
            raise
        except Exception as exc:
            self._update(state=WorkerState.FAILED, last_error=str(exc))
            self.logger.error("worker_crashed", error=str(exc), exc_info=True)
            raise
        finally:
            self._release_proxy()
        self._update(state=WorkerState.STOPPED)
        self.logger.info("worker_stopped")
        return self.status

    def warm_start(self) -> int:
        ids = self.sink.known_ids(self.segment.key.location_id, self.segment.key.category_id)
        loaded = self.cache.warm(self.segment.key, ids)
        self.logger.info("cache_warmed", loaded=loaded)
        return loaded

    def run_cycle(self) -> PageOutcome:
        """Fetch up to ``max_pages`` pages with freshly jittered prices."""

        params = self.jitter.build_params(self.segment)
        total = PageOutcome()
        for page in range(self.config.max_pages):
            if self.stop_event.is_set():
                break
            search = self._fetch(params, page)
            outcome = self.process_items(search.items)
            total.novel += outcome.novel
            total.seen += outcome.seen
            total.filtered += outcome.filtered
            total.dropped += outcome.dropped
            total.emitted.extend(outcome.emitted)
            if not search.has_next or not search.items:
                break
        self._bump(cycles=1)
        self._update(last_cycle_at=self._now())
        self.logger.info(
            "cycle_completed",
            price_min=params.get("priceMin"),
            price_max=params.get("priceMax"),
            novel=total.novel,
            seen=total.seen,
            filtered=total.filtered,
            dropped=total.dropped,
        )
        return total

    def _fetch(self, params: dict[str, Any], page: int) -> SearchPage:
        handle = self._ensure_proxy()
        if self.proxy_pool is not None and handle is None:
            raise ProxyPoolExhaustedError(f"No proxy available for segment {self.segment.key}")
        if self.rate_limiter is not None and not self.rate_limiter.acquire(self.stop_event):
            raise _Cancelled()
        self._update(state=WorkerState.FETCHING)
        try:
            return self.client.fetch_page(params, page=page, proxy=handle)
        except BlockedError:
            if handle is not None:
                self.proxy_pool.mark_blocked(handle)
                self._release_proxy(success=False)
            raise

    def _ensure_proxy(self) -> ProxyHandle | None:
        """Lease a proxy for this worker unless it already holds one."""

        if self.proxy_pool is not None and self._proxy is None:
            self._proxy = self.proxy_pool.acquire()
            self._update(proxy=self._proxy.address if self._proxy else None)
        return self._proxy

    def _release_proxy(self, success: bool = True) -> None:
        if self.proxy_pool is not None and self._proxy is not None:
            self.proxy_pool.release(self._proxy, success=success)
        self._proxy = None
        self._update(proxy=None)

    # ------------------------------------------------------------------
    def process_items(self, items: list[dict[str, Any]]) -> PageOutcome:
        """Deduplicate one page of offers and emit the novel ones in order."""

        outcome = PageOutcome()
        self._update(state=WorkerState.DEDUPING)
        by_id: dict[str, dict[str, Any]] = {}
        ordered: list[str] = []
        for item in items:
            item_id = offer_id(item)
            if item_id is None:
                continue
            ordered.append(item_id)
            by_id.setdefault(item_id, item)
        novel, seen = self.cache.partition(self.segment.key, ordered)
        outcome.seen = len(seen)

        self._update(state=WorkerState.EMITTING)
        for item_id in novel:
            offer = by_id[item_id]
            if self.segment.filter_today_only and not is_today(offer):
                self.cache.record(self.segment.key, item_id)
                outcome.filtered += 1
                continue
            record = map_offer(
                offer,
                self.segment.key.location_id,
                self.segment.key.category_id,
                source_id=self.config.source_id,
                commercial_category_ids=self.config.commercial_category_ids,
            )
            if record is None:
                self.cache.record(self.segment.key, item_id)
                outcome.filtered += 1
                continue
            if record.raised and self.config.fetch_price_history:
                self._attach_price_history(record)
            if self.emit(record):
                self.cache.record(self.segment.key, item_id)
                outcome.novel += 1
                outcome.emitted.append(item_id)
            else:
                outcome.dropped += 1
        self._bump(novel=outcome.novel, seen=outcome.seen, filtered=outcome.filtered, dropped=outcome.dropped)
        return outcome

    def emit(self, record: ListingRecord) -> bool:
        """Hand a record to the sink, retrying once after a reconnect."""

        try:
            self.sink.ingest(record)
        except SinkError as first:
            self.logger.warning("sink_retry", listing_id=record.external_id, error=str(first))
            try:
                self.sink.reconnect()
                self.sink.ingest(record)
            except SinkError as second:
                self.logger.error("sink_dropped", listing_id=record.external_id, error=str(second))
                return False
        self.logger.info(
            "listing_emitted",
            listing_id=record.external_id,
            price=record.price,
            raised=record.raised,
            metro=record.metro.name if record.metro else None,
        )
        return True

    def _attach_price_history(self, record: ListingRecord) -> None:
        if self.stop_event.wait(PRICE_HISTORY_PAUSE_SECONDS):
            return
        handle = self._proxy
        if self.proxy_pool is not None and handle is None:
            return
        try:
            prices = self.client.fetch_price_history(record.external_id, proxy=handle)
        except FetchError as exc:
            self.logger.warning("price_history_failed", listing_id=record.external_id, error=str(exc))
            if isinstance(exc, BlockedError) and handle is not None:
                self.proxy_pool.mark_blocked(handle)
                self._release_proxy(success=False)
            return
        record.price_history = build_price_history(prices)

    # ------------------------------------------------------------------
    def _handle_failure(self, exc: FetchError) -> None:
        if isinstance(exc, _Cancelled):
            return
        self._update(state=WorkerState.BACKING_OFF, last_error=str(exc))
        self._bump(failure_streak=1)
        streak = self.status.failure_streak
        limit = self.config.backoff.max_consecutive_failures
        self.logger.warning(
            "fetch_failed",
            kind=type(exc).__name__,
            status=exc.status_code,
            error=str(exc),
            streak=streak,
        )
        if streak >= limit:
            self.logger.error("worker_unhealthy", streak=streak, limit=limit)
            raise WorkerFatalError(f"Segment {self.segment.key} failed {streak} times in a row") from exc

        if isinstance(exc, ProxyPoolExhaustedError):
            self.logger.warning("proxy_pool_exhausted", delay=self.backoff.ceiling)
            self._sleep(self.backoff.ceiling, WorkerState.RETRY)
            return
        if isinstance(exc, BlockedError):
            self._block_streak += 1
            if self.proxy_pool is not None:
                self._update(state=WorkerState.ROTATE_PROXY)
                if self._ensure_proxy() is None:
                    self.logger.warning("proxy_pool_exhausted", delay=self.backoff.ceiling)
                    self._sleep(self.backoff.ceiling, WorkerState.RETRY)
                    return
                self.logger.info("proxy_rotated", proxy=self._proxy.address)
                self._sleep(self.backoff.blocked_delay(self._block_streak), WorkerState.ROTATE_PROXY)
                return
            self._sleep(self.backoff.blocked_delay(self._block_streak), WorkerState.RETRY)
            return
        self._sleep(self.backoff.transient_delay(streak), WorkerState.RETRY)

    def _sleep(self, seconds: float, state: WorkerState) -> None:
        self._update(state=state)
        if seconds > 0:
            self.stop_event.wait(seconds)


class _Cancelled(FetchError):
    """Raised internally when the shutdown event interrupts a wait."""

    def __init__(self) -> None:
        super().__init__("cancelled")


__all__ = ["PageOutcome", "SegmentStatus", "SegmentWorker", "WorkerState"]
