from __future__ import annotations

import random
from threading import Event

import httpx
import pytest

from conftest import RecordingSink, make_offer, search_payload
from realty_ingest.engine.catalog import resolve_segments
from realty_ingest.engine.client import MarketplaceClient
from realty_ingest.engine.dedup import DeduplicationCache
from realty_ingest.engine.jitter import JitterEngine
from realty_ingest.engine.worker import SegmentWorker, WorkerState
from realty_ingest.errors import BlockedError, ProxyPoolExhaustedError, TransientFetchError, WorkerFatalError
from realty_ingest.infra.proxy_pool import ProxyPool


def ids(start: int, stop: int) -> list[str]:
    return [str(i) for i in range(start, stop)]


def build_worker(config, transport, sink, **kwargs) -> SegmentWorker:
    segment = resolve_segments(config)[0]
    client = MarketplaceClient(config, transport=transport)
    return SegmentWorker(
        segment,
        config,
        client,
        kwargs.pop("cache", None) or DeduplicationCache(),
        sink,
        JitterEngine(random.Random(1)),
        kwargs.pop("stop_event", None) or Event(),
        **kwargs,
    )


def record_sleeps(worker: SegmentWorker) -> list[tuple[float, WorkerState]]:
    calls: list[tuple[float, WorkerState]] = []

    def fake_sleep(seconds: float, state: WorkerState) -> None:
        worker._update(state=state)
        calls.append((seconds, state))

    worker._sleep = fake_sleep  # type: ignore[method-assign]
    return calls


def test_overlapping_pages_emit_union_once(make_config, mock_api, recording_sink) -> None:
    mock_api.pages[0] = search_payload(ids(1, 11), page=0, total_pages=2)
    mock_api.pages[1] = search_payload(ids(6, 16), page=1, total_pages=2)
    worker = build_worker(make_config(max_pages=2), mock_api.transport, recording_sink)

    first = worker.run_cycle()
    assert recording_sink.ids == ids(1, 16)
    assert (first.novel, first.seen) == (15, 5)

    second = worker.run_cycle()
    assert (second.novel, second.seen) == (0, 20)
    assert len(recording_sink.records) == 15
    assert worker.status.cycles == 2


def test_sink_failure_retries_once_after_reconnect(make_config, mock_api) -> None:
    mock_api.pages[0] = search_payload(["a"])
    sink = RecordingSink(fail_times=1)
    worker = build_worker(make_config(), mock_api.transport, sink)

    outcome = worker.run_cycle()
    assert outcome.emitted == ["a"]
    assert sink.reconnects == 1
    assert sink.attempts == 2


def test_second_sink_failure_drops_without_marking_seen(make_config, mock_api) -> None:
    mock_api.pages[0] = search_payload(["a"])
    sink = RecordingSink(fail_times=2)
    worker = build_worker(make_config(), mock_api.transport, sink)

    outcome = worker.run_cycle()
    assert outcome.dropped == 1 and sink.ids == []
    assert worker.status.dropped == 1
    # not cached, so the next cycle delivers it
    assert worker.run_cycle().emitted == ["a"]
    assert sink.ids == ["a"]


def test_filter_today_only_records_old_offers(make_config, mock_api, recording_sink) -> None:
    config = make_config(
        locations={
            1: {
                "name": "Москва и область",
                "rgid": 741964,
                "categories": {3: {"filter_today_only": True, "api_params": {"type": "SELL"}}},
            }
        }
    )
    mock_api.pages[0] = {
        "response": {
            "offers": {
                "items": [make_offer("old", creationDate="2001-01-01T00:00:00Z"), make_offer("undated")],
                "pager": {"totalPages": 1},
            }
        }
    }
    worker = build_worker(config, mock_api.transport, recording_sink)

    assert worker.run_cycle().filtered == 2
    assert recording_sink.ids == []
    assert worker.run_cycle().seen == 2


def test_transient_failures_back_off_until_fatal(make_config, mock_api, recording_sink) -> None:
    config = make_config(
        backoff={"base_seconds": 2, "block_base_seconds": 1, "max_seconds": 5, "max_consecutive_failures": 5}
    )
    mock_api.queue(*[httpx.Response(503) for _ in range(5)])
    worker = build_worker(config, mock_api.transport, recording_sink)
    sleeps = record_sleeps(worker)

    with pytest.raises(WorkerFatalError):
        worker.run()
    assert [seconds for seconds, _ in sleeps] == [2, 4, 5, 5]
    assert all(state is WorkerState.RETRY for _, state in sleeps)
    status = worker.status
    assert status.state is WorkerState.FAILED
    assert status.failure_streak == 5


def test_success_resets_failure_streak(make_config, mock_api) -> None:
    stop = Event()

    class StoppingSink(RecordingSink):
        def ingest(self, record) -> None:
            super().ingest(record)
            stop.set()

    mock_api.queue(httpx.Response(503), httpx.Response(503))
    mock_api.pages[0] = search_payload(["a"])
    worker = build_worker(make_config(), mock_api.transport, StoppingSink(), stop_event=stop)
    record_sleeps(worker)

    status = worker.run()
    assert status.state is WorkerState.STOPPED
    assert status.failure_streak == 0
    assert status.cycles == 1


def test_block_cools_down_proxy_and_rotates(make_config, mock_api, recording_sink) -> None:
    now = [0.0]
    pool = ProxyPool(["http://a:1", "http://b:1"], cooldown_seconds=60, clock=lambda: now[0])
    mock_api.queue(httpx.Response(403, text="forbidden"))
    mock_api.pages[0] = search_payload(["a"])
    worker = build_worker(make_config(), mock_api.transport, recording_sink, proxy_pool=pool)
    sleeps = record_sleeps(worker)

    with pytest.raises(BlockedError) as excinfo:
        worker.run_cycle()
    worker._handle_failure(excinfo.value)
    assert pool.snapshot()[0]["state"] == "cooling_down"
    assert sleeps == [(1.0, WorkerState.ROTATE_PROXY)]

    worker.run_cycle()
    assert worker.status.proxy == "http://b:1"
    assert recording_sink.ids == ["a"]


def test_exhausted_pool_waits_ceiling(make_config, mock_api, recording_sink) -> None:
    pool = ProxyPool(["http://a:1"], cooldown_seconds=60, clock=lambda: 0.0)
    mock_api.queue(httpx.Response(429))
    worker = build_worker(make_config(), mock_api.transport, recording_sink, proxy_pool=pool)
    sleeps = record_sleeps(worker)

    with pytest.raises(BlockedError) as excinfo:
        worker.run_cycle()
    worker._handle_failure(excinfo.value)
    assert pool.available() == 0
    assert sleeps == [(worker.backoff.ceiling, WorkerState.RETRY)]

    mock_api.pages[0] = search_payload(["x"])
    with pytest.raises(ProxyPoolExhaustedError) as exhausted:
        worker.run_cycle()
    assert len(mock_api.requests) == 1
    assert recording_sink.ids == []
    worker._handle_failure(exhausted.value)
    assert worker.status.failure_streak == 2
    assert sleeps[-1] == (worker.backoff.ceiling, WorkerState.RETRY)


def test_warm_start_skips_known_ids(make_config, mock_api) -> None:
    mock_api.pages[0] = search_payload(["1", "2", "3"])
    sink = RecordingSink(known=["1", "2"])
    worker = build_worker(make_config(preload_known_ids=True), mock_api.transport, sink)

    assert worker.warm_start() == 2
    outcome = worker.run_cycle()
    assert outcome.emitted == ["3"]
    assert outcome.seen == 2


def test_raised_offer_gets_price_history(make_config, recording_sink, monkeypatch) -> None:
    monkeypatch.setattr("realty_ingest.engine.worker.PRICE_HISTORY_PAUSE_SECONDS", 0)
    prices = [{"date": "2024-01-01T00:00:00Z", "value": 100000}, {"date": "2024-02-01T00:00:00Z", "value": 90000}]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("cardWithViews.json"):
            return httpx.Response(200, json={"response": {"history": {"prices": prices}}})
        body = {"response": {"offers": {"items": [make_offer("r", raised=True), make_offer("n")]}}}
        return httpx.Response(200, json=body)

    worker = build_worker(make_config(fetch_price_history=True), httpx.MockTransport(handler), recording_sink)
    worker.run_cycle()

    raised, plain = recording_sink.records
    assert [entry["price"] for entry in raised.price_history] == [90000, 100000]
    assert plain.price_history == []


def test_preset_stop_event_exits_without_fetching(make_config, mock_api, recording_sink) -> None:
    stop = Event()
    stop.set()
    worker = build_worker(make_config(), mock_api.transport, recording_sink, stop_event=stop)

    status = worker.run()
    assert status.state is WorkerState.STOPPED
    assert status.cycles == 0
    assert mock_api.requests == []


def test_exhausted_pool_streak_ends_fatal(make_config, mock_api, recording_sink) -> None:
    config = make_config(backoff={"max_consecutive_failures": 3})
    pool = ProxyPool(["http://a:1"], cooldown_seconds=600, clock=lambda: 0.0)
    mock_api.queue(httpx.Response(403))
    worker = build_worker(config, mock_api.transport, recording_sink, proxy_pool=pool)
    record_sleeps(worker)

    with pytest.raises(WorkerFatalError):
        worker.run()
    assert len(mock_api.requests) == 1
    assert worker.status.failure_streak == 3


def test_transient_failure_keeps_proxy_healthy_and_reused(make_config, mock_api, recording_sink) -> None:
    pool = ProxyPool(["http://a:1", "http://b:1"], clock=lambda: 0.0)
    mock_api.queue(httpx.Response(503))
    mock_api.pages[0] = search_payload(["a"])
    worker = build_worker(make_config(), mock_api.transport, recording_sink, proxy_pool=pool)
    sleeps = record_sleeps(worker)

    with pytest.raises(TransientFetchError) as excinfo:
        worker.run_cycle()
    first = worker.status.proxy
    worker._handle_failure(excinfo.value)
    assert [entry["state"] for entry in pool.snapshot()] == ["healthy", "healthy"]
    assert sleeps[-1][1] is WorkerState.RETRY

    proxies = []
    for _ in range(3):
        worker.run_cycle()
        proxies.append(worker.status.proxy)
    assert first == "http://a:1"
    assert proxies == ["http://a:1"] * 3


def test_stopped_worker_returns_its_proxy(make_config, mock_api, recording_sink) -> None:
    stop = Event()
    stop.set()
    pool = ProxyPool(["http://a:1"], clock=lambda: 0.0)
    worker = build_worker(make_config(), mock_api.transport, recording_sink, proxy_pool=pool, stop_event=stop)

    status = worker.run()
    assert status.proxy is None
    assert pool.snapshot()[0]["leases"] == 0


def test_segment_without_proxy_ignores_pool(make_config, mock_api, recording_sink) -> None:
    config = make_config(
        locations={
            1: {
                "name": "Москва",
                "rgid": 741964,
                "categories": {1: {"use_proxy": False, "api_params": {"type": "RENT"}}},
            }
        }
    )
    pool = ProxyPool(["http://a:1"], clock=lambda: 0.0)
    mock_api.pages[0] = search_payload(["a"])
    worker = build_worker(config, mock_api.transport, recording_sink, proxy_pool=pool)

    worker.run_cycle()
    assert worker.status.proxy is None
    assert recording_sink.ids == ["a"]


def test_rotation_allows_one_more_emission(make_config, mock_api, recording_sink) -> None:
    cache = DeduplicationCache()
    mock_api.pages[0] = search_payload(["a"])
    worker = build_worker(make_config(), mock_api.transport, recording_sink, cache=cache)

    worker.run_cycle()
    worker.run_cycle()
    assert recording_sink.ids == ["a"]

    cache.rotate()
    assert worker.run_cycle().emitted == ["a"]
    assert worker.run_cycle().emitted == []
    assert recording_sink.ids == ["a", "a"]
