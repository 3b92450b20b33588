from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Event

import pytest

from conftest import RecordingSink, make_offer
from realty_ingest.config import SinkConfig
from realty_ingest.engine.mapper import map_offer
from realty_ingest.errors import SinkError
from realty_ingest.sinks import QueuedSink, SQLiteSink, build_sink


def record(offer_id: str, *, location_id: int = 1, category_id: int = 1, now: datetime | None = None, **extra):
    return map_offer(make_offer(offer_id, **extra), location_id, category_id, now=now)


def test_sqlite_upsert_keeps_one_row(tmp_path: Path) -> None:
    sink = SQLiteSink(tmp_path / "listings.db")
    sink.ingest(record("1", price={"value": 40000}))
    sink.ingest(record("1", price={"value": 45000}))
    sink.ingest(record("2"))

    assert sink.count() == 2
    assert sink.get("1")["price"] == 45000.0
    assert sink.get("missing") is None
    sink.close()


def test_sqlite_known_ids_respects_segment_and_age(tmp_path: Path) -> None:
    sink = SQLiteSink(tmp_path / "listings.db")
    now = datetime.now(timezone.utc)
    sink.ingest(record("fresh", now=now))
    sink.ingest(record("stale", now=now - timedelta(days=45)))
    sink.ingest(record("other", category_id=3, now=now))

    assert sink.known_ids(1, 1) == ["fresh"]
    assert sorted(sink.known_ids(1, 1, since_days=60)) == ["fresh", "stale"]
    sink.close()


def test_sqlite_reconnect_keeps_data(tmp_path: Path) -> None:
    sink = SQLiteSink(tmp_path / "listings.db")
    sink.ingest(record("1"))
    sink.reconnect()
    sink.ingest(record("2"))
    assert sink.count() == 2
    sink.close()


def test_queued_sink_serialises_and_reports_errors() -> None:
    inner = RecordingSink(fail_times=1)
    sink = QueuedSink(inner, maxsize=10, put_timeout=1.0)
    with pytest.raises(SinkError):
        sink.ingest(record("1"))
    sink.ingest(record("2"))
    sink.reconnect()
    sink.close()

    assert inner.ids == ["2"]
    assert inner.reconnects == 1


def test_queued_sink_delegates_known_ids() -> None:
    sink = QueuedSink(RecordingSink(known=["7"]))
    assert sink.known_ids(1, 1) == ["7"]
    sink.close()


def test_queued_sink_times_out_on_stuck_writer() -> None:
    release = Event()

    class StuckSink(RecordingSink):
        def ingest(self, record) -> None:
            release.wait(5)
            super().ingest(record)

    sink = QueuedSink(StuckSink(), maxsize=10, put_timeout=0.2)
    started = time.monotonic()
    with pytest.raises(SinkError, match="timed out"):
        sink.ingest(record("1"))
    assert time.monotonic() - started < 1.5
    release.set()
    sink.close()


def test_queued_sink_rejects_writes_after_close() -> None:
    inner = RecordingSink()
    sink = QueuedSink(inner, put_timeout=1.0)
    sink.close()
    with pytest.raises(SinkError, match="closed"):
        sink.ingest(record("1"))
    with pytest.raises(SinkError):
        sink.flush()
    assert inner.ids == []


def test_build_sink_resolves_path_and_wraps_when_serialized(tmp_path: Path) -> None:
    plain = build_sink(SinkConfig(path="db/listings.db"), resolve=lambda p: tmp_path / p)
    assert isinstance(plain, SQLiteSink)
    assert plain.path == tmp_path / "db" / "listings.db"
    plain.close()

    queued = build_sink(SinkConfig(path=tmp_path / "q.db", serialize=True))
    assert isinstance(queued, QueuedSink)
    assert isinstance(queued.inner, SQLiteSink)
    queued.close()
