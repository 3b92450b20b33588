"""Sink contract and the queue-backed serialising wrapper."""

from __future__ import annotations

import queue
from abc import ABC, abstractmethod
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Thread

import structlog

from ..engine.mapper import ListingRecord
from ..errors import SinkError


class BaseSink(ABC):
    """Uniform sink contract; ``ingest`` upserts by ``(source_id, external_id)``."""

    thread_safe: bool = True

    @abstractmethod
    def ingest(self, record: ListingRecord) -> None:
        """Persist a single record, raising :class:`SinkError` on failure."""

    def known_ids(self, location_id: int, category_id: int, since_days: int = 30) -> list[str]:
        """External ids already stored for a segment; empty when unsupported."""

        return []

    def reconnect(self) -> None:
        """Re-establish the underlying connection after a failure."""

    @abstractmethod
    def flush(self) -> None:
        """Flush buffered data to destination."""

    @abstractmethod
    def close(self) -> None:
        """Release underlying resources."""


_STOP = object()


class QueuedSink(BaseSink):
    """Funnel writes from many workers through one writer thread.

    ``ingest`` still reports the outcome of the write to its caller. A full
    queue or a write still pending after ``put_timeout`` seconds raises
    :class:`SinkError`; so does any call after :meth:`close`.
    """

    def __init__(self, inner: BaseSink, maxsize: int = 1000, put_timeout: float = 5.0) -> None:
        self.inner = inner
        self.put_timeout = put_timeout
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._logger = structlog.get_logger("realty_ingest.sink")
        self._writer = Thread(target=self._drain, name="sink-writer", daemon=True)
        self._writer.start()

    def ingest(self, record: ListingRecord) -> None:
        self._submit(record, record.external_id)

    def known_ids(self, location_id: int, category_id: int, since_days: int = 30) -> list[str]:
        return self.inner.known_ids(location_id, category_id, since_days)

    def reconnect(self) -> None:
        self._call(self.inner.reconnect)

    def flush(self) -> None:
        self._call(self.inner.flush)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer.is_alive():
            try:
                self._queue.put(_STOP, timeout=self.put_timeout)
            except queue.Full:
                self._logger.warning("sink_close_queue_full", pending=self._queue.qsize())
            self._writer.join(timeout=self.put_timeout)
        self.inner.close()

    def _call(self, func) -> None:
        self._submit(func, func.__name__)

    def _submit(self, payload, label: str) -> None:
        if self._closed:
            raise SinkError(f"Sink is closed, rejected {label}")
        future: Future = Future()
        try:
            self._queue.put((payload, future), timeout=self.put_timeout)
        except queue.Full as exc:
            raise SinkError(f"Sink queue full, dropped {label}") from exc
        try:
            exc = future.exception(timeout=self.put_timeout)
        except FutureTimeoutError as timeout:
            raise SinkError(f"Sink write of {label} timed out after {self.put_timeout}s") from timeout
        if exc is not None:
            if isinstance(exc, SinkError):
                raise exc
            raise SinkError(str(exc)) from exc

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            payload, future = item
            try:
                if callable(payload):
                    payload()
                else:
                    self.inner.ingest(payload)
            except Exception as exc:  # noqa: BLE001 - delivered to the waiting caller
                future.set_exception(exc)
            else:
                future.set_result(None)


__all__ = ["BaseSink", "QueuedSink"]
