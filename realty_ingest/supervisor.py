"""Supervisor: one worker per segment, liveness checks and bounded restarts."""

from __future__ import annotations

import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock
from typing import Callable, Iterable

import structlog

from .config import ConfigRepository, SupervisorConfig
from .engine.catalog import Segment, SegmentKey
from .engine.dedup import DeduplicationCache
from .engine.worker import SegmentWorker
from .errors import WorkerFatalError
from .logging_conf import configure_logging
from .scheduler import APSchedulerAdapter

WorkerFactory = Callable[[Segment, Event], SegmentWorker]

HEALTH_JOB = "supervisor::health"
ROTATION_JOB = "dedup::rotate"
STATUS_JOB = "supervisor::status"


@dataclass
class WorkerSlot:
    """Bookkeeping for one segment's worker across restarts."""

    segment: Segment
    worker: SegmentWorker
    future: Future
    restart_times: deque = field(default_factory=deque)
    restarts_total: int = 0
    restart_due_at: float | None = None
    permanently_failed: bool = False
    last_exit: str | None = None


class Supervisor:
    """Spawn, watch and restart segment workers."""

    def __init__(
        self,
        segments: Iterable[Segment],
        worker_factory: WorkerFactory,
        config: SupervisorConfig | None = None,
        cache: DeduplicationCache | None = None,
        scheduler: APSchedulerAdapter | None = None,
        repository: ConfigRepository | None = None,
        cache_rotation_minutes: float = 60.0,
        status_interval_seconds: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.segments = list(segments)
        self.worker_factory = worker_factory
        self.config = config or SupervisorConfig()
        self.cache = cache
        self.scheduler = scheduler
        self.repository = repository
        self.cache_rotation_minutes = cache_rotation_minutes
        self.status_interval_seconds = status_interval_seconds
        self.stop_event = Event()
        self.logger = configure_logging().bind(component="supervisor")
        self._clock = clock or time.monotonic
        self._lock = Lock()
        self._slots: dict[SegmentKey, WorkerSlot] = {}
        self._executor: ThreadPoolExecutor | None = None

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Supervisor already started")
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, len(self.segments)), thread_name_prefix="segment"
        )
        with self._lock:
            for segment in self.segments:
                worker = self.worker_factory(segment, self.stop_event)
                self._slots[segment.key] = WorkerSlot(segment, worker, self._executor.submit(worker.run))
        self.logger.info("supervisor_started", segments=[str(s.key) for s in self.segments])

        if self.scheduler is not None:
            self.scheduler.schedule_interval(HEALTH_JOB, self.check_workers, self.config.health_check_seconds)
            if self.cache is not None:
                self.scheduler.schedule_interval(ROTATION_JOB, self.rotate_cache, self.cache_rotation_minutes * 60)
            if self.status_interval_seconds > 0:
                self.scheduler.schedule_interval(STATUS_JOB, self.write_status, self.status_interval_seconds)
            self.scheduler.start()

    def rotate_cache(self) -> None:
        if self.cache is None:
            return
        dropped = self.cache.rotate()
        self.logger.info("cache_rotated", dropped=dropped, rotations=self.cache.rotations)

    def check_workers(self) -> None:
        """Restart workers that exited on their own, within the restart budget."""

        if self.stop_event.is_set() or self._executor is None:
            return
        now = self._clock()
        window = self.config.restart_window_minutes * 60
        with self._lock:
            for key, slot in self._slots.items():
                if slot.permanently_failed:
                    continue
                if slot.restart_due_at is not None:
                    if now >= slot.restart_due_at:
                        self._restart(slot, now)
                    continue
                if not slot.future.done():
                    continue

                exc = slot.future.exception()
                slot.last_exit = f"{type(exc).__name__}: {exc}" if exc else "returned"
                while slot.restart_times and now - slot.restart_times[0] > window:
                    slot.restart_times.popleft()
                if len(slot.restart_times) >= self.config.max_restarts:
                    slot.permanently_failed = True
                    self.logger.error(
                        "segment_permanently_failed",
                        segment=str(key),
                        restarts=slot.restarts_total,
                        last_exit=slot.last_exit,
                    )
                    continue
                slot.restart_due_at = now + self.config.restart_delay_seconds
                level = "warning" if isinstance(exc, WorkerFatalError) else "error"
                getattr(self.logger, level)(
                    "worker_exited",
                    segment=str(key),
                    exit=slot.last_exit,
                    restart_in=self.config.restart_delay_seconds,
                )

    def _restart(self, slot: WorkerSlot, now: float) -> None:
        if self._executor is None:
            raise RuntimeError("Supervisor is not started")
        slot.restart_due_at = None
        slot.restart_times.append(now)
        slot.restarts_total += 1
        slot.worker = self.worker_factory(slot.segment, self.stop_event)
        slot.future = self._executor.submit(slot.worker.run)
        self.logger.info("worker_restarted", segment=str(slot.segment.key), restarts=slot.restarts_total)

    def stop(self, timeout: float | None = None) -> bool:
        """Signal every worker and wait up to ``timeout``; ``True`` when all exited."""

        timeout = self.config.shutdown_timeout_seconds if timeout is None else timeout
        self.stop_event.set()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        with self._lock:
            futures = [slot.future for slot in self._slots.values()]
        done, pending = wait(futures, timeout=timeout)
        if pending:
            self.logger.error("worker_shutdown_timeout", pending=len(pending), timeout=timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        if self.repository is not None:
            self.write_status()
        self.logger.info("supervisor_stopped", finished=len(done), pending=len(pending))
        return not pending

    def wait(self, poll: float = 1.0) -> None:
        while not self.stop_event.wait(poll):
            continue

    # ------------------------------------------------------------------
    def status(self) -> list[dict]:
        with self._lock:
            slots = list(self._slots.values())
        rows = []
        for slot in slots:
            row = slot.worker.status.to_dict()
            row.update(
                name=slot.segment.name,
                restarts=slot.restarts_total,
                permanently_failed=slot.permanently_failed,
                last_exit=slot.last_exit,
            )
            rows.append(row)
        return rows

    def write_status(self) -> dict:
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "running": not self.stop_event.is_set(),
            "cache_rotations": self.cache.rotations if self.cache else 0,
            "cache_rotated_at": self.cache.last_rotated_at if self.cache else None,
            "segments": self.status(),
        }
        for row in payload["segments"]:
            structlog.get_logger("realty_ingest.status").info("segment_status", **row)
        if self.repository is not None:
            self.repository.write_status(payload)
        return payload

    def slot(self, key: SegmentKey) -> WorkerSlot:
        with self._lock:
            return self._slots[key]


__all__ = ["Supervisor", "WorkerFactory", "WorkerSlot"]
