from __future__ import annotations

import pytest
from apscheduler.triggers.interval import IntervalTrigger

from realty_ingest.scheduler import APSchedulerAdapter


class StubScheduler:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.jobs: dict[str, object] = {}

    def add_job(self, func, trigger, id, replace_existing, max_instances, coalesce):  # noqa: ANN001
        self.calls.append(
            {
                "id": id,
                "trigger": trigger,
                "func": func,
                "replace_existing": replace_existing,
                "max_instances": max_instances,
                "coalesce": coalesce,
            }
        )

    def get_jobs(self):
        return []

    def start(self):
        self.calls.append({"event": "started"})

    def shutdown(self, wait=False):  # noqa: ARG002
        self.calls.append({"event": "shutdown"})

    def remove_job(self, job_id):  # noqa: ANN001
        self.calls.append({"event": "remove", "id": job_id})


def test_schedule_interval_registers_non_overlapping_job() -> None:
    stub = StubScheduler()
    adapter = APSchedulerAdapter(stub)  # type: ignore[arg-type]

    def tick() -> None:
        return None

    adapter.schedule_interval("dedup::rotate", tick, 3600)
    job = stub.calls[0]
    assert job["id"] == "dedup::rotate"
    assert isinstance(job["trigger"], IntervalTrigger)
    assert job["trigger"].interval.total_seconds() == 3600
    assert job["func"] is tick
    assert (job["replace_existing"], job["max_instances"], job["coalesce"]) == (True, 1, True)


def test_start_and_shutdown_are_idempotent() -> None:
    stub = StubScheduler()
    adapter = APSchedulerAdapter(stub)  # type: ignore[arg-type]
    adapter.start()
    adapter.start()
    adapter.remove_job("supervisor::health")
    adapter.shutdown()
    adapter.shutdown()
    assert [call.get("event") for call in stub.calls] == ["started", "remove", "shutdown"]


def test_interval_must_be_positive() -> None:
    adapter = APSchedulerAdapter(StubScheduler())  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        adapter.schedule_interval("bad", lambda: None, 0)


def test_real_scheduler_lists_and_removes_jobs() -> None:
    adapter = APSchedulerAdapter()
    adapter.schedule_interval("supervisor::status", lambda: None, 60)
    assert [job["id"] for job in adapter.list_jobs()] == ["supervisor::status"]
    adapter.remove_job("supervisor::status")
    adapter.remove_job("supervisor::status")
    assert adapter.list_jobs() == []
