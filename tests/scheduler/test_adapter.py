from __future__ import annotations

import pytest
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.interval import IntervalTrigger

from genguard.config import RateLimitConfig
from genguard.engine import AdmissionController, ResultCache, ResultCacheEntry
from genguard.scheduler import MaintenanceScheduler


class StubScheduler:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.jobs: dict[str, dict] = {}

    def add_job(self, callback, trigger, id, replace_existing):  # noqa: ANN001, A002
        self.jobs[id] = {"callback": callback, "trigger": trigger}
        self.calls.append({"event": "add", "id": id, "replace_existing": replace_existing})

    def get_jobs(self):
        return []

    def start(self):
        self.calls.append({"event": "started"})

    def shutdown(self, wait=False):  # noqa: ARG002
        self.calls.append({"event": "shutdown"})

    def remove_job(self, job_id):  # noqa: ANN001
        if job_id not in self.jobs:
            raise JobLookupError(job_id)
        del self.jobs[job_id]
        self.calls.append({"event": "remove", "id": job_id})


def test_schedules_admission_sweep_with_interval(clock) -> None:
    stub = StubScheduler()
    adapter = MaintenanceScheduler(stub)  # type: ignore[arg-type]
    controller = AdmissionController(clock=clock)
    controller.check("user", RateLimitConfig(limit=1, window_seconds=5))

    adapter.schedule_admission_sweep(controller, seconds=30)
    job = stub.jobs["maintenance::admission_sweep"]
    assert isinstance(job["trigger"], IntervalTrigger)
    assert job["trigger"].interval.total_seconds() == 30

    clock.advance(10)
    job["callback"]()
    assert controller.windows == {}


def test_cache_purge_job_drops_expired_entries(memory_store, clock) -> None:
    stub = StubScheduler()
    adapter = MaintenanceScheduler(stub)  # type: ignore[arg-type]
    cache = ResultCache(memory_store, ttl_seconds=60, clock=clock)
    cache.put(ResultCacheEntry(id="a", payload={}, timestamp=clock()))

    adapter.schedule_cache_purge(cache, seconds=600)
    clock.advance(61)
    stub.jobs["maintenance::result_cache_purge"]["callback"]()
    assert memory_store.get("results:a") is None


def test_failing_callback_does_not_propagate() -> None:
    stub = StubScheduler()
    adapter = MaintenanceScheduler(stub)  # type: ignore[arg-type]

    def boom() -> None:
        raise RuntimeError("sweep failed")

    adapter.schedule("maintenance::boom", boom, 5)
    stub.jobs["maintenance::boom"]["callback"]()


def test_lifecycle_and_remove() -> None:
    stub = StubScheduler()
    adapter = MaintenanceScheduler(stub)  # type: ignore[arg-type]
    adapter.schedule("maintenance::noop", lambda: None, 1)
    adapter.start()
    adapter.start()
    adapter.remove("maintenance::noop")
    adapter.remove("maintenance::noop")
    adapter.shutdown()
    events = [call["event"] for call in stub.calls]
    assert events == ["add", "started", "remove", "shutdown"]
    with pytest.raises(ValueError):
        adapter.schedule("maintenance::bad", lambda: None, 0)
