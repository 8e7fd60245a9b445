from __future__ import annotations

import asyncio
from typing import Any, Mapping

import httpx
import pytest

from genguard.config import GlobalConfig, RateLimitConfig, RetryConfig, TierLimitTable
from genguard.engine import (
    AdmissionController,
    CheckpointStore,
    HttpGenerationClient,
    ResultCache,
    RetryExecutor,
)
from genguard.errors import GenerationServiceError, RetryCancelledError
from genguard.orchestrator import Job, JobRunner, JobStatus


class NoSleep:
    async def __call__(self, delay: float) -> None:
        return None


class FakeService:
    """Scripted generation service; ``failures`` maps a call key to errors to raise first."""

    def __init__(self, batches: Mapping[int, list[dict]] | None = None) -> None:
        self.batches = dict(batches or {})
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[str] = []
        self.contexts: list[dict] = []

    def _maybe_fail(self, key: str) -> None:
        self.calls.append(key)
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    async def phase0(self, job: Job) -> dict[str, Any]:
        self._maybe_fail("phase0")
        return {"profile": {"mode": job.workflow_mode}, "confidence": 0.9}

    async def phase1(self, job: Job, profile: Any) -> dict[str, Any]:
        self._maybe_fail("phase1")
        return {"entities": ["chef"], "background": "kitchen", "registry": {"chef": "Marco"}}

    async def phase2(self, job: Job, batch_index: int, context: Mapping[str, Any]) -> dict[str, Any]:
        self._maybe_fail(f"phase2:{batch_index}")
        self.contexts.append(dict(context))
        return {
            "items": self.batches.get(batch_index, []),
            "registry": {f"batch{batch_index}": "seen", "chef": "Override"},
        }


def _runner(service, store, clock, **kwargs) -> JobRunner:
    retry = RetryExecutor(
        RetryConfig(max_attempts=3, initial_delay=0.01, max_delay=0.01, jitter_ratio=0.0),
        sleep=NoSleep(),
    )
    return JobRunner(
        service,
        checkpoints=CheckpointStore(store, clock=clock),
        results=ResultCache(store, clock=clock),
        admission=kwargs.pop("admission", AdmissionController(clock=clock)),
        retry=retry,
        clock=clock,
        **kwargs,
    )


BATCHES = {
    0: [{"description": "A chef preparing vegetables"}],
    1: [
        {"description": "A chef preparing vegetables"},
        {"description": "A lighthouse in a storm", "environment": "coast"},
    ],
    2: [{"description": "Chef plating the finished dish"}],
}


def test_full_run_completes_and_caches(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    runner = _runner(service, memory_store, clock)
    job = Job(id="job-1", total_batches=3, parent_id="project")

    outcome = asyncio.run(runner.run(job))

    assert outcome.succeeded
    assert job.status is JobStatus.COMPLETED
    assert job.completed_batches == 3
    assert [scene.description for scene in outcome.scenes] == [
        "A chef preparing vegetables",
        "A lighthouse in a storm",
        "Chef plating the finished dish",
    ]
    assert outcome.registry["chef"] == "Marco"
    assert outcome.registry["batch2"] == "seen"
    assert outcome.dedup.duplicate_count == 1

    cached = runner.results.get("job-1")
    assert cached.parent_id == "project"
    assert cached.payload["status"] == "completed"
    assert len(cached.payload["scenes"]) == 3
    assert runner.checkpoints.reconstruct("job-1") is None
    assert service.contexts[1]["registry"]["chef"] == "Marco"


def test_transient_failure_is_retried(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    service.failures["phase2:1"] = [GenerationServiceError("busy", status_code=503)]
    runner = _runner(service, memory_store, clock)

    outcome = asyncio.run(runner.run(Job(id="job-2", total_batches=3)))

    assert outcome.succeeded
    assert service.calls.count("phase2:1") == 2


def test_fatal_failure_marks_job_and_resume_skips_done_phases(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    service.failures["phase2:2"] = [GenerationServiceError("bad prompt", status_code=400)]
    runner = _runner(service, memory_store, clock)
    job = Job(id="job-3", total_batches=3)

    failed = asyncio.run(runner.run(job))

    assert not failed.succeeded
    assert job.status is JobStatus.FAILED
    assert job.retryable is False
    assert "HTTP 400" in job.last_error
    assert job.completed_batches == 2
    cached = runner.results.get("job-3")
    assert cached.payload["status"] == "failed"
    assert cached.expires_at == pytest.approx(clock() + runner.failed_ttl_seconds)

    service.calls.clear()
    resumed = asyncio.run(runner.run(job))

    assert resumed.succeeded
    assert resumed.resumed
    assert service.calls == ["phase2:2"]
    assert len(resumed.scenes) == 3
    assert runner.results.get("job-3").payload["status"] == "completed"


def test_exhausted_transient_failure_is_retryable(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    service.failures["phase0"] = [TimeoutError("timed out")] * 3
    runner = _runner(service, memory_store, clock)
    job = Job(id="job-4", total_batches=1)

    outcome = asyncio.run(runner.run(job))

    assert job.status is JobStatus.FAILED
    assert job.retryable is True
    assert isinstance(outcome.error, TimeoutError)


def test_admission_denial_defers_job(memory_store, clock) -> None:
    limits = TierLimitTable(
        free={"generate": RateLimitConfig(limit=1, window_seconds=60)},
        paid={"generate": RateLimitConfig(limit=5, window_seconds=60)},
    )
    admission = AdmissionController(limits=limits, clock=clock)
    service = FakeService(BATCHES)
    runner = _runner(service, memory_store, clock, admission=admission)

    first = asyncio.run(runner.run(Job(id="a", parent_id="owner")))
    assert first.admitted

    job = Job(id="b", parent_id="owner")
    second = asyncio.run(runner.run(job))
    assert not second.admitted
    assert second.retry_after == pytest.approx(60.0)
    assert job.status is JobStatus.PENDING
    assert job.retryable is True
    assert service.calls.count("phase0") == 1


def test_cancel_event_stops_run(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    runner = _runner(service, memory_store, clock)
    job = Job(id="job-5", total_batches=3)

    async def scenario():
        event = asyncio.Event()
        event.set()
        return await runner.run(job, cancel_event=event)

    outcome = asyncio.run(scenario())
    assert job.status is JobStatus.PENDING
    assert job.retryable is True
    assert isinstance(outcome.error, RetryCancelledError)
    assert service.calls == []
    assert runner.results.get("job-5") is None


def test_cancel_mid_run_keeps_checkpoints_for_resume(memory_store, clock) -> None:
    service = FakeService(BATCHES)
    runner = _runner(service, memory_store, clock)
    job = Job(id="job-7", total_batches=3)

    async def scenario():
        event = asyncio.Event()
        original = service.phase2

        async def phase2_then_cancel(job, batch_index, context):
            data = await original(job, batch_index, context)
            event.set()
            return data

        service.phase2 = phase2_then_cancel
        return await runner.run(job, cancel_event=event)

    outcome = asyncio.run(scenario())
    assert job.status is JobStatus.PENDING
    assert not outcome.succeeded
    assert runner.results.get("job-7") is None
    resume = runner.checkpoints.reconstruct("job-7")
    assert resume is not None
    assert resume.batch_indices == [0]


def test_http_client_drives_runner(memory_store, clock) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        phase = request.url.path.rsplit("/", 1)[-1]
        if phase == "phase0":
            return httpx.Response(200, json={"profile": "p", "confidence": 0.7})
        if phase == "phase1":
            return httpx.Response(200, json={"entities": [], "background": "", "registry": {}})
        return httpx.Response(200, json={"items": [{"description": "A quiet harbour at dawn"}]})

    async def scenario():
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as http:
            client = HttpGenerationClient("http://svc/api", client=http)
            runner = JobRunner.from_config(GlobalConfig(), client, memory_store, clock=clock)
            return await runner.run(Job(id="job-6", total_batches=2))

    outcome = asyncio.run(scenario())
    assert outcome.succeeded
    # The second batch repeats the first and is dropped.
    assert [scene.description for scene in outcome.scenes] == ["A quiet harbour at dawn"]


def test_http_client_raises_status_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = HttpGenerationClient("http://svc", client=http)
            await client.phase0(Job(id="x"))

    with pytest.raises(GenerationServiceError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.status_code == 429
    assert str(excinfo.value) == "HTTP 429: slow down"
