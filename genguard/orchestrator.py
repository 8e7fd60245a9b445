"""Job runner wiring retry, admission, checkpoints, dedup and the result cache."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable

import structlog

from .config import DAY_SECONDS, GlobalConfig, Tier
from .engine import (
    AdmissionController,
    CheckpointStore,
    ContentItem,
    DeduplicationEngine,
    DeduplicationStats,
    GenerationService,
    ResultCache,
    ResultCacheEntry,
    RetryExecutor,
    TierRegistry,
)
from .errors import AdmissionDeniedError, ErrorKind, RetryCancelledError, classify_error
from .infra import KeyValueStore
from .logging_conf import component_logger, job_logger


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Job:
    id: str
    workflow_mode: str = "default"
    total_batches: int = 1
    status: JobStatus = JobStatus.PENDING
    completed_batches: int = 0
    last_updated: float = 0.0
    last_error: str | None = None
    retryable: bool = False
    parent_id: str | None = None
    api_key: str | None = field(default=None, repr=False)
    tier: Tier | None = None

    @property
    def identifier(self) -> str:
        """Stable admission identifier for this job's owner."""

        return self.parent_id or self.id

    def settings(self) -> dict[str, Any]:
        return {"workflow_mode": self.workflow_mode, "total_batches": self.total_batches}


@dataclass(slots=True)
class RunOutcome:
    job: Job
    scenes: list[ContentItem] = field(default_factory=list)
    registry: dict[str, str] = field(default_factory=dict)
    dedup: DeduplicationStats | None = None
    admitted: bool = True
    retry_after: float = 0.0
    resumed: bool = False
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.job.status is JobStatus.COMPLETED


class JobRunner:
    """Drive a job through phase0, phase1 and the phase2 batches.

    Completed phases are read back from checkpoints so a rerun resumes at the
    first missing batch. Every service call goes through the retry executor.
    """

    ADMISSION_CATEGORY = "generate"

    def __init__(
        self,
        service: GenerationService,
        *,
        checkpoints: CheckpointStore,
        results: ResultCache,
        admission: AdmissionController | None = None,
        dedup: DeduplicationEngine | None = None,
        retry: RetryExecutor | None = None,
        failed_ttl_seconds: float = 2 * DAY_SECONDS,
        batch_delay: float = 0.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.service = service
        self.checkpoints = checkpoints
        self.results = results
        self.admission = admission or AdmissionController(clock=clock)
        self.dedup = dedup or DeduplicationEngine()
        self.retry = retry or RetryExecutor()
        self.failed_ttl_seconds = failed_ttl_seconds
        self.batch_delay = batch_delay
        self._clock = clock
        self._sleep = sleep
        self.logger = logger or component_logger("orchestrator")

    @classmethod
    def from_config(
        cls,
        config: GlobalConfig,
        service: GenerationService,
        store: KeyValueStore,
        **kwargs: Any,
    ) -> "JobRunner":
        clock = kwargs.pop("clock", time.time)
        admission = AdmissionController(
            tiers=TierRegistry(idle_ttl=config.admission.tier_idle_ttl, clock=clock),
            limits=config.admission.tiers,
            clock=clock,
        )
        return cls(
            service,
            checkpoints=CheckpointStore.from_config(store, config.checkpoint, clock=clock),
            results=ResultCache.from_config(store, config.result_cache, clock=clock),
            admission=admission,
            dedup=DeduplicationEngine(config.deduplication),
            retry=RetryExecutor(config.retry),
            failed_ttl_seconds=config.result_cache.failed_ttl_seconds,
            batch_delay=config.batch_delay,
            clock=clock,
            **kwargs,
        )

    # ------------------------------------------------------------------
    def admit(self, job: Job) -> None:
        """Raise :class:`AdmissionDeniedError` when the job's owner is over its limit."""

        result = self.admission.check_category(
            job.identifier, self.ADMISSION_CATEGORY, api_key=job.api_key, tier=job.tier
        )
        if not result.success:
            tier = result.tier.value if result.tier else None
            raise AdmissionDeniedError(job.identifier, result.retry_after(self._clock()), tier)

    async def run(self, job: Job, *, cancel_event: asyncio.Event | None = None) -> RunOutcome:
        log = job_logger(job.id, self.logger)
        try:
            self.admit(job)
        except AdmissionDeniedError as exc:
            job.last_error = str(exc)
            job.retryable = True
            job.last_updated = self._clock()
            log.info("job_deferred", retry_after=round(exc.retry_after, 3))
            return RunOutcome(job=job, admitted=False, retry_after=exc.retry_after, error=exc)

        resume = self.checkpoints.reconstruct(job.id)
        outcome = RunOutcome(job=job, resumed=resume is not None)
        job.status = JobStatus.IN_PROGRESS
        job.last_error = None
        job.retryable = False
        job.last_updated = self._clock()
        log.info("job_started", resumed=outcome.resumed, total_batches=job.total_batches)

        try:
            await self._run_phases(job, resume, outcome, cancel_event, log)
        except RetryCancelledError as exc:
            self._cancel(job, exc, outcome, log)
            return outcome
        except Exception as exc:  # noqa: BLE001
            self._fail(job, exc, outcome, log)
            return outcome

        final = self.checkpoints.reconstruct(job.id)
        if final is not None:
            outcome.scenes = final.scenes
            outcome.registry = final.registry
        job.status = JobStatus.COMPLETED
        job.last_updated = self._clock()
        self.results.put(
            ResultCacheEntry(
                id=job.id,
                parent_id=job.parent_id,
                payload={
                    "status": job.status.value,
                    "workflow_mode": job.workflow_mode,
                    "scenes": [scene.to_mapping() for scene in outcome.scenes],
                    "registry": outcome.registry,
                },
                timestamp=job.last_updated,
            )
        )
        self.checkpoints.clear(job.id)
        log.info("job_completed", scenes=len(outcome.scenes), batches=job.completed_batches)
        return outcome

    async def _run_phases(
        self,
        job: Job,
        resume: Any,
        outcome: RunOutcome,
        cancel_event: asyncio.Event | None,
        log: structlog.BoundLogger,
    ) -> None:
        settings = job.settings()

        if resume is not None and resume.has_phase0:
            profile = resume.profile
        else:
            data = await self._call(partial(self.service.phase0, job), cancel_event, job, "phase0")
            profile = data.get("profile")
            self.checkpoints.record_phase0(
                job.id, profile, float(data.get("confidence", 0.0)), settings=settings
            )

        if resume is not None and resume.has_phase1:
            entities, background = resume.entities, resume.background
            phase1_registry = dict(resume.phase1_registry)
        else:
            data = await self._call(
                partial(self.service.phase1, job, profile), cancel_event, job, "phase1"
            )
            entities, background = data.get("entities"), data.get("background")
            phase1_registry = dict(data.get("registry") or {})
            self.checkpoints.record_phase1(
                job.id, entities, background, phase1_registry, settings=settings
            )

        scenes: list[ContentItem] = list(resume.scenes) if resume is not None else []
        registry: dict[str, str] = dict(resume.registry) if resume is not None else {}
        registry.update(phase1_registry)
        done = set(resume.batch_indices) if resume is not None else set()
        job.completed_batches = len(done)
        unique_total = duplicate_total = 0
        similarity_sum = 0.0
        similarity_count = 0

        pending = [index for index in range(job.total_batches) if index not in done]
        for position, batch_index in enumerate(pending):
            if cancel_event is not None and cancel_event.is_set():
                raise RetryCancelledError(0)
            context = {
                "profile": profile,
                "entities": entities,
                "background": background,
                "registry": dict(registry),
                "scene_count": len(scenes),
            }
            data = await self._call(
                partial(self.service.phase2, job, batch_index, context),
                cancel_event,
                job,
                "phase2",
            )
            items = [
                ContentItem.from_mapping(raw) for raw in data.get("items") or [] if isinstance(raw, dict)
            ]
            result = self.dedup.deduplicate(scenes, items)
            stats = result.stats()
            unique_total += stats.unique_count
            duplicate_total += stats.duplicate_count
            similarity_sum += sum(pair.similarity for pair in result.similarities)
            similarity_count += len(result.similarities)
            scenes.extend(result.unique)

            delta = dict(data.get("registry") or {})
            self.checkpoints.record_phase2_batch(
                job.id, batch_index, result.unique, delta, settings=settings
            )
            registry.update(delta)
            registry.update(phase1_registry)
            done.add(batch_index)
            job.completed_batches = len(done)
            job.last_updated = self._clock()
            log.info(
                "batch_completed",
                batch_index=batch_index,
                unique=stats.unique_count,
                duplicates=stats.duplicate_count,
            )
            if self.batch_delay > 0 and position < len(pending) - 1:
                await self._sleep(self.batch_delay)

        processed = unique_total + duplicate_total
        outcome.dedup = DeduplicationStats(
            total_processed=processed,
            unique_count=unique_total,
            duplicate_count=duplicate_total,
            removal_rate=duplicate_total / processed if processed else 0.0,
            average_similarity=similarity_sum / similarity_count if similarity_count else 0.0,
        )

    async def _call(
        self,
        operation: Callable[[], Awaitable[dict[str, Any]]],
        cancel_event: asyncio.Event | None,
        job: Job,
        phase: str,
    ) -> dict[str, Any]:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            job.last_error = str(error)
            job.last_updated = self._clock()

        data = await self.retry.execute(operation, on_retry=on_retry, cancel_event=cancel_event)
        if not isinstance(data, dict):
            raise TypeError(f"{phase} returned {type(data).__name__}, expected dict")
        return data

    def _cancel(
        self, job: Job, exc: RetryCancelledError, outcome: RunOutcome, log: structlog.BoundLogger
    ) -> None:
        # Checkpoints stay so the next run resumes; nothing goes to the result cache.
        job.status = JobStatus.PENDING
        job.last_error = str(exc) or type(exc).__name__
        job.retryable = True
        job.last_updated = self._clock()
        outcome.error = exc
        log.info("job_cancelled", completed_batches=job.completed_batches)

    def _fail(
        self, job: Job, exc: BaseException, outcome: RunOutcome, log: structlog.BoundLogger
    ) -> None:
        kind = classify_error(exc)
        job.status = JobStatus.FAILED
        job.last_error = str(exc) or type(exc).__name__
        job.retryable = kind is not ErrorKind.FATAL
        job.last_updated = self._clock()
        outcome.error = exc
        self.results.put(
            ResultCacheEntry(
                id=job.id,
                parent_id=job.parent_id,
                payload={
                    "status": job.status.value,
                    "workflow_mode": job.workflow_mode,
                    "error": job.last_error,
                    "retryable": job.retryable,
                    "completed_batches": job.completed_batches,
                },
                timestamp=job.last_updated,
                expires_at=job.last_updated + self.failed_ttl_seconds,
            )
        )
        log.error(
            "job_failed",
            error=job.last_error,
            kind=kind.value,
            completed_batches=job.completed_batches,
        )


__all__ = ["Job", "JobRunner", "JobStatus", "RunOutcome"]
