"""Per-job phase checkpoints persisted through a key-value collaborator."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

import structlog

from ..config import CheckpointConfig
from ..infra.storage import KeyValueStore
from .dedup import ContentItem
from .locks import KeyedLock


@dataclass(slots=True)
class ResumeData:
    """Everything needed to continue an interrupted job."""

    job_id: str
    scenes: list[ContentItem] = field(default_factory=list)
    completed_batches: int = 0
    batch_indices: list[int] = field(default_factory=list)
    registry: dict[str, str] = field(default_factory=dict)
    phase1_registry: dict[str, str] = field(default_factory=dict)
    profile: Any = None
    confidence: float | None = None
    entities: Any = None
    background: Any = None
    settings: dict[str, Any] = field(default_factory=dict)
    updated_at: float = 0.0
    has_phase0: bool = False
    has_phase1: bool = False

    def next_batch(self) -> int:
        """Smallest batch index not yet recorded."""

        done = set(self.batch_indices)
        index = 0
        while index in done:
            index += 1
        return index


class CheckpointStore:
    """Record phase outputs so a crashed job can resume where it stopped.

    One JSON document per job lives under ``<prefix><job_id>``. Every write is
    a read-modify-write under that job's lock, so concurrent batch records for
    the same job never lose each other.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        prefix: str = "checkpoint:",
        ttl_seconds: float = CheckpointConfig().ttl_seconds,
        clock: Callable[[], float] = time.time,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._locks = KeyedLock()
        self.logger = logger or structlog.get_logger("genguard.checkpoint")

    @classmethod
    def from_config(cls, store: KeyValueStore, config: CheckpointConfig, **kwargs: Any) -> "CheckpointStore":
        return cls(store, prefix=config.prefix, ttl_seconds=config.ttl_seconds, **kwargs)

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    # ---- document io --------------------------------------------------------

    def _load(self, job_id: str) -> dict[str, Any] | None:
        raw = self.store.get(self._key(job_id))
        if raw is None:
            return None
        try:
            document = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            document = None
        if not isinstance(document, dict):
            self.logger.warning("checkpoint_corrupt", job_id=job_id)
            return None
        updated_at = document.get("updated_at", 0)
        if not isinstance(updated_at, (int, float)):
            self.logger.warning("checkpoint_corrupt", job_id=job_id, field="updated_at")
            return None
        if self._clock() - updated_at > self.ttl_seconds:
            self.store.delete(self._key(job_id))
            self.logger.info("checkpoint_expired", job_id=job_id)
            return None
        return document

    def _update(
        self,
        job_id: str,
        settings: Mapping[str, Any] | None,
        mutate: Callable[[dict[str, Any], float], None],
    ) -> None:
        with self._locks.hold(job_id):
            now = self._clock()
            document = self._load(job_id) or {
                "job_id": job_id,
                "created_at": now,
                "settings": {},
                "phase2_batches": {},
            }
            if settings and not document.get("settings"):
                document["settings"] = dict(settings)
            if not isinstance(document.get("phase2_batches"), dict):
                document["phase2_batches"] = {}
            mutate(document, now)
            document["updated_at"] = now
            self.store.set(self._key(job_id), json.dumps(document, default=str).encode("utf-8"))

    # ---- writers ------------------------------------------------------------

    def record_phase0(
        self,
        job_id: str,
        profile: Any,
        confidence: float,
        *,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        def mutate(document: dict[str, Any], now: float) -> None:
            document["phase0"] = {"profile": profile, "confidence": confidence, "created_at": now}

        self._update(job_id, settings, mutate)
        self.logger.debug("checkpoint_recorded", job_id=job_id, phase="phase0")

    def record_phase1(
        self,
        job_id: str,
        entities: Any,
        background: Any,
        registry_delta: Mapping[str, str],
        *,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        def mutate(document: dict[str, Any], now: float) -> None:
            document["phase1"] = {
                "entities": entities,
                "background": background,
                "registry": dict(registry_delta),
                "created_at": now,
            }

        self._update(job_id, settings, mutate)
        self.logger.debug("checkpoint_recorded", job_id=job_id, phase="phase1")

    def record_phase2_batch(
        self,
        job_id: str,
        batch_index: int,
        items: Iterable[ContentItem | Mapping[str, Any]],
        registry_delta: Mapping[str, str],
        *,
        settings: Mapping[str, Any] | None = None,
    ) -> None:
        if isinstance(batch_index, bool) or not isinstance(batch_index, int) or batch_index < 0:
            raise ValueError(f"batch_index must be a non-negative integer, got {batch_index!r}")
        payload = [
            item.to_mapping() if isinstance(item, ContentItem) else dict(item) for item in items
        ]

        def mutate(document: dict[str, Any], now: float) -> None:
            document["phase2_batches"][str(batch_index)] = {
                "items": payload,
                "registry": dict(registry_delta),
                "created_at": now,
            }

        self._update(job_id, settings, mutate)
        self.logger.debug(
            "checkpoint_recorded", job_id=job_id, phase="phase2", batch_index=batch_index
        )

    # ---- readers ------------------------------------------------------------

    def reconstruct(self, job_id: str) -> ResumeData | None:
        with self._locks.hold(job_id):
            document = self._load(job_id)
        if document is None:
            return None

        phase0 = document.get("phase0") if isinstance(document.get("phase0"), dict) else None
        phase1 = document.get("phase1") if isinstance(document.get("phase1"), dict) else None
        batches = _valid_batches(document.get("phase2_batches"))
        if phase0 is None and phase1 is None and not batches:
            return None

        settings = document.get("settings")
        resume = ResumeData(
            job_id=job_id,
            settings=dict(settings) if isinstance(settings, Mapping) else {},
            updated_at=float(document.get("updated_at", 0)),
        )
        if phase0 is not None:
            resume.has_phase0 = True
            resume.profile = phase0.get("profile")
            resume.confidence = phase0.get("confidence")

        registry: dict[str, str] = {}
        for index in sorted(batches):
            batch = batches[index]
            resume.batch_indices.append(index)
            items = batch.get("items")
            if isinstance(items, list):
                for item in items:
                    if isinstance(item, Mapping):
                        resume.scenes.append(ContentItem.from_mapping(item))
            elif items is not None:
                self.logger.warning("checkpoint_corrupt", job_id=job_id, field="items", batch_index=index)
            registry.update(self._registry(batch.get("registry"), job_id, f"phase2_batches.{index}"))
        resume.completed_batches = len(resume.batch_indices)

        if phase1 is not None:
            resume.has_phase1 = True
            resume.entities = phase1.get("entities")
            resume.background = phase1.get("background")
            resume.phase1_registry = self._registry(phase1.get("registry"), job_id, "phase1")
            registry.update(resume.phase1_registry)
        resume.registry = registry
        return resume

    def _registry(self, raw: Any, job_id: str, where: str) -> dict[str, str]:
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            self.logger.warning("checkpoint_corrupt", job_id=job_id, field=f"{where}.registry")
            return {}
        return dict(raw)

    def clear(self, job_id: str) -> None:
        with self._locks.hold(job_id):
            self.store.delete(self._key(job_id))
        self.logger.info("checkpoint_cleared", job_id=job_id)


def _valid_batches(raw: Any) -> dict[int, dict[str, Any]]:
    if not isinstance(raw, dict):
        return {}
    batches: dict[int, dict[str, Any]] = {}
    for key, value in raw.items():
        try:
            index = int(key)
        except (TypeError, ValueError):
            continue
        if index >= 0 and isinstance(value, dict):
            batches[index] = value
    return batches


__all__ = ["CheckpointStore", "ResumeData"]
