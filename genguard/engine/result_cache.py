"""Bounded, expiring cache of recent job results."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Callable

import structlog

from ..config import ResultCacheConfig
from ..infra.storage import KeyValueStore

_REQUIRED_FIELDS = ("id", "payload", "timestamp")


@dataclass(slots=True)
class ResultCacheEntry:
    id: str
    payload: Any
    timestamp: float
    parent_id: str | None = None
    expires_at: float | None = None

    def deadline(self, ttl_seconds: float) -> float:
        limit = self.timestamp + ttl_seconds
        if self.expires_at is not None:
            return min(limit, self.expires_at)
        return limit

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Any) -> "ResultCacheEntry | None":
        """Build an entry, or return ``None`` when required fields are missing."""

        if not isinstance(data, dict) or any(name not in data for name in _REQUIRED_FIELDS):
            return None
        timestamp = data["timestamp"]
        expires_at = data.get("expires_at")
        if not isinstance(data["id"], str) or not isinstance(timestamp, (int, float)):
            return None
        if expires_at is not None and not isinstance(expires_at, (int, float)):
            return None
        parent_id = data.get("parent_id")
        return cls(
            id=data["id"],
            payload=data["payload"],
            timestamp=float(timestamp),
            parent_id=str(parent_id) if parent_id is not None else None,
            expires_at=float(expires_at) if expires_at is not None else None,
        )


class ResultCache:
    """Keep at most ``max_entries`` live results, newest first.

    The key-value collaborator cannot enumerate keys, so the cache maintains
    its own id index. The index key sits outside the entry namespace, so no
    entry id can overwrite it. Among equal timestamps the later insert counts
    as newer.
    """

    INDEX_SUFFIX = "#index"

    def __init__(
        self,
        store: KeyValueStore,
        *,
        prefix: str = "results:",
        max_entries: int = 20,
        ttl_seconds: float = ResultCacheConfig().ttl_seconds,
        clock: Callable[[], float] = time.time,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.store = store
        self.prefix = prefix
        self.index_key = f"{prefix.rstrip(':/')}{self.INDEX_SUFFIX}"
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self.logger = logger or structlog.get_logger("genguard.result_cache")

    @classmethod
    def from_config(cls, store: KeyValueStore, config: ResultCacheConfig, **kwargs: Any) -> "ResultCache":
        return cls(
            store,
            prefix=config.prefix,
            max_entries=config.max_entries,
            ttl_seconds=config.ttl_seconds,
            **kwargs,
        )

    # ---- internals ------------------------------------------------------------

    def _key(self, entry_id: str) -> str:
        return f"{self.prefix}{entry_id}"

    def _read_index(self) -> list[str]:
        raw = self.store.get(self.index_key)
        if raw is None:
            return []
        try:
            ids = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            self.logger.warning("result_index_corrupt")
            return []
        if not isinstance(ids, list):
            self.logger.warning("result_index_corrupt")
            return []
        return [value for value in ids if isinstance(value, str)]

    def _write_index(self, ids: list[str]) -> None:
        self.store.set(self.index_key, json.dumps(ids).encode("utf-8"))

    def _read_entry(self, entry_id: str) -> ResultCacheEntry | None:
        raw = self.store.get(self._key(entry_id))
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, ValueError):
            data = None
        entry = ResultCacheEntry.from_mapping(data)
        if entry is None:
            self.logger.warning("result_entry_corrupt", entry_id=entry_id)
        return entry

    def _live_entries(self) -> list[ResultCacheEntry]:
        """Return live entries newest first, purging dead ones. Caller holds the lock."""

        now = self._clock()
        ids = self._read_index()
        live: list[ResultCacheEntry] = []
        dead: list[str] = []
        for entry_id in ids:
            entry = self._read_entry(entry_id)
            if entry is None or now >= entry.deadline(self.ttl_seconds):
                dead.append(entry_id)
                continue
            live.append(entry)
        if dead:
            for entry_id in dead:
                self.store.delete(self._key(entry_id))
            self._write_index([entry.id for entry in live])
            self.logger.debug("result_cache_purged", removed=len(dead))
        # Index order is insertion order; it breaks timestamp ties.
        ranked = sorted(enumerate(live), key=lambda pair: (pair[1].timestamp, pair[0]), reverse=True)
        return [entry for _, entry in ranked]

    # ---- public API -------------------------------------------------------------

    def list(self) -> list[ResultCacheEntry]:
        with self._lock:
            return self._live_entries()

    def list_for_parent(self, parent_id: str) -> list[ResultCacheEntry]:
        return [entry for entry in self.list() if entry.parent_id == parent_id]

    def get(self, entry_id: str) -> ResultCacheEntry | None:
        with self._lock:
            entry = self._read_entry(entry_id)
            if entry is None:
                return None
            if self._clock() >= entry.deadline(self.ttl_seconds):
                self._remove(entry_id)
                return None
            return entry

    def put(self, entry: ResultCacheEntry) -> None:
        if self._key(entry.id) == self.index_key:
            raise ValueError(f"entry id {entry.id!r} collides with the result index key")
        with self._lock:
            self.store.set(self._key(entry.id), json.dumps(entry.to_mapping(), default=str).encode("utf-8"))
            ids = [value for value in self._read_index() if value != entry.id]
            ids.append(entry.id)
            self._write_index(ids)
            live = self._live_entries()
            evicted = live[self.max_entries :]
            for stale in evicted:
                self.store.delete(self._key(stale.id))
            if evicted:
                dropped = {item.id for item in evicted}
                self._write_index([value for value in self._read_index() if value not in dropped])
                self.logger.info(
                    "result_cache_evicted",
                    evicted=[item.id for item in evicted],
                    max_entries=self.max_entries,
                )

    def delete(self, entry_id: str) -> None:
        with self._lock:
            self._remove(entry_id)

    def _remove(self, entry_id: str) -> None:
        self.store.delete(self._key(entry_id))
        ids = self._read_index()
        if entry_id in ids:
            ids.remove(entry_id)
            self._write_index(ids)

    def clear(self) -> int:
        with self._lock:
            ids = self._read_index()
            for entry_id in ids:
                self.store.delete(self._key(entry_id))
            self.store.delete(self.index_key)
        self.logger.info("result_cache_cleared", removed=len(ids))
        return len(ids)

    def purge_expired(self) -> int:
        """Drop expired and corrupt entries; return how many live entries remain."""

        with self._lock:
            return len(self._live_entries())


__all__ = ["ResultCacheEntry", "ResultCache"]
