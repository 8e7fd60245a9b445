"""Fixed-window admission control with free/paid credential tiers."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, MutableMapping

import structlog

from ..config import DAY_SECONDS, RateLimitConfig, Tier, TierLimitTable
from .locks import KeyedLock

Clock = Callable[[], float]


@dataclass(slots=True)
class RateLimitWindow:
    identifier: str
    count: int
    reset_time: float

    def expired(self, now: float) -> bool:
        return now >= self.reset_time


@dataclass(slots=True)
class AdmissionResult:
    """Outcome of one admission check; a denial signals backpressure."""

    success: bool
    remaining: int
    reset_time: float
    tier: Tier | None = None

    def retry_after(self, now: float | None = None) -> float:
        """Seconds until the current window resets (0 when allowed)."""

        if self.success:
            return 0.0
        current = time.time() if now is None else now
        return max(0.0, self.reset_time - current)


@dataclass(slots=True)
class ApiKeyTierRecord:
    key_hash: str
    tier: Tier
    detected_at: float
    last_checked: float


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class TierRegistry:
    """Remember which tier each credential belongs to, keyed by its hash."""

    def __init__(
        self,
        records: MutableMapping[str, ApiKeyTierRecord] | None = None,
        *,
        idle_ttl: float = DAY_SECONDS,
        clock: Clock = time.time,
        locks: KeyedLock | None = None,
    ) -> None:
        self.records = records if records is not None else {}
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._locks = locks or KeyedLock()

    def detect(self, api_key: str, explicit: Tier | str | None = None) -> Tier:
        """Explicit tier wins and is cached; else cached; else FREE."""

        if explicit is not None:
            return self.set(api_key, explicit)
        key_hash = hash_api_key(api_key)
        now = self._clock()
        with self._locks.hold(key_hash):
            record = self.records.get(key_hash)
            if record is None:
                return Tier.FREE
            record.last_checked = now
            return record.tier

    def set(self, api_key: str, tier: Tier | str) -> Tier:
        resolved = Tier(tier)
        key_hash = hash_api_key(api_key)
        now = self._clock()
        with self._locks.hold(key_hash):
            self.records[key_hash] = ApiKeyTierRecord(
                key_hash=key_hash, tier=resolved, detected_at=now, last_checked=now
            )
        return resolved

    def get(self, api_key: str) -> ApiKeyTierRecord | None:
        return self.records.get(hash_api_key(api_key))

    def sweep(self) -> int:
        now = self._clock()
        removed = 0
        for key_hash in list(self.records):
            with self._locks.hold(key_hash):
                record = self.records.get(key_hash)
                if record is not None and now - record.last_checked > self.idle_ttl:
                    del self.records[key_hash]
                    removed += 1
        return removed


class AdmissionController:
    """Per-identifier fixed-window request gate.

    Windows live in an injected mapping so a shared store can replace the
    default in-process dict without touching callers.
    """

    def __init__(
        self,
        windows: MutableMapping[str, RateLimitWindow] | None = None,
        *,
        tiers: TierRegistry | None = None,
        limits: TierLimitTable | None = None,
        clock: Clock = time.time,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.windows = windows if windows is not None else {}
        self._clock = clock
        self.tiers = tiers or TierRegistry(clock=clock)
        self.limits = limits or TierLimitTable()
        self._locks = KeyedLock()
        self.logger = logger or structlog.get_logger("genguard.admission")

    def check(
        self,
        identifier: str,
        config: RateLimitConfig | None = None,
        tier: Tier | str | None = None,
    ) -> AdmissionResult:
        config = config or RateLimitConfig()
        resolved_tier = Tier(tier) if tier is not None else None
        with self._locks.hold(identifier):
            now = self._clock()
            window = self.windows.get(identifier)
            if window is None or window.expired(now):
                window = RateLimitWindow(
                    identifier=identifier, count=1, reset_time=now + config.window_seconds
                )
                self.windows[identifier] = window
                return AdmissionResult(True, config.limit - 1, window.reset_time, resolved_tier)
            if window.count < config.limit:
                window.count += 1
                # Injected mappings may hand out copies.
                self.windows[identifier] = window
                return AdmissionResult(
                    True, config.limit - window.count, window.reset_time, resolved_tier
                )
            reset_time = window.reset_time
        self.logger.info(
            "admission_denied",
            identifier=identifier,
            limit=config.limit,
            tier=resolved_tier.value if resolved_tier else None,
            retry_after=round(max(0.0, reset_time - now), 3),
        )
        return AdmissionResult(False, 0, reset_time, resolved_tier)

    def check_category(
        self,
        identifier: str,
        category: str,
        *,
        api_key: str | None = None,
        tier: Tier | str | None = None,
    ) -> AdmissionResult:
        """Resolve the caller's tier, then gate against that tier's limits."""

        if api_key is not None:
            resolved = self.tiers.detect(api_key, tier)
        elif tier is not None:
            resolved = Tier(tier)
        else:
            resolved = Tier.FREE
        config = self.limits.lookup(category, resolved)
        return self.check(f"{category}:{identifier}", config, resolved)

    def reset(self, identifier: str) -> None:
        with self._locks.hold(identifier):
            self.windows.pop(identifier, None)

    def sweep(self) -> int:
        """Drop expired windows and idle tier records; return windows removed."""

        now = self._clock()
        removed = 0
        for identifier in list(self.windows):
            with self._locks.hold(identifier):
                window = self.windows.get(identifier)
                if window is not None and window.expired(now):
                    del self.windows[identifier]
                    removed += 1
        stale_tiers = self.tiers.sweep()
        if removed or stale_tiers:
            self.logger.debug("admission_sweep", windows=removed, tiers=stale_tiers)
        return removed


__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "ApiKeyTierRecord",
    "RateLimitWindow",
    "TierRegistry",
    "hash_api_key",
]
