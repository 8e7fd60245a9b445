"""Pydantic models describing genguard runtime configuration."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DAY_SECONDS = 24 * 60 * 60


class Tier(str, Enum):
    """Classification of an external API credential."""

    FREE = "free"
    PAID = "paid"


class RetryConfig(BaseModel):
    """Backoff policy for calls to the generation service."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.2
    retryable_errors: list[Any] = Field(
        default_factory=list,
        description="Extra matchers: message fragments, exception classes or predicates.",
    )

    @model_validator(mode="after")
    def _validate_policy(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be within [0, 1]")
        return self


class RateLimitConfig(BaseModel):
    """Fixed window: at most ``limit`` requests per ``window_seconds``."""

    limit: int = 10
    window_seconds: float = 60.0

    @model_validator(mode="after")
    def _validate_window(self) -> "RateLimitConfig":
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        return self

    @property
    def rate(self) -> float:
        return self.limit / self.window_seconds


def _default_free_limits() -> dict[str, RateLimitConfig]:
    return {
        "prompt": RateLimitConfig(limit=5, window_seconds=60),
        "analyze": RateLimitConfig(limit=3, window_seconds=60),
        "generate": RateLimitConfig(limit=2, window_seconds=60),
        "verify_key": RateLimitConfig(limit=3, window_seconds=60),
    }


def _default_paid_limits() -> dict[str, RateLimitConfig]:
    return {
        "prompt": RateLimitConfig(limit=50, window_seconds=60),
        "analyze": RateLimitConfig(limit=30, window_seconds=60),
        "generate": RateLimitConfig(limit=20, window_seconds=60),
        "verify_key": RateLimitConfig(limit=10, window_seconds=60),
    }


class TierLimitTable(BaseModel):
    """Static (category, tier) -> rate limit lookup."""

    free: dict[str, RateLimitConfig] = Field(default_factory=_default_free_limits)
    paid: dict[str, RateLimitConfig] = Field(default_factory=_default_paid_limits)

    @model_validator(mode="after")
    def _validate_tiers(self) -> "TierLimitTable":
        if set(self.free) != set(self.paid):
            raise ValueError("free and paid tiers must define the same categories")
        for category, free_limit in self.free.items():
            paid_limit = self.paid[category]
            if paid_limit.limit < free_limit.limit or paid_limit.rate <= free_limit.rate:
                raise ValueError(f"paid tier must be more permissive than free for '{category}'")
        return self

    @property
    def categories(self) -> list[str]:
        return sorted(self.free)

    def lookup(self, category: str, tier: Tier | str) -> RateLimitConfig:
        table = self.paid if Tier(tier) is Tier.PAID else self.free
        try:
            return table[category]
        except KeyError as exc:
            raise KeyError(f"Unknown rate limit category: {category}") from exc


class AdmissionConfig(BaseModel):
    """Admission controller settings."""

    tiers: TierLimitTable = Field(default_factory=TierLimitTable)
    tier_idle_ttl: float = DAY_SECONDS
    sweep_interval: float = 60.0


class CheckpointConfig(BaseModel):
    prefix: str = "checkpoint:"
    ttl_seconds: float = 7 * DAY_SECONDS


class ResultCacheConfig(BaseModel):
    prefix: str = "results:"
    max_entries: int = 20
    ttl_seconds: float = 7 * DAY_SECONDS
    failed_ttl_seconds: float = 2 * DAY_SECONDS

    @field_validator("max_entries")
    @classmethod
    def _positive_capacity(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_entries must be >= 1")
        return value


class DeduplicationConfig(BaseModel):
    """Field weights and threshold for near-duplicate detection."""

    enabled: bool = True
    threshold: float = 0.75
    description_weight: float = 0.6
    setting_weight: float = 0.15
    actor_weight: float = 0.15
    prop_weight: float = 0.10
    sentinels: list[str] = Field(
        default_factory=lambda: ["none", "n/a", "no characters", "no objects", "no props", "no one"]
    )

    @model_validator(mode="after")
    def _validate_weights(self) -> "DeduplicationConfig":
        if not 0 <= self.threshold <= 1:
            raise ValueError("threshold must be within [0, 1]")
        weights = (self.description_weight, self.setting_weight, self.actor_weight, self.prop_weight)
        if any(weight < 0 for weight in weights):
            raise ValueError("weights must be non-negative")
        if abs(sum(weights) - 1.0) > 1e-6:
            raise ValueError("weights must sum to 1.0")
        if self.description_weight < max(weights[1:]):
            raise ValueError("description_weight must be the dominant weight")
        return self


class GlobalConfig(BaseModel):
    """Top-level configuration persisted as YAML."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    admission: AdmissionConfig = Field(default_factory=AdmissionConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    result_cache: ResultCacheConfig = Field(default_factory=ResultCacheConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    store_path: Path = Field(default=Path("data/genguard.db"))
    generation_base_url: str | None = None
    generation_timeout: float = 60.0
    batch_delay: float = 0.0

    @field_validator("store_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_store_path(self, base_dir: Path) -> Path:
        """Return the key-value database path relative to the project root."""

        if not self.store_path.is_absolute():
            return (base_dir / self.store_path).resolve()
        return self.store_path


__all__ = [
    "AdmissionConfig",
    "CheckpointConfig",
    "DAY_SECONDS",
    "DeduplicationConfig",
    "GlobalConfig",
    "RateLimitConfig",
    "ResultCacheConfig",
    "RetryConfig",
    "Tier",
    "TierLimitTable",
]
