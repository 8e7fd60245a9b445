"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    DAY_SECONDS,
    AdmissionConfig,
    CheckpointConfig,
    DeduplicationConfig,
    GlobalConfig,
    RateLimitConfig,
    ResultCacheConfig,
    RetryConfig,
    Tier,
    TierLimitTable,
)

__all__ = [
    "DAY_SECONDS",
    "AdmissionConfig",
    "CheckpointConfig",
    "ConfigLocator",
    "ConfigRepository",
    "DeduplicationConfig",
    "GlobalConfig",
    "RateLimitConfig",
    "ResultCacheConfig",
    "RetryConfig",
    "Tier",
    "TierLimitTable",
]
