"""Resilience engine components."""

from .admission import AdmissionController, AdmissionResult, ApiKeyTierRecord, RateLimitWindow, TierRegistry
from .checkpoint import CheckpointStore, ResumeData
from .dedup import ContentItem, DeduplicationEngine, DeduplicationResult, DeduplicationStats, SimilarityPair
from .generation import GenerationService, HttpGenerationClient
from .locks import KeyedLock
from .result_cache import ResultCache, ResultCacheEntry
from .retry import RetryExecutor, apply_jitter, build_retry_executor, compute_backoff

__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "ApiKeyTierRecord",
    "CheckpointStore",
    "ContentItem",
    "DeduplicationEngine",
    "DeduplicationResult",
    "DeduplicationStats",
    "GenerationService",
    "HttpGenerationClient",
    "KeyedLock",
    "RateLimitWindow",
    "ResultCache",
    "ResultCacheEntry",
    "ResumeData",
    "RetryExecutor",
    "SimilarityPair",
    "TierRegistry",
    "apply_jitter",
    "build_retry_executor",
    "compute_backoff",
]
