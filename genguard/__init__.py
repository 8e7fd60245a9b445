"""genguard: resilience layer for multi-phase content generation jobs."""

from .engine import (
    AdmissionController,
    CheckpointStore,
    ContentItem,
    DeduplicationEngine,
    ResultCache,
    ResultCacheEntry,
    RetryExecutor,
    build_retry_executor,
)
from .errors import ErrorKind, RetryCancelledError, classify_error
from .orchestrator import Job, JobRunner, JobStatus

__all__ = [
    "AdmissionController",
    "CheckpointStore",
    "ContentItem",
    "DeduplicationEngine",
    "ErrorKind",
    "Job",
    "JobRunner",
    "JobStatus",
    "ResultCache",
    "ResultCacheEntry",
    "RetryCancelledError",
    "RetryExecutor",
    "build_retry_executor",
    "classify_error",
]
