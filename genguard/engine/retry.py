"""Classification-driven retry with capped exponential backoff."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import structlog

from ..config import RetryConfig
from ..errors import RetryCancelledError, error_text, is_transient

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryCallback = Callable[[int, BaseException, float], None]
Sleeper = Callable[[float], Awaitable[Any]]


def compute_backoff(
    attempt: int, initial_delay: float, max_delay: float, multiplier: float
) -> float:
    """Delay before retry number ``attempt`` (1-based), without jitter."""

    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return min(initial_delay * multiplier ** (attempt - 1), max_delay)


def apply_jitter(delay: float, ratio: float, rng: random.Random) -> float:
    """Add up to ``ratio * delay`` on top of ``delay``."""

    if ratio <= 0 or delay <= 0:
        return delay
    return delay + rng.uniform(0, delay * ratio)


def matches_any(exc: BaseException, matchers: Iterable[Any]) -> bool:
    text = error_text(exc)
    for matcher in matchers:
        if isinstance(matcher, str):
            if matcher.lower() in text:
                return True
        elif isinstance(matcher, type) and issubclass(matcher, BaseException):
            if isinstance(exc, matcher):
                return True
        elif callable(matcher) and matcher(exc):
            return True
    return False


def is_retryable(exc: BaseException, matchers: Iterable[Any] = ()) -> bool:
    if isinstance(exc, RetryCancelledError):
        return False
    return matches_any(exc, matchers) or is_transient(exc)


class RetryExecutor:
    """Run one fallible async operation until it succeeds or must give up."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: Sleeper = asyncio.sleep,
        rng: random.Random | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.logger = logger or structlog.get_logger("genguard.retry")

    def resolve(self, config: RetryConfig | None = None, **overrides: Any) -> RetryConfig:
        base = config or self.config
        if not overrides:
            return base
        return RetryConfig.model_validate({**dict(base), **overrides})

    async def execute(
        self,
        operation: Operation[T],
        config: RetryConfig | None = None,
        *,
        on_retry: RetryCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        **overrides: Any,
    ) -> T:
        policy = self.resolve(config, **overrides)
        last_error: BaseException | None = None
        for attempt in range(1, policy.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise RetryCancelledError(attempt - 1, last_error)
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                if attempt >= policy.max_attempts or not is_retryable(exc, policy.retryable_errors):
                    self.logger.warning(
                        "retry_giving_up",
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        error=str(exc),
                    )
                    raise
                delay = apply_jitter(
                    compute_backoff(
                        attempt, policy.initial_delay, policy.max_delay, policy.backoff_multiplier
                    ),
                    policy.jitter_ratio,
                    self._rng,
                )
                if cancel_event is not None and cancel_event.is_set():
                    raise RetryCancelledError(attempt, exc) from exc
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                self.logger.warning(
                    "retry_scheduled",
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay=round(delay, 3),
                    error=str(exc),
                )
                await self._wait(delay, cancel_event, attempt, exc)
        # max_attempts >= 1 so the loop either returned or raised.
        raise RuntimeError("retry loop exited without result")  # pragma: no cover

    async def _wait(
        self,
        delay: float,
        cancel_event: asyncio.Event | None,
        attempt: int,
        error: BaseException,
    ) -> None:
        if cancel_event is None:
            await self._sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RetryCancelledError(attempt, error) from error


def build_retry_executor(
    config: RetryConfig | None = None,
    *,
    sleep: Sleeper = asyncio.sleep,
    rng: random.Random | None = None,
    logger: structlog.BoundLogger | None = None,
    **overrides: Any,
) -> RetryExecutor:
    """Return an executor whose defaults are ``config`` patched by ``overrides``."""

    base = config or RetryConfig()
    if overrides:
        base = RetryConfig.model_validate({**dict(base), **overrides})
    return RetryExecutor(base, sleep=sleep, rng=rng, logger=logger)


__all__ = [
    "RetryExecutor",
    "apply_jitter",
    "build_retry_executor",
    "compute_backoff",
    "is_retryable",
    "matches_any",
]
