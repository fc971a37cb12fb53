"""Retry policy shared by the persistence and provider boundaries."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from finance_bot.errors import StorageBackpressure

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Retrying {} after attempt {} failed: {}",
        getattr(state.fn, "__qualname__", state.fn),
        state.attempt_number,
        exc,
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    min_wait: float = 0.5
    max_wait: float = 8.0
    multiplier: float = 0.5
    retryable: Callable[[BaseException], bool] = field(
        default=lambda exc: isinstance(exc, StorageBackpressure)
    )

    @classmethod
    def storage(cls) -> "RetryPolicy":
        return cls(max_attempts=4, min_wait=0.5, max_wait=8.0)

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def _kwargs(self) -> dict:
        return {
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_exponential(
                multiplier=self.multiplier, min=self.min_wait, max=self.max_wait
            ),
            "retry": retry_if_exception(self.retryable),
            "before_sleep": _log_retry,
            "reraise": True,
        }

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return Retrying(**self._kwargs())(fn, *args, **kwargs)

    async def acall(
        self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        return await AsyncRetrying(**self._kwargs())(fn, *args, **kwargs)
