"""
Retry with exponential backoff for model calls.

Only transient failures (network errors, rate limits, timeouts) are retried.
The delay before retry ``n`` (0-based) is::

    min(max_delay, base_delay * 2 ** n) * uniform(1 - jitter, 1 + jitter)

raised to the provider's ``retry_after`` when that is longer.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from ..config import AgentConfig
from ..errors import (
    ErrorKind,
    ModelCallError,
    OperationCancelled,
    classify_exception,
)

logger = structlog.get_logger()

T = TypeVar("T")

RetryHook = Callable[[int, float, ModelCallError], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. ``max_retries`` is the attempt ceiling per call."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter_factor: float = 0.2

    @classmethod
    def from_config(cls, config: AgentConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter_factor=config.jitter_factor,
        )

    def backoff_bounds(self, attempt: int) -> tuple[float, float]:
        """Smallest and largest jittered delay for retry ``attempt``."""
        capped = min(self.max_delay, self.base_delay * (2 ** attempt))
        return capped * (1 - self.jitter_factor), capped * (1 + self.jitter_factor)

    def compute_delay(
        self,
        attempt: int,
        rng: random.Random | None = None,
        retry_after: float | None = None,
    ) -> float:
        low, high = self.backoff_bounds(attempt)
        delay = (rng or random).uniform(low, high)
        if retry_after is not None and retry_after > delay:
            delay = retry_after
        return max(0.0, delay)


def _as_model_error(exc: Exception) -> ModelCallError:
    if isinstance(exc, ModelCallError):
        return exc
    return ModelCallError(classify_exception(exc), str(exc) or type(exc).__name__)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: random.Random | None = None,
    on_retry: RetryHook | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails permanently or runs out of attempts.

    Raises the original ``ModelCallError`` for non-transient failures and a
    ``RETRIES_EXHAUSTED`` error (with the last kind in ``details``) once
    ``policy.max_retries`` attempts have failed.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except (OperationCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            error = _as_model_error(e)
            if not error.transient:
                if error is e:
                    raise
                raise error from e

            attempt += 1
            if attempt >= policy.max_retries:
                exhausted = ModelCallError(
                    ErrorKind.RETRIES_EXHAUSTED,
                    f"Model call failed after {attempt} attempts: {error.message}",
                    status_code=error.status_code,
                    provider=error.details.get("provider"),
                )
                exhausted.details["last_kind"] = error.kind.value
                exhausted.details["attempts"] = attempt
                logger.error("Model call retries exhausted", attempts=attempt, kind=error.kind.value)
                raise exhausted from e

            delay = policy.compute_delay(attempt - 1, rng=rng, retry_after=error.retry_after)
            logger.warning(
                "Transient model call failure, retrying",
                attempt=attempt,
                max_attempts=policy.max_retries,
                delay=round(delay, 3),
                kind=error.kind.value,
                error=error.message,
            )
            if on_retry:
                on_retry(attempt, delay, error)
            await sleep(delay)
