from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from ..contracts import GenerationFlowConfiguration
from ..errors import ItemTimeoutError, RetryableStageError, StageError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative stop flag for the retry loops of one dispatch round.

    Never reset: a new round gets a new token, so loops from an earlier round
    stay stopped.
    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff and a per-attempt timeout."""

    max_retries: int = 3
    retry_delay_ms: int = 1_000
    backoff_factor: float = 2.0
    max_delay_ms: int = 30_000
    attempt_timeout_ms: Optional[int] = None

    @classmethod
    def from_config(cls, config: GenerationFlowConfiguration) -> "RetryPolicy":
        return cls(
            max_retries=config.retry.max_retries,
            retry_delay_ms=config.retry.retry_delay_ms,
            backoff_factor=config.retry.backoff_factor,
            max_delay_ms=config.retry.max_delay_ms,
            attempt_timeout_ms=config.timeout.per_item,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


@dataclass
class RetryOutcome:
    """Result of :func:`run_with_retry`."""

    success: bool
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    errors: List[BaseException] = field(default_factory=list)
    cancelled: bool = False


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay in seconds before ``attempt`` (1-based; attempt 1 has none)."""
    if attempt < 2:
        return 0.0
    delay_ms = policy.retry_delay_ms * policy.backoff_factor ** (attempt - 2)
    return min(delay_ms, policy.max_delay_ms) / 1000


async def schedule_retry(attempt: int, policy: RetryPolicy) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, policy)
    if delay > 0:
        await asyncio.sleep(delay)


async def run_with_retry(
    operation: Callable[[int], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    token: Optional[CancellationToken] = None,
    label: str = "operation",
    stage: Optional[str] = None,
) -> RetryOutcome:
    """Run ``operation`` until it succeeds or the retry budget is spent.

    ``operation`` receives the 1-based attempt number. ``RetryableStageError``
    and per-attempt timeouts are retried; any other ``StageError`` ends the
    run after that attempt. A timeout on the final attempt is reported as
    ``ItemTimeoutError``. Errors that are not ``StageError`` propagate.
    """
    errors: List[BaseException] = []
    timeout = policy.attempt_timeout_ms / 1000 if policy.attempt_timeout_ms else None

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            if _stopped(token):
                return _cancelled(errors, attempt - 1)
            await schedule_retry(attempt, policy)
            if _stopped(token):
                return _cancelled(errors, attempt - 1)

        last = attempt == policy.max_attempts
        try:
            if timeout is None:
                value = await operation(attempt)
            else:
                value = await asyncio.wait_for(operation(attempt), timeout)
            return RetryOutcome(
                success=True, value=value, attempts=attempt, errors=errors
            )
        except asyncio.TimeoutError:
            message = (
                f"{label} timed out after {policy.attempt_timeout_ms}ms "
                f"on attempt {attempt}"
            )
            error: StageError = (
                ItemTimeoutError(message, stage=stage)
                if last
                else RetryableStageError(message, reason="timeout", stage=stage)
            )
            errors.append(error)
            if last:
                return RetryOutcome(
                    success=False, error=error, attempts=attempt, errors=errors
                )
            logger.warning(f"{label} attempt {attempt} timed out; retrying")
        except StageError as e:
            errors.append(e)
            if not e.retryable:
                logger.info(f"{label} failed fatally on attempt {attempt}: {e}")
                return RetryOutcome(
                    success=False, error=e, attempts=attempt, errors=errors
                )
            if last:
                return RetryOutcome(
                    success=False, error=e, attempts=attempt, errors=errors
                )
            logger.warning(f"{label} attempt {attempt} failed ({e.reason}): {e}")

    # max_attempts is at least 1, so the loop always returns.
    raise AssertionError("unreachable")


def _stopped(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.cancelled


def _cancelled(errors: List[BaseException], attempts: int) -> RetryOutcome:
    return RetryOutcome(
        success=False,
        error=errors[-1] if errors else None,
        attempts=attempts,
        errors=errors,
        cancelled=True,
    )
