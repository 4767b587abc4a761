# ABOUTME: Bounded retry policy driven by explicit per-attempt result types
# ABOUTME: Wraps tenacity so transient failures back off and fatal ones stop immediately

"""
Retry control flow for sync items.

Each attempt returns a value instead of raising::

    Success(value)            done
    TransientFailure(error)   retry after exponential backoff
    FatalFailure(error)       stop now

``run_with_retry`` feeds attempts into ``tenacity.AsyncRetrying`` with a
result-based retry predicate, so exceptions are never used to steer the loop.
When the attempt budget runs out the last TransientFailure is returned as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential
from tenacity.stop import stop_base

from gitops_sync.errors import GitOpsError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from tenacity import RetryCallState

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Success:
    value: Any = None


@dataclass(frozen=True)
class TransientFailure:
    error: str


@dataclass(frozen=True)
class FatalFailure:
    error: str


AttemptResult = Success | TransientFailure | FatalFailure


def classify(error: GitOpsError) -> TransientFailure | FatalFailure:
    """Map a taxonomy error onto the attempt result it stands for."""
    if error.transient:
        return TransientFailure(str(error))
    return FatalFailure(str(error))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    backoff_min: float = 0.5
    backoff_max: float = 30.0
    multiplier: float = 1.0


@dataclass(frozen=True)
class RetryOutcome:
    result: AttemptResult
    attempts: int

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


class stop_when(stop_base):  # noqa: N801 - tenacity naming convention
    """Stop retrying once ``predicate()`` turns true (e.g. sync cancelled)."""

    def __init__(self, predicate: Callable[[], bool]) -> None:
        self._predicate = predicate

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self._predicate()


async def run_with_retry(
    attempt: Callable[[], Awaitable[AttemptResult]],
    policy: RetryPolicy,
    *,
    cancelled: Callable[[], bool] | None = None,
) -> RetryOutcome:
    """
    Run ``attempt`` until it succeeds, fails fatally, the budget runs out,
    or ``cancelled()`` becomes true.
    """
    attempts = 0

    async def _call() -> AttemptResult:
        nonlocal attempts
        attempts += 1
        return await attempt()

    stop = stop_after_attempt(policy.max_attempts)
    if cancelled is not None:
        stop = stop | stop_when(cancelled)

    retrying = AsyncRetrying(
        retry=retry_if_result(lambda r: isinstance(r, TransientFailure)),
        stop=stop,
        wait=wait_exponential(
            multiplier=policy.multiplier,
            min=policy.backoff_min,
            max=policy.backoff_max,
        ),
        retry_error_callback=lambda state: state.outcome.result() if state.outcome else None,
        before_sleep=lambda state: logger.debug(
            "Retrying after transient failure", attempt=state.attempt_number
        ),
    )
    result = await retrying(_call)
    return RetryOutcome(result=result, attempts=attempts)
