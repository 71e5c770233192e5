"""Bounded retry with linear backoff for portal searches."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_base,
    stop_after_attempt,
    wait_incrementing,
)

from tollwatch.config import config
from tollwatch.errors import InputError, PortalStructureError, TerminalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PENDING = "pending"
SUCCESS = "success"
RETRYABLE_FAILURE = "retryable_failure"
TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = config.SEARCH_MAX_ATTEMPTS
    base_delay: float = config.SEARCH_BASE_DELAY
    # Layout errors may be a render glitch; retry them this many times at most
    structure_retry_limit: int = config.STRUCTURE_RETRY_LIMIT


@dataclass
class AcquisitionAttempt:
    """Ephemeral bookkeeping for one logical search; never persisted."""

    key: tuple
    started_at: float = field(default_factory=time.time)
    attempt_number: int = 0
    outcome: str = PENDING
    last_error: Optional[str] = None


def is_retryable(error: BaseException, attempt_number: int, policy: RetryPolicy) -> bool:
    """Classify a failed attempt."""
    if not isinstance(error, Exception):
        # Cancellation and interpreter exits
        return False
    if isinstance(error, InputError):
        return False
    if isinstance(error, PortalStructureError):
        return attempt_number <= policy.structure_retry_limit
    return True


class retry_if_retryable(retry_base):
    """tenacity retry strategy backed by is_retryable()."""

    def __init__(self, policy: RetryPolicy, attempt: Optional[AcquisitionAttempt] = None):
        self.policy = policy
        self.attempt = attempt

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        error = outcome.exception()
        retry = is_retryable(error, retry_state.attempt_number, self.policy)
        if self.attempt is not None:
            self.attempt.last_error = f"{type(error).__name__}: {error}"
            self.attempt.outcome = RETRYABLE_FAILURE if retry else TERMINAL_FAILURE
        return retry


def _log_before_sleep(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(
        f"Attempt {retry_state.attempt_number} failed ({type(error).__name__}: {error}); "
        f"retrying in {delay:.1f}s"
    )


async def with_retry(
    attempt_fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    attempt: Optional[AcquisitionAttempt] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run attempt_fn under the policy.
    InputError propagates unchanged; any other failure that ends the loop
    raises TerminalError carrying only the last underlying cause.
    """
    policy = policy or RetryPolicy()
    attempt = attempt or AcquisitionAttempt(key=())

    async def _tracked() -> T:
        attempt.attempt_number += 1
        attempt.outcome = PENDING
        logger.info(f"Attempt {attempt.attempt_number}/{policy.max_attempts} for {attempt.key}")
        result = await attempt_fn()
        attempt.outcome = SUCCESS
        return result

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_incrementing(start=policy.base_delay, increment=policy.base_delay),
        retry=retry_if_retryable(policy, attempt),
        before_sleep=_log_before_sleep,
        sleep=sleep,
    )
    try:
        return await retrying(_tracked)
    except RetryError as e:
        cause = e.last_attempt.exception()
    except InputError:
        attempt.outcome = TERMINAL_FAILURE
        raise
    except Exception as e:
        # Classified as not worth retrying (e.g. a repeated layout error)
        cause = e

    attempt.outcome = TERMINAL_FAILURE
    logger.error(f"Giving up after {attempt.attempt_number} attempt(s) for {attempt.key}: {cause}")
    raise TerminalError(cause, attempt.attempt_number) from cause
