"""
Retry with exponential backoff.

Used by every network-facing stage of the pipeline. Delays are in seconds.
"""

import time
import random
import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')

RetryPredicate = Callable[[BaseException], bool]
RetryHook = Callable[[int, BaseException, float], None]


class RetryError(Exception):
    """Raised by retry_with_jitter once every attempt has failed."""

    def __init__(self, message: str, attempts: int, last_error: BaseException):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def with_retry(fn: Callable[[], T], max_retries: int = 3, delay: float = 1.0, **kwargs) -> T:
    """Shorthand for with_exponential_backoff with a starting delay."""
    return with_exponential_backoff(fn, max_retries=max_retries, initial_delay=delay, **kwargs)


def with_exponential_backoff(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2,
    should_retry: Optional[RetryPredicate] = None,
    on_retry: Optional[RetryHook] = None,
) -> T:
    """
    Call fn until it succeeds or retries are exhausted.

    After a failed attempt the call is repeated when attempts remain and
    should_retry (if given) accepts the error. The wait before retry N is
    min(initial_delay * multiplier ** (N - 1), max_delay).

    Args:
        fn: Zero-argument callable to invoke
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry
        max_delay: Upper bound for any single delay
        multiplier: Growth factor applied after every retry
        should_retry: Optional classifier; all errors are retryable without it
        on_retry: Optional hook called as (attempt, error, next_delay) before sleeping

    Returns:
        Whatever fn returns

    Raises:
        The last error raised by fn, unchanged
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if attempt == max_retries:
                logger.error(f"All {max_retries + 1} attempts failed: {e}")
                raise

            if should_retry is not None and not should_retry(e):
                logger.info(f"Error is not retryable, giving up: {e}")
                raise

            next_delay = min(delay, max_delay)
            logger.warning(f"Attempt {attempt + 1} failed, retrying in {next_delay:g}s: {e}")
            _call_hook(on_retry, attempt + 1, e, next_delay)

            time.sleep(next_delay)
            delay = delay * multiplier


def retry_with_jitter(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2,
    should_retry: Optional[RetryPredicate] = None,
    on_retry: Optional[RetryHook] = None,
) -> T:
    """
    Like with_exponential_backoff, but each delay is extended by up to 30%.

    Spreading the delays keeps parallel callers from retrying in lockstep.

    Raises:
        RetryError: When every attempt failed (carries attempts and last_error)
        The original error, unchanged, when should_retry rejects it
    """
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            return fn()
        except Exception as e:
            if attempt == max_retries:
                raise RetryError(
                    f"Failed after {max_retries + 1} attempts: {e}",
                    attempts=max_retries + 1,
                    last_error=e
                ) from e

            if should_retry is not None and not should_retry(e):
                raise

            jitter = random.random() * 0.3 * delay
            next_delay = min(delay + jitter, max_delay)
            _call_hook(on_retry, attempt + 1, e, next_delay)

            time.sleep(next_delay)
            delay = delay * multiplier


def _call_hook(hook: Optional[RetryHook], attempt: int, error: BaseException, next_delay: float):
    if hook is None:
        return
    try:
        hook(attempt, error, next_delay)
    except Exception as hook_error:
        logger.warning(f"Retry callback failed: {hook_error}")
