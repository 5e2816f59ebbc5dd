"""Bounded retry combinator and exponential backoff helpers."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Callable, TypeVar

from harvester.errors import RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


def calculate_backoff(
    attempt_number: int,
    initial: float = 1.0,
    maximum: float = 30.0,
) -> float:
    """Seconds to wait after the given failed attempt (1-based).

    Exponential: ``initial * 2 ** (attempt_number - 1)`` capped at ``maximum``.
    """
    if attempt_number <= 0:
        return 0.0
    # Cap the exponent; ``maximum`` provides the real ceiling
    exponent = min(attempt_number - 1, 20)
    return min(initial * (2 ** exponent), maximum)


def attempt(
    fn: Callable[[], T],
    max_attempts: int,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
    initial_backoff: float = 0.0,
    max_backoff: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn`` until it returns, at most ``max_attempts`` times.

    Args:
        fn: Zero-argument callable producing the result.
        max_attempts: Total number of calls allowed (>= 1).
        retry_on: Exception types that count as a failed attempt. Anything
            else propagates immediately.
        should_retry: Optional predicate; returning False re-raises the
            exception without further attempts.
        initial_backoff: First wait in seconds; 0 disables sleeping.
        max_backoff: Ceiling for the exponential wait.
        sleep: Injected for tests.

    Returns:
        The first successful result.

    Raises:
        RetryExhausted: All attempts failed. ``last_error`` holds the final
            exception, if any.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: BaseException | None = None
    for number in range(1, max_attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if should_retry is not None and not should_retry(exc):
                raise
            last_error = exc
            if number < max_attempts:
                wait = calculate_backoff(number, initial_backoff, max_backoff) if initial_backoff else 0.0
                logger.debug("Attempt %d/%d failed (%s), retrying in %.2fs", number, max_attempts, exc, wait)
                if wait > 0:
                    sleep(wait)

    raise RetryExhausted(max_attempts, last_error)


class _Collision(Exception):
    pass


def new_id(
    prefix: str,
    exists: Callable[[str], bool],
    max_attempts: int = 5,
    generator: Callable[[], str] | None = None,
) -> str:
    """Generate an identifier not yet taken according to ``exists``.

    Raises:
        RetryExhausted: Every generated candidate collided.
    """
    make = generator or (lambda: uuid.uuid4().hex[:12])

    def candidate() -> str:
        value = f"{prefix}_{make()}"
        if exists(value):
            raise _Collision(value)
        return value

    return attempt(candidate, max_attempts, retry_on=(_Collision,))
