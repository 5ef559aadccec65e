"""Error handling and retry logic for blob store requests and optimistic writes."""

import asyncio
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, cast

import aiohttp
from aiohttp.client_exceptions import ClientResponseError

from unipost.config import RetryConfig
from unipost.errors import AlreadyExistsError, ConflictError
from unipost.storage.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")
AsyncFunc = Callable[..., Awaitable[T]]


class ConsecutiveErrorTracker:
    """
    Streak of failed GitHub calls.

    Server errors and transport failures both extend the streak; any successful
    call clears it. Once the streak reaches ``threshold`` the caller gives up
    instead of backing off again.
    """

    def __init__(self, threshold: int, prometheus_exporter=None):
        self.threshold = threshold
        self.prometheus_exporter = prometheus_exporter
        self.streak: List[str] = []

    @property
    def consecutive_errors(self) -> int:
        return len(self.streak)

    def record_error(self, kind: str = "5xx") -> None:
        """
        Extend the streak.

        Args:
            kind: ``5xx`` for server errors, ``transport`` for connection failures
        """
        self.streak.append(kind)
        logger.warning(
            f"GitHub call failed ({kind}), {self.consecutive_errors}/{self.threshold} in a row"
        )
        if self.prometheus_exporter:
            self.prometheus_exporter.set_consecutive_5xx_errors(self.consecutive_errors)
            self.prometheus_exporter.record_api_error(kind)

    def record_success(self) -> None:
        if not self.streak:
            return
        logger.info(
            f"GitHub calls recovered after {self.consecutive_errors} failures "
            f"({', '.join(sorted(set(self.streak)))})"
        )
        self.streak.clear()
        if self.prometheus_exporter:
            self.prometheus_exporter.set_consecutive_5xx_errors(0)

    def should_abort(self) -> bool:
        return self.consecutive_errors >= self.threshold


def with_exponential_backoff(
    max_retries: int = 5,
    initial_backoff: float = 1.0,
    max_backoff: float = 32.0,
    backoff_factor: float = 2.0,
    error_tracker: Optional[ConsecutiveErrorTracker] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> Callable[[AsyncFunc[T]], AsyncFunc[T]]:
    """
    Decorator for retrying GitHub transport calls.

    Rate-limited responses (status 429) wait on the rate limiter and are not
    counted as retries. Server errors and transport failures back off
    exponentially and feed the error tracker. Any other client error is raised
    at once. When applied to a method, the instance's ``error_tracker`` and
    ``rate_limiter`` attributes are used if none were passed explicitly.

    Args:
        max_retries: Maximum number of retry attempts
        initial_backoff: Initial backoff time in seconds
        max_backoff: Maximum backoff time in seconds
        backoff_factor: Multiplier for backoff time between retries
        error_tracker: Optional tracker for consecutive failures
        rate_limiter: Optional rate limiter for handling 429 responses

    Returns:
        Decorator function
    """
    def decorator(func: AsyncFunc[T]) -> AsyncFunc[T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            owner = args[0] if args else None
            tracker = error_tracker or getattr(owner, "error_tracker", None)
            limiter = rate_limiter or getattr(owner, "rate_limiter", None)
            delays = _backoff_delays(max_retries, initial_backoff, max_backoff, backoff_factor)

            while True:
                try:
                    result = await func(*args, **kwargs)
                except ClientResponseError as e:
                    if e.status == 429 and limiter:
                        await limiter.handle_429(e.headers.get("Retry-After") if e.headers else None)
                        continue
                    if not 500 <= e.status < 600:
                        logger.warning(f"GitHub rejected the request ({e.status}): {e.message}")
                        raise
                    delay = _next_delay(delays, tracker, "5xx", f"server error {e.status}")
                    if delay is None:
                        raise
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    delay = _next_delay(delays, tracker, "transport", f"transport error {e!r}")
                    if delay is None:
                        raise
                else:
                    if tracker:
                        tracker.record_success()
                    return result

                await asyncio.sleep(delay)

        return cast(AsyncFunc[T], wrapper)
    return decorator


def _backoff_delays(
    max_retries: int, initial: float, maximum: float, factor: float
) -> List[float]:
    delays = []
    delay = initial
    for _ in range(max_retries):
        delays.append(delay)
        delay = min(delay * factor, maximum)
    return delays


def _next_delay(
    delays: List[float],
    tracker: Optional[ConsecutiveErrorTracker],
    kind: str,
    description: str,
) -> Optional[float]:
    """Pop the next backoff delay, or None when the caller should re-raise."""
    if tracker:
        tracker.record_error(kind)
        if tracker.should_abort():
            logger.critical(f"Aborting after {tracker.consecutive_errors} consecutive failures")
            return None
    if not delays:
        logger.error(f"Giving up on GitHub call after {description}")
        return None
    delay = delays.pop(0)
    logger.warning(f"GitHub {description}, retrying in {delay:.2f}s ({len(delays)} retries left)")
    return delay


def retry_on_conflict(
    policy: RetryConfig,
    operation: str,
    prometheus_exporter=None,
) -> Callable[[AsyncFunc[T]], AsyncFunc[T]]:
    """
    Decorator that reruns a read-modify-write attempt when its write loses a race.

    The wrapped coroutine must perform the whole cycle (read, apply, write) so that
    every retry reapplies the change on top of the fresh document. Only
    ``ConflictError`` is retried; after ``policy.max_attempts`` attempts the last
    conflict is raised with the attempt count attached.

    Args:
        policy: Attempt count and backoff settings
        operation: Label used in logs and metrics
        prometheus_exporter: Optional Prometheus exporter for metrics
    """
    def decorator(func: AsyncFunc[T]) -> AsyncFunc[T]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 1
            backoff = policy.initial_backoff

            while True:
                try:
                    return await func(*args, **kwargs)
                except AlreadyExistsError:
                    raise
                except ConflictError as e:
                    if prometheus_exporter:
                        prometheus_exporter.record_write_conflict(operation)

                    if attempt >= policy.max_attempts:
                        logger.error(
                            f"{operation}: giving up after {attempt} conflicting attempts: {e.message}"
                        )
                        e.attempts = attempt
                        raise

                    logger.warning(
                        f"{operation}: write conflict ({e.message}). "
                        f"Re-reading and retrying in {backoff:.2f}s ({attempt}/{policy.max_attempts})"
                    )
                    if prometheus_exporter:
                        prometheus_exporter.record_conflict_retry(operation)
                    if backoff > 0:
                        await asyncio.sleep(backoff)
                    attempt += 1
                    backoff = min(backoff * policy.backoff_factor, policy.max_backoff)

        return cast(AsyncFunc[T], wrapper)
    return decorator
