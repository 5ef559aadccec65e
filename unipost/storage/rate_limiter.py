"""Request pacing against the GitHub REST API quota."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from unipost.config import RateLimitConfig

logger = logging.getLogger(__name__)

DEFAULT_PENALTY_SEC = 60.0


@dataclass
class QuotaSnapshot:
    """Quota as reported by the most recent GitHub response."""

    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_at: Optional[float] = None
    resource: str = "core"

    def seconds_to_reset(self, now: float) -> Optional[float]:
        if self.reset_at is None:
            return None
        return max(0.0, self.reset_at - now)


def _header_number(headers: Mapping[str, Any], name: str) -> Optional[float]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        logger.warning(f"Failed to parse {name} header: {value!r}")
        return None


class RateLimiter:
    """
    Paces GitHub API calls.

    GitHub reports the primary quota in ``x-ratelimit-*`` headers, with the reset
    moment as an absolute epoch second. Secondary limits come back as 403 or 429
    with a ``retry-after`` header. Requests are spaced at least
    ``60 / max_requests_per_minute`` seconds apart, and once the remaining quota
    drops under ``min_remaining_calls`` the next request waits for the reset.
    """

    def __init__(self, config: RateLimitConfig):
        self.config = config
        self.quota = QuotaSnapshot()
        self.last_request_time = 0.0
        self.min_interval = 60.0 / self.config.max_requests_per_minute

    async def pre_request(self) -> None:
        """Sleep as long as needed before the next request may go out."""
        since_last = time.time() - self.last_request_time
        if since_last < self.min_interval:
            await asyncio.sleep(self.min_interval - since_last)

        if self.quota.remaining is None or self.quota.remaining >= self.config.min_remaining_calls:
            return
        reset_in = self.quota.seconds_to_reset(time.time())
        if not reset_in:
            return

        wait_time = reset_in + self.config.sleep_buffer_sec
        logger.info(
            f"GitHub {self.quota.resource} quota low ({self.quota.remaining} left), "
            f"waiting {wait_time:.2f}s for the reset"
        )
        await asyncio.sleep(wait_time)
        self.quota = QuotaSnapshot()

    def update_from_headers(self, headers: Mapping[str, Any]) -> None:
        """
        Record the quota reported by a response.

        Args:
            headers: Response headers; names are matched case-insensitively
        """
        self.last_request_time = time.time()
        lowered = {str(k).lower(): v for k, v in headers.items()}

        remaining = _header_number(lowered, "x-ratelimit-remaining")
        limit = _header_number(lowered, "x-ratelimit-limit")
        reset_at = _header_number(lowered, "x-ratelimit-reset")

        if remaining is not None:
            self.quota.remaining = int(remaining)
        if limit is not None:
            self.quota.limit = int(limit)
        if reset_at is not None:
            self.quota.reset_at = reset_at
        if lowered.get("x-ratelimit-resource"):
            self.quota.resource = str(lowered["x-ratelimit-resource"])

        if self.quota.remaining is not None and self.quota.reset_at is not None:
            logger.debug(
                f"GitHub {self.quota.resource} quota: {self.quota.remaining}/{self.quota.limit or '?'}, "
                f"reset in {self.quota.seconds_to_reset(self.last_request_time):.2f}s"
            )

    def is_exhausted(self) -> bool:
        """True when the last response reported no remaining calls."""
        return self.quota.remaining is not None and self.quota.remaining <= 0

    def is_rate_limited(self, status: int, headers: Mapping[str, Any]) -> bool:
        """
        Whether a response is GitHub refusing service for quota reasons.

        A 403 only counts when the primary quota is spent or a secondary limit
        asked for a ``retry-after`` pause; other 403s are permission errors.
        """
        if status == 429:
            return True
        if status != 403:
            return False
        return self.is_exhausted() or any(str(k).lower() == "retry-after" for k in headers)

    async def handle_429(self, retry_after: Optional[str] = None) -> None:
        """
        Wait out a rate-limited response.

        Args:
            retry_after: Value of the Retry-After header, if available. Without it
                the wait runs to the reported quota reset, or a minute when none is known.
        """
        wait_seconds = None
        if retry_after:
            try:
                wait_seconds = float(retry_after)
            except (ValueError, TypeError):
                logger.warning(f"Unparsable Retry-After {retry_after!r}")
        if wait_seconds is None:
            reset_in = self.quota.seconds_to_reset(time.time())
            wait_seconds = DEFAULT_PENALTY_SEC if reset_in is None else reset_in

        wait_seconds += self.config.sleep_buffer_sec
        logger.warning(f"Rate limited by GitHub. Waiting for {wait_seconds:.2f}s before retrying.")
        await asyncio.sleep(wait_seconds)
        self.quota = QuotaSnapshot()
