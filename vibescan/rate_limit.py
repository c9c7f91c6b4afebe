"""Rate limit tracking and retry utilities for vibescan."""

import asyncio
import atexit
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

from .utils.common import TransientError
from .utils.dateparse import from_epoch, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Rate limit state reported by a single API response."""

    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset_at: Optional[datetime] = None

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> 'RateLimitSnapshot':
        """Parse GitHub ``X-RateLimit-*`` headers.

        Args:
            headers: Response headers (case-insensitive mapping).

        Returns:
            Snapshot; fields are None when a header is missing or malformed.
        """
        return cls(
            remaining=_parse_int(headers.get("X-RateLimit-Remaining")),
            limit=_parse_int(headers.get("X-RateLimit-Limit")),
            reset_at=_parse_reset(headers.get("X-RateLimit-Reset")),
        )

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0

    def seconds_until_reset(self) -> float:
        if self.reset_at is None:
            return 0.0
        return max(0.0, (self.reset_at - utcnow()).total_seconds())


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed rate limit header value: {value!r}")
        return None


def _parse_reset(value: Optional[str]) -> Optional[datetime]:
    seconds = _parse_int(value)
    return from_epoch(seconds) if seconds is not None else None


class RateLimitTracker:
    """Process-wide view of the most recent rate limit state.

    Advisory only; the client raises RateLimited when the quota is actually
    exhausted.
    """

    def __init__(self):
        self._snapshot = RateLimitSnapshot()
        self._updated_at: Optional[datetime] = None

    def update(self, snapshot: RateLimitSnapshot) -> None:
        if snapshot.remaining is None and snapshot.reset_at is None:
            return
        self._snapshot = snapshot
        self._updated_at = utcnow()
        logger.debug(
            f"Rate limit: remaining={snapshot.remaining}, "
            f"limit={snapshot.limit}, reset_at={snapshot.reset_at}"
        )

    @property
    def snapshot(self) -> RateLimitSnapshot:
        return self._snapshot

    @property
    def updated_at(self) -> Optional[datetime]:
        return self._updated_at

    def reset(self) -> None:
        self._snapshot = RateLimitSnapshot()
        self._updated_at = None


_tracker: Optional[RateLimitTracker] = None


def get_tracker() -> RateLimitTracker:
    """Return the process-wide tracker, creating it on first use."""
    global _tracker
    if _tracker is None:
        _tracker = RateLimitTracker()
        atexit.register(_tracker.reset)
    return _tracker


async def with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: int = 3,
    delay: float = 1.0,
    **kwargs
) -> Any:
    """Execute an async callable, retrying transient failures.

    Backoff is linear: the n-th retry waits ``delay * n`` seconds.

    Args:
        func: Async function to execute.
        *args: Positional arguments for function.
        attempts: Total attempts including the first one.
        delay: Base delay in seconds.
        **kwargs: Keyword arguments for function.

    Returns:
        Function result on success.

    Raises:
        TransientError: If every attempt failed transiently.
        Exception: Any non-transient error, immediately.
    """
    last_exception: Optional[TransientError] = None

    for attempt in range(attempts):
        try:
            return await func(*args, **kwargs)
        except TransientError as e:
            last_exception = e
            if attempt == attempts - 1:
                break

            wait = delay * (attempt + 1)
            logger.warning(
                f"Attempt {attempt + 1}/{attempts} failed: {e}. Retrying in {wait:.1f}s"
            )
            await asyncio.sleep(wait)

    raise last_exception
