"""
Date helpers for GitHub API timestamps
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def from_epoch(seconds: int) -> datetime:
    """Convert a unix timestamp (X-RateLimit-Reset) to an aware datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
