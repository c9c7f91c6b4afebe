"""vibescan utilities module."""

from .common import (
    ConfigError,
    GitHubAPIError,
    JobNotFound,
    NoRunningScan,
    PersistenceError,
    RateLimited,
    ScanAlreadyRunning,
    TransientError,
    VibeScanError,
    console,
    create_progress_bar,
    format_datetime,
    write_file_async,
)
from .dateparse import from_epoch, utcnow
from .setup_logging import setup_logging

__all__ = [
    'ConfigError',
    'GitHubAPIError',
    'JobNotFound',
    'NoRunningScan',
    'PersistenceError',
    'RateLimited',
    'ScanAlreadyRunning',
    'TransientError',
    'VibeScanError',
    'console',
    'create_progress_bar',
    'format_datetime',
    'write_file_async',
    'from_epoch',
    'utcnow',
    'setup_logging',
]
