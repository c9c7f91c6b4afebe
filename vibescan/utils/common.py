"""Common utilities for the vibescan utils package."""

from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import aiofiles
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

# Global console instance
console = Console()


class VibeScanError(Exception):
    """Base class for vibescan errors."""
    pass


class ConfigError(VibeScanError):
    """Raised when configuration is invalid."""
    pass


class GitHubAPIError(VibeScanError):
    """Raised when GitHub API returns a non-retryable error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(GitHubAPIError):
    """Raised for network failures and 5xx responses once retries are exhausted."""
    pass


class RateLimited(GitHubAPIError):
    """Raised when the API quota is exhausted."""

    def __init__(self, message: str, reset_at: Optional[datetime] = None, status_code: Optional[int] = 403):
        super().__init__(message, status_code)
        self.reset_at = reset_at


class PersistenceError(VibeScanError):
    """Raised when the job store fails to write."""
    pass


class ScanAlreadyRunning(VibeScanError):
    """Raised when a scan is started while another one is running."""

    def __init__(self, job_id: str):
        super().__init__(f"A scan is already running: {job_id}")
        self.job_id = job_id


class JobNotFound(VibeScanError):
    """Raised when a job id does not exist in the store."""

    def __init__(self, job_id: str):
        super().__init__(f"Scan job not found: {job_id}")
        self.job_id = job_id


class NoRunningScan(VibeScanError):
    """Raised when a stop is requested but nothing is running."""

    def __init__(self):
        super().__init__("No running scan found")


def format_datetime(dt: Optional[datetime]) -> str:
    """Format datetime for display.

    Args:
        dt: Datetime to format.

    Returns:
        Formatted datetime string, or "-" when missing.
    """
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


async def write_file_async(file_path: Union[str, Path], content: str) -> None:
    """Write content to file asynchronously.

    Args:
        file_path: Path to file to write.
        content: Content to write.

    Raises:
        IOError: If file can't be written.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    async with aiofiles.open(path, 'w', encoding='utf-8', newline='') as f:
        await f.write(content)


def create_progress_bar() -> Progress:
    """Create a rich progress bar for scan jobs."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
        transient=False
    )
