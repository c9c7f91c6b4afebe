"""vibescan - discover GitHub repositories built with AI coding tools."""

from .config import ScanParams, Settings, load_config
from .gh_client import GitHubClient
from .models import CandidateRepo, JobStatus, ScanJob
from .scanner import ScanOrchestrator, request_stop
from .store import JobStore, SqliteJobStore

__version__ = "0.1.0"

__all__ = [
    'ScanParams',
    'Settings',
    'load_config',
    'GitHubClient',
    'CandidateRepo',
    'JobStatus',
    'ScanJob',
    'ScanOrchestrator',
    'request_stop',
    'JobStore',
    'SqliteJobStore',
]
