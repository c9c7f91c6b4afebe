"""Scan job and candidate repository models."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .config import ScanParams


class JobStatus(str, Enum):
    """Scan job status. Every status except RUNNING is terminal."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class ScanJob(BaseModel):
    """One record per scan invocation."""

    id: str
    status: JobStatus = JobStatus.RUNNING
    progress: int = 0
    message: Optional[str] = None
    params: str = "{}"
    cancel_requested: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    rate_limit_reset_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def scan_params(self) -> ScanParams:
        return ScanParams.model_validate_json(self.params or "{}")


ENRICHMENT_FIELDS = (
    "open_issues",
    "total_issues",
    "open_pull_requests",
    "total_pull_requests",
    "contributors",
)


@dataclass
class CandidateRepo:
    """A repository under evaluation during one scan.

    ``score`` always equals the summed weight of the tags in
    ``evidence_summary``; mutate both through ``scoring.merge_evidence``.
    """

    repo_url: str
    full_name: str
    pushed_at: Optional[datetime] = None
    stars: int = 0
    forks: Optional[int] = None
    language: Optional[str] = None
    description: Optional[str] = None
    score: int = 0
    evidence_summary: List[str] = field(default_factory=list)

    # Enrichment, None means unknown
    open_issues: Optional[int] = None
    total_issues: Optional[int] = None
    open_pull_requests: Optional[int] = None
    total_pull_requests: Optional[int] = None
    contributors: Optional[int] = None

    @property
    def owner_and_name(self) -> Optional[tuple]:
        parts = self.full_name.split("/")
        if len(parts) != 2 or not all(parts):
            return None
        return parts[0], parts[1]

    def enrichment(self) -> Dict[str, Optional[int]]:
        return {name: getattr(self, name) for name in ENRICHMENT_FIELDS}


class StoredCandidate(BaseModel):
    """Durable projection of a candidate that met the score threshold."""

    repo_url: str
    full_name: str
    score: int
    stars: int = 0
    forks: Optional[int] = None
    open_issues: Optional[int] = None
    open_pull_requests: Optional[int] = None
    total_issues: Optional[int] = None
    total_pull_requests: Optional[int] = None
    contributors: Optional[int] = None
    language: Optional[str] = None
    description: Optional[str] = None
    pushed_at: Optional[datetime] = None
    evidence_summary: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'StoredCandidate':
        data = dict(row)
        data["evidence_summary"] = json.loads(data.get("evidence_summary") or "[]")
        return cls.model_validate(data)

    @property
    def evidence_count(self) -> int:
        return len(self.evidence_summary)


@dataclass
class CandidateFilter:
    """Filters for reading stored candidates."""

    min_score: Optional[int] = None
    stars_min: Optional[int] = None
    pushed_after: Optional[datetime] = None
    language: Optional[str] = None
