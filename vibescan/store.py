"""
Job store: scan job records and persisted repository candidates.

SQLite is the single source of truth for job state. The orchestrator only
depends on the JobStore interface; SqliteJobStore adds the reporting reads
used by the CLI.
"""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import CandidateFilter, CandidateRepo, JobStatus, ScanJob, StoredCandidate
from .utils.common import JobNotFound, PersistenceError, ScanAlreadyRunning
from .utils.dateparse import utcnow

logger = logging.getLogger(__name__)

JOB_COLUMNS = {
    "status",
    "progress",
    "message",
    "params",
    "cancel_requested",
    "started_at",
    "finished_at",
    "rate_limit_reset_at",
}

METADATA_COLUMNS = {
    "forks",
    "language",
    "description",
    "open_issues",
    "total_issues",
    "open_pull_requests",
    "total_pull_requests",
    "contributors",
}

SCHEMA = """
    CREATE TABLE IF NOT EXISTS scan_jobs (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        message TEXT,
        params TEXT NOT NULL DEFAULT '{}',
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        started_at TEXT,
        finished_at TEXT,
        rate_limit_reset_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    -- At most one running job; makes create_job an atomic conditional insert
    CREATE UNIQUE INDEX IF NOT EXISTS idx_scan_jobs_single_running
        ON scan_jobs(status) WHERE status = 'running';

    CREATE TABLE IF NOT EXISTS repo_candidates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        repo_url TEXT NOT NULL UNIQUE,
        full_name TEXT NOT NULL,
        score INTEGER NOT NULL,
        stars INTEGER NOT NULL DEFAULT 0,
        forks INTEGER,
        open_issues INTEGER,
        open_pull_requests INTEGER,
        total_issues INTEGER,
        total_pull_requests INTEGER,
        contributors INTEGER,
        language TEXT,
        description TEXT,
        pushed_at TEXT,
        evidence_summary TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_candidates_score ON repo_candidates(score DESC, stars DESC);
"""


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class JobStore(ABC):
    """Read/write contract the scan orchestrator depends on."""

    @abstractmethod
    def create_job(self, params: str) -> str:
        """Create a running job, raising ScanAlreadyRunning if one exists."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[ScanJob]:
        ...

    @abstractmethod
    def update_job(self, job_id: str, require_running: bool = False, **fields) -> bool:
        """Update a job, returning False if require_running and it is not running."""

    @abstractmethod
    def find_running_job(self, stale_after: Optional[float] = None) -> Optional[ScanJob]:
        ...

    @abstractmethod
    def request_cancel(self, job_id: str) -> bool:
        ...

    @abstractmethod
    def upsert_candidate(self, candidate: CandidateRepo) -> None:
        ...


class SqliteJobStore(JobStore):
    """SQLite-backed job store.

    One connection is shared behind a lock; pass ``":memory:"`` for a
    throwaway store.
    """

    def __init__(self, db_path: str = "data/vibescan.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _write(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            with self._conn:
                return self._conn.execute(sql, params)

    def _read(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # --- Scan jobs ---

    def create_job(self, params: str) -> str:
        job_id = uuid.uuid4().hex
        now = _to_db(utcnow())
        try:
            self._write(
                """INSERT INTO scan_jobs (id, status, progress, params, started_at, created_at, updated_at)
                   VALUES (?, ?, 0, ?, ?, ?, ?)""",
                (job_id, JobStatus.RUNNING.value, params, now, now, now)
            )
        except sqlite3.IntegrityError as e:
            running = self._read("SELECT id FROM scan_jobs WHERE status = ?", (JobStatus.RUNNING.value,))
            if running:
                raise ScanAlreadyRunning(running[0]["id"]) from e
            raise PersistenceError(f"Failed to create scan job: {e}") from e
        return job_id

    def get_job(self, job_id: str) -> Optional[ScanJob]:
        rows = self._read("SELECT * FROM scan_jobs WHERE id = ?", (job_id,))
        return ScanJob.model_validate(dict(rows[0])) if rows else None

    def update_job(self, job_id: str, require_running: bool = False, **fields) -> bool:
        """Update job columns and refresh the heartbeat (updated_at).

        Args:
            job_id: Job to update.
            require_running: Only write while the job is still running. Once a
                job is terminal it never changes again through this path.
            **fields: Column values.

        Returns:
            True if the row was written, False if require_running was set and
            the job had already left the running state.

        Raises:
            JobNotFound: If the job does not exist.
        """
        unknown = set(fields) - JOB_COLUMNS
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")

        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(_to_db(v) for v in fields.values()) + (job_id,)
        where = "id = ?"
        if require_running:
            where += " AND status = ?"
            values += (JobStatus.RUNNING.value,)

        try:
            cursor = self._write(f"UPDATE scan_jobs SET {assignments} WHERE {where}", values)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update job {job_id}: {e}") from e
        if cursor.rowcount == 0:
            if require_running and self.get_job(job_id) is not None:
                return False
            raise JobNotFound(job_id)
        return True

    def find_running_job(self, stale_after: Optional[float] = None) -> Optional[ScanJob]:
        """Return the running job, if any.

        Args:
            stale_after: Seconds without a heartbeat after which a running
                job is considered orphaned. Orphans are marked failed and
                not returned. None disables the check.
        """
        rows = self._read("SELECT * FROM scan_jobs WHERE status = ?", (JobStatus.RUNNING.value,))
        if not rows:
            return None

        job = ScanJob.model_validate(dict(rows[0]))
        if stale_after is not None and job.updated_at is not None:
            cutoff = utcnow() - timedelta(seconds=stale_after)
            if job.updated_at < cutoff:
                logger.warning(f"Marking orphaned scan job {job.id} as failed (last heartbeat {job.updated_at})")
                self.update_job(
                    job.id,
                    require_running=True,
                    status=JobStatus.FAILED,
                    message=f"Abandoned: no progress since {job.updated_at.isoformat()}",
                    finished_at=utcnow()
                )
                return None
        return job

    def request_cancel(self, job_id: str) -> bool:
        """Flag a running job for cancellation. Returns False if it is not running."""
        cursor = self._write(
            "UPDATE scan_jobs SET cancel_requested = 1, updated_at = ? WHERE id = ? AND status = ?",
            (_to_db(utcnow()), job_id, JobStatus.RUNNING.value)
        )
        return cursor.rowcount > 0

    def latest_job(self) -> Optional[ScanJob]:
        rows = self._read("SELECT * FROM scan_jobs ORDER BY created_at DESC, rowid DESC LIMIT 1")
        return ScanJob.model_validate(dict(rows[0])) if rows else None

    # --- Candidates ---

    def upsert_candidate(self, candidate: CandidateRepo) -> None:
        """Insert or update a candidate keyed by repo_url.

        Enrichment columns keep their stored value when the candidate does
        not carry one.
        """
        now = _to_db(utcnow())
        values = (
            candidate.repo_url,
            candidate.full_name,
            candidate.score,
            candidate.stars,
            candidate.forks,
            candidate.open_issues,
            candidate.open_pull_requests,
            candidate.total_issues,
            candidate.total_pull_requests,
            candidate.contributors,
            candidate.language,
            candidate.description,
            _to_db(candidate.pushed_at),
            json.dumps(candidate.evidence_summary),
            now,
            now,
        )
        try:
            self._write(
                """INSERT INTO repo_candidates (
                       repo_url, full_name, score, stars, forks, open_issues, open_pull_requests,
                       total_issues, total_pull_requests, contributors, language, description,
                       pushed_at, evidence_summary, created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(repo_url) DO UPDATE SET
                       full_name = excluded.full_name,
                       score = excluded.score,
                       stars = excluded.stars,
                       forks = COALESCE(excluded.forks, repo_candidates.forks),
                       open_issues = COALESCE(excluded.open_issues, repo_candidates.open_issues),
                       open_pull_requests = COALESCE(excluded.open_pull_requests, repo_candidates.open_pull_requests),
                       total_issues = COALESCE(excluded.total_issues, repo_candidates.total_issues),
                       total_pull_requests = COALESCE(excluded.total_pull_requests, repo_candidates.total_pull_requests),
                       contributors = COALESCE(excluded.contributors, repo_candidates.contributors),
                       language = COALESCE(excluded.language, repo_candidates.language),
                       description = COALESCE(excluded.description, repo_candidates.description),
                       pushed_at = excluded.pushed_at,
                       evidence_summary = excluded.evidence_summary,
                       updated_at = excluded.updated_at""",
                values
            )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save candidate {candidate.repo_url}: {e}") from e

    def update_candidate_metadata(self, repo_url: str, **fields) -> None:
        unknown = set(fields) - METADATA_COLUMNS
        if unknown:
            raise ValueError(f"Unknown metadata fields: {sorted(unknown)}")
        if not fields:
            return

        fields["updated_at"] = utcnow()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = tuple(_to_db(v) for v in fields.values()) + (repo_url,)
        try:
            self._write(f"UPDATE repo_candidates SET {assignments} WHERE repo_url = ?", values)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to update {repo_url}: {e}") from e

    def get_candidate(self, repo_url: str) -> Optional[StoredCandidate]:
        rows = self._read("SELECT * FROM repo_candidates WHERE repo_url = ?", (repo_url,))
        return StoredCandidate.from_row(rows[0]) if rows else None

    def count_candidates(self, filters: Optional[CandidateFilter] = None) -> int:
        where, params = self._where(filters)
        rows = self._read(f"SELECT COUNT(*) AS n FROM repo_candidates{where}", params)
        return rows[0]["n"]

    def list_candidates(
        self,
        filters: Optional[CandidateFilter] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[StoredCandidate], int]:
        """One page of candidates, best first, and the total matching count."""
        where, params = self._where(filters)
        offset = (max(page, 1) - 1) * limit
        rows = self._read(
            f"SELECT * FROM repo_candidates{where} ORDER BY score DESC, stars DESC LIMIT ? OFFSET ?",
            params + (limit, offset)
        )
        return [StoredCandidate.from_row(r) for r in rows], self.count_candidates(filters)

    def iter_candidates(self, filters: Optional[CandidateFilter] = None) -> List[StoredCandidate]:
        where, params = self._where(filters)
        rows = self._read(f"SELECT * FROM repo_candidates{where} ORDER BY score DESC, stars DESC", params)
        return [StoredCandidate.from_row(r) for r in rows]

    def candidates_missing_metadata(self, limit: int = 100) -> List[StoredCandidate]:
        """Oldest-updated candidates with at least one metadata gap."""
        rows = self._read(
            """SELECT * FROM repo_candidates
               WHERE forks IS NULL OR open_issues IS NULL OR contributors IS NULL OR language IS NULL
               ORDER BY updated_at ASC LIMIT ?""",
            (limit,)
        )
        return [StoredCandidate.from_row(r) for r in rows]

    @staticmethod
    def _where(filters: Optional[CandidateFilter]) -> Tuple[str, Tuple]:
        if filters is None:
            return "", ()

        clauses = []
        params: List[Any] = []
        if filters.min_score is not None:
            clauses.append("score >= ?")
            params.append(filters.min_score)
        if filters.stars_min is not None:
            clauses.append("stars >= ?")
            params.append(filters.stars_min)
        if filters.pushed_after is not None:
            clauses.append("pushed_at >= ?")
            params.append(_to_db(filters.pushed_after))
        if filters.language:
            clauses.append("LOWER(language) LIKE ?")
            params.append(f"%{filters.language.lower()}%")

        if not clauses:
            return "", ()
        return " WHERE " + " AND ".join(clauses), tuple(params)


def open_store(settings) -> SqliteJobStore:
    """Open the store configured in settings."""
    return SqliteJobStore(settings.storage.db_path)


def metadata_fields(details: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only known, non-null metadata columns."""
    return {k: v for k, v in details.items() if k in METADATA_COLUMNS and v is not None}
