"""Scan orchestrator for detecting repositories built with AI coding tools.

A scan runs as a background task through four sequential phases:

1. Repository search - every hit becomes (or adds evidence to) a candidate.
2. Code search - hits only add evidence to existing candidates.
3. Metadata enrichment - optional issue/PR/contributor counts.
4. Persistence - candidates at or above ``min_score`` are upserted.

The job ends in exactly one of completed, failed, rate_limited or canceled.
Nothing is persisted unless phase 4 is reached, so a rate limit or failure
during the searches discards the in-memory candidates.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import ScanParams, Settings
from .enrichment import apply_counts, fetch_repo_counts
from .gh_client import GitHubClient
from .models import CandidateRepo, JobStatus
from .rate_limit import RateLimitSnapshot
from .scoring import (
    DEFAULT_CODE_QUERIES,
    DEFAULT_REPO_QUERIES,
    apply_filters,
    candidate_from_repo,
    code_evidence,
    merge_evidence,
    rank,
    tool_mention_evidence,
)
from .store import JobStore
from .tasks import TaskRegistry, get_registry
from .utils.common import (
    GitHubAPIError,
    JobNotFound,
    NoRunningScan,
    PersistenceError,
    RateLimited,
    ScanAlreadyRunning,
)
from .utils.dateparse import utcnow

logger = logging.getLogger(__name__)


class ScanCanceled(Exception):
    """Raised inside a scan when a stop was requested."""
    pass


class ScanAbandoned(Exception):
    """Raised inside a scan whose job left the running state under it."""

    def __init__(self, status: JobStatus):
        super().__init__(f"Job is no longer running (status: {status.value})")
        self.status = status


def request_stop(store: JobStore, job_id: Optional[str] = None) -> str:
    """Request cancellation of a job, the running one by default.

    Cancellation is cooperative: the worker polls the flag and reaches
    ``canceled`` at its next check point, which may be in another process.

    Returns:
        The id of the job the request applied to.

    Raises:
        NoRunningScan: If no job_id is given and nothing is running.
        JobNotFound: If job_id does not exist.
    """
    if job_id is None:
        running = store.find_running_job()
        if running is None:
            raise NoRunningScan()
        job_id = running.id
    elif store.get_job(job_id) is None:
        raise JobNotFound(job_id)

    if store.request_cancel(job_id):
        logger.info(f"Stop requested for scan job {job_id}")
    else:
        logger.info(f"Scan job {job_id} is not running, nothing to stop")
    return job_id


@dataclass
class ScanState:
    """In-memory state of one scan."""

    candidates: Dict[str, CandidateRepo] = field(default_factory=dict)
    failed_queries: int = 0
    dropped_repos: int = 0
    code_evidence: int = 0
    notes: List[str] = field(default_factory=list)
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)


class ScanOrchestrator:
    """Runs single-flight scan jobs against the GitHub search API."""

    def __init__(
        self,
        client: GitHubClient,
        store: JobStore,
        settings: Settings,
        registry: Optional[TaskRegistry] = None
    ):
        """Initialize orchestrator.

        Args:
            client: Open GitHub client.
            store: Job store for job state and results.
            settings: Application settings (delays, page size).
            registry: Task registry, defaults to the process-wide one.
        """
        self.client = client
        self.store = store
        self.settings = settings
        self.registry = registry or get_registry()

    @property
    def per_page(self) -> int:
        return self.settings.github.per_page

    async def start_scan(self, params: Optional[ScanParams] = None) -> str:
        """Create a job and run it in the background.

        Returns:
            The new job id, before the scan has made any progress.

        Raises:
            ScanAlreadyRunning: If another job is running.
        """
        params = params or ScanParams()

        running = self.store.find_running_job(stale_after=self.settings.scan.stale_job_after)
        if running:
            raise ScanAlreadyRunning(running.id)

        job_id = self.store.create_job(params.to_json())
        logger.info(f"Starting scan job {job_id}")

        self.registry.spawn(job_id, self.run_scan(job_id, params))
        return job_id

    def stop_scan(self, job_id: Optional[str] = None) -> str:
        return request_stop(self.store, job_id)

    async def run_scan(self, job_id: str, params: ScanParams) -> JobStatus:
        """Run all phases of a scan and record its terminal status."""
        state = ScanState()

        try:
            await self._search_repositories(job_id, params, state)

            if params.code_pages > 0:
                await self._search_code(job_id, params, state)

            if params.fetch_metadata:
                await self._enrich(job_id, state)

            saved = self._persist(job_id, params, state)

        except ScanAbandoned as e:
            logger.warning(f"Scan job {job_id} stopped without saving: {e}")
            return e.status

        except ScanCanceled:
            logger.info(f"Scan job {job_id} canceled")
            return self._finish(job_id, JobStatus.CANCELED, "Canceled by user")

        except RateLimited as e:
            logger.warning(f"Scan job {job_id} hit the rate limit: {e}")
            return self._finish(
                job_id,
                JobStatus.RATE_LIMITED,
                f"Rate limited: {e}",
                rate_limit_reset_at=e.reset_at
            )

        except asyncio.CancelledError:
            self._finish(job_id, JobStatus.CANCELED, "Canceled: worker stopped")
            raise

        except Exception as e:
            logger.exception(f"Scan job {job_id} failed")
            return self._finish(job_id, JobStatus.FAILED, str(e) or type(e).__name__)

        message = f"Completed: {saved} repositories saved"
        if state.notes:
            message += f" ({'; '.join(state.notes)})"
        logger.info(f"Scan job {job_id}: {message}")
        return self._finish(job_id, JobStatus.COMPLETED, message, progress=100)

    def _finish(self, job_id: str, status: JobStatus, message: str, **fields) -> JobStatus:
        """Record the terminal status unless the job already has one."""
        try:
            written = self.store.update_job(
                job_id, require_running=True, status=status, message=message, finished_at=utcnow(), **fields
            )
        except (PersistenceError, JobNotFound) as e:
            logger.error(f"Could not record final status {status.value} for job {job_id}: {e}")
            return status

        if not written:
            current = self.store.get_job(job_id)
            logger.warning(f"Job {job_id} already ended as {current.status.value}, not recording {status.value}")
            return current.status
        return status

    def _check_canceled(self, job_id: str) -> None:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status is not JobStatus.RUNNING:
            raise ScanAbandoned(job.status)
        if job.cancel_requested:
            raise ScanCanceled()

    def _log_quota(self, phase: str, state: ScanState) -> None:
        snapshot = state.rate_limit
        if snapshot.remaining is None:
            return
        logger.info(
            f"Rate limit after {phase}: {snapshot.remaining}/{snapshot.limit} remaining, "
            f"resets in {snapshot.seconds_until_reset():.0f}s"
        )

    def _progress(self, job_id: str, progress: int, message: str) -> None:
        logger.info(f"[{progress:3d}%] {message}")
        if not self.store.update_job(job_id, require_running=True, progress=progress, message=message):
            raise ScanAbandoned(self.store.get_job(job_id).status)

    async def _search_repositories(self, job_id: str, params: ScanParams, state: ScanState) -> None:
        """Phase 1: repository search, progress 0-50%."""
        base_queries = params.custom_repo_queries or DEFAULT_REPO_QUERIES
        queries = apply_filters(base_queries, params.language, params.pushed_after, params.stars_min)

        for index, query in enumerate(queries):
            self._progress(
                job_id,
                (index * 50) // len(queries),
                f"Searching repositories ({index + 1}/{len(queries)})..."
            )
            evidence = tool_mention_evidence(query)

            for page in range(1, params.repo_pages + 1):
                self._check_canceled(job_id)

                try:
                    result = await self.client.search_repositories(query, page, self.per_page)
                except RateLimited:
                    raise
                except GitHubAPIError as e:
                    logger.error(f"Error searching repos with query {query!r} (page {page}): {e}")
                    state.failed_queries += 1
                    break

                state.rate_limit = result.rate_limit
                logger.debug(
                    f"Query {index + 1} page {page}: {len(result.items)} repos, "
                    f"rate limit remaining={result.rate_limit.remaining}"
                )

                for item in result.items:
                    candidate = state.candidates.get(item.html_url)
                    if candidate is None:
                        if len(state.candidates) >= params.max_repos:
                            state.dropped_repos += 1
                            continue
                        candidate = candidate_from_repo(item)
                        state.candidates[item.html_url] = candidate
                    merge_evidence(candidate, evidence)

                if len(result.items) < self.per_page:
                    break

            if index < len(queries) - 1:
                await asyncio.sleep(self.settings.scan.query_delay)

        if state.dropped_repos:
            logger.info(f"Candidate cap of {params.max_repos} reached, dropped {state.dropped_repos} repositories")
        if state.failed_queries:
            state.notes.append(f"{state.failed_queries} repository queries failed")

        self._log_quota("repository search", state)
        self._progress(job_id, 50, f"Found {len(state.candidates)} candidate repositories")

    async def _search_code(self, job_id: str, params: ScanParams, state: ScanState) -> None:
        """Phase 2: code search evidence for existing candidates, progress 50-90%."""
        queries = params.custom_code_queries or DEFAULT_CODE_QUERIES
        failed = 0

        for index, query in enumerate(queries):
            self._progress(
                job_id,
                50 + (index * 40) // len(queries),
                f"Searching code evidence ({index + 1}/{len(queries)})..."
            )

            for page in range(1, params.code_pages + 1):
                self._check_canceled(job_id)

                try:
                    result = await self.client.search_code(query, page, self.per_page)
                except RateLimited:
                    raise
                except GitHubAPIError as e:
                    logger.error(f"Error searching code with query {query!r} (page {page}): {e}")
                    failed += 1
                    break

                state.rate_limit = result.rate_limit

                for item in result.items:
                    candidate = state.candidates.get(item.repo_url)
                    if candidate is None:
                        # Code hits never create candidates
                        continue
                    evidence = code_evidence(item, query)
                    if evidence and merge_evidence(candidate, evidence):
                        state.code_evidence += 1

                if len(result.items) < self.per_page:
                    break

            if index < len(queries) - 1:
                await asyncio.sleep(self.settings.scan.query_delay)

        if failed:
            state.notes.append(f"{failed} code queries failed")

        self._log_quota("code search", state)
        self._progress(job_id, 90, f"Added {state.code_evidence} code evidence items")

    async def _enrich(self, job_id: str, state: ScanState) -> None:
        """Phase 3: per-repository counts, progress 90-95%."""
        candidates = list(state.candidates.values())
        self._progress(job_id, 90, "Fetching repository metadata...")

        done = 0
        for index, candidate in enumerate(candidates):
            self._check_canceled(job_id)

            owner_and_name = candidate.owner_and_name
            if owner_and_name is None:
                logger.warning(f"Skipping metadata for malformed name {candidate.full_name!r}")
                continue

            try:
                counts = await fetch_repo_counts(self.client, *owner_and_name)
            except RateLimited as e:
                logger.warning(f"Rate limit during metadata enrichment, skipping the rest: {e}")
                state.notes.append(f"metadata fetched for {done}/{len(candidates)} repositories before rate limit")
                return

            apply_counts(candidate, counts)
            done += 1
            if done % 5 == 0:
                self._progress(
                    job_id,
                    90 + (done * 5) // len(candidates),
                    f"Fetched metadata for {done} repositories..."
                )

            if index < len(candidates) - 1:
                await asyncio.sleep(self.settings.scan.enrichment_delay)

    def _persist(self, job_id: str, params: ScanParams, state: ScanState) -> int:
        """Phase 4: upsert qualifying candidates, best first."""
        self._progress(job_id, 95, "Saving results...")

        ranked = rank(state.candidates.values(), params.min_score)
        logger.info(f"{len(ranked)} of {len(state.candidates)} candidates meet min score {params.min_score}")

        saved = 0
        for candidate in ranked:
            self._check_canceled(job_id)
            try:
                self.store.upsert_candidate(candidate)
                saved += 1
            except PersistenceError as e:
                logger.error(f"Error saving candidate {candidate.repo_url}: {e}")

        if saved < len(ranked):
            state.notes.append(f"{len(ranked) - saved} candidates failed to save")
        return saved
