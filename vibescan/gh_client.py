"""GitHub REST API client used by the scan orchestrator."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict

from .config import GitHubConfig
from .rate_limit import RateLimitSnapshot, RateLimitTracker, get_tracker, with_retry
from .utils.common import GitHubAPIError, RateLimited, TransientError
from .utils.dateparse import utcnow

logger = logging.getLogger(__name__)

LAST_PAGE_RE = re.compile(r'<[^>]*[?&]page=(\d+)[^>]*>;\s*rel="last"')


class RepoItem(BaseModel):
    """Repository as returned by the repository search endpoint."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    full_name: str
    html_url: str
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    pushed_at: Optional[datetime] = None
    language: Optional[str] = None
    description: Optional[str] = None


class RepoDetails(RepoItem):
    """Repository metadata from ``GET /repos/{owner}/{repo}``."""

    default_branch: Optional[str] = None
    clone_url: Optional[str] = None
    ssh_url: Optional[str] = None


class CodeRepository(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str
    html_url: Optional[str] = None


class CodeItem(BaseModel):
    """File hit from the code search endpoint."""

    model_config = ConfigDict(extra="ignore")

    name: str
    path: str
    repository: CodeRepository

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.repository.full_name}"


@dataclass
class RepoSearchPage:
    """One page of repository search results."""

    total_count: int
    items: List[RepoItem]
    incomplete_results: bool = False
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)


@dataclass
class CodeSearchPage:
    """One page of code search results."""

    total_count: int
    items: List[CodeItem]
    incomplete_results: bool = False
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)


@dataclass
class CountResult:
    """A counted collection (issues, pull requests, contributors)."""

    count: int
    rate_limit: RateLimitSnapshot = field(default_factory=RateLimitSnapshot)


@dataclass
class _Response:
    data: Any
    headers: Mapping[str, str]
    rate_limit: RateLimitSnapshot


class GitHubClient:
    """Typed wrapper over the GitHub search and repository endpoints.

    Transient failures (network errors, timeouts, 5xx) are retried with a
    linear backoff. Quota exhaustion raises RateLimited immediately, any
    other non-2xx response raises GitHubAPIError.
    """

    def __init__(self, config: GitHubConfig, tracker: Optional[RateLimitTracker] = None):
        """Initialize GitHub client.

        Args:
            config: GitHub section of the settings.
            tracker: Rate limit tracker, defaults to the process-wide one.
        """
        self.config = config
        self.tracker = tracker or get_tracker()
        self.session: Optional[aiohttp.ClientSession] = None

        if not config.token:
            logger.warning("GITHUB_TOKEN not set - rate limits will be strict (60 requests/hour)")

    async def __aenter__(self):
        """Async context manager entry."""
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)
        self.session = aiohttp.ClientSession(timeout=timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": self.config.user_agent,
        }
        if self.config.token:
            headers["Authorization"] = f"token {self.config.token}"
        return headers

    async def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> _Response:
        return await with_retry(
            self._request_once,
            path,
            params,
            attempts=self.config.retry_attempts,
            delay=self.config.retry_delay
        )

    async def _request_once(self, path: str, params: Optional[Dict[str, Any]]) -> _Response:
        if not self.session:
            raise RuntimeError("Client not initialized. Use async context manager.")

        url = f"{self.config.api_base}{path}"

        try:
            async with self.session.get(url, params=params, headers=self._headers()) as response:
                snapshot = RateLimitSnapshot.from_headers(response.headers)
                self.tracker.update(snapshot)

                if response.status in (403, 429):
                    body = await response.text()
                    limited = self._rate_limit_error(response.status, response.headers, snapshot, body)
                    if limited:
                        raise limited
                    raise GitHubAPIError(f"GitHub API error: {response.status} {body[:200]}", response.status)

                if response.status >= 500:
                    body = await response.text()
                    raise TransientError(f"GitHub API error: {response.status} {body[:200]}", response.status)

                if response.status >= 300:
                    body = await response.text()
                    raise GitHubAPIError(f"GitHub API error: {response.status} {body[:200]}", response.status)

                data = None
                if response.status != 204:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise GitHubAPIError(f"Invalid JSON from {path}", response.status) from e

                return _Response(data=data, headers=response.headers, rate_limit=snapshot)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"Request to {path} failed: {e!r}") from e

    @staticmethod
    def _rate_limit_error(
        status: int,
        headers: Mapping[str, str],
        snapshot: RateLimitSnapshot,
        body: str
    ) -> Optional[RateLimited]:
        """Decide whether a 403/429 response signals throttling.

        Every 429 is a rate limit. A 403 is one when it carries Retry-After,
        a reset time still in the future, an exhausted quota or a rate limit
        message; a bare 403 is a permission error.
        """
        retry_after = headers.get("Retry-After")
        mentions_limit = "rate limit" in body.lower()
        reset_pending = snapshot.reset_at is not None and snapshot.reset_at > utcnow()

        if status != 429 and not (retry_after or reset_pending or snapshot.exhausted or mentions_limit):
            return None

        reset_at = snapshot.reset_at
        if retry_after and retry_after.isdigit():
            reset_at = utcnow() + timedelta(seconds=int(retry_after))

        when = reset_at.isoformat() if reset_at else "unknown"
        return RateLimited(f"Rate limit exceeded. Reset at {when}", reset_at=reset_at, status_code=status)

    async def search_repositories(self, query: str, page: int = 1, per_page: Optional[int] = None) -> RepoSearchPage:
        """Search repositories, most recently updated first.

        Args:
            query: GitHub search query, including qualifiers.
            page: Page number (1-based).
            per_page: Results per page.

        Returns:
            One page of results.
        """
        params = {
            "q": query,
            "page": page,
            "per_page": per_page or self.config.per_page,
            "sort": "updated",
            "order": "desc"
        }
        response = await self._request("/search/repositories", params)
        data = response.data or {}

        items = []
        for raw in data.get("items", []):
            try:
                items.append(RepoItem.model_validate(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed repository item: {e}")

        return RepoSearchPage(
            total_count=data.get("total_count", 0),
            items=items,
            incomplete_results=data.get("incomplete_results", False),
            rate_limit=response.rate_limit
        )

    async def search_code(self, query: str, page: int = 1, per_page: Optional[int] = None) -> CodeSearchPage:
        """Search code.

        Args:
            query: GitHub code search query.
            page: Page number (1-based).
            per_page: Results per page.

        Returns:
            One page of results.
        """
        params = {"q": query, "page": page, "per_page": per_page or self.config.per_page}
        response = await self._request("/search/code", params)
        data = response.data or {}

        items = []
        for raw in data.get("items", []):
            try:
                items.append(CodeItem.model_validate(raw))
            except ValueError as e:
                logger.warning(f"Skipping malformed code item: {e}")

        return CodeSearchPage(
            total_count=data.get("total_count", 0),
            items=items,
            incomplete_results=data.get("incomplete_results", False),
            rate_limit=response.rate_limit
        )

    async def get_repo_details(self, owner: str, name: str) -> RepoDetails:
        response = await self._request(f"/repos/{owner}/{name}")
        return RepoDetails.model_validate(response.data)

    async def get_repo_issue_count(self, owner: str, name: str, state: str = "all") -> CountResult:
        """Count issues in the given state (GitHub includes pull requests here)."""
        return await self._count(f"/repos/{owner}/{name}/issues", {"state": state})

    async def get_repo_pull_request_count(self, owner: str, name: str, state: str = "all") -> CountResult:
        return await self._count(f"/repos/{owner}/{name}/pulls", {"state": state})

    async def get_contributor_count(self, owner: str, name: str) -> CountResult:
        return await self._count(f"/repos/{owner}/{name}/contributors", {"anon": "false"})

    async def _count(self, path: str, params: Dict[str, Any]) -> CountResult:
        """Count a list endpoint with one request.

        With ``per_page=1`` the page number of the ``rel="last"`` link equals
        the number of items.
        """
        response = await self._request(path, {**params, "per_page": 1, "page": 1})

        link = response.headers.get("Link")
        if link:
            match = LAST_PAGE_RE.search(link)
            if match:
                return CountResult(count=int(match.group(1)), rate_limit=response.rate_limit)

        data = response.data
        count = len(data) if isinstance(data, list) else 0
        return CountResult(count=count, rate_limit=response.rate_limit)

    @property
    def rate_limit(self) -> RateLimitSnapshot:
        """Most recent rate limit state seen by any client in this process."""
        return self.tracker.snapshot
