"""Test configuration and fixtures."""

import os
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from vibescan.config import Settings
from vibescan.gh_client import CodeItem, CodeSearchPage, CountResult, RepoDetails, RepoItem, RepoSearchPage
from vibescan.rate_limit import RateLimitSnapshot
from vibescan.store import SqliteJobStore
from vibescan.tasks import TaskRegistry

Page = Union[List[dict], Exception]


class FakeGitHubClient:
    """Scripted stand-in for GitHubClient used by orchestrator tests.

    Pages are keyed by query string; an Exception in place of a page is
    raised when that page is requested.
    """

    def __init__(self):
        self.repo_pages: Dict[str, List[Page]] = {}
        self.code_pages: Dict[str, List[Page]] = {}
        self.counts: Dict[Tuple[str, str], Union[int, Exception]] = {}
        self.details: Dict[str, Union[dict, Exception]] = {}
        self.calls: List[tuple] = []
        self.before_call: Optional[Callable[[tuple], None]] = None

    def _record(self, call: tuple) -> None:
        self.calls.append(call)
        if self.before_call:
            self.before_call(call)

    @staticmethod
    def _page(pages: List[Page], page: int) -> List[dict]:
        if page > len(pages):
            return []
        result = pages[page - 1]
        if isinstance(result, Exception):
            raise result
        return result

    async def search_repositories(self, query, page=1, per_page=None):
        self._record(("repo", query, page))
        items = self._page(self.repo_pages.get(query, []), page)
        return RepoSearchPage(
            total_count=len(items),
            items=[RepoItem.model_validate(i) for i in items],
            rate_limit=RateLimitSnapshot(remaining=29, limit=30)
        )

    async def search_code(self, query, page=1, per_page=None):
        self._record(("code", query, page))
        items = self._page(self.code_pages.get(query, []), page)
        return CodeSearchPage(
            total_count=len(items),
            items=[CodeItem.model_validate(i) for i in items],
            rate_limit=RateLimitSnapshot(remaining=9, limit=10)
        )

    def _count(self, kind: str, full_name: str) -> CountResult:
        value = self.counts.get((kind, full_name), 0)
        if isinstance(value, Exception):
            raise value
        return CountResult(count=value)

    async def get_repo_issue_count(self, owner, name, state="all"):
        self._record(("issues", f"{owner}/{name}", state))
        return self._count(f"issues_{state}", f"{owner}/{name}")

    async def get_repo_pull_request_count(self, owner, name, state="all"):
        self._record(("pulls", f"{owner}/{name}", state))
        return self._count(f"pulls_{state}", f"{owner}/{name}")

    async def get_contributor_count(self, owner, name):
        self._record(("contributors", f"{owner}/{name}"))
        return self._count("contributors", f"{owner}/{name}")

    async def get_repo_details(self, owner, name):
        self._record(("details", f"{owner}/{name}"))
        value = self.details.get(f"{owner}/{name}")
        if isinstance(value, Exception):
            raise value
        return RepoDetails.model_validate(value or {
            "full_name": f"{owner}/{name}",
            "html_url": f"https://github.com/{owner}/{name}",
        })


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep developer tokens and overrides out of tests."""
    for key in ("GITHUB_TOKEN", "GH_TOKEN", "VIBESCAN_DB", "LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings():
    """Settings with all backpressure delays disabled."""
    return Settings(
        github={"token": "ghp_test_token", "retry_delay": 0.0},
        scan={"query_delay": 0.0, "enrichment_delay": 0.0, "backfill_delay": 0.0},
    )


@pytest.fixture
def store():
    """In-memory job store."""
    job_store = SqliteJobStore(":memory:")
    yield job_store
    job_store.close()


@pytest.fixture
def registry():
    return TaskRegistry()


@pytest.fixture
def fake_client():
    return FakeGitHubClient()


@pytest.fixture
def repo_data():
    """Factory for repository search items."""
    def make(full_name: str = "owner/test-repo", stars: int = 10, **extra) -> dict:
        data = {
            "id": abs(hash(full_name)) % 10_000_000,
            "full_name": full_name,
            "html_url": f"https://github.com/{full_name}",
            "stargazers_count": stars,
            "forks_count": 2,
            "pushed_at": "2024-05-01T12:00:00Z",
            "language": "Python",
            "description": "A test repository",
        }
        data.update(extra)
        return data
    return make


@pytest.fixture
def code_data():
    """Factory for code search items."""
    def make(full_name: str, path: str) -> dict:
        return {
            "name": os.path.basename(path),
            "path": path,
            "repository": {
                "full_name": full_name,
                "html_url": f"https://github.com/{full_name}",
            },
        }
    return make


@pytest.fixture
def sample_repo_data(repo_data):
    """Sample repository data for tests."""
    return repo_data("owner/test-repo", stars=100)
