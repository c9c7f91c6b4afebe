"""Repository metadata enrichment (issue, pull request and contributor counts)."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .gh_client import GitHubClient
from .models import CandidateRepo
from .store import SqliteJobStore, metadata_fields
from .utils.common import RateLimited, VibeScanError

logger = logging.getLogger(__name__)


async def fetch_repo_counts(client: GitHubClient, owner: str, name: str) -> Dict[str, Optional[int]]:
    """Fetch the five counts for one repository concurrently.

    A count that fails for any reason other than the rate limit is None
    (unknown).

    Raises:
        RateLimited: If any of the calls hit the rate limit.
    """
    calls = {
        "open_issues": client.get_repo_issue_count(owner, name, "open"),
        "total_issues": client.get_repo_issue_count(owner, name, "all"),
        "open_pull_requests": client.get_repo_pull_request_count(owner, name, "open"),
        "total_pull_requests": client.get_repo_pull_request_count(owner, name, "all"),
        "contributors": client.get_contributor_count(owner, name),
    }
    results = await asyncio.gather(*calls.values(), return_exceptions=True)

    for result in results:
        if isinstance(result, RateLimited):
            raise result
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result

    counts: Dict[str, Optional[int]] = {}
    for field_name, result in zip(calls, results):
        if isinstance(result, Exception):
            logger.warning(f"Could not fetch {field_name} for {owner}/{name}: {result}")
            counts[field_name] = None
        else:
            counts[field_name] = result.count
    return counts


def apply_counts(candidate: CandidateRepo, counts: Dict[str, Optional[int]]) -> None:
    for field_name, value in counts.items():
        setattr(candidate, field_name, value)


@dataclass
class BackfillReport:
    """Outcome of a metadata backfill run."""

    processed: int = 0
    errors: int = 0
    total: int = 0
    rate_limited: bool = False

    @property
    def remaining(self) -> int:
        return self.total - self.processed - self.errors

    @property
    def message(self) -> str:
        if self.total == 0:
            return "No repositories need metadata backfilling"
        text = f"Backfilled metadata for {self.processed} repositories"
        if self.remaining > 0:
            text += f". {self.remaining} remaining. Run again to continue."
        else:
            text += "."
        return text


async def backfill_metadata(
    client: GitHubClient,
    store: SqliteJobStore,
    batch: int = 100,
    delay: float = 0.4
) -> BackfillReport:
    """Fill in metadata for stored candidates that are missing it.

    Processes the least recently updated candidates first and stops early
    when the rate limit is hit, leaving the rest for a later run.
    """
    repos = store.candidates_missing_metadata(batch)
    report = BackfillReport(total=len(repos))

    for index, repo in enumerate(repos):
        owner, _, name = repo.full_name.partition("/")
        if not owner or not name:
            logger.warning(f"Skipping candidate with malformed name: {repo.full_name}")
            report.errors += 1
            continue

        try:
            details, counts = await asyncio.gather(
                client.get_repo_details(owner, name),
                fetch_repo_counts(client, owner, name)
            )
            store.update_candidate_metadata(
                repo.repo_url,
                **metadata_fields({
                    "forks": details.forks_count,
                    "language": details.language,
                    "description": details.description,
                    **counts,
                })
            )
            report.processed += 1
        except RateLimited as e:
            logger.warning(f"Rate limit detected, stopping backfill: {e}")
            report.rate_limited = True
            break
        except (VibeScanError, ValueError) as e:
            logger.error(f"Error backfilling metadata for {repo.full_name}: {e}")
            report.errors += 1

        if index < len(repos) - 1:
            await asyncio.sleep(delay)

    logger.info(report.message)
    return report
