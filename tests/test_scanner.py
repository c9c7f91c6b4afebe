"""Tests for the scan orchestrator."""

import asyncio
import logging
from datetime import datetime, timezone

import pytest

from vibescan.config import ScanParams
from vibescan.models import JobStatus
from vibescan.scanner import ScanOrchestrator, request_stop
from vibescan.scoring import DEFAULT_CODE_QUERIES, DEFAULT_REPO_QUERIES
from vibescan.utils import GitHubAPIError, JobNotFound, NoRunningScan, RateLimited, ScanAlreadyRunning

CURSOR_QUERY = "Cursor AI in:readme"
COPILOT_QUERY = '"GitHub Copilot" in:readme'
CURSOR_CODE_QUERY = "path:.cursor"


@pytest.fixture
def orchestrator(fake_client, store, settings, registry):
    return ScanOrchestrator(fake_client, store, settings, registry)


async def run(orchestrator, store, **params):
    scan_params = ScanParams(**params)
    job_id = store.create_job(scan_params.to_json())
    status = await orchestrator.run_scan(job_id, scan_params)
    return job_id, status


def url(name):
    return f"https://github.com/{name}"


class TestScanFlow:
    """Test a scan from search to persistence."""

    @pytest.mark.asyncio
    async def test_two_tools_reach_threshold(self, orchestrator, fake_client, store, repo_data):
        """Test a repo found by two tool queries scores 4 and is saved."""
        fake_client.repo_pages = {
            CURSOR_QUERY: [[repo_data("a/both", stars=5), repo_data("a/cursor-only", stars=100)]],
            COPILOT_QUERY: [[repo_data("a/both", stars=5)]],
        }

        job_id, status = await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], code_pages=0, min_score=4
        )

        assert status == JobStatus.COMPLETED
        job = store.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.message == "Completed: 1 repositories saved"
        assert job.finished_at is not None

        assert store.count_candidates() == 1
        stored = store.get_candidate(url("a/both"))
        assert stored.score == 4
        assert sorted(stored.evidence_summary) == [
            "tool_mention: Cursor/vibe coding",
            "tool_mention: GitHub Copilot",
        ]
        assert store.get_candidate(url("a/cursor-only")) is None

    @pytest.mark.asyncio
    async def test_same_tool_counts_once(self, orchestrator, fake_client, store, repo_data):
        """Test two queries for the same tool give one tag."""
        fake_client.repo_pages = {
            "Windsurf in:readme": [[repo_data("a/x")]],
            "Windsurf in:description": [[repo_data("a/x")]],
        }

        await run(
            orchestrator, store,
            custom_repo_queries=["Windsurf in:readme", "Windsurf in:description"],
            code_pages=0, min_score=0
        )

        stored = store.get_candidate(url("a/x"))
        assert stored.score == 2
        assert stored.evidence_summary == ["tool_mention: Windsurf"]

    @pytest.mark.asyncio
    async def test_code_evidence_only_for_known_repos(self, orchestrator, fake_client, store, repo_data, code_data):
        """Test code hits add evidence but never create candidates."""
        fake_client.repo_pages = {"Windsurf in:readme": [[repo_data("a/x")]]}
        fake_client.code_pages = {
            CURSOR_CODE_QUERY: [[
                code_data("a/x", ".cursor/rules/style.mdc"),
                code_data("a/x", ".cursor/rules/style.mdc"),
                code_data("unknown/z", ".cursor/rules/style.mdc"),
            ]],
        }

        await run(
            orchestrator, store,
            custom_repo_queries=["Windsurf in:readme"],
            custom_code_queries=[CURSOR_CODE_QUERY],
            min_score=0
        )

        stored = store.get_candidate(url("a/x"))
        assert stored.score == 5
        assert "cursor_fingerprint: .cursor/rules/style.mdc" in stored.evidence_summary
        assert store.get_candidate(url("unknown/z")) is None
        assert store.count_candidates() == 1

    @pytest.mark.asyncio
    async def test_code_phase_skipped(self, orchestrator, fake_client, store, repo_data):
        """Test code_pages=0 issues no code searches."""
        fake_client.repo_pages = {"Windsurf in:readme": [[repo_data("a/x")]]}

        await run(orchestrator, store, custom_repo_queries=["Windsurf in:readme"], code_pages=0)

        assert all(call[0] == "repo" for call in fake_client.calls)

    @pytest.mark.asyncio
    async def test_default_queries_with_filters(self, orchestrator, fake_client, store):
        """Test built-in queries are used with qualifiers appended."""
        await run(orchestrator, store, language="Python", stars_min=5)

        repo_queries = [call[1] for call in fake_client.calls if call[0] == "repo"]
        code_queries = [call[1] for call in fake_client.calls if call[0] == "code"]
        assert repo_queries == [f"{q} language:Python stars:>=5" for q in DEFAULT_REPO_QUERIES]
        assert code_queries == DEFAULT_CODE_QUERIES

    @pytest.mark.asyncio
    async def test_paging_stops_on_short_page(self, orchestrator, fake_client, store, settings, repo_data):
        """Test a page smaller than per_page ends the query."""
        settings.github.per_page = 2
        fake_client.repo_pages = {
            "Windsurf in:readme": [
                [repo_data("a/one"), repo_data("a/two")],
                [repo_data("a/three")],
                [repo_data("a/never")],
            ],
        }

        await run(
            orchestrator, store,
            custom_repo_queries=["Windsurf in:readme"], repo_pages=3, code_pages=0, min_score=0
        )

        assert [call[2] for call in fake_client.calls] == [1, 2]
        assert store.count_candidates() == 3

    @pytest.mark.asyncio
    async def test_candidate_cap(self, orchestrator, fake_client, store, repo_data):
        """Test new repos beyond max_repos are dropped but known ones still merge."""
        fake_client.repo_pages = {
            "Windsurf in:readme": [[repo_data("a/one"), repo_data("a/two"), repo_data("a/three")]],
            "Copilot in:readme": [[repo_data("a/one"), repo_data("a/four")]],
        }

        await run(
            orchestrator, store,
            custom_repo_queries=["Windsurf in:readme", "Copilot in:readme"],
            code_pages=0, min_score=0, max_repos=2
        )

        names = [c.full_name for c in store.iter_candidates()]
        assert names == ["a/one", "a/two"]
        assert store.get_candidate(url("a/one")).score == 4

    @pytest.mark.asyncio
    async def test_persisted_in_rank_order(self, orchestrator, fake_client, store, repo_data):
        """Test candidates are written best first and below-threshold ones skipped."""
        fake_client.repo_pages = {
            CURSOR_QUERY: [[repo_data("a/low", stars=1), repo_data("a/high", stars=50), repo_data("a/solo")]],
            COPILOT_QUERY: [[repo_data("a/low", stars=1), repo_data("a/high", stars=50)]],
        }
        written = []
        upsert = store.upsert_candidate

        def record(candidate):
            written.append(candidate.full_name)
            upsert(candidate)

        store.upsert_candidate = record

        await run(orchestrator, store, custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], code_pages=0)

        assert written == ["a/high", "a/low"]

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, orchestrator, fake_client, store, repo_data, code_data):
        """Test progress never decreases and ends at 100."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}
        fake_client.code_pages = {CURSOR_CODE_QUERY: [[code_data("a/x", ".cursor/rules.md")]]}
        seen = []
        update = store.update_job

        def record(job_id, **fields):
            if "progress" in fields:
                seen.append(fields["progress"])
            return update(job_id, **fields)

        store.update_job = record

        await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY],
            custom_code_queries=[CURSOR_CODE_QUERY, "filename:prompts.md"],
            fetch_metadata=True
        )

        assert seen == sorted(seen)
        assert seen[0] == 0
        assert seen[-1] == 100
        assert 50 in seen and 90 in seen and 95 in seen


class TestScanFailures:
    """Test terminal states other than completed."""

    @pytest.mark.asyncio
    async def test_rate_limited_during_repo_search(self, orchestrator, fake_client, store, repo_data):
        """Test quota exhaustion ends the job with nothing persisted."""
        reset = datetime(2030, 1, 1, tzinfo=timezone.utc)
        fake_client.repo_pages = {
            CURSOR_QUERY: [[repo_data("a/x")]],
            COPILOT_QUERY: [RateLimited("Rate limit exceeded", reset_at=reset)],
        }

        job_id, status = await run(
            orchestrator, store, custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], min_score=0
        )

        assert status == JobStatus.RATE_LIMITED
        job = store.get_job(job_id)
        assert job.status == JobStatus.RATE_LIMITED
        assert job.rate_limit_reset_at == reset
        assert job.message.startswith("Rate limited")
        assert job.finished_at is not None
        assert store.count_candidates() == 0

    @pytest.mark.asyncio
    async def test_rate_limited_during_code_search(self, orchestrator, fake_client, store, repo_data):
        """Test quota exhaustion in the code phase also discards candidates."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}
        fake_client.code_pages = {CURSOR_CODE_QUERY: [RateLimited("Rate limit exceeded")]}

        job_id, status = await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY], custom_code_queries=[CURSOR_CODE_QUERY], min_score=0
        )

        assert status == JobStatus.RATE_LIMITED
        assert store.get_job(job_id).rate_limit_reset_at is None
        assert store.count_candidates() == 0

    @pytest.mark.asyncio
    async def test_failed_query_is_skipped(self, orchestrator, fake_client, store, repo_data):
        """Test an API error on one query does not end the scan."""
        fake_client.repo_pages = {
            CURSOR_QUERY: [GitHubAPIError("Validation Failed", 422)],
            COPILOT_QUERY: [[repo_data("a/x")]],
        }

        job_id, status = await run(
            orchestrator, store, custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], code_pages=0, min_score=0
        )

        assert status == JobStatus.COMPLETED
        assert "1 repository queries failed" in store.get_job(job_id).message
        assert store.count_candidates() == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, orchestrator, fake_client, store):
        """Test unhandled errors end the job as failed."""
        fake_client.repo_pages = {CURSOR_QUERY: [RuntimeError("kaboom")]}

        job_id, status = await run(orchestrator, store, custom_repo_queries=[CURSOR_QUERY])

        assert status == JobStatus.FAILED
        job = store.get_job(job_id)
        assert job.message == "kaboom"
        assert job.finished_at is not None
        assert store.find_running_job() is None


class TestCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_during_search(self, orchestrator, fake_client, store, repo_data):
        """Test a stop request during search persists nothing."""
        fake_client.repo_pages = {
            CURSOR_QUERY: [[repo_data("a/x")]],
            COPILOT_QUERY: [[repo_data("a/x")]],
        }
        scan_params = ScanParams(custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], min_score=0)
        job_id = store.create_job(scan_params.to_json())
        fake_client.before_call = lambda call: store.request_cancel(job_id)

        status = await orchestrator.run_scan(job_id, scan_params)

        assert status == JobStatus.CANCELED
        job = store.get_job(job_id)
        assert job.message == "Canceled by user"
        assert job.finished_at is not None
        assert len(fake_client.calls) == 1
        assert store.count_candidates() == 0

    @pytest.mark.asyncio
    async def test_cancel_during_persistence(self, orchestrator, fake_client, store, repo_data):
        """Test rows written before the stop remain, later ones are skipped."""
        fake_client.repo_pages = {
            "Windsurf in:readme": [[repo_data("a/one", stars=3), repo_data("a/two", stars=2), repo_data("a/three", stars=1)]],
        }
        scan_params = ScanParams(custom_repo_queries=["Windsurf in:readme"], code_pages=0, min_score=0)
        job_id = store.create_job(scan_params.to_json())
        upsert = store.upsert_candidate

        def upsert_then_stop(candidate):
            upsert(candidate)
            store.request_cancel(job_id)

        store.upsert_candidate = upsert_then_stop

        status = await orchestrator.run_scan(job_id, scan_params)

        assert status == JobStatus.CANCELED
        assert [c.full_name for c in store.iter_candidates()] == ["a/one"]

    @pytest.mark.asyncio
    async def test_worker_task_cancelled(self, orchestrator, fake_client, store, registry):
        """Test cancelling the background task still records a terminal state."""
        started = asyncio.Event()

        async def hang(query, page=1, per_page=None):
            started.set()
            await asyncio.Event().wait()

        fake_client.search_repositories = hang

        job_id = await orchestrator.start_scan(ScanParams(custom_repo_queries=[CURSOR_QUERY]))
        await started.wait()
        await registry.shutdown()

        job = store.get_job(job_id)
        assert job.status == JobStatus.CANCELED
        assert job.message == "Canceled: worker stopped"

    def test_request_stop(self, store):
        """Test stop requests target the running job."""
        with pytest.raises(NoRunningScan):
            request_stop(store)
        with pytest.raises(JobNotFound):
            request_stop(store, "missing")

        job_id = store.create_job("{}")

        assert request_stop(store) == job_id
        assert store.get_job(job_id).cancel_requested is True


class TestBackgroundScans:
    """Test starting scans in the background."""

    @pytest.mark.asyncio
    async def test_start_returns_before_completion(self, orchestrator, fake_client, store, registry, repo_data):
        """Test start_scan returns a running job that later completes."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}

        job_id = await orchestrator.start_scan(ScanParams(custom_repo_queries=[CURSOR_QUERY], min_score=0))

        assert store.get_job(job_id).status == JobStatus.RUNNING
        assert registry.get(job_id) is not None

        await registry.wait(job_id)

        assert store.get_job(job_id).status == JobStatus.COMPLETED
        assert registry.get(job_id) is None
        assert store.count_candidates() == 1

    @pytest.mark.asyncio
    async def test_start_while_running(self, orchestrator, store):
        """Test a second scan is rejected without creating a job."""
        running = store.create_job("{}")

        with pytest.raises(ScanAlreadyRunning) as exc_info:
            await orchestrator.start_scan()

        assert exc_info.value.job_id == running
        assert store._read("SELECT COUNT(*) AS n FROM scan_jobs")[0]["n"] == 1

    @pytest.mark.asyncio
    async def test_stale_job_does_not_block(self, orchestrator, store, settings):
        """Test an orphaned job is failed and a new scan starts."""
        settings.scan.stale_job_after = 60
        orphan = store.create_job("{}")
        store._write("UPDATE scan_jobs SET updated_at = ? WHERE id = ?", ("2000-01-01T00:00:00+00:00", orphan))

        job_id = await orchestrator.start_scan(ScanParams(code_pages=0))
        await orchestrator.registry.wait(job_id)

        assert store.get_job(orphan).status == JobStatus.FAILED
        assert store.get_job(job_id).status == JobStatus.COMPLETED


class TestEnrichment:
    """Test metadata enrichment during a scan."""

    @pytest.mark.asyncio
    async def test_counts_saved_and_failures_isolated(self, orchestrator, fake_client, store, repo_data):
        """Test counts are stored and a failing count becomes unknown."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}
        fake_client.counts = {
            ("issues_open", "a/x"): 3,
            ("issues_all", "a/x"): 10,
            ("pulls_open", "a/x"): 1,
            ("pulls_all", "a/x"): 4,
            ("contributors", "a/x"): GitHubAPIError("Not Found", 404),
        }

        _, status = await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY], code_pages=0, min_score=0, fetch_metadata=True
        )

        assert status == JobStatus.COMPLETED
        stored = store.get_candidate(url("a/x"))
        assert stored.open_issues == 3
        assert stored.total_issues == 10
        assert stored.open_pull_requests == 1
        assert stored.total_pull_requests == 4
        assert stored.contributors is None

    @pytest.mark.asyncio
    async def test_rate_limit_stops_enrichment_only(self, orchestrator, fake_client, store, repo_data):
        """Test a rate limit during enrichment still saves candidates."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x"), repo_data("a/y")]]}
        fake_client.counts = {("issues_open", "a/x"): RateLimited("Rate limit exceeded")}

        job_id, status = await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY], code_pages=0, min_score=0, fetch_metadata=True
        )

        assert status == JobStatus.COMPLETED
        assert "before rate limit" in store.get_job(job_id).message
        assert store.count_candidates() == 2
        assert store.get_candidate(url("a/x")).open_issues is None
        assert not any(call[0] == "issues" and call[1] == "a/y" for call in fake_client.calls)

    @pytest.mark.asyncio
    async def test_metadata_not_fetched_by_default(self, orchestrator, fake_client, store, repo_data):
        """Test no count requests without fetch_metadata."""
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}

        await run(orchestrator, store, custom_repo_queries=[CURSOR_QUERY], code_pages=0, min_score=0)

        assert {call[0] for call in fake_client.calls} == {"repo"}


class TestTerminalState:
    """Test that a job's terminal state is written once."""

    @pytest.mark.asyncio
    async def test_reaped_job_stays_failed(self, orchestrator, fake_client, store, repo_data):
        """Test a worker whose job was marked abandoned stops without saving."""
        fake_client.repo_pages = {
            CURSOR_QUERY: [[repo_data("a/x")]],
            COPILOT_QUERY: [[repo_data("a/x")]],
        }
        scan_params = ScanParams(custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY], code_pages=0, min_score=0)
        job_id = store.create_job(scan_params.to_json())

        def reap(call):
            store._write(
                "UPDATE scan_jobs SET updated_at = ? WHERE id = ?",
                ("2000-01-01T00:00:00+00:00", job_id)
            )
            store.find_running_job(stale_after=60)

        fake_client.before_call = reap

        status = await orchestrator.run_scan(job_id, scan_params)

        assert status == JobStatus.FAILED
        job = store.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.message.startswith("Abandoned")
        assert len(fake_client.calls) == 1
        assert store.count_candidates() == 0

    def test_finish_does_not_overwrite(self, orchestrator, store):
        """Test a late terminal write leaves the recorded status alone."""
        job_id = store.create_job("{}")
        store.update_job(job_id, status=JobStatus.CANCELED, message="Canceled by user")

        status = orchestrator._finish(job_id, JobStatus.COMPLETED, "Completed: 3 repositories saved", progress=100)

        assert status == JobStatus.CANCELED
        job = store.get_job(job_id)
        assert job.status == JobStatus.CANCELED
        assert job.message == "Canceled by user"
        assert job.progress == 0


class TestPacing:
    """Test rate limit reporting and delays between queries."""

    @pytest.mark.asyncio
    async def test_quota_logged_after_search_phases(self, orchestrator, fake_client, store, repo_data, caplog):
        """Test the last rate limit snapshot of each search phase is reported."""
        caplog.set_level(logging.INFO, logger="vibescan.scanner")
        fake_client.repo_pages = {CURSOR_QUERY: [[repo_data("a/x")]]}

        await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY], custom_code_queries=[CURSOR_CODE_QUERY], min_score=0
        )

        assert "Rate limit after repository search: 29/30 remaining" in caplog.text
        assert "Rate limit after code search: 9/10 remaining" in caplog.text

    @pytest.mark.asyncio
    async def test_delay_only_between_queries(self, orchestrator, fake_client, store, settings, monkeypatch):
        """Test no delay follows the last query of a phase."""
        settings.scan.query_delay = 0.01
        delays = []
        real_sleep = asyncio.sleep

        async def record_sleep(delay, *args, **kwargs):
            delays.append(delay)
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", record_sleep)

        await run(
            orchestrator, store,
            custom_repo_queries=[CURSOR_QUERY, COPILOT_QUERY],
            custom_code_queries=[CURSOR_CODE_QUERY, "filename:prompts.md"]
        )

        assert delays.count(0.01) == 2
