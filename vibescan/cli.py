"""CLI interface for vibescan."""

import asyncio
import logging
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.table import Table

from .clone import RepoCloner
from .config import ScanParams, Settings, load_config
from .enrichment import backfill_metadata
from .export import export_csv, export_filename
from .gh_client import GitHubClient
from .models import CandidateFilter, JobStatus, ScanJob
from .rate_limit import get_tracker
from .scanner import ScanOrchestrator, request_stop
from .store import SqliteJobStore, open_store
from .tasks import get_registry
from .utils.common import (
    ConfigError,
    JobNotFound,
    NoRunningScan,
    ScanAlreadyRunning,
    console,
    create_progress_bar,
    format_datetime,
)
from .utils.setup_logging import setup_logging

app = typer.Typer(help="vibescan - discover GitHub repositories built with AI coding tools")

logger = logging.getLogger(__name__)


def _load(config_file: Optional[str], verbose: bool = False) -> Settings:
    try:
        settings = load_config(config_file)
    except (ConfigError, FileNotFoundError) as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(2)
    setup_logging(settings, "DEBUG" if verbose else None)
    return settings


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)
    except ValueError:
        raise typer.BadParameter(f"expected YYYY-MM-DD, got {value!r}") from None


@app.command()
def scan(
    min_score: int = typer.Option(4, "--min-score", help="Minimum score for a repository to be saved"),
    max_repos: int = typer.Option(80, "--max-repos", help="Maximum number of candidate repositories"),
    repo_pages: int = typer.Option(2, "--repo-pages", help="Pages per repository search query"),
    code_pages: int = typer.Option(1, "--code-pages", help="Pages per code search query (0 skips code search)"),
    language: str = typer.Option(None, "--lang", help="Filter by programming language"),
    pushed_after: str = typer.Option(None, "--pushed-after", help="Only repos pushed after date (YYYY-MM-DD)"),
    stars_min: int = typer.Option(None, "--stars-min", help="Minimum star count"),
    repo_queries: Optional[List[str]] = typer.Option(None, "--repo-query", help="Custom repository query (repeatable)"),
    code_queries: Optional[List[str]] = typer.Option(None, "--code-query", help="Custom code query (repeatable)"),
    fetch_metadata: bool = typer.Option(False, "--fetch-metadata", help="Fetch issue/PR/contributor counts"),
    clone_repos: bool = typer.Option(False, "--clone", help="Clone saved repositories after a completed scan"),
    if_idle: bool = typer.Option(False, "--if-idle", help="Exit quietly if a scan is already running"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")
):
    """Run a scan and wait for it to finish. Ctrl-C requests a stop."""
    settings = _load(config_file, verbose)

    try:
        params = ScanParams(
            min_score=min_score,
            max_repos=max_repos,
            repo_pages=repo_pages,
            code_pages=code_pages,
            language=language,
            pushed_after=pushed_after,
            stars_min=stars_min,
            custom_repo_queries=repo_queries or None,
            custom_code_queries=code_queries or None,
            fetch_metadata=fetch_metadata,
            clone_repos=clone_repos,
        )
    except ValidationError as e:
        typer.echo(f"❌ Invalid scan parameters:\n{e}", err=True)
        raise typer.Exit(2)

    job = asyncio.run(_run_scan(settings, params, if_idle))
    if job is None:
        return

    icon = "✅" if job.status == JobStatus.COMPLETED else "⚠️"
    typer.echo(f"\n{icon} Scan {job.id} finished: {job.status.value}")
    if job.message:
        typer.echo(f"   {job.message}")
    if job.rate_limit_reset_at:
        typer.echo(f"   Rate limit resets at {format_datetime(job.rate_limit_reset_at)}")
    if job.status != JobStatus.COMPLETED:
        raise typer.Exit(1)


async def _run_scan(settings: Settings, params: ScanParams, if_idle: bool) -> Optional[ScanJob]:
    store = open_store(settings)
    registry = get_registry()

    try:
        async with GitHubClient(settings.github) as client:
            orchestrator = ScanOrchestrator(client, store, settings, registry)
            try:
                job_id = await orchestrator.start_scan(params)
            except ScanAlreadyRunning as e:
                if if_idle:
                    typer.echo(f"Scan already running: {e.job_id}")
                    return None
                typer.echo(f"❌ {e}", err=True)
                raise typer.Exit(1)

            await _watch(store, registry, job_id)
            job = store.get_job(job_id)

        if params.clone_repos and job.status == JobStatus.COMPLETED:
            await _clone_saved(settings, store, params.min_score, params.max_repos)
        return job
    finally:
        await registry.shutdown()
        store.close()


async def _watch(store: SqliteJobStore, registry, job_id: str) -> None:
    """Show job progress until its task finishes."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: request_stop(store, job_id))
    except NotImplementedError:
        logger.debug("Signal handlers unavailable, Ctrl-C will abort without a stop request")

    waiter = asyncio.ensure_future(registry.wait(job_id))
    try:
        with create_progress_bar() as progress:
            bar = progress.add_task("Starting scan...", total=100)
            while not waiter.done():
                job = store.get_job(job_id)
                if job:
                    progress.update(bar, completed=job.progress, description=job.message or "Scanning...")
                await asyncio.wait([waiter], timeout=0.5)
            job = store.get_job(job_id)
            progress.update(bar, completed=job.progress, description=job.message or job.status.value)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass


async def _clone_saved(settings: Settings, store: SqliteJobStore, min_score: int, limit: int) -> None:
    candidates, _ = store.list_candidates(CandidateFilter(min_score=min_score), page=1, limit=limit)
    cloner = RepoCloner(settings.clone.base_dir, settings.clone.timeout, settings.clone.delay)
    results = await cloner.clone_many([(c.repo_url, c.full_name) for c in candidates])
    ok = sum(1 for r in results if r.success)
    typer.echo(f"Cloned {ok}/{len(results)} repositories into {settings.clone.base_dir}")


@app.command()
def status(
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """Show the latest scan job."""
    settings = _load(config_file)

    with open_store(settings) as store:
        job = store.latest_job()
        total = store.count_candidates()

    typer.echo(f"GitHub token: {'✅ Set' if settings.has_token else '❌ Not set'}")
    typer.echo(f"Stored repositories: {total}")

    if job is None:
        typer.echo("Status: idle (no scans run yet)")
        return

    typer.echo(f"Job: {job.id}")
    typer.echo(f"Status: {job.status.value} ({job.progress}%)")
    if job.message:
        typer.echo(f"Message: {job.message}")
    typer.echo(f"Started: {format_datetime(job.started_at)}")
    typer.echo(f"Finished: {format_datetime(job.finished_at)}")
    if job.rate_limit_reset_at:
        typer.echo(f"Rate limit resets: {format_datetime(job.rate_limit_reset_at)}")
    if job.cancel_requested and job.status == JobStatus.RUNNING:
        typer.echo("Stop requested, waiting for the scan to reach a check point")


@app.command()
def stop(
    job_id: str = typer.Argument(None, help="Job to stop (default: the running one)"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """Request a running scan to stop."""
    settings = _load(config_file)

    with open_store(settings) as store:
        try:
            stopped = request_stop(store, job_id)
        except (NoRunningScan, JobNotFound) as e:
            typer.echo(f"❌ {e}", err=True)
            raise typer.Exit(1)

    typer.echo(f"Stop requested for {stopped}")


def _filters(min_score, stars_min, pushed_after, language=None) -> CandidateFilter:
    return CandidateFilter(
        min_score=min_score,
        stars_min=stars_min,
        pushed_after=_parse_date(pushed_after),
        language=language,
    )


@app.command()
def results(
    page: int = typer.Option(1, "--page", min=1),
    limit: int = typer.Option(50, "--limit", min=1, max=500),
    min_score: int = typer.Option(None, "--min-score"),
    stars_min: int = typer.Option(None, "--stars-min"),
    pushed_after: str = typer.Option(None, "--pushed-after", help="YYYY-MM-DD"),
    language: str = typer.Option(None, "--lang"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """List stored repositories, best first."""
    settings = _load(config_file)
    filters = _filters(min_score, stars_min, pushed_after, language)

    with open_store(settings) as store:
        rows, total = store.list_candidates(filters, page=page, limit=limit)

    table = Table(title=f"Repositories (page {page}, {total} total)")
    table.add_column("Score", justify="right")
    table.add_column("Stars", justify="right")
    table.add_column("Repository")
    table.add_column("Language")
    table.add_column("Evidence")
    for repo in rows:
        table.add_row(
            str(repo.score),
            str(repo.stars),
            repo.full_name,
            repo.language or "-",
            "\n".join(repo.evidence_summary),
        )
    console.print(table)

    total_pages = (total + limit - 1) // limit
    typer.echo(f"Page {page}/{max(total_pages, 1)}")


@app.command()
def export(
    output: Path = typer.Option(None, "--output", "-o", help="CSV path (default: vibe-repos-<date>.csv)"),
    min_score: int = typer.Option(None, "--min-score"),
    stars_min: int = typer.Option(None, "--stars-min"),
    pushed_after: str = typer.Option(None, "--pushed-after", help="YYYY-MM-DD"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """Export stored repositories to CSV."""
    settings = _load(config_file)
    filters = _filters(min_score, stars_min, pushed_after)
    output = output or Path(export_filename())

    with open_store(settings) as store:
        rows = store.iter_candidates(filters)

    count = asyncio.run(export_csv(rows, output))
    typer.echo(f"Exported {count} repositories to {output}")


@app.command()
def backfill(
    batch: int = typer.Option(None, "--batch", help="Maximum repositories to process"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output")
):
    """Fetch missing metadata for stored repositories."""
    settings = _load(config_file, verbose)

    async def _run():
        with open_store(settings) as store:
            async with GitHubClient(settings.github) as client:
                return await backfill_metadata(
                    client,
                    store,
                    batch=batch or settings.scan.backfill_batch,
                    delay=settings.scan.backfill_delay
                )

    report = asyncio.run(_run())
    typer.echo(report.message)
    typer.echo(f"Processed: {report.processed}  Errors: {report.errors}  Remaining: {report.remaining}")

    snapshot = get_tracker().snapshot
    if report.rate_limited and snapshot.reset_at:
        typer.echo(f"Rate limit resets at {format_datetime(snapshot.reset_at)}")


@app.command()
def clone(
    min_score: int = typer.Option(None, "--min-score"),
    limit: int = typer.Option(10, "--limit", min=1),
    base_dir: str = typer.Option(None, "--dir", help="Target directory (default from config)"),
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """Shallow-clone the top stored repositories."""
    settings = _load(config_file)
    if base_dir:
        settings.clone.base_dir = base_dir

    with open_store(settings) as store:
        candidates, _ = store.list_candidates(CandidateFilter(min_score=min_score), page=1, limit=limit)

    if not candidates:
        typer.echo("No repositories to clone")
        return

    cloner = RepoCloner(settings.clone.base_dir, settings.clone.timeout, settings.clone.delay)
    with create_progress_bar() as progress:
        bar = progress.add_task("Cloning...", total=len(candidates))
        clone_results = asyncio.run(cloner.clone_many(
            [(c.repo_url, c.full_name) for c in candidates],
            on_progress=lambda done, total: progress.update(bar, completed=done)
        ))

    for result in clone_results:
        mark = "✅" if result.success else "❌"
        detail = result.path if result.success else result.error
        typer.echo(f"{mark} {result.full_name}: {detail}")


@app.command()
def config(
    config_file: str = typer.Option(None, "--config", "-c", help="Path to config file")
):
    """Show current configuration."""
    settings = _load(config_file)

    typer.echo("Current Configuration:")
    typer.echo(f"  Database: {settings.storage.db_path}")
    typer.echo(f"  Results per page: {settings.github.per_page}")
    typer.echo(f"  Retry attempts: {settings.github.retry_attempts}")
    typer.echo(f"  Query delay: {settings.scan.query_delay}s")
    typer.echo(f"  Enrichment delay: {settings.scan.enrichment_delay}s")
    stale = settings.scan.stale_job_after
    typer.echo(f"  Stale job threshold: {f'{stale}s' if stale else 'disabled'}")
    typer.echo(f"  Clone directory: {settings.clone.base_dir}")
    typer.echo()

    typer.echo("API Tokens:")
    typer.echo(f"  GITHUB_TOKEN: {'✅ Set' if settings.has_token else '❌ Not set'}")


if __name__ == "__main__":
    app()
