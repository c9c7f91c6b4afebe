"""Shallow cloning of discovered repositories."""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


@dataclass
class CloneResult:
    """Outcome of cloning one repository."""

    full_name: str
    success: bool
    path: Optional[str] = None
    error: Optional[str] = None
    already_present: bool = False


class RepoCloner:
    """Clones repositories with ``git clone --depth 1`` into a base directory."""

    def __init__(self, base_dir: str = "./repos", timeout: float = 120.0, delay: float = 1.0):
        """Initialize cloner.

        Args:
            base_dir: Directory receiving one ``owner_name`` folder per repo.
            timeout: Seconds before a clone is killed.
            delay: Seconds to wait between clones in clone_many.
        """
        self.base_dir = Path(base_dir)
        self.timeout = timeout
        self.delay = delay

    def clone_path(self, full_name: str) -> Path:
        return self.base_dir / full_name.replace("/", "_")

    async def clone_repo(self, repo_url: str, full_name: str) -> CloneResult:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        target = self.clone_path(full_name)

        if target.exists():
            return CloneResult(full_name, True, str(target), "Already exists", already_present=True)

        try:
            process = await asyncio.create_subprocess_exec(
                "git", "clone", "--depth", "1", repo_url, str(target),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            return CloneResult(full_name, False, error=f"Could not run git: {e}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            shutil.rmtree(target, ignore_errors=True)
            return CloneResult(full_name, False, error=f"Timed out after {self.timeout:.0f}s")

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"git exited with {process.returncode}"
            return CloneResult(full_name, False, error=message)

        logger.info(f"Cloned {full_name} into {target}")
        return CloneResult(full_name, True, str(target))

    async def clone_many(
        self,
        repos: Sequence[Tuple[str, str]],
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> List[CloneResult]:
        """Clone (repo_url, full_name) pairs one after another."""
        results = []
        for index, (url, full_name) in enumerate(repos):
            result = await self.clone_repo(url, full_name)
            if not result.success:
                logger.warning(f"Failed to clone {full_name}: {result.error}")
            results.append(result)

            if on_progress:
                on_progress(index + 1, len(repos))

            if index < len(repos) - 1:
                await asyncio.sleep(self.delay)
        return results

    def delete_clone(self, full_name: str) -> bool:
        target = self.clone_path(full_name)
        if not target.exists():
            return False
        shutil.rmtree(target)
        return True
