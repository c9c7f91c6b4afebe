"""CSV export of stored candidates."""

import csv
import io
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

from .models import StoredCandidate
from .utils.common import write_file_async

CSV_HEADERS = [
    "Repository URL",
    "Full Name",
    "Score",
    "Stars",
    "Pushed At",
    "Evidence Count",
    "Evidence Summary",
]


def export_filename(today: Optional[date] = None) -> str:
    today = today or date.today()
    return f"vibe-repos-{today.isoformat()}.csv"


def candidates_to_csv(candidates: Iterable[StoredCandidate]) -> str:
    """Render candidates as CSV with every cell quoted."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)

    for repo in candidates:
        writer.writerow([
            repo.repo_url,
            repo.full_name,
            repo.score,
            repo.stars,
            repo.pushed_at.isoformat() if repo.pushed_at else "",
            repo.evidence_count,
            "; ".join(repo.evidence_summary),
        ])

    return buffer.getvalue()


async def export_csv(candidates: Iterable[StoredCandidate], path: Path) -> int:
    """Write candidates to path and return the number of rows written."""
    rows = list(candidates)
    await write_file_async(path, candidates_to_csv(rows))
    return len(rows)
