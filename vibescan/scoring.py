"""Evidence scoring for candidate repositories.

Each search hit maps to at most one evidence tag of the form
``"<kind>: <detail>"``. A candidate's score is the summed weight of its
distinct tags, so feeding the same hit twice never changes the score.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from .gh_client import CodeItem, RepoItem
from .models import CandidateRepo

TOOL_MENTION = "tool_mention"
PROMPT_ARTIFACT = "prompt_artifact"
CURSOR_FINGERPRINT = "cursor_fingerprint"

EVIDENCE_WEIGHTS = {
    TOOL_MENTION: 2,
    PROMPT_ARTIFACT: 3,
    CURSOR_FINGERPRINT: 3,
}

# Checked in order, first match wins
TOOL_KEYWORD_GROUPS: Sequence[Tuple[str, Sequence[str]]] = (
    ("Cursor/vibe coding", ("vibe coding", "Cursor")),
    ("GitHub Copilot", ("Copilot",)),
    ("Windsurf", ("Windsurf",)),
    ("AI Framework", ("LangGraph", "AutoGen", "CrewAI")),
)
DEFAULT_TOOL_NAME = "AI tool"

PROMPT_FILE_MARKERS = ("prompt", "agent", "system_prompt")
TOOL_PATH_MARKERS = (".cursor",)
TOOL_QUERY_MARKERS = ("Cursor rules",)

DEFAULT_REPO_QUERIES = [
    '("vibe coding" OR vibecoding OR "prompt-driven" OR "AI-assisted" OR "built with Cursor" OR "Cursor AI") in:readme',
    '("GitHub Copilot" OR Copilot OR Windsurf OR "Claude Code" OR aider OR "Continue.dev") in:readme',
    '("LangGraph" OR AutoGen OR CrewAI) in:readme',
]

DEFAULT_CODE_QUERIES = [
    'filename:prompts.md OR filename:agent.md OR filename:SYSTEM_PROMPT.md',
    'path:.cursor OR "Cursor rules"',
]


def make_tag(kind: str, detail: str) -> str:
    return f"{kind}: {detail}"


def tag_kind(tag: str) -> str:
    return tag.split(":", 1)[0].strip()


def tag_weight(tag: str) -> int:
    """Point value of an evidence tag, 0 for unknown kinds."""
    return EVIDENCE_WEIGHTS.get(tag_kind(tag), 0)


def score_of(tags: Iterable[str]) -> int:
    """Sum of weights over distinct tags."""
    return sum(tag_weight(tag) for tag in set(tags))


def tool_name_for_query(query: str) -> str:
    """Readable tool name for a repository search query."""
    for tool_name, keywords in TOOL_KEYWORD_GROUPS:
        if any(keyword in query for keyword in keywords):
            return tool_name
    return DEFAULT_TOOL_NAME


def tool_mention_evidence(query: str) -> str:
    return make_tag(TOOL_MENTION, tool_name_for_query(query))


def code_evidence(item: CodeItem, query: str) -> Optional[str]:
    """Evidence tag for a code search hit, or None if the hit is not telling.

    Prompt-like file names take precedence over tool directory markers.
    """
    file_name = item.name.lower()
    path = item.path.lower()

    if any(marker in file_name for marker in PROMPT_FILE_MARKERS):
        return make_tag(PROMPT_ARTIFACT, item.path)

    if any(marker in path for marker in TOOL_PATH_MARKERS) or any(marker in query for marker in TOOL_QUERY_MARKERS):
        return make_tag(CURSOR_FINGERPRINT, item.path)

    return None


def merge_evidence(candidate: CandidateRepo, tag: str) -> bool:
    """Add a tag to a candidate unless it is already present.

    Returns:
        True if the tag was new and the score increased.
    """
    if tag in candidate.evidence_summary:
        return False
    candidate.evidence_summary.append(tag)
    candidate.score += tag_weight(tag)
    return True


def candidate_from_repo(item: RepoItem) -> CandidateRepo:
    """Fresh candidate with no evidence yet."""
    return CandidateRepo(
        repo_url=item.html_url,
        full_name=item.full_name,
        pushed_at=item.pushed_at,
        stars=item.stargazers_count,
        forks=item.forks_count,
        language=item.language or None,
        description=item.description or None,
    )


def apply_filters(queries: Iterable[str], language: Optional[str] = None,
                  pushed_after: Optional[str] = None, stars_min: Optional[int] = None) -> List[str]:
    """Append search qualifiers to each query."""
    filtered = []
    for query in queries:
        parts = [query]
        if language:
            parts.append(f"language:{language}")
        if pushed_after:
            parts.append(f"pushed:>{pushed_after}")
        if stars_min:
            parts.append(f"stars:>={stars_min}")
        filtered.append(" ".join(parts))
    return filtered


def rank(candidates: Iterable[CandidateRepo], min_score: int) -> List[CandidateRepo]:
    """Candidates at or above min_score, best first (score, then stars)."""
    kept = [c for c in candidates if c.score >= min_score]
    kept.sort(key=lambda c: (c.score, c.stars), reverse=True)
    return kept
