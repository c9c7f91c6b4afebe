"""
vibescan Configuration Management
"""
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils.common import ConfigError

# Load .env file if present
load_dotenv()


VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}


@dataclass
class GitHubConfig:
    """GitHub API client settings."""

    token: str = ""
    api_base: str = "https://api.github.com"
    per_page: int = 100
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    user_agent: str = "vibescan/1.0"


@dataclass
class ScanDefaults:
    """Backpressure and job bookkeeping for the scan orchestrator."""

    query_delay: float = 0.5
    enrichment_delay: float = 0.2
    backfill_delay: float = 0.4
    backfill_batch: int = 100
    # Seconds without a heartbeat before a running job counts as orphaned.
    # None disables the check.
    stale_job_after: Optional[float] = None


@dataclass
class StorageConfig:
    """Job store settings."""

    db_path: str = "data/vibescan.db"


@dataclass
class CloneConfig:
    """Repository cloning settings."""

    base_dir: str = "./repos"
    timeout: float = 120.0
    delay: float = 1.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "INFO"
    file_path: str = ""
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Settings:
    """vibescan configuration settings."""

    github: GitHubConfig = field(default_factory=GitHubConfig)
    scan: ScanDefaults = field(default_factory=ScanDefaults)
    storage: StorageConfig = field(default_factory=StorageConfig)
    clone: CloneConfig = field(default_factory=CloneConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        # Convert nested dicts to dataclasses
        for field_name, cls in (
            ("github", GitHubConfig),
            ("scan", ScanDefaults),
            ("storage", StorageConfig),
            ("clone", CloneConfig),
            ("logging", LoggingConfig),
        ):
            value = getattr(self, field_name)
            if value is None:
                setattr(self, field_name, cls())
            elif isinstance(value, dict):
                try:
                    setattr(self, field_name, cls(**value))
                except TypeError as e:
                    raise ConfigError(f"Invalid '{field_name}' section: {e}") from e

        self._validate()

    def apply_env(self) -> 'Settings':
        """Override settings from environment variables."""
        token = os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN")
        if token:
            self.github.token = token.strip()
        if os.getenv("VIBESCAN_DB"):
            self.storage.db_path = os.getenv("VIBESCAN_DB")
        if os.getenv("LOG_LEVEL"):
            self.logging.level = os.getenv("LOG_LEVEL").upper()

        self._validate()
        return self

    @property
    def has_token(self) -> bool:
        return bool(self.github.token)

    def _validate(self):
        if not 1 <= self.github.per_page <= 100:
            raise ConfigError("github.per_page must be between 1 and 100")
        if self.github.retry_attempts < 1:
            raise ConfigError("github.retry_attempts must be >=1")
        if self.github.timeout <= 0:
            raise ConfigError("github.timeout must be positive")
        for name in ("query_delay", "enrichment_delay", "backfill_delay"):
            if getattr(self.scan, name) < 0:
                raise ConfigError(f"scan.{name} must be >=0")
        if self.github.retry_delay < 0 or self.clone.delay < 0:
            raise ConfigError("delays must be >=0")
        if self.scan.stale_job_after is not None and self.scan.stale_job_after <= 0:
            raise ConfigError("scan.stale_job_after must be positive or null")
        if self.scan.backfill_batch < 1:
            raise ConfigError("scan.backfill_batch must be >=1")
        if self.logging.level.upper() not in VALID_LOG_LEVELS:
            raise ConfigError(f"invalid log level: {self.logging.level}")


def load_config(path: Optional[str] = None) -> Settings:
    """Load configuration from YAML file, defaults and environment."""

    data: Dict[str, Any] = {}
    if path:
        if not Path(path).exists():
            raise FileNotFoundError(path)
        data = _read_yaml(Path(path))
    else:
        for name in ("config.yml", "config.yaml"):
            if Path(name).exists():
                data = _read_yaml(Path(name))
                break

    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping")

    known = {k: v for k, v in data.items() if k in Settings.__annotations__}
    return Settings(**known).apply_env()


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}") from e


class ScanParams(BaseModel):
    """Resolved configuration for a single scan.

    Stored on the job record as camelCase JSON; both spellings are
    accepted on input.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    min_score: int = Field(default=4, ge=0)
    max_repos: int = Field(default=80, ge=1)
    repo_pages: int = Field(default=2, ge=1, le=10)
    code_pages: int = Field(default=1, ge=0, le=10)
    language: Optional[str] = None
    pushed_after: Optional[str] = None
    stars_min: Optional[int] = Field(default=None, ge=0)
    custom_repo_queries: Optional[List[str]] = None
    custom_code_queries: Optional[List[str]] = None
    fetch_metadata: bool = False
    clone_repos: bool = False

    @field_validator("pushed_after")
    @classmethod
    def _check_pushed_after(cls, value: Optional[str]) -> Optional[str]:
        if value:
            try:
                date.fromisoformat(value)
            except ValueError as e:
                raise ValueError("pushed_after must be YYYY-MM-DD") from e
        return value or None

    @field_validator("custom_repo_queries", "custom_code_queries")
    @classmethod
    def _strip_queries(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return [q.strip() for q in value if q and q.strip()]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
