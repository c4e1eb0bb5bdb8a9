"""Pydantic settings for Review Queue configuration."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

# Hard cap on concurrently running review workers. Also bounds worker_count.
MAX_WORKERS = 8

DEFAULT_REVIEW_PROMPT = "Perform a deep, comprehensive code review."
DEFAULT_AGGREGATE_PROMPT = (
    "Review and verify whether these issues exist; if they do, deduplicate "
    "them and give me the most complete issue list."
)
DEFAULT_FIX_PROMPT = "Fix all of these issues."


class PhaseTimeouts(BaseModel):
    """Timeout (seconds) for a single agent invocation, per phase."""

    review: int = 1200  # 20 min
    aggregate: int = 1800  # 30 min
    fix: int = 2700  # 45 min


class RunDefaults(BaseModel):
    """Default values used when a run field is not supplied."""

    worker_count: int = 3
    shared_prompt: str = DEFAULT_REVIEW_PROMPT
    aggregate_prompt: str = DEFAULT_AGGREGATE_PROMPT
    fix_prompt: str = DEFAULT_FIX_PROMPT
    run_aggregate: bool = True
    run_fix: bool = True
    model: str | None = None
    full_auto: bool = True
    skip_git_repo_check: bool = False
    ephemeral: bool = False


class Settings(BaseSettings):
    """Main settings for Review Queue."""

    model_config = SettingsConfigDict(
        env_prefix="REVIEW_QUEUE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Logging (used when no -v/--debug flag is given)
    log_level: str = "WARNING"

    # Agent CLI
    agent_cli: str = "codex"
    extra_args: list[str] = Field(default_factory=list)

    # Timeouts
    timeouts: PhaseTimeouts = Field(default_factory=PhaseTimeouts)
    terminate_grace_seconds: float = 5.0

    # History
    runtime_dir: str = ".runtime-cache/review-queue"
    history_limit: int = 10
    history_debounce_seconds: float = 0.3

    # Event log
    event_tail_limit: int = 200
    error_preview_chars: int = 500

    # Run defaults
    defaults: RunDefaults = Field(default_factory=RunDefaults)

    @property
    def max_workers(self) -> int:
        """Concurrency cap (read-only, not configurable)."""
        return MAX_WORKERS

    def get_timeout_for_phase(self, phase: str) -> int:
        """Get timeout in seconds for a pipeline stage."""
        return getattr(self.timeouts, phase, self.timeouts.review)

    def runtime_root(self, workspace_path: str | Path) -> Path:
        """Directory holding job directories and the history index."""
        return Path(workspace_path) / self.runtime_dir


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def load_settings_from_yaml(yaml_path: Path) -> Settings:
    """Load settings from a YAML file."""
    with open(yaml_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return Settings.model_validate(data or {})
