"""Base class for agent CLI adapters."""

from __future__ import annotations

import os
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path


def find_npm_executable(name: str) -> str | None:
    """
    Find an npm-installed CLI executable, handling Windows .cmd files.

    Args:
        name: The CLI name (e.g., "codex")

    Returns:
        Full path to executable, or None if not found.
    """
    # Try standard lookup first
    exe = shutil.which(name)
    if exe:
        return exe

    # On Windows, npm installs create .cmd wrapper files
    if sys.platform == "win32":
        exe = shutil.which(f"{name}.cmd")
        if exe:
            return exe

        npm_path = Path(os.environ.get("APPDATA", "")) / "npm" / f"{name}.cmd"
        if npm_path.exists():
            return str(npm_path)

    return None


class CLIStatus(str, Enum):
    """Status of an agent invocation."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SPAWN_ERROR = "spawn_error"
    MISSING_OUTPUT = "missing_output"
    RATE_LIMITED = "rate_limited"
    AUTH_ERROR = "auth_error"


@dataclass
class AgentRequest:
    """Everything needed to build one agent command line."""

    prompt: str
    output_path: Path
    model: str | None = None
    full_auto: bool = True
    skip_git_repo_check: bool = False
    ephemeral: bool = False
    review_mode: bool = False
    extra_args: list[str] = field(default_factory=list)


@dataclass
class CLIResult:
    """Result from a single agent invocation."""

    label: str
    status: CLIStatus
    exit_code: int | None
    output_path: Path
    stdout_path: Path
    stderr_path: Path
    error: str | None = None
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def success(self) -> bool:
        """Whether the invocation was successful."""
        return self.status == CLIStatus.SUCCESS and self.exit_code == 0


class CLIAdapter(ABC):
    """
    Abstract base class for agent CLI adapters.

    An adapter only knows the agent's invocation contract: which executable,
    which argv for a request, how the prompt is delivered and how to recover
    a final message from captured stdout. Running the process belongs to the
    supervisor.
    """

    # Prompt is written to the child's stdin when True, else appended to argv
    PROMPT_VIA_STDIN = True

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def executable(self) -> str | None:
        """Full path to the agent executable, or None if not installed."""

    @abstractmethod
    def build_args(self, request: AgentRequest) -> list[str]:
        """Build argv (without the executable) for a request."""

    def build_env(self, request: AgentRequest) -> dict[str, str] | None:
        """Environment for the child; None inherits the parent's."""
        return None

    def recover_output(self, stdout: str) -> str | None:
        """Extract a final agent message from stdout when no output file was written."""
        return None

    def classify_failure(self, exit_code: int | None, stderr: str) -> CLIStatus:
        """Map a nonzero exit to a status using stderr hints."""
        stderr_lower = stderr.lower()

        if "rate limit" in stderr_lower or "429" in stderr_lower:
            return CLIStatus.RATE_LIMITED

        if "not logged in" in stderr_lower or "unauthorized" in stderr_lower:
            return CLIStatus.AUTH_ERROR

        return CLIStatus.ERROR

    @property
    def is_available(self) -> bool:
        """Whether this CLI is available on the system."""
        return self.executable() is not None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
