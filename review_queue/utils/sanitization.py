"""Prompt sanitization and artifact path validation."""

from __future__ import annotations

from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class PromptTooLongError(Exception):
    """Raised when a prompt exceeds the maximum length."""

    pass


class PathTraversalError(Exception):
    """Raised when a path escapes the runtime directory."""

    pass


class PromptSanitizer:
    """
    Validate prompts before they are piped to the agent.

    Prompts go to the child over stdin and the argv is built as a list for
    create_subprocess_exec(), so no shell ever interprets them.
    """

    MAX_PROMPT_LENGTH = 100_000  # 100KB

    def __init__(self, root: Path | None = None) -> None:
        self.root = root.resolve() if root else None

    def validate_prompt(self, prompt: str) -> str:
        """
        Validate a prompt.

        Returns:
            The prompt with null bytes removed.

        Raises:
            PromptTooLongError: If prompt exceeds maximum length.
        """
        validated = prompt.replace("\x00", "")

        if len(validated) > self.MAX_PROMPT_LENGTH:
            raise PromptTooLongError(
                f"Prompt exceeds {self.MAX_PROMPT_LENGTH} characters "
                f"(got {len(validated)})"
            )

        return validated

    def contained_path(self, path: str | Path) -> Path:
        """
        Resolve a path and make sure it stays under the root.

        Raises:
            PathTraversalError: If the path escapes the root.
        """
        resolved = Path(path).resolve()
        if self.root is None:
            return resolved

        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise PathTraversalError(
                f"Path escapes runtime root: {path} -> {resolved}"
            )

        return resolved
