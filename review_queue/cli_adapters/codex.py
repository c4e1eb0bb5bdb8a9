"""OpenAI Codex CLI adapter."""

from __future__ import annotations

import json
import logging

from review_queue.cli_adapters.base import AgentRequest, CLIAdapter, find_npm_executable

logger = logging.getLogger(__name__)


class CodexAdapter(CLIAdapter):
    """
    Adapter for OpenAI Codex CLI.

    The prompt is piped on stdin (``-``) and the final message is written to
    the file given by ``--output-last-message``.

    CLI Reference:
        codex exec --json --output-last-message OUT -          # Task
        codex exec review --json --output-last-message OUT -   # Review
        codex exec --model M --full-auto --skip-git-repo-check --ephemeral ...
    """

    CLI_NAME = "codex"

    def __init__(self) -> None:
        super().__init__(name=self.CLI_NAME)
        self._executable: str | None = None

    def executable(self) -> str | None:
        if self._executable is None:
            self._executable = find_npm_executable(self.CLI_NAME)
        return self._executable

    def build_args(self, request: AgentRequest) -> list[str]:
        """Build CLI arguments."""
        args = ["exec"]

        if request.model:
            args.extend(["--model", request.model])

        if request.full_auto:
            args.append("--full-auto")

        if request.skip_git_repo_check:
            args.append("--skip-git-repo-check")

        if request.ephemeral:
            args.append("--ephemeral")

        if request.review_mode:
            args.append("review")

        args.extend(["--json", "--output-last-message", str(request.output_path)])
        args.extend(request.extra_args)

        # Read prompt from stdin
        args.append("-")
        return args

    def recover_output(self, stdout: str) -> str | None:
        """
        Find the last agent message in the ``--json`` event stream.

        Lines look like ``{"type": "item.completed", "item": {"type":
        "agent_message", "text": "..."}}``; anything else is skipped.
        """
        last_message: str | None = None
        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(event, dict) or event.get("type") != "item.completed":
                continue
            item = event.get("item")
            if not isinstance(item, dict) or item.get("type") != "agent_message":
                continue
            text = item.get("text")
            if isinstance(text, str):
                last_message = text

        if last_message is None:
            logger.debug("No agent_message found in %d bytes of stdout", len(stdout))
        return last_message
