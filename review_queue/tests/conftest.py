"""Test fixtures for Review Queue."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

from review_queue.cli_adapters.base import AgentRequest
from review_queue.cli_adapters.codex import CodexAdapter
from review_queue.config.settings import PhaseTimeouts, Settings
from review_queue.core.models import RunConfiguration
from review_queue.core.orchestrator import ReviewQueue

# Behaviour is picked from the first line of the prompt:
#   FAIL ...        exit 3 with a message on stderr
#   HANG ...        sleep until terminated
#   SLEEP:<s> ...   sleep, then succeed
#   NOOUTPUT ...    exit 0 without writing the output file
#   JSONL ...       print an agent_message event on stdout only
#   FLAKY:<path>    fail unless <path> exists (and create it)
# Anything else writes "REVIEWED" plus the full prompt to the output file.
FAKE_AGENT_SCRIPT = r'''
import json, os, sys, time

output_path = sys.argv[1]
prompt = sys.stdin.read()
lines = prompt.strip().splitlines()
first = lines[0] if lines else ""

if first.startswith("FAIL"):
    sys.stderr.write("agent crashed: " + first + "\n")
    sys.exit(3)
if first.startswith("HANG"):
    time.sleep(60)
if first.startswith("SLEEP:"):
    time.sleep(float(first.split(":")[1].split()[0]))
if first.startswith("NOOUTPUT"):
    sys.exit(0)
if first.startswith("JSONL"):
    print(json.dumps({"type": "turn.started"}))
    print(json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "recovered: " + first}}))
    sys.exit(0)
if first.startswith("FLAKY:"):
    marker = first.split(":", 1)[1].strip()
    if not os.path.exists(marker):
        open(marker, "w").close()
        sys.stderr.write("flaky failure\n")
        sys.exit(1)

with open(output_path, "w", encoding="utf-8") as f:
    f.write("REVIEWED\n" + prompt)
'''


class FakeAgentAdapter(CodexAdapter):
    """Codex contract (stdin prompt, output file, JSONL fallback) served by the test interpreter."""

    def __init__(self, script: str = FAKE_AGENT_SCRIPT, executable: str | None = sys.executable) -> None:
        super().__init__()
        self.name = "fake"
        self.script = script
        self._fake_executable = executable
        self.requests: list[AgentRequest] = []

    def executable(self) -> str | None:
        return self._fake_executable

    def build_args(self, request: AgentRequest) -> list[str]:
        self.requests.append(request)
        return ["-c", self.script, str(request.output_path)]


@pytest.fixture
def settings() -> Settings:
    """Settings with short timeouts for fast tests."""
    return Settings(
        timeouts=PhaseTimeouts(review=30, aggregate=30, fix=30),
        terminate_grace_seconds=2.0,
        history_debounce_seconds=0.05,
    )


@pytest.fixture
def fake_adapter() -> FakeAgentAdapter:
    return FakeAgentAdapter()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a temporary workspace directory."""
    path = tmp_path / "workspace"
    path.mkdir()
    (path / "main.py").write_text("print('hello')\n")
    return path


@pytest.fixture
def make_config(workspace: Path) -> Callable[..., RunConfiguration]:
    """Factory for run configurations rooted in the temp workspace."""

    def factory(**overrides: Any) -> RunConfiguration:
        fields: dict[str, Any] = {
            "workspace_path": str(workspace),
            "worker_count": 3,
            "shared_prompt": "Review the code",
            "aggregate_prompt": "Merge the findings",
            "fix_prompt": "Fix everything",
        }
        fields.update(overrides)
        return RunConfiguration(**fields)

    return factory


@pytest.fixture
def queue(settings: Settings, fake_adapter: FakeAgentAdapter) -> ReviewQueue:
    return ReviewQueue(settings=settings, adapter=fake_adapter)
