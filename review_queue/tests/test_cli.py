"""Tests for the command line interface."""

from __future__ import annotations

import logging

import pytest

from review_queue.__main__ import build_parser, main, resolve_log_level, run_fields
from review_queue.config.settings import Settings
from review_queue.core.orchestrator import ReviewQueue

from conftest import FakeAgentAdapter


@pytest.fixture
def fake_queue(monkeypatch):
    """Make the CLI build queues that talk to the fake agent."""
    monkeypatch.setattr(
        "review_queue.__main__.ReviewQueue",
        lambda settings: ReviewQueue(settings=settings, adapter=FakeAgentAdapter()),
    )


class TestRunFields:
    """Tests for mapping flags to run fields."""

    def test_unset_flags_are_none(self, workspace):
        args = build_parser().parse_args(["run", "--workspace", str(workspace)])
        fields = run_fields(args)

        assert fields["workspace_path"] == str(workspace.resolve())
        assert fields["worker_count"] is None
        assert fields["run_aggregate"] is None
        assert fields["full_auto"] is None

    def test_no_aggregate_implies_no_fix(self, workspace):
        args = build_parser().parse_args(["run", "--workspace", str(workspace), "--no-aggregate"])
        fields = run_fields(args)

        assert fields["run_aggregate"] is False
        assert fields["run_fix"] is False

    def test_prompts_file(self, workspace, tmp_path):
        prompts = tmp_path / "prompts.txt"
        prompts.write_text("check auth\n\ncheck db\n")
        args = build_parser().parse_args(
            ["run", "--workspace", str(workspace), "--prompts-file", str(prompts), "--no-full-auto"]
        )
        fields = run_fields(args)

        assert fields["custom_prompts"] == ["check auth", "", "check db"]
        assert fields["full_auto"] is False

    def test_workers_and_prompts_file_exclusive(self, workspace):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "-n", "2", "--prompts-file", "p.txt"])


class TestCommands:
    """Tests for CLI commands."""

    @pytest.mark.asyncio
    async def test_presets(self, capsys):
        assert await main(["presets"]) == 0
        out = capsys.readouterr().out
        assert "deep-review" in out
        assert "security-audit" in out

    @pytest.mark.asyncio
    async def test_no_command_prints_help(self, capsys):
        assert await main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()

    @pytest.mark.asyncio
    async def test_run_then_history(self, fake_queue, workspace, capsys):
        code = await main(["run", "--workspace", str(workspace), "-n", "2", "--no-fix"])

        out = capsys.readouterr().out
        assert code == 0
        assert "Run finished: completed" in out
        assert "Worker: 2 (ok: 2, failed: 0)" in out
        assert "Aggregate:" in out

        assert await main(["history", "--workspace", str(workspace)]) == 0
        out = capsys.readouterr().out
        assert "completed" in out
        assert "workers: 2 (failed: 0)" in out

    @pytest.mark.asyncio
    async def test_failed_run_exit_code(self, fake_queue, tmp_path, capsys):
        code = await main(["run", "--workspace", str(tmp_path / "missing")])

        assert code == 1
        assert "Workspace does not exist" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_empty_history(self, workspace, capsys):
        assert await main(["history", "--workspace", str(workspace)]) == 0
        assert "No review jobs" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_settings_from_yaml(self, fake_queue, workspace, tmp_path, capsys):
        config = tmp_path / "review-queue.yaml"
        config.write_text("defaults:\n  worker_count: 1\n  run_aggregate: false\n  run_fix: false\n")

        code = await main(["run", "--workspace", str(workspace), "--config", str(config)])

        assert code == 0
        assert "Worker: 1 (ok: 1, failed: 0)" in capsys.readouterr().out


class TestLogLevel:
    """Tests for choosing the log level."""

    def test_configured_level_without_flags(self, monkeypatch):
        monkeypatch.setenv("REVIEW_QUEUE_LOG_LEVEL", "info")
        level = resolve_log_level(verbose=False, debug=False, default_level=Settings().log_level)
        assert level == logging.INFO

    def test_flags_override_configured_level(self):
        assert resolve_log_level(verbose=True, debug=False, default_level="ERROR") == logging.INFO
        assert resolve_log_level(verbose=True, debug=True, default_level="ERROR") == logging.DEBUG

    def test_unknown_level_falls_back_to_warning(self):
        assert resolve_log_level(verbose=False, debug=False, default_level="chatty") == logging.WARNING
