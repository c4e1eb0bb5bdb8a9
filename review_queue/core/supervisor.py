"""Supervision of a single agent process: spawn, capture, settle, cancel."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from review_queue.cli_adapters.base import AgentRequest, CLIAdapter, CLIResult, CLIStatus
from review_queue.config.settings import Settings, get_settings
from review_queue.core.cancellation import CancellationToken
from review_queue.core.errors import ReviewQueueError, error_from_kind
from review_queue.core.event_log import RunEventLog
from review_queue.core.models import ErrorKind, RunConfiguration, Worker
from review_queue.utils import tail_text, truncate_with_marker

logger = logging.getLogger(__name__)

WorkerListener = Callable[[Worker], None]

_STATUS_KINDS: dict[CLIStatus, ErrorKind] = {
    CLIStatus.SPAWN_ERROR: ErrorKind.PROCESS_SPAWN,
    CLIStatus.CANCELLED: ErrorKind.CANCELLED,
    CLIStatus.ERROR: ErrorKind.AGENT_EXIT,
    CLIStatus.TIMEOUT: ErrorKind.AGENT_EXIT,
    CLIStatus.MISSING_OUTPUT: ErrorKind.AGENT_EXIT,
    CLIStatus.RATE_LIMITED: ErrorKind.AGENT_EXIT,
    CLIStatus.AUTH_ERROR: ErrorKind.AGENT_EXIT,
}


def error_kind_for(status: CLIStatus) -> ErrorKind | None:
    """Error kind for a non-success status; None for success."""
    if status == CLIStatus.SUCCESS:
        return None
    return _STATUS_KINDS[status]


def error_for_result(result: CLIResult) -> ReviewQueueError | None:
    """Exception describing a failed invocation, or None if it succeeded."""
    kind = error_kind_for(result.status)
    if kind is None:
        return None
    return error_from_kind(kind, result.error or result.status.value, exit_code=result.exit_code)


@dataclass
class WorkerPaths:
    """Artifact locations for one worker."""

    directory: Path
    output: Path
    stdout: Path
    stderr: Path


def worker_paths(job_dir: Path, worker_id: int) -> WorkerPaths:
    directory = job_dir / "workers" / f"worker-{worker_id:02d}"
    return WorkerPaths(
        directory=directory,
        output=directory / "output.md",
        stdout=directory / "stdout.log",
        stderr=directory / "stderr.log",
    )


@dataclass
class AgentInvocation:
    """One agent run: request plus where to capture it."""

    label: str
    request: AgentRequest
    stdout_path: Path
    stderr_path: Path
    working_dir: Path
    timeout_seconds: float


class AgentSupervisor:
    """
    Runs exactly one agent invocation to completion or cancellation.

    stdout/stderr go straight to their artifact files. While the child runs
    the supervisor waits on three things: process exit, the run's
    cancellation token and the invocation timeout. Cancellation and timeout
    both send SIGTERM, then SIGKILL after ``terminate_grace_seconds``.
    No retries happen here.
    """

    def __init__(
        self,
        adapter: CLIAdapter,
        settings: Settings | None = None,
        events: RunEventLog | None = None,
        on_worker_update: WorkerListener | None = None,
    ) -> None:
        self.adapter = adapter
        self.settings = settings or get_settings()
        self.events = events
        self.on_worker_update = on_worker_update

    async def run(self, invocation: AgentInvocation, token: CancellationToken) -> CLIResult:
        """Spawn, supervise and classify a single invocation. Never raises for agent failures."""
        request = invocation.request
        start_time = time.monotonic()

        def result(status: CLIStatus, exit_code: int | None = None, error: str | None = None) -> CLIResult:
            return CLIResult(
                label=invocation.label,
                status=status,
                exit_code=exit_code,
                output_path=request.output_path,
                stdout_path=invocation.stdout_path,
                stderr_path=invocation.stderr_path,
                error=self._preview(error) if error else None,
                duration_seconds=time.monotonic() - start_time,
            )

        if token.is_cancelled:
            return result(CLIStatus.CANCELLED, error="Cancelled before start")

        for path in (request.output_path, invocation.stdout_path, invocation.stderr_path):
            path.parent.mkdir(parents=True, exist_ok=True)
        # Stale output from an earlier attempt must not count as success
        request.output_path.unlink(missing_ok=True)

        executable = self.adapter.executable()
        if executable is None:
            message = f"Agent CLI '{self.adapter.name}' not found on PATH"
            invocation.stderr_path.write_text(message + "\n", encoding="utf-8")
            invocation.stdout_path.write_text("", encoding="utf-8")
            return result(CLIStatus.SPAWN_ERROR, error=message)

        args = self.adapter.build_args(request)
        prompt_bytes = request.prompt.encode("utf-8")

        with open(invocation.stdout_path, "wb") as stdout_file, \
                open(invocation.stderr_path, "wb") as stderr_file:
            try:
                process = await asyncio.create_subprocess_exec(
                    executable,
                    *args,
                    stdin=asyncio.subprocess.PIPE if self.adapter.PROMPT_VIA_STDIN else asyncio.subprocess.DEVNULL,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    cwd=str(invocation.working_dir),
                    env=self.adapter.build_env(request),
                )
            except OSError as e:
                logger.error("%s: failed to spawn %s: %s", invocation.label, executable, e)
                stderr_file.write(f"{e}\n".encode("utf-8"))
                return result(CLIStatus.SPAWN_ERROR, error=f"Failed to start agent: {e}")

            logger.debug("%s: spawned pid %s", invocation.label, process.pid)
            outcome = await self._supervise(
                process,
                prompt_bytes if self.adapter.PROMPT_VIA_STDIN else None,
                token,
                invocation.timeout_seconds,
                invocation.label,
            )

        if outcome == CLIStatus.CANCELLED:
            return result(CLIStatus.CANCELLED, exit_code=process.returncode, error="Cancelled")
        if outcome == CLIStatus.TIMEOUT:
            return result(
                CLIStatus.TIMEOUT,
                exit_code=process.returncode,
                error=f"Timed out after {invocation.timeout_seconds:g} seconds",
            )

        return self._classify_exit(process.returncode, invocation, result)

    async def run_worker(
        self,
        worker: Worker,
        job_dir: Path,
        config: RunConfiguration,
        token: CancellationToken,
    ) -> Worker:
        """Run one review worker, moving it through its status transitions."""
        paths = worker_paths(job_dir, worker.id)
        worker.output_path = str(paths.output)
        worker.stdout_path = str(paths.stdout)
        worker.stderr_path = str(paths.stderr)

        if token.is_cancelled:
            worker.mark_failed("Cancelled", ErrorKind.CANCELLED)
            self._emit_warning(f"Worker {worker.id} cancelled before start")
            self.notify(worker)
            return worker

        worker.mark_running()
        self._emit_info(f"Worker {worker.id} started (attempt {worker.attempt})")
        self.notify(worker)

        invocation = AgentInvocation(
            label=f"worker-{worker.id:02d}",
            request=AgentRequest(
                prompt=worker.prompt,
                output_path=paths.output,
                model=config.model,
                full_auto=config.full_auto,
                skip_git_repo_check=config.skip_git_repo_check,
                ephemeral=config.ephemeral,
                review_mode=True,
                extra_args=list(self.settings.extra_args),
            ),
            stdout_path=paths.stdout,
            stderr_path=paths.stderr,
            working_dir=Path(config.workspace_path),
            timeout_seconds=self.settings.get_timeout_for_phase("review"),
        )
        try:
            cli_result = await self.run(invocation, token)
        except OSError as e:
            logger.error("Worker %s: could not prepare artifacts: %s", worker.id, e)
            worker.mark_failed(f"Could not prepare worker artifacts: {e}", ErrorKind.PROCESS_SPAWN)
            self._emit_warning(f"Worker {worker.id} failed ({ErrorKind.PROCESS_SPAWN.value}): {worker.error}")
            self.notify(worker)
            return worker

        if cli_result.success:
            worker.mark_completed(cli_result.exit_code or 0)
            self._emit_info(f"Worker {worker.id} completed in {cli_result.duration_seconds:.1f}s")
        else:
            kind = error_kind_for(cli_result.status) or ErrorKind.AGENT_EXIT
            worker.mark_failed(cli_result.error or cli_result.status.value, kind, cli_result.exit_code)
            self._emit_warning(f"Worker {worker.id} failed ({kind.value}): {worker.error}")

        self.notify(worker)
        return worker

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        prompt: bytes | None,
        token: CancellationToken,
        timeout: float,
        label: str,
    ) -> CLIStatus | None:
        """Wait for exit, cancellation or timeout. Returns None on normal exit."""

        async def communicate() -> int:
            if prompt is not None and process.stdin is not None:
                try:
                    process.stdin.write(prompt)
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    # Child exited without reading its input; exit code tells the story
                    logger.debug("%s: stdin closed early", label)
                finally:
                    process.stdin.close()
            return await process.wait()

        exit_task = asyncio.ensure_future(communicate())
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exit_task in done:
                exit_task.result()
                return None

            if cancel_task in done:
                logger.info("%s: cancelling pid %s", label, process.pid)
                await self._terminate(process)
                return CLIStatus.CANCELLED

            logger.warning("%s: timed out after %.1fs", label, timeout)
            await self._terminate(process)
            return CLIStatus.TIMEOUT

        except asyncio.CancelledError:
            # Coordinating task was cancelled; do not leave the child behind
            await asyncio.shield(self._terminate(process))
            raise

        finally:
            cancel_task.cancel()
            if not exit_task.done():
                exit_task.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.settings.terminate_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM, killing", process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    def _classify_exit(
        self,
        exit_code: int | None,
        invocation: AgentInvocation,
        result: Callable[..., CLIResult],
    ) -> CLIResult:
        output_path = invocation.request.output_path
        stdout = _read_text(invocation.stdout_path)
        stderr = _read_text(invocation.stderr_path)

        has_output = _has_content(output_path)
        if not has_output:
            recovered = self.adapter.recover_output(stdout)
            if recovered and recovered.strip():
                output_path.write_text(recovered, encoding="utf-8")
                has_output = True
                logger.debug("%s: recovered output from stdout", invocation.label)

        if exit_code == 0:
            if has_output:
                return result(CLIStatus.SUCCESS, exit_code=0)
            return result(
                CLIStatus.MISSING_OUTPUT,
                exit_code=0,
                error="Agent exited successfully but produced no output",
            )

        status = self.adapter.classify_failure(exit_code, stderr)
        message = (
            tail_text(stderr.strip() or stdout, self.settings.error_preview_chars)
            or f"Agent exited with code {exit_code}"
        )
        return result(status, exit_code=exit_code, error=message)

    def _preview(self, text: str) -> str:
        return truncate_with_marker(text.strip(), self.settings.error_preview_chars)

    def _emit_info(self, message: str) -> None:
        if self.events is not None:
            self.events.info(message)

    def _emit_warning(self, message: str) -> None:
        if self.events is not None:
            self.events.warning(message)

    def notify(self, worker: Worker) -> None:
        if self.on_worker_update is not None:
            self.on_worker_update(worker)


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return ""


def _has_content(path: Path) -> bool:
    try:
        return bool(path.read_text(encoding="utf-8", errors="replace").strip())
    except FileNotFoundError:
        return False
