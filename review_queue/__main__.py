"""Entry point for Review Queue CLI."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from review_queue.config.presets import BUILT_IN_PRESETS
from review_queue.config.settings import MAX_WORKERS, Settings, get_settings, load_settings_from_yaml
from review_queue.core.errors import ConfigurationError, PersistenceError
from review_queue.core.history import HistoryStore
from review_queue.core.models import ReviewQueuePhase
from review_queue.core.orchestrator import ReviewQueue, build_configuration

logger = logging.getLogger(__name__)


def resolve_log_level(verbose: bool, debug: bool, default_level: str) -> int:
    """Flags win over the configured default level."""
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    level = logging.getLevelName(default_level.upper())
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(verbose: bool = False, debug: bool = False, default_level: str = "WARNING") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=resolve_log_level(verbose, debug, default_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML settings file (overrides REVIEW_QUEUE_* environment settings)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Debug output",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="review-queue",
        description="Parallel code review with coding-agent CLIs",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run a review job")
    run_parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Workspace to review (default: current directory)",
    )
    prompts = run_parser.add_mutually_exclusive_group()
    prompts.add_argument(
        "-n", "--workers",
        type=int,
        dest="worker_count",
        help=f"Number of workers sharing one prompt (1-{MAX_WORKERS})",
    )
    prompts.add_argument(
        "--prompts-file",
        type=Path,
        help="File with one review prompt per line (custom-prompt mode, batched)",
    )
    run_parser.add_argument("--shared-prompt", help="Review prompt for every worker")
    run_parser.add_argument("--aggregate-prompt", help="Prompt for the aggregation stage")
    run_parser.add_argument("--fix-prompt", help="Prompt for the fix stage")
    run_parser.add_argument(
        "--preset",
        choices=[p.id for p in BUILT_IN_PRESETS],
        help="Use the prompts of a built-in preset",
    )
    run_parser.add_argument(
        "--no-aggregate",
        action="store_true",
        help="Skip aggregation (also skips fix)",
    )
    run_parser.add_argument(
        "--no-fix",
        action="store_true",
        help="Skip the fix stage",
    )
    run_parser.add_argument("--model", help="Model passed to the agent CLI")
    run_parser.add_argument(
        "--no-full-auto",
        action="store_true",
        help="Do not pass --full-auto to the agent",
    )
    run_parser.add_argument(
        "--skip-git-repo-check",
        action="store_true",
        help="Allow workspaces that are not git repositories",
    )
    run_parser.add_argument(
        "--ephemeral",
        action="store_true",
        help="Do not persist agent sessions",
    )
    _add_common_options(run_parser)

    # History command
    history_parser = subparsers.add_parser("history", help="Show past review jobs")
    history_parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Workspace directory",
    )
    history_parser.add_argument(
        "--limit",
        type=int,
        help="Maximum number of jobs to show",
    )
    _add_common_options(history_parser)

    # Presets command
    presets_parser = subparsers.add_parser("presets", help="List built-in prompt presets")
    _add_common_options(presets_parser)

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the JSON control API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port")
    serve_parser.add_argument(
        "--workspace",
        type=Path,
        help="Workspace whose history is shown initially",
    )
    _add_common_options(serve_parser)

    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    if getattr(args, "config", None):
        return load_settings_from_yaml(args.config)
    return get_settings()


def run_fields(args: argparse.Namespace) -> dict:
    """Map CLI flags to RunConfiguration fields; None means "not given"."""
    custom_prompts = None
    if args.prompts_file:
        custom_prompts = args.prompts_file.read_text(encoding="utf-8").splitlines()

    return {
        "workspace_path": str(args.workspace.resolve()),
        "worker_count": args.worker_count,
        "custom_prompts": custom_prompts,
        "shared_prompt": args.shared_prompt,
        "aggregate_prompt": args.aggregate_prompt,
        "fix_prompt": args.fix_prompt,
        "model": args.model,
        "full_auto": False if args.no_full_auto else None,
        "skip_git_repo_check": True if args.skip_git_repo_check else None,
        "ephemeral": True if args.ephemeral else None,
        "run_aggregate": False if args.no_aggregate else None,
        "run_fix": False if (args.no_fix or args.no_aggregate) else None,
    }


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    """Run one review job and print its outcome."""
    try:
        config = build_configuration(run_fields(args), settings, args.preset)
    except (ConfigurationError, OSError) as e:
        print(f"Error: {e}")
        return 2

    queue = ReviewQueue(settings=settings)

    print(f"Review Queue - Workspace: {config.workspace_path}")
    print("=" * 50)

    # Ctrl-C cancels the run; the coordinator still settles and writes history
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, queue.cancel_run, "Interrupted")
    except NotImplementedError:
        logger.debug("Signal handlers unsupported; Ctrl-C cancels the run task instead")

    try:
        summary = await queue.run(config)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass

    print(f"\nRun finished: {summary.phase.value}")
    print(summary.describe())
    if summary.job_path:
        print(f"Job directory: {summary.job_path}")
    if summary.aggregate_output_path:
        print(f"Aggregate: {summary.aggregate_output_path}")
    if summary.fix_output_path:
        print(f"Fix: {summary.fix_output_path}")
    for worker in summary.workers:
        if worker.error:
            print(f"  - Worker {worker.id}: {worker.error}")
    if summary.error_message and summary.phase == ReviewQueuePhase.FAILED:
        print(f"\nError: {summary.error_message}")

    return 0 if summary.phase == ReviewQueuePhase.COMPLETED else 1


async def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    """List past jobs of a workspace."""
    store = HistoryStore(settings)
    workspace = args.workspace.resolve()
    try:
        items = await store.list(workspace, limit=args.limit or settings.history_limit)
    except PersistenceError as e:
        print(f"Error: {e}")
        return 1

    if not items:
        print(f"No review jobs in {workspace}")
        return 0

    print(f"\nReview jobs in {workspace}:")
    print("-" * 50)
    for item in items:
        created = item.created_at.strftime("%Y-%m-%d %H:%M:%S") if item.created_at else "?"
        line = (
            f"{created}  {item.job_id}  {item.phase.value:<10} "
            f"workers: {item.worker_count} (failed: {item.failed_worker_count})"
        )
        if item.model:
            line += f"  model: {item.model}"
        print(line)
        for label, path in (("aggregate", item.aggregate_output_path), ("fix", item.fix_output_path)):
            if path:
                print(f"    {label}: {path}")
    return 0


async def cmd_presets(args: argparse.Namespace, settings: Settings) -> int:
    """Print the built-in presets."""
    for preset in BUILT_IN_PRESETS:
        print(f"{preset.id}: {preset.name}")
        print(f"  review:    {preset.review_prompt}")
        print(f"  aggregate: {preset.aggregate_prompt}")
        print(f"  fix:       {preset.fix_prompt}")
    return 0


async def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    """Serve the JSON control API."""
    from review_queue.dashboard.server import serve

    queue = ReviewQueue(settings=settings)
    if args.workspace:
        queue.set_workspace(str(args.workspace.resolve()))
    await serve(queue, host=args.host, port=args.port)
    return 0


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    settings = load_settings(args)

    # Setup logging
    setup_logging(
        verbose=getattr(args, "verbose", False),
        debug=getattr(args, "debug", False),
        default_level=settings.log_level,
    )

    # Dispatch to command handler
    if args.command == "run":
        return await cmd_run(args, settings)
    elif args.command == "history":
        return await cmd_history(args, settings)
    elif args.command == "presets":
        return await cmd_presets(args, settings)
    elif args.command == "serve":
        return await cmd_serve(args, settings)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def cli_main() -> None:
    """CLI entry point (synchronous wrapper)."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli_main()
