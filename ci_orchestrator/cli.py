"""CLI entry point for the pipeline orchestrator."""

import argparse
import asyncio
import json
import logging
import signal
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from aiohttp import web

from ci_orchestrator.config import OrchestratorConfig, load_config, resolve_config_path
from ci_orchestrator.errors import OrchestratorError, RunNotFound
from ci_orchestrator.models.run import Run, RunStatus
from ci_orchestrator.orchestrator import Orchestrator
from ci_orchestrator.registry import RunFilter, RunRegistry
from ci_orchestrator.server import create_app

STATUS_SYMBOLS = {
    "succeeded": "✅",
    "failed": "❌",
    "aborted": "⛔",
    "skipped": "⏭️",
    "running": "⏳",
    "pending": "·",
    "queued": "·",
}

EXIT_CODES: Mapping[RunStatus, int] = {
    "succeeded": 0,
    "failed": 1,
    "aborted": 3,
    "queued": 4,
    "running": 4,
}
ERROR_EXIT_CODE = 2


def exit_code_for(run: Run) -> int:
    """Map a run's status to a process exit code."""
    return EXIT_CODES[run.status]


def log_run_summary(log: logging.Logger, run: Run) -> None:
    """Log a formatted summary of a run and its stages."""
    log.info("=" * 80)
    log.info("Run #%d (%s): %s", run.number, run.pipeline, run.status)
    log.info("=" * 80)

    for result in run.stages:
        symbol = STATUS_SYMBOLS.get(result.status, "?")
        if result.reason:
            log.info("%s %s: %s (%s)", symbol, result.name, result.status, result.reason)
        else:
            log.info("%s %s: %s", symbol, result.name, result.status)
        if result.detail:
            log.info("  Detail: %s", result.detail)

    if run.warnings:
        log.info("Warnings from continue-on-failure stages: %s", ", ".join(run.warnings))
    if run.image_ref:
        log.info("Image: %s", run.image_ref)


def format_run(run: Run, *, include_output: bool = False) -> dict[str, Any]:
    """Format a run for JSON output."""
    data = run.model_dump(mode="json")
    if not include_output:
        for stage in data["stages"]:
            stage.pop("output", None)

    failure = run.first_failure
    data["first_failure"] = (
        {"stage": failure.name, "reason": failure.reason} if failure is not None else None
    )
    return data


def format_error(error: Exception) -> dict[str, Any]:
    """Format an operational error for JSON output."""
    code = error.code if isinstance(error, OrchestratorError) else type(error).__name__
    return {"error": code, "message": str(error)}


async def run_pipeline(
    config: OrchestratorConfig,
    pipeline: str,
    *,
    branch: str | None = None,
    commit_sha: str | None = None,
    include_output: bool = False,
) -> int:
    """Trigger a pipeline manually, execute it and return the exit code."""
    log = logging.getLogger("ci_orchestrator")

    async with Orchestrator.from_config(config) as orchestrator:
        run = orchestrator.intake.trigger(
            pipeline, branch=branch, commit_sha=commit_sha, submit=False
        )
        log.info("Running pipeline %s as run #%d", pipeline, run.number)

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, orchestrator.engine.cancel, run.number)
        try:
            run = await orchestrator.engine.execute(run.number)
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    log_run_summary(log, run)
    print(json.dumps(format_run(run, include_output=include_output), indent=2))
    return exit_code_for(run)


def show_status(config: OrchestratorConfig, number: int, *, include_output: bool) -> int:
    """Print a run and return the exit code mapped from its status."""
    registry = RunRegistry(config.state_path)
    try:
        run = registry.get(number)
    finally:
        registry.close()

    print(json.dumps(format_run(run, include_output=include_output), indent=2))
    return exit_code_for(run)


def show_history(
    config: OrchestratorConfig,
    *,
    limit: int | None,
    pipeline: str | None,
    status: RunStatus | None,
) -> int:
    """Print run history, newest first."""
    registry = RunRegistry(config.state_path)
    try:
        runs = registry.list(RunFilter(pipeline=pipeline, status=status, limit=limit))
    finally:
        registry.close()

    print(json.dumps([format_run(run) for run in runs], indent=2))
    return 0


async def cancel_run(config: OrchestratorConfig, number: int, *, wait: float = 30) -> int:
    """Cancel a run, wherever it executes.

    A queued run is aborted directly. A run driven by another process (such
    as ``serve``) gets a persisted cancellation request, and this waits up to
    ``wait`` seconds for that process to stop it.
    """
    log = logging.getLogger("ci_orchestrator")

    async with Orchestrator.from_config(config) as orchestrator:
        registry = orchestrator.registry
        if not orchestrator.engine.cancel(number):
            data: dict[str, Any] | None
            try:
                data = format_run(registry.get(number))
            except RunNotFound:
                data = None
            print(json.dumps({"cancelled": False, "run": data}, indent=2))
            return 1

        run = await asyncio.to_thread(registry.get, number)
        try:
            async with asyncio.timeout(wait):
                while not run.is_terminal:
                    await asyncio.sleep(config.engine.cancel_poll_interval)
                    run = await asyncio.to_thread(registry.get, number)
        except TimeoutError:
            log.warning("Run #%d has not stopped after %ss", number, wait)

    print(json.dumps({"cancelled": True, "run": format_run(run)}, indent=2))
    return 0 if run.is_terminal else exit_code_for(run)


async def serve(config: OrchestratorConfig) -> int:
    """Run the webhook listener until interrupted."""
    log = logging.getLogger("ci_orchestrator")

    async with Orchestrator.from_config(config) as orchestrator:
        app = create_app(orchestrator.intake, orchestrator.registry)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, config.webhook.host, config.webhook.port)
        await site.start()
        log.info(
            "Listening for webhooks on http://%s:%d/webhook",
            config.webhook.host,
            config.webhook.port,
        )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            await stop.wait()
        finally:
            log.info("Shutting down")
            await runner.cleanup()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CI/CD pipeline orchestrator")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the orchestrator config (default: $CI_ORCHESTRATOR_CONFIG "
        "or ci-orchestrator.yaml)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Trigger a pipeline manually")
    run_parser.add_argument("pipeline", help="Pipeline name")
    run_parser.add_argument("--branch", default=None, help="Branch to record")
    run_parser.add_argument("--commit", default=None, help="Commit SHA to record")
    run_parser.add_argument(
        "--show-output", action="store_true", help="Include captured stage output"
    )

    status_parser = commands.add_parser("status", help="Show a run")
    status_parser.add_argument("run_id", type=int, help="Run number")
    status_parser.add_argument(
        "--show-output", action="store_true", help="Include captured stage output"
    )

    history_parser = commands.add_parser("history", help="List past runs")
    history_parser.add_argument("--limit", type=int, default=None, help="Max runs")
    history_parser.add_argument("--pipeline", default=None, help="Filter by pipeline")
    history_parser.add_argument(
        "--status",
        default=None,
        choices=sorted(EXIT_CODES),
        help="Filter by run status",
    )

    cancel_parser = commands.add_parser("cancel", help="Cancel a queued or running run")
    cancel_parser.add_argument("run_id", type=int, help="Run number")
    cancel_parser.add_argument(
        "--wait",
        type=float,
        default=30,
        help="Seconds to wait for a run driven elsewhere to stop (default: 30)",
    )

    commands.add_parser("serve", help="Start the webhook listener")
    return parser


def dispatch(args: argparse.Namespace) -> int:
    """Load configuration and run the selected command."""
    config = load_config(resolve_config_path(args.config))

    match args.command:
        case "run":
            return asyncio.run(
                run_pipeline(
                    config,
                    args.pipeline,
                    branch=args.branch,
                    commit_sha=args.commit,
                    include_output=args.show_output,
                )
            )
        case "status":
            return show_status(config, args.run_id, include_output=args.show_output)
        case "history":
            return show_history(
                config, limit=args.limit, pipeline=args.pipeline, status=args.status
            )
        case "cancel":
            return asyncio.run(cancel_run(config, args.run_id, wait=args.wait))
        case "serve":
            return asyncio.run(serve(config))
    raise ValueError(f"Unknown command: {args.command}")  # pragma: no cover


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        exit_code = dispatch(args)
    except (OrchestratorError, FileNotFoundError, ValueError) as e:
        logging.getLogger("ci_orchestrator").error("%s", e)
        print(json.dumps(format_error(e), indent=2))
        exit_code = ERROR_EXIT_CODE
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
