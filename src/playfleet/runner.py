#!/usr/bin/env python3
"""Main entry point for playfleet."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from functools import partial
from pathlib import Path

from .config import Playbook, find_playbooks, load_playbook
from .dashboard import Dashboard
from .executor import OutputCallback, RetryingExecutor, StatusCallback, TaskExecutor, TaskOutcome
from .scheduler import AggregateResult, OutcomeCallback, Scheduler
from .session import AcceptAnyHost, HostVerifier, KnownHostsVerifier

LOGGING_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# ANSI colors for different tasks
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOGGING_FORMAT,
    )
    # asyncssh logs every channel at INFO
    logging.getLogger("asyncssh").setLevel(logging.DEBUG if verbose else logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="playfleet",
        description="Run a playbook of shell commands on many SSH hosts in parallel",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run = subparsers.add_parser("run", help="Execute a playbook")
    run.add_argument("playbook", type=Path, help="Path to YAML playbook file")
    run.add_argument(
        "--hosts",
        help="Comma-separated list of target hosts (default: all in playbook)",
    )
    run.add_argument("--timeout", type=float, help="Per-task timeout in seconds")
    run.add_argument("--retries", type=int, help="Retries for connect failures and timeouts")
    run.add_argument("--known-hosts", type=Path, help="known_hosts file used to verify hosts")
    run.add_argument(
        "--insecure-accept-any-host-key",
        action="store_true",
        help="Skip host key verification (vulnerable to man-in-the-middle)",
    )
    run.add_argument("--no-logs", action="store_true", help="Disable logging to files")
    run.add_argument("--dashboard", action="store_true", help="Run with the TUI dashboard")

    # list
    list_ = subparsers.add_parser("list", help="List YAML playbooks")
    list_.add_argument("keyword", nargs="?", default="", help="Filter by path keyword")
    list_.add_argument("--root", type=Path, default=Path("."), help="Directory to search")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        if args.command == "list":
            return cmd_list(args)
        return cmd_run(args)
    except KeyboardInterrupt:
        return 130


def cmd_list(args: argparse.Namespace) -> int:
    for path in find_playbooks(args.root, args.keyword):
        print(path)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        playbook = load_playbook(args.playbook)
        if args.hosts:
            playbook = playbook.select_hosts(args.hosts.split(","))
        if args.timeout is not None:
            # Command-line timeout overrides the per-task values from the playbook
            playbook = replace(
                playbook, tasks=[replace(t, timeout=args.timeout) for t in playbook.tasks]
            )
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Playbook error: {e}", file=sys.stderr)
        return 1

    if args.dashboard:
        app = Dashboard(playbook, partial(build_scheduler, playbook, args))
        app.run()
        result = app.run_result
        if result is None:
            print("\nRun aborted", file=sys.stderr)
            return 1
    else:
        if playbook.name:
            version = f" (version {playbook.version})" if playbook.version else ""
            print(f"Executing playbook: {playbook.name}{version}")
        result = _run_headless(playbook, args)

    return _report(result)


def build_verifier(playbook: Playbook, args: argparse.Namespace) -> HostVerifier:
    if args.insecure_accept_any_host_key or playbook.defaults.accept_any_host_key:
        return AcceptAnyHost()
    return KnownHostsVerifier(args.known_hosts or playbook.defaults.known_hosts)


def build_scheduler(
    playbook: Playbook,
    args: argparse.Namespace,
    on_output: OutputCallback | None = None,
    on_status: StatusCallback | None = None,
    on_outcome: OutcomeCallback | None = None,
) -> Scheduler:
    """Wire executor, retry policy and log directory from playbook and flags."""
    defaults = playbook.defaults
    timeout = args.timeout if args.timeout is not None else defaults.timeout
    retries = args.retries if args.retries is not None else defaults.retries

    executor = TaskExecutor(
        default_timeout=timeout,
        verifier=build_verifier(playbook, args),
        connect_timeout=defaults.connect_timeout,
        on_output=on_output,
        on_status=on_status,
    )
    wrapped = RetryingExecutor(executor, attempts=retries + 1) if retries > 0 else executor
    log_dir = None if args.no_logs else playbook.log_dir
    return Scheduler(wrapped, on_outcome=on_outcome, log_dir=log_dir)


def _run_headless(playbook: Playbook, args: argparse.Namespace) -> AggregateResult:
    """Run the scheduler without the TUI dashboard."""
    task_colors = {
        task.name: COLORS[i % len(COLORS)]
        for i, task in enumerate(playbook.tasks)
    }

    def on_output(task_name: str, line: str) -> None:
        color = task_colors.get(task_name, "")
        print(f"{color}[{task_name}]{RESET} {line}")

    def on_outcome(outcome: TaskOutcome) -> None:
        color = task_colors.get(outcome.task_name, "")
        detail = f": {outcome.error}" if outcome.error else ""
        print(f"{color}[{outcome.task_name}]{RESET} Status: {outcome.status.value}{detail}")

    scheduler = build_scheduler(playbook, args, on_output=on_output, on_outcome=on_outcome)

    return asyncio.run(scheduler.run_all(playbook.tasks))


def _report(result: AggregateResult) -> int:
    if result.failed:
        names = ", ".join(o.task_name for o in result.failed)
        print(f"\nFailed tasks: {names}", file=sys.stderr)
        return 1
    print(f"\nAll {len(result)} task(s) succeeded")
    return 0


if __name__ == "__main__":
    sys.exit(main())
