# ruff: noqa: T201

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import threading
from datetime import timedelta
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from fleetstate.adapters.sqlalchemy import shutdown
from fleetstate.app import build_overlord
from fleetstate.config import configure_logging, get_runner_config
from fleetstate.domain.execution import DEFAULT_SETTLE_TIMEOUT
from fleetstate.domain.quota import (
    all_quotas,
    create_quota,
    ensure_snap_absent_from_quota,
    format_memory_size,
    parse_memory_size,
    remove_quota,
    update_quota,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from fleetstate.app import Overlord

log = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile fleet state")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the ensure loop until interrupted")
    run.add_argument(
        "--once",
        action="store_true",
        help="Run a single ensure pass, wait for its tasks, and exit",
    )
    run.add_argument(
        "--interval",
        type=float,
        help="Seconds between ensure passes (defaults to config)",
    )

    settle = subparsers.add_parser("settle", help="Run tasks until nothing is left to do")
    settle.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_SETTLE_TIMEOUT,
        help="Seconds to wait for pending tasks (default: %(default)s)",
    )

    subparsers.add_parser("changes", help="List changes")

    tasks = subparsers.add_parser("tasks", help="List the tasks of a change")
    tasks.add_argument("change_id", help="Id of the change to inspect")

    quota = subparsers.add_parser("quota", help="Quota group commands")
    quota_sub = quota.add_subparsers(dest="quota_command", required=True)

    quota_create = quota_sub.add_parser("create", help="Create a quota group")
    quota_create.add_argument("name", help="Name of the quota group")
    quota_create.add_argument(
        "--memory",
        type=str,
        required=True,
        help="Memory limit, e.g. 512MiB or 1G",
    )
    quota_create.add_argument(
        "--snap",
        action="append",
        default=[],
        help="Snap to place in the group (repeatable)",
    )
    quota_create.add_argument("--parent", type=str, help="Parent quota group")

    quota_update = quota_sub.add_parser("update", help="Update a quota group")
    quota_update.add_argument("name", help="Name of the quota group")
    quota_update.add_argument("--memory", type=str, help="New memory limit")
    quota_update.add_argument(
        "--add-snap",
        action="append",
        default=[],
        help="Snap to add to the group (repeatable)",
    )

    quota_remove = quota_sub.add_parser("remove", help="Remove a quota group")
    quota_remove.add_argument("name", help="Name of the quota group")

    quota_remove_snap = quota_sub.add_parser(
        "remove-snap", help="Take a snap out of its quota group"
    )
    quota_remove_snap.add_argument("snap", help="Name of the snap")

    quota_sub.add_parser("list", help="List quota groups")

    return parser.parse_args(list(argv))


def _validate(args: argparse.Namespace) -> None:
    if args.command == "run" and args.interval is not None and args.interval <= 0:
        raise ValueError("Interval must be positive")
    if args.command == "settle" and args.timeout <= 0:
        raise ValueError("Timeout must be positive")
    if args.command == "quota":
        memory = getattr(args, "memory", None)
        args.memory_bytes = parse_memory_size(memory) if memory is not None else None


def _run(overlord: Overlord, args: argparse.Namespace) -> None:
    if args.once:
        overlord.settle()
        return
    overlord.loop()
    threading.Event().wait()


def _print_changes(overlord: Overlord) -> None:
    with overlord.state as state:
        for change in state.changes():
            print(f"{change.id}\t{change.status}\t{change.kind}\t{change.summary}")


def _print_tasks(overlord: Overlord, change_id: str) -> None:
    with overlord.state as state:
        change = state.change(change_id)
        for task in change.tasks():
            last = task.log[-1] if task.log else ""
            print(f"{task.id}\t{task.status}\t{task.kind}\t{task.summary}\t{last}")
        error = change.err()
        if error is not None:
            print(error)


def _quota(overlord: Overlord, args: argparse.Namespace) -> None:
    with overlord.state as state:
        if args.quota_command == "list":
            for name, group in sorted(all_quotas(state).items()):
                members = ",".join(group.snaps)
                limit = format_memory_size(group.memory_limit)
                print(f"{name}\t{limit}\t{group.parent or ''}\t{members}")
            return
        if args.quota_command == "create":
            change = create_quota(
                state, args.name, args.snap, args.memory_bytes, parent=args.parent
            )
        elif args.quota_command == "update":
            change = update_quota(
                state, args.name, memory_limit=args.memory_bytes, add_snaps=args.add_snap
            )
        elif args.quota_command == "remove":
            change = remove_quota(state, args.name)
        elif args.quota_command == "remove-snap":
            change = ensure_snap_absent_from_quota(state, args.snap)
        else:
            raise ValueError(f"Unsupported quota command: {args.quota_command}")
        change_id = change.id if change is not None else None
    if change_id is None:
        log.info("Nothing to do")
        return
    log.info("Queued change %s", change_id)
    overlord.settle()


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    configure_logging()
    parsed_args: argparse.Namespace
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    try:
        parsed_args = _parse_args(args_list)
        _validate(parsed_args)
    except ValueError:
        log.exception("CLI validation error")
        sys.exit(2)

    try:
        config = get_runner_config()
        if parsed_args.command == "run" and parsed_args.interval is not None:
            config = dataclasses.replace(
                config, ensure_interval=timedelta(seconds=parsed_args.interval)
            )
        overlord = build_overlord(config=config)
        try:
            if parsed_args.command == "run":
                _run(overlord, parsed_args)
            elif parsed_args.command == "settle":
                overlord.settle(parsed_args.timeout)
            elif parsed_args.command == "changes":
                _print_changes(overlord)
            elif parsed_args.command == "tasks":
                _print_tasks(overlord, parsed_args.change_id)
            elif parsed_args.command == "quota":
                _quota(overlord, parsed_args)
            else:
                raise ValueError(f"Unsupported command: {parsed_args.command}")  # noqa: TRY301
        finally:
            overlord.stop()
    except Exception:
        log.exception("Fatal error")
        sys.exit(1)
    finally:
        shutdown()


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


def run() -> None:
    """Console script entry point."""
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    run()
