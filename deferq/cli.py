#!/usr/bin/env python3
"""
deferq Command-Line Interface.

Commands:
- deferq schedule: Schedule a delayed job (--at TIMESTAMP or --in SECONDS)
- deferq list: List delayed timestamps and how many jobs each holds
- deferq counts: Show delayed and ready queue sizes
- deferq remove: Remove matching delayed jobs
- deferq queue: Inspect or pop a ready queue
- deferq run: Run the scheduler daemon
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from decologr import Logger as log

from deferq.config import DaemonConfig, LogLevel
from deferq.core.service import SchedulerDaemon
from deferq.core.store import SqliteDeferredStore
from deferq.errors import ConfigError


def _config(args) -> DaemonConfig:
    return DaemonConfig.from_env().override(db_path=args.db_path)


def _open_store(args) -> SqliteDeferredStore:
    return SqliteDeferredStore(db_path=_config(args).db_path)


def _quiet_for_json(args):
    # Suppress logging for JSON output
    if args.json:
        logging.getLogger().setLevel(logging.ERROR)


def _parse_args_payload(text):
    if not text:
        return {}
    try:
        payload = json.loads(text)
    except ValueError as ex:
        raise ConfigError(f"--args is not valid JSON: {ex}") from None
    if not isinstance(payload, dict):
        raise ConfigError("--args must be a JSON object")
    return payload


def schedule_job(args):
    """Schedule a delayed job."""
    _quiet_for_json(args)
    store = _open_store(args)
    payload = _parse_args_payload(args.args)

    timestamp = args.at if args.at is not None else int(store.clock()) + args.delay
    job_id = store.enqueue_at(timestamp, args.queue, args.job_class, payload)

    if args.json:
        print(json.dumps({"id": job_id, "queue": args.queue, "class": args.job_class, "timestamp": timestamp}, indent=2))
    else:
        when = datetime.fromtimestamp(timestamp).isoformat(sep=" ")
        print(f"Scheduled {args.job_class} on {args.queue} at {timestamp} ({when})")
    return job_id


def list_delayed(args):
    """List delayed timestamps."""
    _quiet_for_json(args)
    store = _open_store(args)
    buckets = store.delayed_timestamps()

    if args.json:
        print(json.dumps([{"timestamp": ts, "count": count} for ts, count in buckets], indent=2))
        return

    if not buckets:
        print("No delayed jobs")
        return

    print(f"{'Timestamp':<12} {'Due at':<20} {'Jobs':<6}")
    print("-" * 40)
    for ts, count in buckets:
        due = datetime.fromtimestamp(ts).isoformat(sep=" ")[:19]
        print(f"{ts:<12} {due:<20} {count:<6}")


def show_counts(args):
    """Show delayed and ready queue sizes."""
    _quiet_for_json(args)
    store = _open_store(args)
    counts = {
        "delayed": store.delayed_queue_size(),
        "queues": {queue: store.queue_size(queue) for queue in store.queues()},
    }

    if args.json:
        print(json.dumps(counts, indent=2))
    else:
        print(f"Delayed jobs: {counts['delayed']}")
        print("Ready queues:")
        for queue, count in sorted(counts["queues"].items()):
            print(f"  {queue}: {count}")


def remove_delayed(args):
    """Remove matching delayed jobs."""
    _quiet_for_json(args)
    store = _open_store(args)
    removed = store.remove_delayed(args.queue, args.job_class, _parse_args_payload(args.args))

    if args.json:
        print(json.dumps({"removed": removed}, indent=2))
    else:
        print(f"Removed {removed} delayed job(s)")
    return removed


def inspect_queue(args):
    """Show a ready queue's size, or pop its oldest job."""
    _quiet_for_json(args)
    store = _open_store(args)

    if args.pop:
        job = store.pop(args.name)
        if args.json:
            print(json.dumps(job, indent=2))
        elif job is None:
            print(f"Queue {args.name} is empty")
        else:
            print(f"{job.get('class')} {json.dumps(job.get('args', {}))}")
        return job

    size = store.queue_size(args.name)
    if args.json:
        print(json.dumps({"queue": args.name, "size": size}, indent=2))
    else:
        print(f"{args.name}: {size}")
    return size


def run_daemon(args):
    """Run the scheduler daemon in the foreground."""
    if args.verbose:
        log_level = LogLevel.VERBOSE
    elif args.quiet:
        log_level = LogLevel.SILENT
    else:
        log_level = None
    config = _config(args).override(interval=args.interval, log_level=log_level)

    if config.log_level == LogLevel.VERBOSE:
        logging.getLogger().setLevel(logging.DEBUG)
    elif config.log_level == LogLevel.SILENT:
        logging.getLogger().setLevel(logging.CRITICAL)

    store = SqliteDeferredStore(db_path=config.db_path)
    daemon = SchedulerDaemon(store, interval=config.interval, log_level=config.log_level)
    try:
        daemon.work()
    finally:
        store.close()
    return daemon


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="deferq",
        description="deferq - delayed job scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Global options
    parser.add_argument(
        "--db-path",
        type=Path,
        help="Path to SQLite database (default: $DEFERQ_DB_PATH or ~/.deferq/deferq.db)",
    )

    json_parent = argparse.ArgumentParser(add_help=False)
    json_parent.add_argument("--json", action="store_true", help="Output in JSON format")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # schedule command
    schedule_parser = subparsers.add_parser("schedule", parents=[json_parent], help="Schedule a delayed job")
    schedule_parser.add_argument("--queue", "-q", required=True, help="Destination queue")
    schedule_parser.add_argument("--class", "-c", dest="job_class", required=True, help="Job class")
    schedule_parser.add_argument("--args", "-a", help="Job arguments as a JSON object")
    when = schedule_parser.add_mutually_exclusive_group(required=True)
    when.add_argument("--at", type=int, help="Epoch timestamp to promote the job at")
    when.add_argument("--in", dest="delay", type=int, help="Seconds from now to promote the job")
    schedule_parser.set_defaults(func=schedule_job)

    # list command
    list_parser = subparsers.add_parser("list", parents=[json_parent], help="List delayed timestamps")
    list_parser.set_defaults(func=list_delayed)

    # counts command
    counts_parser = subparsers.add_parser("counts", parents=[json_parent], help="Show queue sizes")
    counts_parser.set_defaults(func=show_counts)

    # remove command
    remove_parser = subparsers.add_parser("remove", parents=[json_parent], help="Remove delayed jobs")
    remove_parser.add_argument("--queue", "-q", required=True, help="Destination queue")
    remove_parser.add_argument("--class", "-c", dest="job_class", required=True, help="Job class")
    remove_parser.add_argument("--args", "-a", help="Job arguments as a JSON object")
    remove_parser.set_defaults(func=remove_delayed)

    # queue command
    queue_parser = subparsers.add_parser("queue", parents=[json_parent], help="Inspect a ready queue")
    queue_parser.add_argument("name", help="Queue name")
    queue_parser.add_argument("--pop", action="store_true", help="Remove and print the oldest job")
    queue_parser.set_defaults(func=inspect_queue)

    # run command
    run_parser = subparsers.add_parser("run", help="Run the scheduler daemon")
    run_parser.add_argument("--interval", "-i", type=int, help="Seconds between polls (default: 5)")
    verbosity = run_parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    verbosity.add_argument("--quiet", action="store_true", help="No logging")
    run_parser.set_defaults(func=run_daemon)

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(130)
    except Exception as ex:
        log.debug(f"Command {args.command} failed: {ex}")
        print(f"Error: {ex}", file=sys.stderr)
        if getattr(args, "json", False):
            print(json.dumps({"error": str(ex)}, indent=2))
        sys.exit(1)


if __name__ == "__main__":
    main()
