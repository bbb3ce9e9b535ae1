"""
ttl-worker -- command line entry point for the TTL expiration engine.

Usage:
    ttl-worker --config ttl.yaml run            # foreground worker loop
    ttl-worker --database-url URL run-once      # one pass, then exit
    ttl-worker create-tables
    ttl-worker register public.orders created_at 604800 --batch-size 5000
    ttl-worker deactivate public.orders created_at
    ttl-worker drop public.orders created_at
    ttl-worker reset-stats public.orders created_at
    ttl-worker summary

The database URL comes from ``--database-url``, then ``TTL_DATABASE_URL``,
then ``database_url`` in the config file.  ``run`` re-reads the config file
on SIGHUP and shuts down cleanly on SIGTERM or SIGINT.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from typing import Sequence

from ttl_kernel.exceptions import TTLError
from ttl_kernel.logging_config import configure_logging

from ttl_config import (
    ConfigSource,
    FileConfigSource,
    StaticConfigSource,
    load_engine_settings,
)
from ttl_worker.domain.types import CleanupPassResult
from ttl_worker.orchestrator import TTLEngine
from ttl_worker.services.scheduler import DEFAULT_WORKER_NAME

_POLL_SECONDS = 0.5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ttl-worker",
        description="Expire rows older than their retention period.",
    )
    parser.add_argument("--config", help="YAML config file (scheduler/runner settings)")
    parser.add_argument("--database-url", help="SQLAlchemy database URL")
    parser.add_argument("--worker-name", default=DEFAULT_WORKER_NAME)
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the worker loop until SIGTERM/SIGINT")
    sub.add_parser("run-once", help="Run one cleanup pass and exit")
    sub.add_parser("create-tables", help="Create the rule registry tables")
    sub.add_parser("summary", help="Show every rule and its statistics")

    register = sub.add_parser("register", help="Create or update an expiration rule")
    register.add_argument("collection_id", help="Table, optionally schema-qualified")
    register.add_argument("time_field", help="Date/timestamp column")
    register.add_argument("retention_seconds", type=int)
    register.add_argument("--batch-size", type=int, default=None)

    for name, help_text in (
        ("deactivate", "Stop expiring a collection, keeping the rule"),
        ("drop", "Remove a rule and its index"),
        ("reset-stats", "Zero a rule's statistics"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("collection_id")
        cmd.add_argument("time_field")

    return parser


def build_engine(args: argparse.Namespace) -> TTLEngine:
    settings = load_engine_settings(args.config)
    database_url = args.database_url or settings.database_url
    if not database_url:
        raise SystemExit(
            "ERROR: no database URL (use --database-url, TTL_DATABASE_URL "
            "or database_url in the config file)"
        )

    config_source: ConfigSource
    if args.config:
        config_source = FileConfigSource(args.config, environ=os.environ)
    else:
        config_source = StaticConfigSource(settings.scheduler)

    return TTLEngine.from_url(
        database_url,
        config_source=config_source,
        runner_settings=settings.runner,
        worker_name=args.worker_name,
    )


def print_pass_result(result: CleanupPassResult) -> None:
    print(f"pass {result.pass_id}: {result.status.value}")
    print(f"  rows deleted: {result.total_rows_deleted}")
    print(f"  duration:     {result.duration_ms} ms")
    for outcome in result.per_rule_outcomes:
        line = (
            f"  {outcome.rule_key}: {outcome.status.value} "
            f"rows={outcome.rows_deleted} batches={outcome.batches}"
        )
        if outcome.error:
            line += f" error={outcome.error}"
        print(line)


def print_summary(engine: TTLEngine) -> None:
    summaries = engine.summary()
    if not summaries:
        print("No expiration rules registered.")
        return
    for item in summaries:
        rule = item.rule
        since = (
            f"{item.time_since_last_run.total_seconds():.0f}s ago"
            if item.time_since_last_run is not None
            else "never"
        )
        print(
            f"{rule.key}  active={rule.active}  retention={rule.retention_seconds}s  "
            f"batch={rule.batch_size}  last_run={since}  "
            f"last_deleted={rule.rows_deleted_last_run}  "
            f"total_deleted={rule.total_rows_deleted}  "
            f"index={rule.derived_index_ref or '-'}"
        )


def run_forever(engine: TTLEngine) -> int:
    engine.install_signal_handlers()
    # A signal landing here leaves a stop pending; start() honors it.
    engine.start()
    while engine.scheduler.is_running:
        time.sleep(_POLL_SECONDS)
    engine.stop()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=getattr(logging, args.log_level))

    try:
        engine = build_engine(args)

        if args.command == "run":
            return run_forever(engine)

        if args.command == "run-once":
            print_pass_result(engine.run_one_pass())
            return 0

        if args.command == "create-tables":
            engine.create_tables()
            print("Registry tables ready.")
            return 0

        if args.command == "summary":
            print_summary(engine)
            return 0

        if args.command == "register":
            kwargs = {}
            if args.batch_size is not None:
                kwargs["batch_size"] = args.batch_size
            rule = engine.register_rule(
                args.collection_id,
                args.time_field,
                args.retention_seconds,
                **kwargs,
            )
            print(
                f"Registered {rule.key} retention={rule.retention_seconds}s "
                f"batch={rule.batch_size} index={rule.derived_index_ref}"
            )
            return 0

        if args.command == "deactivate":
            rule = engine.deactivate_rule(args.collection_id, args.time_field)
            print(f"Deactivated {rule.key}")
            return 0

        if args.command == "drop":
            if engine.drop_rule(args.collection_id, args.time_field):
                print(f"Dropped {args.collection_id}.{args.time_field}")
                return 0
            print(f"No rule for {args.collection_id}.{args.time_field}")
            return 1

        if args.command == "reset-stats":
            rule = engine.reset_rule_stats(args.collection_id, args.time_field)
            print(f"Reset statistics for {rule.key}")
            return 0

    except TTLError as exc:
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1
    except FileNotFoundError as exc:
        print(f"ERROR: config file not found: {exc.filename}", file=sys.stderr)
        return 1

    parser.error(f"unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
