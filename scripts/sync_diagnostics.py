#!/usr/bin/env python3
"""
Sync diagnostics - operator entry point for the cafesync engine.

Commands:
    preflight          Check that the local MongoDB can serve change streams
    init-replica-set   Initiate a single-member replica set on the local mongod
    roundtrip          Write a marker locally and time its arrival on the remote
    reconcile          Copy missing documents between the two sides
    run                Run the sync coordinator in the foreground
"""

import json
import logging
import signal
import sys
import threading
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import get_settings
from cafesync.diagnostics import (
    ROUNDTRIP_COLLECTION,
    check_replica_set,
    initiate_replica_set,
    run_roundtrip,
)
from cafesync.sync import (
    CoordinatorState,
    SyncConfigurationError,
    SyncConnectionError,
    SyncCoordinator,
    SyncDirection,
)
from cafesync.utils.logging import configure_logging

logger = logging.getLogger("sync_diagnostics")


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def cmd_preflight(args, settings) -> int:
    result = check_replica_set(
        settings.mongo.local_uri,
        settings.mongo.local_database,
        timeout=settings.mongo.server_selection_timeout,
    )
    _print_json(result.model_dump(mode="json", exclude={"remediation"}))
    if result.remediation:
        print()
        print(result.remediation)
    return 0 if result.ok else 1


def cmd_init_replica_set(args, settings) -> int:
    result = initiate_replica_set(
        settings.mongo.local_uri,
        set_name=args.set_name,
        host=args.host,
        wait_seconds=args.wait,
    )
    _print_json(result.model_dump(mode="json", exclude={"remediation"}))
    if result.remediation:
        print()
        print(result.remediation)
    return 0 if result.ok else 1


def cmd_roundtrip(args, settings) -> int:
    coordinator = SyncCoordinator.from_settings(settings, extra_collections=[ROUNDTRIP_COLLECTION])
    try:
        state = coordinator.start()
        if state is not CoordinatorState.RUNNING:
            _print_json(coordinator.get_status())
            return 1

        local_db = coordinator.workers[SyncDirection.LOCAL_TO_REMOTE].source_db
        remote_db = coordinator.workers[SyncDirection.LOCAL_TO_REMOTE].target_db

        results = [run_roundtrip(local_db, remote_db, SyncDirection.LOCAL_TO_REMOTE.value, timeout=args.timeout)]
        if coordinator.bidirectional:
            results.append(
                run_roundtrip(remote_db, local_db, SyncDirection.REMOTE_TO_LOCAL.value, timeout=args.timeout)
            )
        _print_json([r.model_dump() for r in results])
        return 0 if all(r.ok for r in results) else 1
    finally:
        coordinator.stop()


def cmd_reconcile(args, settings) -> int:
    coordinator = SyncCoordinator.from_settings(settings)
    try:
        report = coordinator.reconcile(SyncDirection(args.direction))
        _print_json(report.model_dump(mode="json"))
        return 0 if report.errors == 0 else 1
    finally:
        coordinator.stop()


def cmd_run(args, settings) -> int:
    coordinator = SyncCoordinator.from_settings(settings)
    stop_requested = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_requested.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        state = coordinator.start()
        if state in (CoordinatorState.DISABLED, CoordinatorState.FAILED):
            _print_json(coordinator.get_status())
            return 1

        while not stop_requested.wait(args.status_interval):
            status = coordinator.get_status()
            logger.info(
                f"Sync status: {status['state']}",
                extra={"state": status["state"], "healthy": status["healthy"]}
            )
        return 0
    finally:
        coordinator.stop()


def main() -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Diagnostics for local <-> cloud MongoDB sync")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("preflight", help="Check the local replica set")

    init_parser = subparsers.add_parser("init-replica-set", help="Initiate a one-node replica set")
    init_parser.add_argument("--set-name", default="rs0", help="Replica set name")
    init_parser.add_argument("--host", default=None, help="Member host:port (default: first URI host)")
    init_parser.add_argument("--wait", type=float, default=30.0, help="Seconds to wait for a PRIMARY")

    roundtrip_parser = subparsers.add_parser("roundtrip", help="Measure end-to-end replication latency")
    roundtrip_parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for the marker on the other side"
    )

    reconcile_parser = subparsers.add_parser("reconcile", help="Copy missing documents")
    reconcile_parser.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.BOTH.value,
        help="Which way to copy"
    )

    run_parser = subparsers.add_parser("run", help="Run sync until interrupted")
    run_parser.add_argument(
        "--status-interval",
        type=float,
        default=60.0,
        help="Seconds between status log lines"
    )

    args = parser.parse_args()
    settings = get_settings()
    configure_logging(args.log_level or settings.log_level, settings.log_json)

    commands = {
        "preflight": cmd_preflight,
        "init-replica-set": cmd_init_replica_set,
        "roundtrip": cmd_roundtrip,
        "reconcile": cmd_reconcile,
        "run": cmd_run,
    }

    try:
        return commands[args.command](args, settings)
    except SyncConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        if e.remediation:
            print(e.remediation, file=sys.stderr)
        return 2
    except SyncConnectionError as e:
        logger.error(f"Connection error ({e.category}) on {e.side}: {e.hint}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
