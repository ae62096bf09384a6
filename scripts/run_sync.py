#!/usr/bin/env python3
"""
Run a catalog sync from the command line (cron, systemd timers).

    python scripts/run_sync.py full
    python scripts/run_sync.py incremental --catalog mangadex
    python scripts/run_sync.py status --json

Exit code 1 when the run ends FAILED.
"""
import argparse
import json
import os
import sys
import time


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync a provider catalog into the local store.")
    parser.add_argument("command", choices=("full", "incremental", "status"))
    parser.add_argument("--catalog", default="mangadex", help="Source id to sync.")
    parser.add_argument("--batch-size", type=int, default=None, help="Override SYNC_BATCH_SIZE.")
    parser.add_argument("--delay-ms", type=int, default=None, help="Override SYNC_BATCH_DELAY_MS.")
    parser.add_argument("--json", action="store_true", help="Print the final progress as JSON.")
    return parser.parse_args()


def _print_progress(progress) -> None:
    total = progress.total_to_process
    if total:
        percentage = progress.total_processed / total * 100
        sys.stdout.write(f"\rProgress: {progress.total_processed}/{total} ({percentage:.1f}%)")
    else:
        sys.stdout.write(f"\rProcessed: {progress.total_processed} manga")
    sys.stdout.flush()


def main() -> int:
    args = parse_args()

    sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

    from dotenv import load_dotenv  # pylint: disable=import-outside-toplevel
    load_dotenv()

    from sources import get_provider_registry  # pylint: disable=import-outside-toplevel
    from sources.base import set_log_callback  # pylint: disable=import-outside-toplevel
    from mangahook_app.database import get_session_factory, init_database  # pylint: disable=import-outside-toplevel
    from mangahook_app.log import log  # pylint: disable=import-outside-toplevel
    from mangahook_app.models import SyncStatus  # pylint: disable=import-outside-toplevel
    from mangahook_app.sync import SyncEngine  # pylint: disable=import-outside-toplevel

    set_log_callback(log)
    init_database()

    options = {}
    if args.batch_size is not None:
        options["batch_size"] = args.batch_size
    if args.delay_ms is not None:
        options["batch_delay_ms"] = args.delay_ms
    engine = SyncEngine(
        get_provider_registry(),
        session_factory=get_session_factory(),
        on_progress=None if args.json else _print_progress,
        **options
    )

    start = time.time()
    if args.command == "status":
        progress = engine.get_sync_status(args.catalog)
    elif args.command == "full":
        progress = engine.run_full_sync(args.catalog)
    else:
        progress = engine.run_incremental_sync(args.catalog)

    if args.json:
        print(json.dumps(progress.to_dict(), indent=2, sort_keys=True))
    else:
        print()
        print(f"Status: {progress.status.value}")
        print(f"Processed this run: {progress.total_processed}")
        print(f"Total manga in database: {progress.total_manga_count}")
        print(f"Last full sync: {progress.last_full_sync.isoformat() if progress.last_full_sync else 'Never'}")
        print(f"Last incremental sync: "
              f"{progress.last_incremental_sync.isoformat() if progress.last_incremental_sync else 'Never'}")
        if progress.last_error:
            print(f"Last error: {progress.last_error}")
        if args.command != "status":
            print(f"Duration: {time.time() - start:.1f}s")

    return 1 if progress.status is SyncStatus.FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
