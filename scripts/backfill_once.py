from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

load_dotenv()

from flipper.config import load_settings  # noqa: E402
from flipper.db import init_db  # noqa: E402
from flipper.feed import PriceFeedClient  # noqa: E402
from flipper.horizons import GRANULARITY_SECONDS  # noqa: E402
from flipper.locks import JobLockManager, LockHeldError, install_exit_hooks  # noqa: E402
from flipper.pollers import backfill_granularity, sync_item_catalog  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Fill missing candle windows inside the retention range.")
    parser.add_argument("granularities", nargs="*", default=["5m"], choices=sorted(GRANULARITY_SECONDS))
    parser.add_argument("--sync-catalog", action="store_true", help="refresh the item catalog first")
    args = parser.parse_args()

    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    init_db(settings.database_url)

    client = PriceFeedClient(
        base_url=settings.feed_base_url,
        user_agent=settings.feed_user_agent,
        timeout_seconds=settings.feed_timeout_seconds,
        max_retries=settings.feed_max_retries,
    )
    lock_manager = JobLockManager(settings.lock_dir)
    install_exit_hooks(lock_manager)

    if args.sync_catalog:
        sync_item_catalog(client)

    exit_code = 0
    for granularity in args.granularities:
        try:
            result = backfill_granularity(
                client,
                granularity,
                lock_manager=lock_manager,
                delay_ms=settings.backfill_delay_ms,
            )
        except LockHeldError as exc:
            print(f"[{granularity}] skipped: {exc}")
            continue
        print(
            f"[{granularity}] missing={result['missing']} inserted={result['inserted']} failed={result['failed']}"
        )
        if result["failed"]:
            exit_code = 1
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
