from __future__ import annotations

import logging
import os
import signal
import sys
import time

from dotenv import load_dotenv
from flask import Flask, jsonify

load_dotenv()

from flipper.cleanup import run_cleanup  # noqa: E402
from flipper.config import ConfigError, load_settings  # noqa: E402
from flipper.db import get_counts, init_db, session_scope  # noqa: E402
from flipper.dirty_queue import DirtyQueueProcessor  # noqa: E402
from flipper.feed import PriceFeedClient  # noqa: E402
from flipper.locks import JobLockManager, install_exit_hooks  # noqa: E402
from flipper.pollers import poll_granularity, poll_latest, sync_item_catalog  # noqa: E402
from flipper.scheduler import Scheduler  # noqa: E402
from flipper.trends import set_audit_enabled  # noqa: E402

os.environ.setdefault("FLASK_RUN_PORT", "5003")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger("flipper")

try:
    settings = load_settings()
except ConfigError as exc:
    logger.critical("Startup configuration error: %s", exc)
    sys.exit(2)

set_audit_enabled(settings.trend_audit)
init_db(settings.database_url)

client = PriceFeedClient(
    base_url=settings.feed_base_url,
    user_agent=settings.feed_user_agent,
    timeout_seconds=settings.feed_timeout_seconds,
    max_retries=settings.feed_max_retries,
)
lock_manager = JobLockManager(settings.lock_dir)
processor = DirtyQueueProcessor(
    lock_manager=lock_manager,
    full_refresh_ratio=settings.full_refresh_ratio,
)
scheduler = Scheduler(
    poll_latest=lambda: poll_latest(client),
    poll_granularity=lambda granularity, target_api_ts: poll_granularity(
        client,
        granularity,
        lock_manager=lock_manager,
        target_api_ts=target_api_ts,
    ),
    update_canonical=processor.run,
    run_cleanup=run_cleanup,
    latest_interval_seconds=settings.latest_interval_seconds,
    latest_max_retries=settings.latest_max_retries,
    latest_retry_delay_seconds=settings.latest_retry_delay_seconds,
    chain_max_retries=settings.chain_max_retries,
    chain_retry_delay_seconds=settings.chain_retry_delay_seconds,
)

app = Flask(__name__)
_scheduler_started = False


def start_scheduler_if_needed() -> None:
    global _scheduler_started
    if _scheduler_started or not settings.scheduler_enabled:
        return
    try:
        with session_scope() as session:
            catalog_size = get_counts(session)["items"]
        if catalog_size == 0:
            sync_item_catalog(client)
    except Exception as exc:
        logger.error("Item catalog sync failed: %s", exc)
    scheduler.start()
    _scheduler_started = True
    logger.info("flipper scheduler started")


@app.before_request
def _ensure_background_scheduler() -> None:
    start_scheduler_if_needed()


@app.get("/api/health")
def api_health() -> object:
    return jsonify({"ok": True, "ts": int(time.time())})


@app.get("/api/status")
def api_status() -> object:
    now = time.time()
    with session_scope() as session:
        counts = get_counts(session)
    return jsonify(
        {
            "ok": True,
            "ts": int(now),
            "scheduler": scheduler.get_status(),
            "canonical_state": processor.state,
            "dirty_items": counts["dirty_items"],
            "counts": counts,
            "locks": [info.as_dict(now) for info in lock_manager.list_locks()],
        }
    )


def _shutdown(signum, frame) -> None:
    logger.info("Signal %s received, stopping scheduler", signum)
    scheduler.stop(timeout=None)
    lock_manager.release_all()
    raise SystemExit(0)


if __name__ == "__main__":
    install_exit_hooks(lock_manager)
    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    start_scheduler_if_needed()
    port = settings.port
    print(f"Starting flipper runtime on port={port}")
    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False)
