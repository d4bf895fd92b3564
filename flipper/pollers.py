from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy import func, or_, select

from .db import (
    CANDLE_TABLES,
    get_catalog_ids,
    get_price_instant_map,
    insert_price_instant_log,
    mark_items_dirty,
    session_scope,
    upsert_candles,
    upsert_items,
    upsert_price_instants,
)
from .feed import FeedError, FeedNotReadyError, PriceFeedClient
from .horizons import GRANULARITY_SECONDS, RETENTION_SECONDS, align_down
from .locks import JobLockManager, backfill_lock_name

logger = logging.getLogger(__name__)

BACKFILL_DELAY_MARGIN_SECONDS = 60


class NoChangesError(RuntimeError):
    pass


@dataclass
class PollResult:
    granularity: str
    skipped: bool = False
    reason: str | None = None
    timestamp: int | None = None
    rows: int = 0
    dirty: int = 0


def _instant_rows(item_id: int, entry: dict, *, now_ts: int) -> list[dict]:
    rows = []
    for side, time_key in (("high", "highTime"), ("low", "lowTime")):
        price = entry.get(side)
        ts = entry.get(time_key)
        if price is None or ts is None:
            continue
        rows.append(
            {
                "item_id": int(item_id),
                "type": side,
                "price": int(price),
                "timestamp": int(ts),
                "last_updated": int(now_ts),
            }
        )
    return rows


def poll_latest(client: PriceFeedClient, *, session_factory=session_scope, now_ts: int | None = None) -> dict:
    """Store changed instant prices and queue their items for recompute.

    A side counts as changed when it is new or its price or timestamp moved.
    Raises NoChangesError when nothing changed.
    """
    data = client.fetch_latest()
    now_ts = int(now_ts if now_ts is not None else time.time())

    with session_factory() as session:
        current = get_price_instant_map(session)
        changed_rows: list[dict] = []
        for item_id, entry in data.items():
            for row in _instant_rows(item_id, entry, now_ts=now_ts):
                stored = current.get((row["item_id"], row["type"]))
                if stored is not None and int(stored.price) == row["price"] and int(stored.timestamp) == row["timestamp"]:
                    continue
                changed_rows.append(row)

        if not changed_rows:
            raise NoChangesError(f"No changes detected across {len(data)} items")

        upsert_price_instants(session, changed_rows)
        insert_price_instant_log(
            session,
            [
                {
                    "item_id": row["item_id"],
                    "type": row["type"],
                    "price": row["price"],
                    "timestamp": row["timestamp"],
                    "seen_at": now_ts,
                }
                for row in changed_rows
            ],
        )
        dirty_ids = {row["item_id"] for row in changed_rows}
        mark_items_dirty(session, dirty_ids, touched_at=now_ts)

    logger.info("[LATEST] items=%s changed_sides=%s dirty=%s", len(data), len(changed_rows), len(dirty_ids))
    return {"items": len(data), "changed": len(changed_rows), "dirty": len(dirty_ids)}


def _candle_rows(catalog_ids: list[int], payload: dict[int, dict], *, stored_ts: int) -> tuple[list[dict], set[int]]:
    rows = []
    with_data: set[int] = set()
    for item_id in catalog_ids:
        entry = payload.get(item_id) or {}
        avg_high = entry.get("avgHighPrice")
        avg_low = entry.get("avgLowPrice")
        if avg_high is not None or avg_low is not None:
            with_data.add(item_id)
        rows.append(
            {
                "item_id": int(item_id),
                "timestamp": int(stored_ts),
                "avg_high": (int(avg_high) if avg_high is not None else None),
                "avg_low": (int(avg_low) if avg_low is not None else None),
                "high_volume": int(entry.get("highPriceVolume") or 0),
                "low_volume": int(entry.get("lowPriceVolume") or 0),
            }
        )
    return rows, with_data


def _timestamp_complete(session, granularity: str, stored_ts: int, catalog_size: int) -> bool:
    model = CANDLE_TABLES[granularity]
    existing = session.execute(
        select(func.count()).select_from(model).where(model.timestamp == int(stored_ts))
    ).scalar_one()
    return catalog_size > 0 and int(existing) >= catalog_size


def poll_granularity(
    client: PriceFeedClient,
    granularity: str,
    *,
    lock_manager: JobLockManager,
    target_api_ts: int | None = None,
    session_factory=session_scope,
    now_ts: int | None = None,
) -> PollResult:
    """Store one closed window for every catalog item.

    Stored timestamps mark the end of the window (api timestamp + interval).
    Raises FeedNotReadyError while the window has not been published.
    """
    interval = GRANULARITY_SECONDS[granularity]
    if lock_manager.is_locked(backfill_lock_name(granularity)):
        logger.info("[%s] Backfill in progress, skipping poll", granularity)
        return PollResult(granularity=granularity, skipped=True, reason="backfill-running")

    api_ts, payload = client.fetch_timeseries(granularity, timestamp=target_api_ts)
    if not payload or api_ts is None:
        raise FeedNotReadyError(f"[{granularity}] empty payload for timestamp={target_api_ts}")
    if target_api_ts is not None and int(api_ts) != int(target_api_ts):
        raise FeedNotReadyError(f"[{granularity}] feed returned timestamp={api_ts}, wanted {target_api_ts}")

    stored_ts = int(api_ts) + interval
    now_ts = int(now_ts if now_ts is not None else time.time())
    with session_factory() as session:
        catalog_ids = get_catalog_ids(session)
        if _timestamp_complete(session, granularity, stored_ts, len(catalog_ids)):
            logger.info("[%s] %s already inserted", granularity, stored_ts)
            return PollResult(granularity=granularity, skipped=True, reason="already-complete", timestamp=stored_ts)

        rows, with_data = _candle_rows(catalog_ids, payload, stored_ts=stored_ts)
        upsert_candles(session, granularity, rows)
        mark_items_dirty(session, with_data, touched_at=now_ts)

    logger.info("[%s] inserted %s rows for ts=%s (dirty=%s)", granularity, len(rows), stored_ts, len(with_data))
    return PollResult(granularity=granularity, timestamp=stored_ts, rows=len(rows), dirty=len(with_data))


def sync_item_catalog(client: PriceFeedClient, *, session_factory=session_scope) -> int:
    mapping = client.fetch_mapping()
    with session_factory() as session:
        total = upsert_items(session, mapping)
    logger.info("Item catalog synced: %s items", total)
    return total


def expected_api_timestamps(granularity: str, *, now_ts: int) -> list[int]:
    interval = GRANULARITY_SECONDS[granularity]
    end = align_down(now_ts, interval) - BACKFILL_DELAY_MARGIN_SECONDS
    start = align_down(end - RETENTION_SECONDS[granularity], interval)
    return list(range(start, end + 1, interval))


def backfill_granularity(
    client: PriceFeedClient,
    granularity: str,
    *,
    lock_manager: JobLockManager,
    session_factory=session_scope,
    delay_ms: int = 250,
    now_ts: int | None = None,
    sleep=time.sleep,
) -> dict:
    """Fetch every window missing from the retention range.

    Holds the backfill lock for the granularity so pollers stay out of the
    table. Re-inserting an existing window is harmless.
    """
    interval = GRANULARITY_SECONDS[granularity]
    model = CANDLE_TABLES[granularity]
    now_ts = int(now_ts if now_ts is not None else time.time())

    with lock_manager.hold(backfill_lock_name(granularity), owner="backfill"):
        with session_factory() as session:
            catalog_ids = get_catalog_ids(session)
            existing = {
                int(ts)
                for ts in session.execute(
                    select(model.timestamp)
                    .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
                    .distinct()
                ).scalars()
            }

        missing = [ts for ts in expected_api_timestamps(granularity, now_ts=now_ts) if ts + interval not in existing]
        logger.info("[%s] backfill: %s missing windows for %s items", granularity, len(missing), len(catalog_ids))

        inserted = 0
        failed = 0
        for index, api_ts in enumerate(missing, start=1):
            try:
                _, payload = client.fetch_timeseries(granularity, timestamp=api_ts)
            except FeedError as exc:
                failed += 1
                logger.warning("[%s] backfill fetch failed for %s: %s", granularity, api_ts, exc)
                continue

            rows, with_data = _candle_rows(catalog_ids, payload, stored_ts=api_ts + interval)
            with session_factory() as session:
                inserted += upsert_candles(session, granularity, rows)
                mark_items_dirty(session, with_data, touched_at=int(time.time()))

            if index % 25 == 0:
                logger.info("[%s] backfill progress %s/%s", granularity, index, len(missing))
            if delay_ms:
                sleep(delay_ms / 1000.0)

    logger.info("[%s] backfill done: inserted=%s failed=%s", granularity, inserted, failed)
    return {"granularity": granularity, "missing": len(missing), "inserted": inserted, "failed": failed}
