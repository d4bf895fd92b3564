from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field

from sqlalchemy import and_, case, func, or_, select

from .db import CANDLE_TABLES, Item, PriceInstant, upsert_canonical_items
from .horizons import HORIZONS, SHORT_HORIZONS, WINDOW_HORIZONS
from .trends import STATUS_UNAVAILABLE, Candle, TrendResult, calculate_trend_from_candles
from .windows import resolve_window_trends

logger = logging.getLogger(__name__)

GE_TAX_RATE = 0.02
SHORT_LOOKBACK_SECONDS = 86400 + 7200
FALLBACK_LOOKBACK_SECONDS = 86400 + 3 * 3600

TAX_EXEMPT_ITEMS = frozenset(
    {
        "Ardougne teleport (tablet)",
        "Camelot teleport (tablet)",
        "Civitas illa fortis teleport (tablet)",
        "Falador teleport (tablet)",
        "Games necklace (8)",
        "Kourend castle teleport (tablet)",
        "Lumbridge teleport (tablet)",
        "Ring of dueling (8)",
        "Teleport to house (tablet)",
        "Varrock teleport (tablet)",
        "Energy potion(1)",
        "Energy potion(2)",
        "Energy potion(3)",
        "Energy potion(4)",
    }
)


@dataclass
class BatchStats:
    items: int = 0
    rows_written: int = 0
    stale_24h: int = 0
    timings_ms: dict[str, int] = field(default_factory=dict)


def _mid_expr(model):
    return case(
        (and_(model.avg_high.is_not(None), model.avg_low.is_not(None)), (model.avg_high + model.avg_low) / 2.0),
        (model.avg_high.is_not(None), model.avg_high * 1.0),
        else_=model.avg_low * 1.0,
    )


def load_candles(session, granularity: str, item_ids: list[int], *, since_ts: int) -> dict[int, list[Candle]]:
    model = CANDLE_TABLES[granularity]
    rows = session.execute(
        select(model.item_id, model.timestamp, model.avg_high, model.avg_low)
        .where(model.item_id.in_(item_ids))
        .where(model.timestamp >= int(since_ts))
        .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
        .order_by(model.item_id, model.timestamp.desc())
    ).all()

    out: dict[int, list[Candle]] = {}
    for item_id, ts, avg_high, avg_low in rows:
        out.setdefault(int(item_id), []).append(Candle(timestamp=int(ts), avg_high=avg_high, avg_low=avg_low))
    return out


def compute_short_trends(session, item_ids: list[int], *, now_ts: int) -> dict[int, dict[str, TrendResult]]:
    """5m/1h/6h/24h trends anchored at each item's latest 5-minute candle.

    A missing 24h trend is retried against the 1-hour table and, when found
    there, tagged stale.
    """
    candles_5m = load_candles(session, "5m", item_ids, since_ts=int(now_ts) - SHORT_LOOKBACK_SECONDS)

    results: dict[int, dict[str, TrendResult]] = {}
    for item_id in item_ids:
        candles = candles_5m.get(item_id, [])
        per_item: dict[str, TrendResult] = {}
        for horizon in SHORT_HORIZONS:
            per_item[horizon.name] = calculate_trend_from_candles(
                candles,
                horizon.seconds,
                horizon.tolerance_seconds,
                context={"item_id": item_id, "horizon": horizon.name},
                now_ts=now_ts,
            )
        results[item_id] = per_item

    for horizon in SHORT_HORIZONS:
        if not horizon.fallback:
            continue
        missing = [item_id for item_id in item_ids if results[item_id][horizon.name].status == STATUS_UNAVAILABLE]
        if not missing:
            continue
        fallback_candles = load_candles(
            session,
            horizon.fallback,
            missing,
            since_ts=int(now_ts) - FALLBACK_LOOKBACK_SECONDS,
        )
        for item_id in missing:
            candles = fallback_candles.get(item_id)
            if not candles:
                continue
            result = calculate_trend_from_candles(
                candles,
                horizon.seconds,
                horizon.fallback_tolerance_seconds,
                context={"item_id": item_id, "horizon": f"{horizon.name}-fallback"},
                now_ts=now_ts,
            )
            if result.is_valid:
                results[item_id][horizon.name] = result.as_stale()

    return results


def compute_window_trends(session, item_ids: list[int], *, now_ts: int) -> dict[int, dict[str, TrendResult]]:
    results: dict[int, dict[str, TrendResult]] = {item_id: {} for item_id in item_ids}
    for horizon in WINDOW_HORIZONS:
        resolved = resolve_window_trends(session, horizon, item_ids, now_ts=now_ts)
        for item_id in item_ids:
            resolution = resolved.get(item_id)
            if resolution is None:
                results[item_id][horizon.name] = TrendResult(value=None, status=STATUS_UNAVAILABLE, reason="unresolved")
            else:
                results[item_id][horizon.name] = resolution.trend
    return results


def load_horizon_aggregates(session, horizon_name: str, item_ids: list[int], *, now_ts: int) -> dict[int, dict]:
    """Volume, turnover, buy/sell rate and latest high/low over the trailing window."""
    horizon = HORIZONS[horizon_name]
    model = CANDLE_TABLES[horizon.source]
    window_start = int(now_ts) - horizon.seconds
    in_window = and_(
        model.item_id.in_(item_ids),
        model.timestamp > window_start,
        model.timestamp <= int(now_ts),
    )

    volume = func.coalesce(model.high_volume, 0) + func.coalesce(model.low_volume, 0)
    sums = session.execute(
        select(
            model.item_id,
            func.sum(volume),
            func.sum(_mid_expr(model) * volume),
            func.sum(func.coalesce(model.high_volume, 0)),
            func.sum(func.coalesce(model.low_volume, 0)),
        )
        .where(in_window)
        .group_by(model.item_id)
    ).all()

    out: dict[int, dict] = {}
    for item_id, total_volume, turnover, high_volume, low_volume in sums:
        low_volume = int(low_volume or 0)
        out[int(item_id)] = {
            "volume": int(total_volume or 0),
            "turnover": (float(turnover) if turnover is not None else None),
            "buy_sell_rate": (round(float(high_volume or 0) / low_volume, 4) if low_volume else None),
            "price_high": None,
            "price_low": None,
        }

    for side, column in (("price_high", model.avg_high), ("price_low", model.avg_low)):
        ranked = (
            select(
                model.item_id.label("item_id"),
                column.label("price"),
                func.row_number()
                .over(partition_by=model.item_id, order_by=model.timestamp.desc())
                .label("rn"),
            )
            .where(in_window)
            .where(column.is_not(None))
            .subquery()
        )
        for item_id, price in session.execute(select(ranked.c.item_id, ranked.c.price).where(ranked.c.rn == 1)).all():
            row = out.setdefault(
                int(item_id),
                {"volume": 0, "turnover": None, "buy_sell_rate": None, "price_high": None, "price_low": None},
            )
            row[side] = int(price)

    return out


def compute_financials(*, name: str, high: int | None, low: int | None, limit: int | None) -> dict:
    out = {
        "margin": None,
        "roi_percent": None,
        "spread_percent": None,
        "max_profit": None,
        "max_investment": None,
    }
    if high is None or low is None:
        return out

    high = int(high)
    low = int(low)
    if name in TAX_EXEMPT_ITEMS:
        margin = high - low
    else:
        margin = math.floor(high * (1 - GE_TAX_RATE)) - low
    buy_limit = int(limit or 0)

    out["margin"] = margin
    out["roi_percent"] = round(margin * 100.0 / low, 2) if low > 0 else None
    out["spread_percent"] = round((high - low) * 100.0 / high, 2) if high > 0 else None
    out["max_profit"] = margin * buy_limit
    out["max_investment"] = low * buy_limit
    return out


def _round_trend(result: TrendResult | None) -> float | None:
    if result is None or result.value is None:
        return None
    return round(float(result.value), 2)


def build_canonical_row(
    item: Item,
    *,
    instants: dict[str, PriceInstant],
    trends: dict[str, TrendResult],
    aggregates: dict[str, dict],
    now_ts: int,
) -> dict:
    high_instant = instants.get("high")
    low_instant = instants.get("low")
    high = int(high_instant.price) if high_instant is not None else None
    low = int(low_instant.price) if low_instant is not None else None

    row = {
        "item_id": int(item.id),
        "name": item.name,
        "icon": item.icon,
        "members": int(item.members or 0),
        "limit": item.limit,
        "high": high,
        "low": low,
        "high_timestamp": (int(high_instant.timestamp) if high_instant is not None else None),
        "low_timestamp": (int(low_instant.timestamp) if low_instant is not None else None),
        "timestamp_updated": int(now_ts),
    }
    row.update(compute_financials(name=item.name, high=high, low=low, limit=item.limit))

    for name in HORIZONS:
        agg = aggregates.get(name) or {}
        row[f"volume_{name}"] = agg.get("volume")
        row[f"turnover_{name}"] = agg.get("turnover")
        row[f"buy_sell_rate_{name}"] = agg.get("buy_sell_rate")
        row[f"price_{name}_high"] = agg.get("price_high")
        row[f"price_{name}_low"] = agg.get("price_low")

        result = trends.get(name)
        row[f"trend_{name}"] = _round_trend(result)
        row[f"trend_{name}_status"] = result.status if result is not None else STATUS_UNAVAILABLE
    return row


def process_batch(session, item_ids, *, now_ts: int | None = None) -> BatchStats:
    """Recompute and upsert canonical rows for one batch of items.

    Runs on the caller's session; committing is the caller's job.
    """
    now_ts = int(now_ts if now_ts is not None else time.time())
    stats = BatchStats()
    started = time.perf_counter()

    def _mark(phase: str, since: float) -> float:
        now = time.perf_counter()
        stats.timings_ms[phase] = int((now - since) * 1000)
        return now

    requested = sorted({int(item_id) for item_id in item_ids})
    items = session.execute(select(Item).where(Item.id.in_(requested)).order_by(Item.id)).scalars().all()
    ids = [int(item.id) for item in items]
    stats.items = len(ids)
    if len(ids) < len(requested):
        logger.debug("Skipping %s ids missing from the item catalog", len(requested) - len(ids))
    if not ids:
        return stats
    t = _mark("items", started)

    short_trends = compute_short_trends(session, ids, now_ts=now_ts)
    stats.stale_24h = sum(1 for per_item in short_trends.values() if per_item["24h"].status == "stale")
    t = _mark("short_trends", t)

    window_trends = compute_window_trends(session, ids, now_ts=now_ts)
    t = _mark("window_trends", t)

    instants: dict[int, dict[str, PriceInstant]] = {}
    for row in session.execute(select(PriceInstant).where(PriceInstant.item_id.in_(ids))).scalars().all():
        instants.setdefault(int(row.item_id), {})[row.type] = row

    aggregates: dict[str, dict[int, dict]] = {}
    for name in HORIZONS:
        aggregates[name] = load_horizon_aggregates(session, name, ids, now_ts=now_ts)
    t = _mark("aggregates", t)

    rows = []
    for item in items:
        item_id = int(item.id)
        trends = dict(short_trends.get(item_id, {}))
        trends.update(window_trends.get(item_id, {}))
        rows.append(
            build_canonical_row(
                item,
                instants=instants.get(item_id, {}),
                trends=trends,
                aggregates={name: aggregates[name].get(item_id, {}) for name in HORIZONS},
                now_ts=now_ts,
            )
        )

    stats.rows_written = upsert_canonical_items(session, rows)
    _mark("upsert", t)
    stats.timings_ms["total"] = int((time.perf_counter() - started) * 1000)

    logger.info(
        "[PERF] batch items=%s rows=%s stale_24h=%s total_ms=%s short_ms=%s window_ms=%s agg_ms=%s upsert_ms=%s",
        stats.items,
        stats.rows_written,
        stats.stale_24h,
        stats.timings_ms.get("total"),
        stats.timings_ms.get("short_trends"),
        stats.timings_ms.get("window_trends"),
        stats.timings_ms.get("aggregates"),
        stats.timings_ms.get("upsert"),
    )
    return stats
