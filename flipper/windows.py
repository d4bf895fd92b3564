from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import and_, case, func, or_, select

from .db import BATCH_SIZE, CANDLE_TABLES
from .horizons import GRANULARITY_SECONDS, Horizon
from .trends import STATUS_UNAVAILABLE, STATUS_VALID, TrendResult, mid_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowPrice:
    item_id: int
    timestamp: int
    price: float
    granularity: str
    extended: bool = False


@dataclass(frozen=True)
class WindowResolution:
    item_id: int
    horizon: str
    start: WindowPrice | None
    end: WindowPrice | None
    trend: TrendResult


def _nearest_price_query(model, item_ids: list[int], *, boundary_ts: int, lower_ts: int, upper_ts: int):
    side_priority = case(
        (and_(model.avg_high.is_not(None), model.avg_low.is_not(None)), 0),
        (model.avg_high.is_not(None), 1),
        else_=2,
    )
    ranked = (
        select(
            model.item_id.label("item_id"),
            model.timestamp.label("timestamp"),
            model.avg_high.label("avg_high"),
            model.avg_low.label("avg_low"),
            func.row_number()
            .over(
                partition_by=model.item_id,
                order_by=[
                    side_priority,
                    func.abs(model.timestamp - boundary_ts),
                    model.timestamp.desc(),
                ],
            )
            .label("rn"),
        )
        .where(model.item_id.in_(item_ids))
        .where(model.timestamp >= lower_ts)
        .where(model.timestamp <= upper_ts)
        .where(or_(model.avg_high.is_not(None), model.avg_low.is_not(None)))
        .subquery()
    )
    return select(ranked.c.item_id, ranked.c.timestamp, ranked.c.avg_high, ranked.c.avg_low).where(ranked.c.rn == 1)


def find_nearest_prices(
    session,
    granularity: str,
    item_ids,
    *,
    boundary_ts: int,
    tolerance_seconds: int,
    window_start: int | None = None,
    window_end: int | None = None,
    extended: bool = False,
) -> dict[int, WindowPrice]:
    """One bulk lookup of the best candle near ``boundary_ts`` for every item.

    Rows with both sides beat high-only, which beats low-only; then the
    nearest timestamp wins, then the most recent.
    """
    ids = sorted({int(item_id) for item_id in item_ids})
    if not ids:
        return {}

    lower_ts = int(boundary_ts) - int(tolerance_seconds)
    upper_ts = int(boundary_ts) + int(tolerance_seconds)
    if window_start is not None:
        lower_ts = max(lower_ts, int(window_start))
    if window_end is not None:
        upper_ts = min(upper_ts, int(window_end))
    if lower_ts > upper_ts:
        return {}

    model = CANDLE_TABLES[granularity]
    found: dict[int, WindowPrice] = {}
    for i in range(0, len(ids), BATCH_SIZE):
        chunk = ids[i:i + BATCH_SIZE]
        stmt = _nearest_price_query(model, chunk, boundary_ts=int(boundary_ts), lower_ts=lower_ts, upper_ts=upper_ts)
        for item_id, ts, avg_high, avg_low in session.execute(stmt).all():
            price = mid_price(avg_high, avg_low)
            if price is None:
                continue
            found[int(item_id)] = WindowPrice(
                item_id=int(item_id),
                timestamp=int(ts),
                price=float(price),
                granularity=granularity,
                extended=extended,
            )
    return found


def _resolve_boundary(session, horizon: Horizon, item_ids: set[int], *, boundary_ts: int, now_ts: int) -> dict[int, WindowPrice]:
    window_start = int(now_ts) - horizon.seconds
    window_end = int(now_ts)
    resolved: dict[int, WindowPrice] = {}

    pending = set(item_ids)
    for granularity in horizon.resolve_chain:
        if not pending:
            break
        hits = find_nearest_prices(
            session,
            granularity,
            pending,
            boundary_ts=boundary_ts,
            tolerance_seconds=GRANULARITY_SECONDS[granularity],
            window_start=(window_start if horizon.strict else None),
            window_end=(window_end if horizon.strict else None),
        )
        resolved.update(hits)
        pending -= set(hits)

    for granularity in horizon.resolve_chain:
        if not pending:
            break
        hits = find_nearest_prices(
            session,
            granularity,
            pending,
            boundary_ts=boundary_ts,
            tolerance_seconds=horizon.eis_tolerance_seconds,
            window_start=window_start,
            window_end=window_end,
            extended=True,
        )
        resolved.update(hits)
        pending -= set(hits)

    return resolved


def window_trend(start: WindowPrice | None, end: WindowPrice | None, *, now_ts: int, horizon: Horizon) -> TrendResult:
    target_ts = int(now_ts) - horizon.seconds
    if start is None or end is None:
        return TrendResult(value=None, status=STATUS_UNAVAILABLE, now_ts=int(now_ts), target_ts=target_ts, reason="unresolved")
    if start.timestamp >= end.timestamp:
        return TrendResult(
            value=None,
            status=STATUS_UNAVAILABLE,
            now_ts=end.timestamp,
            target_ts=target_ts,
            matched_ts=start.timestamp,
            reason="same-point",
        )
    if start.price == 0:
        return TrendResult(
            value=None,
            status=STATUS_UNAVAILABLE,
            now_ts=end.timestamp,
            target_ts=target_ts,
            matched_ts=start.timestamp,
            reason="zero-base",
        )
    value = (end.price - start.price) / start.price * 100.0
    return TrendResult(
        value=value,
        status=STATUS_VALID,
        now_ts=end.timestamp,
        target_ts=target_ts,
        matched_ts=start.timestamp,
    )


def resolve_window_trends(session, horizon: Horizon, item_ids, *, now_ts: int) -> dict[int, WindowResolution]:
    ids = {int(item_id) for item_id in item_ids}
    if not ids:
        return {}

    starts = _resolve_boundary(session, horizon, ids, boundary_ts=int(now_ts) - horizon.seconds, now_ts=now_ts)
    ends = _resolve_boundary(session, horizon, ids, boundary_ts=int(now_ts), now_ts=now_ts)

    out: dict[int, WindowResolution] = {}
    for item_id in sorted(ids):
        start = starts.get(item_id)
        end = ends.get(item_id)
        out[item_id] = WindowResolution(
            item_id=item_id,
            horizon=horizon.name,
            start=start,
            end=end,
            trend=window_trend(start, end, now_ts=now_ts, horizon=horizon),
        )

    logger.debug(
        "Window %s resolved: items=%s starts=%s ends=%s",
        horizon.name,
        len(ids),
        len(starts),
        len(ends),
    )
    return out
