from __future__ import annotations

import logging
import time

from sqlalchemy import delete, func, select

from .db import CANDLE_TABLES, PriceInstantLog, session_scope
from .horizons import GRANULARITY_SECONDS, RETENTION_SECONDS, align_down

logger = logging.getLogger(__name__)

INSTANT_LOG_MAX_AGE_SECONDS = 4 * 3600 + 60
INSTANT_LOG_KEEP_PER_SIDE = 20


def retention_cutoff(granularity: str, newest_ts: int) -> int:
    interval = GRANULARITY_SECONDS[granularity]
    return align_down(int(newest_ts) - RETENTION_SECONDS[granularity], interval) - interval


def cleanup_granularity(session, granularity: str) -> int:
    """Drop candles that fell out of retention.

    The cutoff follows the newest stored candle, so a stalled feed does not
    eat into the history the trend windows need.
    """
    model = CANDLE_TABLES[granularity]
    newest_ts = session.execute(select(func.max(model.timestamp))).scalar_one_or_none()
    if newest_ts is None:
        return 0

    cutoff = retention_cutoff(granularity, int(newest_ts))
    result = session.execute(delete(model).where(model.timestamp < cutoff))
    deleted = int(result.rowcount or 0)
    logger.info("[cleanup] %s deleted=%s cutoff=%s", model.__tablename__, deleted, cutoff)
    return deleted


def cleanup_instant_log(session, *, now_ts: int | None = None) -> int:
    now_ts = int(now_ts if now_ts is not None else time.time())
    cutoff = now_ts - INSTANT_LOG_MAX_AGE_SECONDS

    ranked = (
        select(
            PriceInstantLog.id.label("id"),
            PriceInstantLog.seen_at.label("seen_at"),
            func.row_number()
            .over(
                partition_by=[PriceInstantLog.item_id, PriceInstantLog.type],
                order_by=[PriceInstantLog.seen_at.desc(), PriceInstantLog.id.desc()],
            )
            .label("rn"),
        )
        .subquery()
    )
    doomed = select(ranked.c.id).where(ranked.c.rn > INSTANT_LOG_KEEP_PER_SIDE).where(ranked.c.seen_at < cutoff)
    result = session.execute(
        delete(PriceInstantLog).where(PriceInstantLog.id.in_(doomed)),
        execution_options={"synchronize_session": False},
    )
    deleted = int(result.rowcount or 0)
    logger.info("[cleanup] price_instant_log deleted=%s cutoff=%s", deleted, cutoff)
    return deleted


def run_cleanup(*, session_factory=session_scope, now_ts: int | None = None) -> dict:
    out = {}
    for granularity in CANDLE_TABLES:
        with session_factory() as session:
            out[granularity] = cleanup_granularity(session, granularity)
    with session_factory() as session:
        out["instant_log"] = cleanup_instant_log(session, now_ts=now_ts)
    return out
