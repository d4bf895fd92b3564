from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TREND_CAP = 100000.0
MIN_BASE_PRICE = 10

STATUS_VALID = "valid"
STATUS_STALE = "stale"
STATUS_UNAVAILABLE = "unavailable"

AUDIT_ENABLED = os.getenv("TREND_AUDIT", "").strip().lower() in {"1", "true", "yes", "on"}


def set_audit_enabled(enabled: bool) -> None:
    global AUDIT_ENABLED
    AUDIT_ENABLED = bool(enabled)


@dataclass(frozen=True)
class Candle:
    timestamp: int
    avg_high: float | None = None
    avg_low: float | None = None

    @property
    def mid(self) -> float | None:
        return mid_price(self.avg_high, self.avg_low)


@dataclass(frozen=True)
class TrendResult:
    value: float | None
    status: str
    now_ts: int | None = None
    target_ts: int | None = None
    matched_ts: int | None = None
    reason: str | None = None

    @property
    def is_valid(self) -> bool:
        return self.status == STATUS_VALID

    def as_stale(self) -> "TrendResult":
        return TrendResult(
            value=self.value,
            status=STATUS_STALE,
            now_ts=self.now_ts,
            target_ts=self.target_ts,
            matched_ts=self.matched_ts,
            reason=self.reason,
        )


def mid_price(avg_high: float | None, avg_low: float | None) -> float | None:
    if avg_high is not None and avg_low is not None:
        return (float(avg_high) + float(avg_low)) / 2.0
    if avg_high is not None:
        return float(avg_high)
    if avg_low is not None:
        return float(avg_low)
    return None


def _audit(reason: str, context: dict | None, **fields) -> None:
    if not AUDIT_ENABLED:
        return
    ctx = context or {}
    logger.info(
        "[TREND-AUDIT] item=%s horizon=%s reason=%s %s",
        ctx.get("item_id"),
        ctx.get("horizon"),
        reason,
        " ".join(f"{key}={value}" for key, value in fields.items()),
    )


def _unavailable(reason: str, *, now_ts=None, target_ts=None, matched_ts=None) -> TrendResult:
    return TrendResult(
        value=None,
        status=STATUS_UNAVAILABLE,
        now_ts=now_ts,
        target_ts=target_ts,
        matched_ts=matched_ts,
        reason=reason,
    )


def calculate_trend_from_candles(
    candles: list[Candle],
    period_seconds: int,
    tolerance_seconds: int,
    *,
    context: dict | None = None,
    now_ts: int | None = None,
) -> TrendResult:
    """Percentage change between the latest candle and the candle one period earlier.

    The now-point is the latest candle, never the clock. The clock is only
    consulted to reject a target point that lies in the future.
    """
    if not candles:
        return _unavailable("no-candles")

    ordered = sorted(candles, key=lambda c: int(c.timestamp), reverse=True)
    latest = ordered[0]
    anchor_ts = int(latest.timestamp)
    now_price = latest.mid

    target_ts = anchor_ts - int(period_seconds)
    wall_ts = int(now_ts if now_ts is not None else time.time())
    if target_ts > wall_ts:
        _audit("target-in-future", context, now_ts=anchor_ts, target_ts=target_ts, wall_ts=wall_ts)
        return _unavailable("target-in-future", now_ts=anchor_ts, target_ts=target_ts)

    tolerance = int(tolerance_seconds)
    matched: Candle | None = None
    best_distance: int | None = None
    for candle in ordered:
        ts = int(candle.timestamp)
        distance = abs(ts - target_ts)
        if distance > tolerance:
            continue
        # Descending scan: on equal distance the earlier hit is the later timestamp.
        if best_distance is None or distance < best_distance:
            matched = candle
            best_distance = distance

    if matched is None:
        _audit("no-candle-in-tolerance", context, now_ts=anchor_ts, target_ts=target_ts, tolerance=tolerance)
        return _unavailable("no-candle-in-tolerance", now_ts=anchor_ts, target_ts=target_ts)

    matched_ts = int(matched.timestamp)
    if matched_ts > anchor_ts or abs(matched_ts - target_ts) > tolerance:
        _audit("guard-violation", context, now_ts=anchor_ts, target_ts=target_ts, matched_ts=matched_ts)
        return _unavailable("guard-violation", now_ts=anchor_ts, target_ts=target_ts, matched_ts=matched_ts)

    matched_price = matched.mid
    if now_price is None or matched_price is None:
        _audit("missing-price", context, now_price=now_price, matched_price=matched_price)
        return _unavailable("missing-price", now_ts=anchor_ts, target_ts=target_ts, matched_ts=matched_ts)
    if matched_price == 0:
        _audit("zero-base", context, matched_ts=matched_ts)
        return _unavailable("zero-base", now_ts=anchor_ts, target_ts=target_ts, matched_ts=matched_ts)

    if matched_price < MIN_BASE_PRICE:
        _audit("price-too-low", context, now_price=now_price, matched_price=matched_price)
        return _unavailable("price-too-low", now_ts=anchor_ts, target_ts=target_ts, matched_ts=matched_ts)

    raw = (now_price - matched_price) / matched_price * 100.0
    value = max(-TREND_CAP, min(TREND_CAP, raw))
    if value != raw and AUDIT_ENABLED:
        ctx = context or {}
        logger.info(
            "[TREND-CAP] item=%s horizon=%s raw=%.2f capped=%.0f now_price=%s matched_price=%s",
            ctx.get("item_id"),
            ctx.get("horizon"),
            raw,
            value,
            now_price,
            matched_price,
        )

    return TrendResult(
        value=value,
        status=STATUS_VALID,
        now_ts=anchor_ts,
        target_ts=target_ts,
        matched_ts=matched_ts,
    )
