"""Tests for the candle trend evaluator."""
import logging
import random

import pytest

from flipper import trends
from flipper.trends import Candle, calculate_trend_from_candles, mid_price


def test_mid_price_sides():
    assert mid_price(110, 90) == 100.0
    assert mid_price(110, None) == 110.0
    assert mid_price(None, 90) == 90.0
    assert mid_price(None, None) is None


def test_empty_candles_unavailable():
    result = calculate_trend_from_candles([], 300, 120)
    assert result.status == "unavailable"
    assert result.value is None
    assert result.now_ts is None and result.target_ts is None and result.matched_ts is None


def test_basic_trend_between_two_candles():
    """Latest candle against the one exactly one period earlier."""
    candles = [
        Candle(timestamp=1000, avg_high=110, avg_low=90),
        Candle(timestamp=700, avg_high=100, avg_low=80),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)

    assert result.status == "valid"
    assert result.value == pytest.approx(11.11, abs=0.01)
    assert result.now_ts == 1000
    assert result.target_ts == 700
    assert result.matched_ts == 700


def test_input_order_does_not_matter():
    candles = [
        Candle(timestamp=700, avg_high=100, avg_low=80),
        Candle(timestamp=1000, avg_high=110, avg_low=90),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.now_ts == 1000
    assert result.value == pytest.approx(100 / 90 * 100 - 100)


def test_low_base_price_is_unavailable():
    candles = [
        Candle(timestamp=1000, avg_high=110, avg_low=90),
        Candle(timestamp=700, avg_high=6, avg_low=4),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.status == "unavailable"
    assert result.reason == "price-too-low"
    assert result.value is None


def test_low_base_ignores_now_price():
    for now_price in (1, 50, 10_000_000):
        candles = [
            Candle(timestamp=1000, avg_high=now_price, avg_low=now_price),
            Candle(timestamp=700, avg_high=9, avg_low=None),
        ]
        assert calculate_trend_from_candles(candles, 300, 120).reason == "price-too-low"


def test_huge_gain_is_capped():
    candles = [
        Candle(timestamp=1000, avg_high=1_000_000, avg_low=1_000_000),
        Candle(timestamp=700, avg_high=10, avg_low=10),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.status == "valid"
    assert result.value == 100000


def test_cap_emits_audit_note_when_enabled(caplog):
    trends.set_audit_enabled(True)
    candles = [
        Candle(timestamp=1000, avg_high=1_000_000, avg_low=None),
        Candle(timestamp=700, avg_high=None, avg_low=10),
    ]
    with caplog.at_level(logging.INFO, logger="flipper.trends"):
        calculate_trend_from_candles(candles, 300, 120, context={"item_id": 4151, "horizon": "5m"})
    assert any("[TREND-CAP]" in rec.getMessage() and "item=4151" in rec.getMessage() for rec in caplog.records)


def test_audit_silent_when_disabled(caplog):
    with caplog.at_level(logging.INFO, logger="flipper.trends"):
        calculate_trend_from_candles([Candle(timestamp=1000, avg_high=5, avg_low=5)], 300, 120)
    assert not caplog.records


def test_no_candle_in_tolerance():
    candles = [
        Candle(timestamp=1000, avg_high=110, avg_low=90),
        Candle(timestamp=500, avg_high=100, avg_low=80),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.status == "unavailable"
    assert result.reason == "no-candle-in-tolerance"
    assert result.target_ts == 700


def test_tie_prefers_later_candle():
    candles = [
        Candle(timestamp=1000, avg_high=200, avg_low=200),
        Candle(timestamp=760, avg_high=100, avg_low=100),
        Candle(timestamp=640, avg_high=50, avg_low=50),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.matched_ts == 760
    assert result.value == pytest.approx(100.0)


def test_target_in_future_is_unavailable():
    candles = [
        Candle(timestamp=10_000, avg_high=110, avg_low=90),
        Candle(timestamp=9_700, avg_high=100, avg_low=80),
    ]
    result = calculate_trend_from_candles(candles, 300, 120, now_ts=5_000)
    assert result.status == "unavailable"
    assert result.reason == "target-in-future"


def test_missing_now_price():
    candles = [
        Candle(timestamp=1000, avg_high=None, avg_low=None),
        Candle(timestamp=700, avg_high=100, avg_low=80),
    ]
    result = calculate_trend_from_candles(candles, 300, 120)
    assert result.status == "unavailable"
    assert result.reason == "missing-price"


def test_zero_base():
    candles = [
        Candle(timestamp=1000, avg_high=110, avg_low=90),
        Candle(timestamp=700, avg_high=0, avg_low=0),
    ]
    assert calculate_trend_from_candles(candles, 300, 120).reason == "zero-base"


def test_valid_results_respect_tolerance_and_order():
    """Every valid result matched a point no later than now and within tolerance."""
    rng = random.Random(1234)
    for _ in range(300):
        count = rng.randint(1, 12)
        candles = [
            Candle(
                timestamp=rng.randint(0, 4000),
                avg_high=rng.choice([None, rng.randint(0, 5000)]),
                avg_low=rng.choice([None, rng.randint(0, 5000)]),
            )
            for _ in range(count)
        ]
        period = rng.choice([300, 900, 1800])
        tolerance = rng.choice([60, 120, 300])
        result = calculate_trend_from_candles(candles, period, tolerance, now_ts=10_000)
        if result.status != "valid":
            continue
        assert result.matched_ts <= result.now_ts
        assert abs(result.matched_ts - result.target_ts) <= tolerance
        assert -100000 <= result.value <= 100000
