"""Tests for retention cleanup."""
from sqlalchemy import select

from flipper.cleanup import cleanup_granularity, cleanup_instant_log, retention_cutoff, run_cleanup
from flipper.db import Price5m, Price24h, PriceInstantLog, insert_price_instant_log

NOW = 1_699_920_000
DAY = 86400


def test_retention_cutoff_follows_newest_candle():
    assert retention_cutoff("5m", NOW) == NOW - (DAY + 300) - 300
    assert retention_cutoff("1h", NOW) == NOW - 169 * 3600 - 3600


def test_cleanup_granularity_keeps_retention_window(seed, session_factory):
    seed.items({"id": 1, "name": "Coal"})
    seed.candles(
        "5m",
        [
            {"item_id": 1, "timestamp": NOW, "avg_high": 150},
            {"item_id": 1, "timestamp": NOW - DAY, "avg_high": 140},
            {"item_id": 1, "timestamp": NOW - 2 * DAY, "avg_high": 130},
        ],
    )
    with session_factory() as session:
        assert cleanup_granularity(session, "5m") == 1
    with session_factory() as session:
        remaining = session.execute(select(Price5m.timestamp).order_by(Price5m.timestamp)).scalars().all()
    assert remaining == [NOW - DAY, NOW]


def test_cleanup_granularity_empty_table(session_factory):
    with session_factory() as session:
        assert cleanup_granularity(session, "24h") == 0


def test_instant_log_keeps_newest_rows_per_side(session_factory):
    old = NOW - 20_000
    rows = [
        {"item_id": 1, "type": "high", "price": 100 + i, "timestamp": old + i, "seen_at": old + i}
        for i in range(25)
    ]
    rows += [{"item_id": 2, "type": "low", "price": 50, "timestamp": old + i, "seen_at": old + i} for i in range(3)]
    rows += [{"item_id": 1, "type": "low", "price": 90, "timestamp": NOW - 10, "seen_at": NOW - 10}]
    with session_factory() as session:
        insert_price_instant_log(session, rows)

    with session_factory() as session:
        assert cleanup_instant_log(session, now_ts=NOW) == 5

    with session_factory() as session:
        kept_high = session.execute(
            select(PriceInstantLog.price)
            .where(PriceInstantLog.item_id == 1, PriceInstantLog.type == "high")
            .order_by(PriceInstantLog.price)
        ).scalars().all()
        total = len(session.execute(select(PriceInstantLog.id)).all())
    assert kept_high == list(range(105, 125))
    assert total == 20 + 3 + 1


def test_run_cleanup_covers_every_table(seed, session_factory):
    seed.items({"id": 1, "name": "Coal"})
    seed.candles(
        "24h",
        [
            {"item_id": 1, "timestamp": NOW, "avg_low": 150},
            {"item_id": 1, "timestamp": NOW - 400 * DAY, "avg_low": 120},
        ],
    )
    out = run_cleanup(session_factory=session_factory, now_ts=NOW)

    assert set(out) == {"5m", "1h", "6h", "24h", "instant_log"}
    assert out["24h"] == 1
    with session_factory() as session:
        assert session.execute(select(Price24h.timestamp)).scalars().all() == [NOW]
