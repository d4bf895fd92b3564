from __future__ import annotations

import logging
import os
from contextlib import contextmanager

from sqlalchemy import (
    BigInteger,
    Float,
    Index,
    Integer,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, scoped_session, sessionmaker

from .config import ConfigError

BATCH_SIZE = 200
GRANULARITIES = ("5m", "1h", "6h", "24h")
HORIZON_NAMES = ("5m", "1h", "6h", "24h", "1w", "1m", "3m", "1y")

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Item(Base):
    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    members: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    limit: Mapped[int | None] = mapped_column(Integer, nullable=True)


class CandleMixin:
    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timestamp: Mapped[int] = mapped_column(Integer, primary_key=True)
    avg_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    avg_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    high_volume: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    low_volume: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class Price5m(CandleMixin, Base):
    __tablename__ = "price_5m"
    __table_args__ = (Index("idx_price_5m_ts", "timestamp"),)


class Price1h(CandleMixin, Base):
    __tablename__ = "price_1h"
    __table_args__ = (Index("idx_price_1h_ts", "timestamp"),)


class Price6h(CandleMixin, Base):
    __tablename__ = "price_6h"
    __table_args__ = (Index("idx_price_6h_ts", "timestamp"),)


class Price24h(CandleMixin, Base):
    __tablename__ = "price_24h"
    __table_args__ = (Index("idx_price_24h_ts", "timestamp"),)


CANDLE_TABLES = {
    "5m": Price5m,
    "1h": Price1h,
    "6h": Price6h,
    "24h": Price24h,
}


class PriceInstant(Base):
    __tablename__ = "price_instants"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[str] = mapped_column(Text, primary_key=True)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated: Mapped[int] = mapped_column(Integer, nullable=False)


class PriceInstantLog(Base):
    __tablename__ = "price_instant_log"
    __table_args__ = (Index("idx_instant_log_item_type_ts", "item_id", "type", "timestamp"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[int] = mapped_column(Integer, nullable=False)
    seen_at: Mapped[int] = mapped_column(Integer, nullable=False)


class DirtyItem(Base):
    __tablename__ = "dirty_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    touched_at: Mapped[int] = mapped_column(Integer, nullable=False, index=True)


class CanonicalItem(Base):
    __tablename__ = "canonical_items"

    item_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    icon: Mapped[str | None] = mapped_column(Text, nullable=True)
    members: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    limit: Mapped[int | None] = mapped_column(Integer, nullable=True)

    high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    high_timestamp: Mapped[int | None] = mapped_column(Integer, nullable=True)
    low_timestamp: Mapped[int | None] = mapped_column(Integer, nullable=True)

    margin: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    roi_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    spread_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_profit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_investment: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    volume_5m: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_1h: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_6h: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_24h: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_1w: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_1m: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_3m: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    volume_1y: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    turnover_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1w: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    turnover_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    buy_sell_rate_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1w: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    buy_sell_rate_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    price_5m_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_5m_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1h_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1h_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_6h_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_6h_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_24h_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_24h_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1w_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1w_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1m_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1m_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_3m_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_3m_low: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1y_high: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_1y_low: Mapped[int | None] = mapped_column(Integer, nullable=True)

    trend_5m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_6h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_24h: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1w: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_3m: Mapped[float | None] = mapped_column(Float, nullable=True)
    trend_1y: Mapped[float | None] = mapped_column(Float, nullable=True)

    trend_5m_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_1h_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_6h_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_24h_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_1w_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_1m_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_3m_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")
    trend_1y_status: Mapped[str] = mapped_column(Text, nullable=False, default="unavailable")

    timestamp_updated: Mapped[int] = mapped_column(Integer, nullable=False, index=True)


_ENGINE = None
SessionLocal = None


def get_default_db_url() -> str:
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        raise ConfigError("DATABASE_URL is missing. Set it in env or .env.")
    return url


def init_db(db_url: str | None = None) -> None:
    global _ENGINE, SessionLocal
    if _ENGINE is not None:
        return

    url = db_url or get_default_db_url()
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    _ENGINE = create_engine(url, connect_args=connect_args, future=True)
    SessionLocal = scoped_session(
        sessionmaker(bind=_ENGINE, autoflush=False, autocommit=False, expire_on_commit=False)
    )

    Base.metadata.create_all(bind=_ENGINE)
    logger.info("Database ready: %s", _ENGINE.url.render_as_string(hide_password=True))


def get_session():
    if SessionLocal is None:
        init_db()
    return SessionLocal()


@contextmanager
def session_scope():
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _upsert_rows(session, model, rows: list[dict], key_columns: list[str]) -> int:
    total = len(rows)
    if not rows:
        return 0

    insert_stmt = sqlite_insert(model)
    update_columns = {
        c.name: insert_stmt.excluded[c.name]
        for c in model.__table__.columns
        if c.name not in key_columns
    }
    upsert_stmt = insert_stmt.on_conflict_do_update(
        index_elements=[model.__table__.c[name] for name in key_columns],
        set_=update_columns,
    )
    for i in range(0, total, BATCH_SIZE):
        batch = rows[i:i + BATCH_SIZE]
        session.execute(upsert_stmt, batch)
    return total


def upsert_items(session, rows: list[dict]) -> int:
    payload = [
        {
            "id": int(row["id"]),
            "name": str(row.get("name") or f"item-{row['id']}"),
            "icon": row.get("icon"),
            "members": 1 if row.get("members") else 0,
            "limit": (int(row["limit"]) if row.get("limit") is not None else None),
        }
        for row in rows
        if row.get("id") is not None
    ]
    return _upsert_rows(session, Item, payload, ["id"])


def upsert_candles(session, granularity: str, rows: list[dict]) -> int:
    model = CANDLE_TABLES.get(granularity)
    if model is None:
        raise ValueError(f"Unknown granularity: {granularity}")
    return _upsert_rows(session, model, rows, ["item_id", "timestamp"])


def upsert_price_instants(session, rows: list[dict]) -> int:
    return _upsert_rows(session, PriceInstant, rows, ["item_id", "type"])


def insert_price_instant_log(session, rows: list[dict]) -> int:
    total = len(rows)
    if not rows:
        return 0
    for i in range(0, total, BATCH_SIZE):
        session.execute(sqlite_insert(PriceInstantLog), rows[i:i + BATCH_SIZE])
    return total


def upsert_canonical_items(session, rows: list[dict]) -> int:
    return _upsert_rows(session, CanonicalItem, rows, ["item_id"])


def mark_items_dirty(session, item_ids, *, touched_at: int) -> int:
    payload = [{"item_id": int(item_id), "touched_at": int(touched_at)} for item_id in sorted(set(item_ids))]
    return _upsert_rows(session, DirtyItem, payload, ["item_id"])


def get_dirty_snapshot(session) -> dict[int, int]:
    rows = session.execute(select(DirtyItem.item_id, DirtyItem.touched_at)).all()
    return {int(item_id): int(touched_at) for item_id, touched_at in rows}


def dequeue_dirty_items(session, snapshot: dict[int, int]) -> int:
    """Remove dirty rows whose touched_at still matches the snapshot.

    Items re-touched since the snapshot was taken stay queued.
    """
    removed = 0
    for item_id, touched_at in snapshot.items():
        result = session.execute(
            delete(DirtyItem)
            .where(DirtyItem.item_id == int(item_id))
            .where(DirtyItem.touched_at <= int(touched_at))
        )
        removed += int(result.rowcount or 0)
    return removed


def get_catalog_ids(session) -> list[int]:
    return [int(item_id) for item_id in session.execute(select(Item.id).order_by(Item.id)).scalars().all()]


def get_price_instant_map(session, item_ids=None) -> dict[tuple[int, str], PriceInstant]:
    stmt = select(PriceInstant)
    if item_ids is not None:
        stmt = stmt.where(PriceInstant.item_id.in_([int(item_id) for item_id in item_ids]))
    return {(int(row.item_id), row.type): row for row in session.execute(stmt).scalars().all()}


def get_counts(session) -> dict:
    counts = {
        "items": int(session.execute(select(func.count()).select_from(Item)).scalar_one()),
        "price_instants": int(session.execute(select(func.count()).select_from(PriceInstant)).scalar_one()),
        "price_instant_log": int(session.execute(select(func.count()).select_from(PriceInstantLog)).scalar_one()),
        "dirty_items": int(session.execute(select(func.count()).select_from(DirtyItem)).scalar_one()),
        "canonical_items": int(session.execute(select(func.count()).select_from(CanonicalItem)).scalar_one()),
    }
    for granularity, model in CANDLE_TABLES.items():
        counts[f"price_{granularity}"] = int(session.execute(select(func.count()).select_from(model)).scalar_one())
    return counts
