"""Shared fixtures: in-memory database, session factory and seed helpers."""
from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flipper.db import Base, upsert_candles, upsert_items, upsert_price_instants
from flipper.locks import JobLockManager
from flipper import trends


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Context-managed sessions that commit on success, like session_scope."""
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    @contextmanager
    def factory():
        session = SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return factory


@pytest.fixture
def session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def lock_manager(tmp_path):
    return JobLockManager(str(tmp_path / "locks"))


@pytest.fixture(autouse=True)
def _audit_off():
    trends.set_audit_enabled(False)
    yield
    trends.set_audit_enabled(False)


@pytest.fixture
def seed(session_factory):
    """Helpers to write catalog items, candles and instant prices."""

    class Seeder:
        def items(self, *rows):
            with session_factory() as session:
                upsert_items(session, list(rows))

        def candles(self, granularity, rows):
            with session_factory() as session:
                upsert_candles(
                    session,
                    granularity,
                    [
                        {
                            "item_id": row["item_id"],
                            "timestamp": row["timestamp"],
                            "avg_high": row.get("avg_high"),
                            "avg_low": row.get("avg_low"),
                            "high_volume": row.get("high_volume", 0),
                            "low_volume": row.get("low_volume", 0),
                        }
                        for row in rows
                    ],
                )

        def instants(self, item_id, *, high=None, low=None, ts=0):
            rows = []
            if high is not None:
                rows.append({"item_id": item_id, "type": "high", "price": high, "timestamp": ts, "last_updated": ts})
            if low is not None:
                rows.append({"item_id": item_id, "type": "low", "price": low, "timestamp": ts, "last_updated": ts})
            with session_factory() as session:
                upsert_price_instants(session, rows)

    return Seeder()
