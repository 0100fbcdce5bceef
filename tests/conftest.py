from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from foodie.common.database import OrderStore, init_db

T0 = datetime(2026, 3, 1, 12, 0, 0)


class RecordingNotifier:
    """In-memory stand-in for the Redis fan-out."""

    def __init__(self):
        self.published = []

    async def publish(self, topics, event, payload):
        self.published.append({"topics": list(topics), "event": event, "data": payload})
        return True

    def events(self, name=None):
        return [p for p in self.published if name is None or p["event"] == name]


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def at(self, seconds):
        """Move to T0 + seconds."""
        self.now = T0 + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine):
    return OrderStore(async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_order(store):
    async def _make(user_id="u1", restaurant_id="r1", created_at=T0, **fields):
        return await store.create_order(user_id=user_id, restaurant_id=restaurant_id, created_at=created_at, **fields)

    return _make
