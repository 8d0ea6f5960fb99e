from datetime import datetime, timezone

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from timevision.config import Settings
from timevision.database import Database
from timevision.live_store import LiveStore
from timevision.tracker import SessionTracker

# 2026-02-10 12:00:00 UTC
START_TS = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    def __init__(self, now: float = START_TS):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(database_path=str(tmp_path / "test.db"))


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    try:
        yield database
    finally:
        await database.close()


@pytest_asyncio.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def live(settings, redis_client):
    return LiveStore(settings, client=redis_client)


@pytest_asyncio.fixture
async def platforms(db):
    netflix = await db.add_platform(
        "Netflix", "https://www.netflix.com", "https://www.netflix.com/title/{content_id}"
    )
    disney = await db.add_platform("Disney+", "https://www.disneyplus.com")
    return {"netflix": netflix, "disney": disney}


@pytest.fixture
def tracker(db, live, settings, clock):
    return SessionTracker(db, live, settings, clock=clock)
