import pytest

from timevision.config import Settings
from timevision.errors import SessionNotFound
from timevision.live_store import LiveStore, session_key
from timevision.tracker import SessionTracker
from timevision.watchdog import HeartbeatWatchdog


@pytest.fixture
def watchdog(tracker, live, settings, clock):
    return HeartbeatWatchdog(tracker, live, settings, clock=clock)


@pytest.mark.asyncio
async def test_silent_session_is_timed_out(watchdog, tracker, db, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(301)

    assert await watchdog.check_sessions() == 1

    record = await db.get_session_record(started.session_id)
    assert record.end_reason == "timeout"
    assert record.duration_sec == 301
    assert await tracker.get_active_session(1) is None


@pytest.mark.asyncio
async def test_recent_heartbeat_keeps_session(watchdog, tracker, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(200)
    await tracker.heartbeat(1, started.session_id)
    clock.advance(299)

    assert await watchdog.check_sessions() == 0
    assert await tracker.get_active_session(1) is not None


@pytest.mark.asyncio
async def test_session_stopped_concurrently_is_discarded(
    watchdog, tracker, platforms, clock, redis_client, monkeypatch
):
    await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(400)

    async def _already_closed(user_id, session_id, reason):
        raise SessionNotFound()

    monkeypatch.setattr(tracker, "stop", _already_closed)

    assert await watchdog.check_sessions() == 0
    assert not await redis_client.exists(session_key(1))


@pytest.mark.asyncio
async def test_newer_session_survives_the_race(
    watchdog, tracker, platforms, clock, redis_client, monkeypatch
):
    await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(400)

    async def _replaced_by_new_session(user_id, session_id, reason):
        await redis_client.hset(session_key(user_id), "sessionId", "sess_newer")
        raise SessionNotFound()

    monkeypatch.setattr(tracker, "stop", _replaced_by_new_session)

    await watchdog.check_sessions()
    assert await redis_client.hget(session_key(1), "sessionId") == "sess_newer"


@pytest.mark.asyncio
async def test_failed_close_does_not_stop_the_scan(
    watchdog, tracker, platforms, clock, monkeypatch
):
    await tracker.start(1, platforms["netflix"], "Netflix")
    await tracker.start(2, platforms["disney"], "Disney+")
    clock.advance(400)

    original_stop = tracker.stop

    async def _fails_for_first_user(user_id, session_id, reason):
        if user_id == 1:
            raise RuntimeError("database is locked")
        return await original_stop(user_id, session_id, reason)

    monkeypatch.setattr(tracker, "stop", _fails_for_first_user)

    assert await watchdog.check_sessions() == 1
    assert await tracker.get_active_session(2) is None
    assert await tracker.get_active_session(1) is not None

    monkeypatch.setattr(tracker, "stop", original_stop)
    assert await watchdog.check_sessions() == 1
    assert await tracker.get_active_session(1) is None


@pytest.mark.asyncio
async def test_partial_session_hash_is_removed(watchdog, redis_client):
    await redis_client.hset(session_key(5), mapping={"lastHeartbeat": "0"})

    assert await watchdog.check_sessions() == 0
    assert not await redis_client.exists(session_key(5))


@pytest.mark.asyncio
async def test_scan_covers_every_page(tmp_path, db, redis_client, platforms, clock):
    settings = Settings(database_path=str(tmp_path / "test.db"), watchdog_scan_count=2)
    live = LiveStore(settings, client=redis_client)
    tracker = SessionTracker(db, live, settings, clock=clock)
    watchdog = HeartbeatWatchdog(tracker, live, settings, clock=clock)

    for user_id in range(1, 8):
        await tracker.start(user_id, platforms["disney"], "Disney+")
    clock.advance(600)

    assert await watchdog.check_sessions() == 7
    assert await live.live_user_count(platforms["disney"]) == 0


@pytest.mark.asyncio
async def test_watchdog_task_starts_and_stops(watchdog):
    watchdog.start()
    assert watchdog.task.running
    await watchdog.stop()
    assert not watchdog.task.running
