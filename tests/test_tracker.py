import asyncio

import pytest
import redis

from timevision.dates import utc_day
from timevision.errors import (
    DailyCapExceeded,
    PlatformNotFound,
    SessionNotFound,
    ValidationError,
)
from timevision.live_store import daily_key, session_key
from timevision.tracker import UserLocks


@pytest.mark.asyncio
async def test_start_heartbeat_stop_scenario(tracker, db, live, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    assert started.session_id.startswith("sess_")
    assert started.started_at == int(clock.now)

    clock.advance(60)
    pulse = await tracker.heartbeat(1, started.session_id)
    assert pulse.duration_sec == 60

    clock.advance(65)
    stopped = await tracker.stop(1, started.session_id, "return")
    assert stopped.duration_seconds == 125
    assert stopped.end_reason == "return"
    assert stopped.platform_name == "Netflix"

    record = await db.get_session_record(started.session_id)
    assert record is not None
    assert record.duration_sec == 125
    assert record.end_reason == "return"
    assert record.is_valid is True
    assert record.last_heartbeat.timestamp() == started.started_at + 60

    aggregates = await db.get_daily_aggregates(1, utc_day(clock.now))
    assert [(a.platform_id, a.total_seconds, a.session_count) for a in aggregates] == [
        (platforms["netflix"], 125, 1)
    ]
    assert await tracker.get_daily_seconds(1) == 125
    assert await tracker.get_active_session(1) is None


@pytest.mark.asyncio
async def test_start_writes_live_state(tracker, live, redis_client, platforms):
    started = await tracker.start(7, platforms["netflix"], "Netflix", "81234", "Some Show")

    session = await tracker.get_active_session(7)
    assert session is not None
    assert session.session_id == started.session_id
    assert session.content_id == "81234"
    assert session.content_title == "Some Show"
    assert 0 < await redis_client.ttl(session_key(7)) <= 21600
    assert await live.live_user_count(platforms["netflix"]) == 1

    events = await redis_client.xrange("traffic:events")
    assert events[-1][1]["type"] == "START"
    assert events[-1][1]["sessionId"] == started.session_id


@pytest.mark.asyncio
async def test_redirect_target_uses_deep_link_when_content_given(tracker, platforms):
    with_content = await tracker.start(1, platforms["netflix"], "Netflix", "81234")
    assert with_content.redirect_target == "https://www.netflix.com/title/81234"

    without_content = await tracker.start(2, platforms["netflix"], "Netflix")
    assert without_content.redirect_target == "https://www.netflix.com"

    no_template = await tracker.start(3, platforms["disney"], "Disney+", "abc")
    assert no_template.redirect_target == "https://www.disneyplus.com"


@pytest.mark.asyncio
async def test_start_switches_existing_session(tracker, db, live, platforms, clock):
    first = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(30)
    second = await tracker.start(1, platforms["disney"], "Disney+")

    record = await db.get_session_record(first.session_id)
    assert record.end_reason == "switch"
    assert record.duration_sec == 30
    assert await db.get_session_record(second.session_id) is None

    active = await tracker.get_active_session(1)
    assert active.session_id == second.session_id
    assert await live.live_user_count(platforms["netflix"]) == 0
    assert await live.live_user_count(platforms["disney"]) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_leave_one_live_session(tracker, db, platforms):
    results = await asyncio.gather(
        *(tracker.start(1, platforms["netflix"], "Netflix") for _ in range(5))
    )

    active = await tracker.get_active_session(1)
    assert active is not None
    assert active.session_id in {r.session_id for r in results}

    records = await db.get_user_records(1)
    assert len(records) == 4
    assert {r.end_reason for r in records} == {"switch"}
    assert active.session_id not in {r.session_uid for r in records}


@pytest.mark.asyncio
async def test_daily_cap_blocks_start(tracker, live, platforms, clock):
    await live.add_daily_seconds(1, utc_day(clock.now), "Netflix", 57600)

    with pytest.raises(DailyCapExceeded):
        await tracker.start(1, platforms["netflix"], "Netflix")
    assert await tracker.get_active_session(1) is None


@pytest.mark.asyncio
async def test_daily_cap_just_below_allows_start(tracker, live, platforms, clock):
    await live.add_daily_seconds(1, utc_day(clock.now), "Netflix", 57599)

    started = await tracker.start(1, platforms["netflix"], "Netflix")
    assert started.session_id


@pytest.mark.asyncio
async def test_daily_cap_rebuilt_from_durable_store_when_cache_lost(
    tracker, live, redis_client, platforms, clock
):
    clock.advance(12 * 3600)  # midnight, so all 16h land on one day
    for duration in (21600, 21600, 14400):
        started = await tracker.start(1, platforms["netflix"], "Netflix")
        clock.advance(duration)
        await tracker.stop(1, started.session_id, "return")
    await redis_client.delete(daily_key(1, utc_day(clock.now)))

    with pytest.raises(DailyCapExceeded):
        await tracker.start(1, platforms["netflix"], "Netflix")
    assert await live.has_daily_counter(1, utc_day(clock.now))


@pytest.mark.asyncio
async def test_heartbeat_at_session_cap_closes_with_cap(tracker, db, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(21600)

    pulse = await tracker.heartbeat(1, started.session_id)
    assert pulse.duration_sec == 21600

    record = await db.get_session_record(started.session_id)
    assert record.end_reason == "cap"
    assert record.duration_sec == 21600
    assert await tracker.get_active_session(1) is None


@pytest.mark.asyncio
async def test_stop_clamps_to_session_cap(tracker, db, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(30000)

    stopped = await tracker.stop(1, started.session_id, "close")
    assert stopped.duration_seconds == 21600


@pytest.mark.asyncio
async def test_heartbeat_updates_live_session(tracker, platforms, clock):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(90)
    await tracker.heartbeat(1, started.session_id)

    session = await tracker.get_active_session(1)
    assert session.last_heartbeat == started.started_at + 90
    assert session.duration_sec == 90


@pytest.mark.asyncio
async def test_mismatched_session_id_is_not_found(tracker, platforms):
    await tracker.start(1, platforms["netflix"], "Netflix")

    with pytest.raises(SessionNotFound):
        await tracker.heartbeat(1, "sess_wrong")
    with pytest.raises(SessionNotFound):
        await tracker.stop(1, "sess_wrong", "return")
    with pytest.raises(SessionNotFound):
        await tracker.stop(2, "sess_wrong", "return")
    assert await tracker.get_active_session(1) is not None


@pytest.mark.asyncio
async def test_unknown_platform_leaves_current_session(tracker, platforms):
    started = await tracker.start(1, platforms["netflix"], "Netflix")

    with pytest.raises(PlatformNotFound):
        await tracker.start(1, 999, "Nowhere")

    active = await tracker.get_active_session(1)
    assert active.session_id == started.session_id


@pytest.mark.asyncio
async def test_validation_errors(tracker, platforms):
    with pytest.raises(ValidationError):
        await tracker.start(1, platforms["netflix"], "")
    with pytest.raises(ValidationError):
        await tracker.start(1, None, "Netflix")

    started = await tracker.start(1, platforms["netflix"], "Netflix")
    with pytest.raises(ValidationError):
        await tracker.stop(1, started.session_id, "bored")
    with pytest.raises(ValidationError):
        await tracker.heartbeat(1, "")


@pytest.mark.asyncio
async def test_live_platform_stats(tracker, platforms):
    await tracker.start(1, platforms["netflix"], "Netflix")
    await tracker.start(2, platforms["netflix"], "Netflix")
    await tracker.start(3, platforms["disney"], "Disney+")

    stats = {s.platform_name: s.active_users for s in await tracker.get_live_platform_stats()}
    assert stats == {"Netflix": 2, "Disney+": 1}


@pytest.mark.asyncio
async def test_rebuild_daily_counter_from_aggregates(tracker, redis_client, platforms, clock):
    for platform_id, name in ((platforms["netflix"], "Netflix"), (platforms["disney"], "Disney+")):
        started = await tracker.start(1, platform_id, name)
        clock.advance(100)
        await tracker.stop(1, started.session_id, "return")

    day = utc_day(clock.now)
    await redis_client.delete(daily_key(1, day))
    assert await tracker.get_daily_seconds(1) == 0

    total = await tracker.rebuild_daily_counter(1)
    assert total == 200
    counter = await redis_client.hgetall(daily_key(1, day))
    assert counter["total_sec"] == "200"
    assert counter["sessions"] == "2"
    assert counter["platform:Netflix"] == "100"


def test_user_locks_prune_idle_entries():
    locks = UserLocks(maxsize=3)
    for user_id in range(10):
        locks.get(user_id)
    assert len(locks) <= 4
    assert locks.get(9) is locks.get(9)


@pytest.mark.asyncio
async def test_stop_retried_after_live_store_failure_records_once(
    tracker, db, live, platforms, clock, monkeypatch
):
    started = await tracker.start(1, platforms["netflix"], "Netflix")
    clock.advance(125)

    original_remove = live.remove_session

    async def _connection_lost(user_id, platform_id):
        raise redis.ConnectionError("connection reset")

    monkeypatch.setattr(live, "remove_session", _connection_lost)
    with pytest.raises(redis.ConnectionError):
        await tracker.stop(1, started.session_id, "return")

    monkeypatch.setattr(live, "remove_session", original_remove)
    clock.advance(30)
    stopped = await tracker.stop(1, started.session_id, "return")

    assert stopped.duration_seconds == 125
    assert stopped.end_reason == "return"
    assert len(await db.get_user_records(1)) == 1
    aggregates = await db.get_daily_aggregates(1, utc_day(clock.now))
    assert [(a.total_seconds, a.session_count) for a in aggregates] == [(125, 1)]
    assert await tracker.get_daily_seconds(1) == 125
    assert await tracker.get_active_session(1) is None
    assert await live.live_user_count(platforms["netflix"]) == 0


@pytest.mark.asyncio
async def test_user_locks_keep_lock_with_pending_waiter():
    locks = UserLocks(maxsize=2)
    original = locks.get(1)
    acquired = []

    async def _waiter():
        async with locks.hold(1):
            acquired.append(locks.get(1))

    async with locks.hold(1):
        task = asyncio.create_task(_waiter())
        await asyncio.sleep(0)

    # The waiter has been woken but not yet resumed
    for user_id in range(2, 6):
        locks.get(user_id)

    assert locks.get(1) is original
    await task
    assert acquired == [original]
