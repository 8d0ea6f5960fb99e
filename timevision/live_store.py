"""
Live session state in Redis.

Holds the ephemeral side of metering: one hash per open session, one set of
live users per platform, a per-day counter per user used for the daily-cap
check, and an append-only event stream. Nothing here is authoritative; the
durable store can rebuild the daily counters.
"""

import logging
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from .config import Settings
from .models import LiveSession

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:active:"
PLATFORM_LIVE_PREFIX = "platform:live:"
EVENT_STREAM = "traffic:events"


def session_key(user_id: int) -> str:
    return f"{SESSION_PREFIX}{user_id}"


def platform_live_key(platform_id: int) -> str:
    return f"{PLATFORM_LIVE_PREFIX}{platform_id}"


def daily_key(user_id: int, day: str) -> str:
    return f"daily:{user_id}:{day}"


def user_id_from_key(key: str) -> Optional[int]:
    try:
        return int(key.rsplit(":", 1)[-1])
    except ValueError:
        return None


class LiveStore:
    def __init__(self, settings: Settings, client: Optional[redis.Redis] = None):
        self.settings = settings
        self._redis: Optional[redis.Redis] = client
        self._pool: Optional[redis.ConnectionPool] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._redis is not None:
            return
        try:
            self._pool = redis.ConnectionPool.from_url(
                self.settings.redis_url, decode_responses=True
            )
            self._redis = redis.Redis(connection_pool=self._pool)
            await self._redis.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
        if self._pool:
            await self._pool.aclose()
            self._pool = None

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Live store not connected")
        return self._redis

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RuntimeError, redis.RedisError):
            return False

    # Live sessions

    async def get_session(self, user_id: int) -> Optional[LiveSession]:
        data = await self.client.hgetall(session_key(user_id))
        if not data.get("sessionId"):
            return None
        return LiveSession(
            session_id=data["sessionId"],
            user_id=user_id,
            platform_id=int(data["platformId"]),
            platform_name=data.get("platformName", ""),
            content_id=data.get("contentId") or None,
            content_title=data.get("contentTitle") or None,
            started_at=int(data["startedAt"]),
            last_heartbeat=int(data.get("lastHeartbeat") or data["startedAt"]),
            duration_sec=int(data.get("durationSec") or 0),
        )

    async def save_session(self, session: LiveSession) -> None:
        """Write a new live session and register the user on the platform."""
        key = session_key(session.user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "sessionId": session.session_id,
                    "platformId": str(session.platform_id),
                    "platformName": session.platform_name,
                    "contentId": session.content_id or "",
                    "contentTitle": session.content_title or "",
                    "startedAt": str(session.started_at),
                    "lastHeartbeat": str(session.last_heartbeat),
                    "durationSec": str(session.duration_sec),
                },
            )
            pipe.expire(key, self.settings.max_session_seconds)
            pipe.sadd(platform_live_key(session.platform_id), str(session.user_id))
            await pipe.execute()

    async def touch_session(self, user_id: int, now: int, duration_sec: int) -> None:
        """Record a heartbeat and push the safety-net expiry forward."""
        key = session_key(user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={"lastHeartbeat": str(now), "durationSec": str(duration_sec)})
            pipe.expire(key, self.settings.max_session_seconds)
            await pipe.execute()

    async def remove_session(self, user_id: int, platform_id: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.srem(platform_live_key(platform_id), str(user_id))
            pipe.delete(session_key(user_id))
            await pipe.execute()

    async def discard_stale_session(self, user_id: int, session_id: str) -> bool:
        """Delete the session key only if it still holds session_id or no id at all."""
        key = session_key(user_id)
        current = await self.client.hget(key, "sessionId")
        if current and current != session_id:
            return False
        return bool(await self.client.delete(key))

    async def scan_sessions(self) -> AsyncIterator[tuple[str, dict]]:
        """Walk every live session key with a cursor until the scan completes."""
        cursor = 0
        while True:
            cursor, keys = await self.client.scan(
                cursor, match=f"{SESSION_PREFIX}*", count=self.settings.watchdog_scan_count
            )
            for key in keys:
                data = await self.client.hgetall(key)
                yield key, data
            if cursor == 0:
                break

    # Platform live sets

    async def live_user_count(self, platform_id: int) -> int:
        return await self.client.scard(platform_live_key(platform_id))

    # Daily counters

    async def add_daily_seconds(
        self, user_id: int, day: str, platform_name: str, seconds: int
    ) -> None:
        key = daily_key(user_id, day)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "total_sec", seconds)
            pipe.hincrby(key, f"platform:{platform_name}", seconds)
            pipe.hincrby(key, "sessions", 1)
            pipe.expire(key, self.settings.daily_counter_ttl_seconds)
            await pipe.execute()

    async def get_daily_seconds(self, user_id: int, day: str) -> int:
        value = await self.client.hget(daily_key(user_id, day), "total_sec")
        return int(value) if value else 0

    async def has_daily_counter(self, user_id: int, day: str) -> bool:
        return bool(await self.client.exists(daily_key(user_id, day)))

    async def replace_daily_counter(
        self, user_id: int, day: str, total_sec: int, sessions: int, per_platform: dict[str, int]
    ) -> None:
        key = daily_key(user_id, day)
        mapping = {"total_sec": str(total_sec), "sessions": str(sessions)}
        mapping.update({f"platform:{name}": str(seconds) for name, seconds in per_platform.items()})
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, self.settings.daily_counter_ttl_seconds)
            await pipe.execute()

    # Event log

    async def append_event(self, event_type: str, fields: dict) -> str:
        payload = {"type": event_type}
        payload.update({name: "" if value is None else str(value) for name, value in fields.items()})
        return await self.client.xadd(
            EVENT_STREAM,
            payload,
            maxlen=self.settings.event_stream_maxlen,
            approximate=True,
        )
