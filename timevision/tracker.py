"""
Session lifecycle tracking.

A user opens a session when they leave the hub for a partner platform, the
client pulses while they stay there, and the session closes when they come
back, switch platform, close the app, hit the session cap, or go silent long
enough for the watchdog to reap them. Every close is written to the durable
store first; the live-store counters are a cache derived from it.
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from .config import Settings
from .database import Database
from .dates import to_utc, utc_day
from .errors import DailyCapExceeded, PlatformNotFound, SessionNotFound, ValidationError
from .live_store import LiveStore
from .models import (
    END_REASONS,
    HeartbeatResult,
    LiveSession,
    PlatformLiveStats,
    SessionStartResult,
    SessionStopResult,
    ViewingSessionRecord,
)

logger = logging.getLogger(__name__)


class UserLocks:
    """Bounded table of per-user asyncio locks."""

    def __init__(self, maxsize: int = 10_000):
        self._maxsize = maxsize
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = {}

    def get(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
            # Drop idle locks once the table grows past its bound
            if len(self._locks) > self._maxsize:
                for key in [k for k, v in self._locks.items() if not self._in_use(k, v)]:
                    if key != user_id:
                        del self._locks[key]
        return lock

    def _in_use(self, user_id: int, lock: asyncio.Lock) -> bool:
        # A released lock may still have a waiter that has not resumed yet
        return lock.locked() or self._holders.get(user_id, 0) > 0

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        self._holders[user_id] = self._holders.get(user_id, 0) + 1
        try:
            async with self.get(user_id):
                yield
        finally:
            remaining = self._holders[user_id] - 1
            if remaining:
                self._holders[user_id] = remaining
            else:
                del self._holders[user_id]

    def __len__(self) -> int:
        return len(self._locks)


def new_session_id() -> str:
    return f"sess_{secrets.token_urlsafe(9)}"


class SessionTracker:
    def __init__(
        self,
        db: Database,
        live: LiveStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.live = live
        self.settings = settings
        self._clock = clock
        self._locks = UserLocks()

    def _now(self) -> int:
        return int(self._clock())

    async def start(
        self,
        user_id: int,
        platform_id: int,
        platform_name: str,
        content_id: Optional[str] = None,
        content_title: Optional[str] = None,
    ) -> SessionStartResult:
        """Open a session, closing any session the user already has with reason 'switch'."""
        if not user_id:
            raise ValidationError("userId is required")
        if not platform_id or not platform_name:
            raise ValidationError("platformId and platformName are required")

        platform = await self.db.get_platform(platform_id)
        if platform is None:
            raise PlatformNotFound(platform_id)

        async with self._locks.hold(user_id):
            existing = await self.live.get_session(user_id)
            if existing:
                await self._close(existing, "switch")

            now = self._now()
            daily_seconds = await self._daily_seconds_for_cap(user_id, utc_day(now))
            if daily_seconds >= self.settings.max_daily_seconds:
                raise DailyCapExceeded(daily_seconds, self.settings.max_daily_seconds)

            session = LiveSession(
                session_id=new_session_id(),
                user_id=user_id,
                platform_id=platform_id,
                platform_name=platform_name,
                content_id=content_id or None,
                content_title=content_title or None,
                started_at=now,
                last_heartbeat=now,
                duration_sec=0,
            )
            await self.live.save_session(session)
            await self.live.append_event(
                "START",
                {
                    "userId": user_id,
                    "sessionId": session.session_id,
                    "platformId": platform_id,
                    "contentId": content_id,
                    "timestamp": now,
                },
            )

        logger.info(f"Session started: user {user_id} on {platform_name} ({session.session_id})")
        return SessionStartResult(
            session_id=session.session_id,
            started_at=now,
            redirect_target=platform.redirect_target(content_id),
        )

    async def heartbeat(self, user_id: int, session_id: str) -> HeartbeatResult:
        """Refresh a live session; close it with reason 'cap' once it reaches the session cap."""
        if not session_id:
            raise ValidationError("sessionId is required")
        async with self._locks.hold(user_id):
            session = await self._require(user_id, session_id)
            now = self._now()
            duration_sec = now - session.started_at

            if duration_sec >= self.settings.max_session_seconds:
                await self._close(session, "cap", now)
                return HeartbeatResult(duration_sec=self.settings.max_session_seconds)

            await self.live.touch_session(user_id, now, duration_sec)
        return HeartbeatResult(duration_sec=duration_sec)

    async def stop(self, user_id: int, session_id: str, reason: str) -> SessionStopResult:
        if not session_id:
            raise ValidationError("sessionId is required")
        if reason not in END_REASONS:
            raise ValidationError(f"Unknown end reason '{reason}'")
        async with self._locks.hold(user_id):
            session = await self._require(user_id, session_id)
            return await self._close(session, reason)

    async def get_active_session(self, user_id: int) -> Optional[LiveSession]:
        return await self.live.get_session(user_id)

    async def get_daily_seconds(self, user_id: int) -> int:
        """Seconds the user has consumed today, from the live counter."""
        return await self.live.get_daily_seconds(user_id, utc_day(self._now()))

    async def get_live_platform_stats(self) -> list[PlatformLiveStats]:
        """How many users are on each active platform right now."""
        stats = []
        for platform in await self.db.get_active_platforms():
            stats.append(
                PlatformLiveStats(
                    platform_id=platform.id,
                    platform_name=platform.name,
                    active_users=await self.live.live_user_count(platform.id),
                )
            )
        return stats

    async def rebuild_daily_counter(self, user_id: int, day: Optional[str] = None) -> int:
        """Recreate the user's live daily counter from the durable daily aggregates."""
        day = day or utc_day(self._now())
        aggregates = await self.db.get_daily_aggregates(user_id, day)
        per_platform: dict[str, int] = {}
        for aggregate in aggregates:
            platform = await self.db.get_platform(aggregate.platform_id)
            name = platform.name if platform else str(aggregate.platform_id)
            per_platform[name] = per_platform.get(name, 0) + aggregate.total_seconds
        total = sum(a.total_seconds for a in aggregates)
        sessions = sum(a.session_count for a in aggregates)
        await self.live.replace_daily_counter(user_id, day, total, sessions, per_platform)
        return total

    async def _daily_seconds_for_cap(self, user_id: int, day: str) -> int:
        if not await self.live.has_daily_counter(user_id, day):
            return await self.rebuild_daily_counter(user_id, day)
        return await self.live.get_daily_seconds(user_id, day)

    async def _require(self, user_id: int, session_id: str) -> LiveSession:
        session = await self.live.get_session(user_id)
        if session is None or session.session_id != session_id:
            raise SessionNotFound()
        return session

    async def _close(
        self, session: LiveSession, reason: str, now: Optional[int] = None
    ) -> SessionStopResult:
        """Persist the session durably, then update the live counters and drop the live state.

        Callers must hold the user's lock.
        """
        now = now if now is not None else self._now()
        duration_sec = max(0, min(now - session.started_at, self.settings.max_session_seconds))
        day = utc_day(now)

        record = ViewingSessionRecord(
            session_uid=session.session_id,
            user_id=session.user_id,
            platform_id=session.platform_id,
            content_id=session.content_id,
            content_title=session.content_title,
            started_at=to_utc(session.started_at),
            ended_at=to_utc(now),
            last_heartbeat=to_utc(session.last_heartbeat),
            duration_sec=duration_sec,
            end_reason=reason,
            is_valid=True,
        )
        inserted = await self.db.record_closed_session(record, day)
        if not inserted:
            # Retried after a live-store failure: report what was recorded
            stored = await self.db.get_session_record(session.session_id)
            if stored is not None:
                duration_sec = stored.duration_sec
                reason = stored.end_reason
                day = utc_day(stored.ended_at.timestamp())
            logger.warning(f"Session {session.session_id} already recorded, finishing cleanup")

        if inserted and await self.live.has_daily_counter(session.user_id, day):
            await self.live.add_daily_seconds(
                session.user_id, day, session.platform_name, duration_sec
            )
        else:
            # Counter lost, or a retried close: derive it from the durable rows
            await self.rebuild_daily_counter(session.user_id, day)
        await self.live.remove_session(session.user_id, session.platform_id)
        await self.live.append_event(
            "STOP",
            {
                "userId": session.user_id,
                "sessionId": session.session_id,
                "platformId": session.platform_id,
                "durationSec": duration_sec,
                "reason": reason,
                "timestamp": now,
            },
        )

        logger.info(
            f"Session ended: user {session.user_id} on {session.platform_name} "
            f"after {duration_sec}s ({reason})"
        )
        return SessionStopResult(
            session_id=session.session_id,
            platform_name=session.platform_name,
            duration_seconds=duration_sec,
            end_reason=reason,
        )
