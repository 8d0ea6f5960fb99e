import logging
import time
from typing import Callable

from prometheus_client import Counter

from .config import Settings
from .errors import SessionNotFound
from .live_store import LiveStore, user_id_from_key
from .scheduler import PeriodicTask
from .tracker import SessionTracker

logger = logging.getLogger(__name__)

REAPED_SESSIONS = Counter(
    "timevision_watchdog_reaped_total", "Sessions closed by the watchdog", ["result"]
)


class HeartbeatWatchdog:
    """Closes sessions whose client stopped sending heartbeats."""

    def __init__(
        self,
        tracker: SessionTracker,
        live: LiveStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.tracker = tracker
        self.live = live
        self.settings = settings
        self._clock = clock
        self.task = PeriodicTask(
            "watchdog", settings.watchdog_interval_seconds, self.check_sessions
        )

    def start(self) -> None:
        logger.info(
            f"Watchdog checking every {self.settings.watchdog_interval_seconds}s "
            f"(timeout {self.settings.heartbeat_timeout_seconds}s)"
        )
        self.task.start()

    async def stop(self) -> None:
        await self.task.stop()

    async def check_sessions(self) -> int:
        """Scan every live session and time out the stale ones. Returns how many were closed."""
        now = int(self._clock())
        threshold = now - self.settings.heartbeat_timeout_seconds
        timed_out = 0

        async for key, data in self.live.scan_sessions():
            user_id = user_id_from_key(key)
            if user_id is None:
                continue
            session_id = data.get("sessionId")
            if not session_id:
                # Partial hash left behind by an interrupted write
                await self.live.discard_stale_session(user_id, "")
                continue

            last_heartbeat = int(data.get("lastHeartbeat") or data.get("startedAt") or 0)
            if last_heartbeat >= threshold:
                continue

            try:
                await self.tracker.stop(user_id, session_id, "timeout")
                timed_out += 1
                REAPED_SESSIONS.labels(result="timeout").inc()
            except SessionNotFound:
                # Stopped by the client between the scan and our stop
                await self.live.discard_stale_session(user_id, session_id)
                REAPED_SESSIONS.labels(result="already_closed").inc()
                logger.debug(f"Session {session_id} for user {user_id} already closed")
            except Exception as e:
                # Left live so the next pass retries it
                REAPED_SESSIONS.labels(result="error").inc()
                logger.error(f"Failed to time out session {session_id} for user {user_id}: {e}")

        if timed_out > 0:
            logger.info(f"Cleaned up {timed_out} timed-out session(s)")
        return timed_out
