import time
from dataclasses import dataclass
from typing import Callable, Optional

import redis.asyncio as redis

from .anomaly import AnomalyDetector
from .config import Settings
from .database import Database
from .live_store import LiveStore
from .settlement import SettlementEngine
from .tracker import SessionTracker
from .watchdog import HeartbeatWatchdog


@dataclass
class Services:
    """Service objects built once per process and handed to request handlers."""

    settings: Settings
    db: Database
    live: LiveStore
    tracker: SessionTracker
    watchdog: HeartbeatWatchdog
    detector: AnomalyDetector
    engine: SettlementEngine

    async def connect(self) -> None:
        await self.db.connect()
        await self.live.connect()

    async def close(self) -> None:
        await self.live.close()
        await self.db.close()


def build_services(
    settings: Settings,
    db: Optional[Database] = None,
    redis_client: Optional[redis.Redis] = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    db = db or Database(settings.database_path_resolved)
    live = LiveStore(settings, client=redis_client)
    tracker = SessionTracker(db, live, settings, clock=clock)
    return Services(
        settings=settings,
        db=db,
        live=live,
        tracker=tracker,
        watchdog=HeartbeatWatchdog(tracker, live, settings, clock=clock),
        detector=AnomalyDetector(db, settings, clock=clock),
        engine=SettlementEngine(db, settings, clock=clock),
    )
