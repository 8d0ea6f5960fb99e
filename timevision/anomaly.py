"""
Anomaly detection over daily traffic aggregates.

Two rules feed the review queue:

* volume: a user's total for the day is more than 3x the median user's total;
* pattern: a user spent more than 87.5% of the daily cap on at least three of
  the last seven days, which is what an unattended player or a bot looks like.

Detection only flags. Excluding a user's traffic from settlement is a separate,
operator-triggered step so that someone reviews a flag before data is dropped.
"""

import logging
import statistics
import time
from datetime import date, timedelta
from typing import Callable

from .config import Settings
from .database import Database
from .dates import month_bounds, utc_day, validate_day
from .models import Anomaly
from .scheduler import CalendarTask, daily_at

logger = logging.getLogger(__name__)

VOLUME_MULTIPLIER = 3
PATTERN_WINDOW_DAYS = 7
PATTERN_MIN_DAYS = 3


class AnomalyDetector:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.settings = settings
        self._clock = clock

    async def run_daily_check(self, day: str) -> list[Anomaly]:
        """Run both checks for a date (YYYY-MM-DD) and record what they flag."""
        validate_day(day)
        anomalies = await self.check_volume_anomalies(day)
        anomalies.extend(await self.check_pattern_anomalies(day))

        inserted = await self.db.insert_anomalies(anomalies)
        logger.info(
            f"Anomaly check for {day}: {len(anomalies)} flagged, {inserted} new"
        )
        return anomalies

    async def check_volume_anomalies(self, day: str) -> list[Anomaly]:
        totals = await self.db.get_daily_user_totals(day)
        if not totals:
            return []

        median_seconds = float(statistics.median(totals.values()))
        if median_seconds == 0:
            return []

        threshold = median_seconds * VOLUME_MULTIPLIER
        return [
            Anomaly(
                user_id=user_id,
                date=day,
                type="volume",
                details={
                    "userSeconds": seconds,
                    "medianSeconds": median_seconds,
                    "threshold": threshold,
                    "ratio": round(seconds / median_seconds, 2),
                },
            )
            for user_id, seconds in sorted(totals.items())
            if seconds > threshold
        ]

    async def check_pattern_anomalies(self, day: str) -> list[Anomaly]:
        end = date.fromisoformat(day)
        start = end - timedelta(days=PATTERN_WINDOW_DAYS - 1)
        rows = await self.db.get_high_usage_users(
            start.isoformat(),
            end.isoformat(),
            self.settings.pattern_threshold_seconds,
            PATTERN_MIN_DAYS,
        )
        return [
            Anomaly(
                user_id=row["user_id"],
                date=day,
                type="pattern",
                details={
                    "highDays": row["high_days"],
                    "avgDailySeconds": float(row["avg_seconds"]),
                    "avgDailyHours": round(float(row["avg_seconds"]) / 3600, 1),
                },
            )
            for row in rows
        ]

    async def exclude_user_from_settlement(self, user_id: int, month: str) -> int:
        """Invalidate a user's sessions for a month (YYYY-MM). Operator action only."""
        start, end = month_bounds(month)
        invalidated = await self.db.exclude_user_month(user_id, start, end)
        logger.info(
            f"Excluded user {user_id} from settlement for {month}: "
            f"{invalidated} session(s) invalidated"
        )
        return invalidated

    async def check_previous_day(self) -> list[Anomaly]:
        return await self.run_daily_check(utc_day(self._clock() - 86400))

    def scheduled_task(self) -> CalendarTask:
        """Daily job checking the previous UTC day."""
        return CalendarTask(
            "anomaly-check",
            daily_at(self.settings.anomaly_check_hour),
            self.check_previous_day,
            clock=self._clock,
        )
