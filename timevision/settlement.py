"""
Monthly revenue settlement.

    pool       = revenue - hub costs - reserve (reserve = costs x margin)
    platform_i = pool x (valid seconds on i / valid seconds on all platforms)

Each subscriber's own allotment (pool / active users) is also split across the
platforms they watched, in proportion to their own time, so every user can see
where their money went. Monetary values are rounded to cents only when exposed.
"""

import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Optional

from prometheus_client import Counter

from .config import Settings
from .database import Database
from .dates import current_month, month_bounds, previous_month
from .models import PlatformSettlement, SettlementResult, UserTrafficShare
from .scheduler import CalendarTask, monthly_on

logger = logging.getLogger(__name__)

SETTLEMENT_RUNS = Counter(
    "timevision_settlement_runs_total", "Monthly settlement runs", ["result"]
)


def _cents(value: float) -> float:
    return round(value, 2)


class SettlementEngine:
    def __init__(
        self,
        db: Database,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def calculate_settlement(self, month: str) -> SettlementResult:
        """Compute the payout for a month (YYYY-MM) without writing anything."""
        start, end = month_bounds(month)

        active_users = await self.db.count_active_subscribers(start)
        total_revenue = active_users * self.settings.subscription_monthly
        hub_costs = await self.db.sum_hub_costs(start)
        hub_reserve = hub_costs * self.settings.hub_cost_margin
        # No floor: a negative pool is reported as-is
        total_pool = total_revenue - hub_costs - hub_reserve

        traffic = await self.db.get_platform_traffic(start, end)
        total_seconds = sum(int(row["total_seconds"] or 0) for row in traffic)

        platforms = []
        for row in traffic:
            platform_seconds = int(row["total_seconds"] or 0)
            share = platform_seconds / total_seconds if total_seconds > 0 else 0.0
            amount = total_pool * share
            unique_users = int(row["unique_users"])
            platforms.append(
                PlatformSettlement(
                    platform_id=row["platform_id"],
                    platform_name=row["platform_name"],
                    total_seconds=platform_seconds,
                    total_hours=_cents(platform_seconds / 3600),
                    total_sessions=int(row["total_sessions"]),
                    unique_users=unique_users,
                    percent_of_total=_cents(share * 100),
                    amount=_cents(amount),
                    per_user_average=_cents(amount / unique_users) if unique_users > 0 else 0.0,
                )
            )

        return SettlementResult(
            month=month,
            active_users=active_users,
            total_revenue=_cents(total_revenue),
            hub_costs=_cents(hub_costs),
            hub_reserve=_cents(hub_reserve),
            total_pool=_cents(total_pool),
            total_seconds=total_seconds,
            total_hours=_cents(total_seconds / 3600),
            platforms=platforms,
        )

    async def user_shares(self, result: SettlementResult) -> list[UserTrafficShare]:
        """Split each user's pool allotment across platforms by their own viewing time."""
        start, end = month_bounds(result.month)
        rows = await self.db.get_user_platform_totals(start, end)
        pool_per_user = (
            result.total_pool / result.active_users if result.active_users > 0 else 0.0
        )

        user_totals: dict[int, int] = defaultdict(int)
        for row in rows:
            user_totals[row["user_id"]] += int(row["total_seconds"] or 0)

        shares = []
        for row in rows:
            seconds = int(row["total_seconds"] or 0)
            user_total = user_totals[row["user_id"]]
            fraction = seconds / user_total if user_total > 0 else 0.0
            shares.append(
                UserTrafficShare(
                    month=result.month,
                    user_id=row["user_id"],
                    platform_id=row["platform_id"],
                    total_seconds=seconds,
                    percent_of_user=_cents(fraction * 100),
                    amount=_cents(pool_per_user * fraction),
                )
            )
        return shares

    async def persist_settlement(self, result: SettlementResult) -> None:
        """Write platform rows, user shares and the summary atomically. Safe to rerun."""
        try:
            shares = await self.user_shares(result)
            await self.db.save_settlement(result, shares)
        except Exception as e:
            logger.error(f"Settlement for {result.month} rolled back: {e}")
            raise
        logger.info(f"Persisted settlement for {result.month}")

    async def preview_current_month(self) -> SettlementResult:
        """Running estimate for the month in progress. Never persisted."""
        return await self.calculate_settlement(current_month(self._now()))

    async def run_monthly_settlement(self, now: Optional[datetime] = None) -> SettlementResult:
        """Calculate and persist the month before `now`."""
        month = previous_month(now or self._now())
        logger.info(f"Calculating settlement for {month}...")
        try:
            result = await self.calculate_settlement(month)
            log_settlement(result)
            await self.persist_settlement(result)
        except Exception:
            SETTLEMENT_RUNS.labels(result="error").inc()
            raise
        SETTLEMENT_RUNS.labels(result="ok").inc()
        return result

    def scheduled_task(self) -> CalendarTask:
        return CalendarTask(
            "monthly-settlement",
            monthly_on(
                self.settings.settlement_day,
                self.settings.settlement_hour,
                self.settings.settlement_minute,
            ),
            self.run_monthly_settlement,
            clock=self._clock,
        )


def log_settlement(result: SettlementResult) -> None:
    logger.info(f"Results for {result.month}:")
    logger.info(f"  Active users:  {result.active_users}")
    logger.info(f"  Total revenue: {result.total_revenue:.2f} EUR")
    logger.info(f"  Hub costs:     {result.hub_costs:.2f} EUR")
    logger.info(f"  Hub reserve:   {result.hub_reserve:.2f} EUR")
    logger.info(f"  Pool:          {result.total_pool:.2f} EUR")
    logger.info(f"  Total hours:   {result.total_hours}h")
    if result.total_pool < 0:
        logger.warning(f"Negative pool for {result.month}: costs exceed revenue")
    for p in result.platforms:
        logger.info(
            f"    {p.platform_name}: {p.percent_of_total}% -> {p.amount:.2f} EUR "
            f"({p.unique_users} users)"
        )
