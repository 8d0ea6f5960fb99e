import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import aiosqlite

from .config import settings
from .models import (
    Anomaly,
    DailyAggregate,
    Platform,
    PlatformSettlement,
    SettlementResult,
    UserTrafficShare,
    ViewingSessionRecord,
)


class Database:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or settings.database_path_resolved
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()
        await self._create_settlement_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise writers on the shared connection and commit or roll back as a unit."""
        async with self._write_lock:
            await self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            await self.conn.commit()

    async def _create_tables(self) -> None:
        """Create subscriber, platform and traffic tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE,
                subscription_status TEXT DEFAULT 'inactive',
                subscription_plan TEXT DEFAULT 'monthly',
                subscription_start TEXT,
                created_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS platforms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                base_url TEXT NOT NULL,
                deep_link_template TEXT,
                active BOOLEAN DEFAULT TRUE
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS viewing_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_uid TEXT UNIQUE NOT NULL,
                user_id INTEGER NOT NULL,
                platform_id INTEGER NOT NULL,
                content_id TEXT,
                content_title TEXT,
                started_at TIMESTAMP NOT NULL,
                ended_at TIMESTAMP NOT NULL,
                last_heartbeat TIMESTAMP,
                duration_sec INTEGER NOT NULL,
                end_reason TEXT NOT NULL,
                is_valid BOOLEAN DEFAULT TRUE
            )
        """)
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_viewing_user ON viewing_sessions(user_id)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_viewing_started ON viewing_sessions(started_at)"
        )
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS daily_traffic (
                date TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                platform_id INTEGER NOT NULL,
                total_seconds INTEGER DEFAULT 0,
                session_count INTEGER DEFAULT 0,
                PRIMARY KEY (date, user_id, platform_id)
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS traffic_anomalies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                date TEXT NOT NULL,
                anomaly_type TEXT NOT NULL,
                details TEXT,
                action_taken TEXT DEFAULT 'flagged',
                created_at TIMESTAMP,
                UNIQUE (user_id, date, anomaly_type)
            )
        """)
        await self.conn.commit()

    async def _create_settlement_tables(self) -> None:
        """Create cost and settlement tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS hub_costs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                month TEXT NOT NULL,
                category TEXT NOT NULL,
                description TEXT,
                amount REAL NOT NULL,
                created_at TIMESTAMP
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS monthly_platform_traffic (
                month TEXT NOT NULL,
                platform_id INTEGER NOT NULL,
                total_seconds INTEGER DEFAULT 0,
                total_sessions INTEGER DEFAULT 0,
                unique_users INTEGER DEFAULT 0,
                pct_of_total REAL DEFAULT 0,
                settlement_eur REAL DEFAULT 0,
                calculated_at TIMESTAMP,
                status TEXT DEFAULT 'pending',
                PRIMARY KEY (month, platform_id)
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS monthly_user_traffic (
                month TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                platform_id INTEGER NOT NULL,
                total_seconds INTEGER DEFAULT 0,
                pct_of_user REAL DEFAULT 0,
                amount_eur REAL DEFAULT 0,
                PRIMARY KEY (month, user_id, platform_id)
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS settlement_summary (
                month TEXT PRIMARY KEY,
                active_users INTEGER DEFAULT 0,
                total_revenue REAL DEFAULT 0,
                hub_costs REAL DEFAULT 0,
                hub_reserve REAL DEFAULT 0,
                total_pool REAL DEFAULT 0,
                total_hours REAL DEFAULT 0,
                published BOOLEAN DEFAULT FALSE,
                calculated_at TIMESTAMP
            )
        """)
        await self.conn.commit()

    # Subscribers, platforms and costs

    async def add_user(
        self,
        email: str,
        subscription_status: str = "active",
        subscription_start: Optional[str] = None,
        subscription_plan: str = "monthly",
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO users (email, subscription_status, subscription_plan,
                                   subscription_start, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, subscription_status, subscription_plan, subscription_start, _now_iso()),
            )
            return cursor.lastrowid

    async def add_platform(
        self,
        name: str,
        base_url: str,
        deep_link_template: Optional[str] = None,
        active: bool = True,
    ) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO platforms (name, base_url, deep_link_template, active)
                VALUES (?, ?, ?, ?)
                """,
                (name, base_url, deep_link_template, active),
            )
            return cursor.lastrowid

    async def get_platform(self, platform_id: int) -> Optional[Platform]:
        cursor = await self.conn.execute("SELECT * FROM platforms WHERE id = ?", (platform_id,))
        row = await cursor.fetchone()
        return self._row_to_platform(row) if row else None

    async def get_active_platforms(self) -> list[Platform]:
        cursor = await self.conn.execute(
            "SELECT * FROM platforms WHERE active = TRUE ORDER BY id"
        )
        rows = await cursor.fetchall()
        return [self._row_to_platform(row) for row in rows]

    async def add_hub_cost(
        self, month: str, category: str, amount: float, description: str = ""
    ) -> None:
        """Record an operating cost against a month (YYYY-MM)."""
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO hub_costs (month, category, description, amount, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (f"{month}-01", category, description, amount, _now_iso()),
            )

    # Session records and daily aggregates

    async def record_closed_session(self, record: ViewingSessionRecord, day: str) -> bool:
        """Write the session record, then fold its duration into the day's aggregate.

        Returns False when the record was already written; the aggregate is left alone.
        """
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO viewing_sessions (session_uid, user_id, platform_id, content_id,
                                              content_title, started_at, ended_at,
                                              last_heartbeat, duration_sec, end_reason, is_valid)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_uid) DO NOTHING
                """,
                (
                    record.session_uid,
                    record.user_id,
                    record.platform_id,
                    record.content_id,
                    record.content_title,
                    record.started_at.isoformat(),
                    record.ended_at.isoformat(),
                    record.last_heartbeat.isoformat(),
                    record.duration_sec,
                    record.end_reason,
                    record.is_valid,
                ),
            )
            if cursor.rowcount != 1:
                return False
            await conn.execute(
                """
                INSERT INTO daily_traffic (date, user_id, platform_id, total_seconds, session_count)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(date, user_id, platform_id) DO UPDATE SET
                    total_seconds = total_seconds + excluded.total_seconds,
                    session_count = session_count + 1
                """,
                (day, record.user_id, record.platform_id, record.duration_sec),
            )
        return True

    async def get_session_record(self, session_uid: str) -> Optional[ViewingSessionRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM viewing_sessions WHERE session_uid = ?", (session_uid,)
        )
        row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def get_user_records(self, user_id: int) -> list[ViewingSessionRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM viewing_sessions WHERE user_id = ? ORDER BY id", (user_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_daily_aggregates(self, user_id: int, day: str) -> list[DailyAggregate]:
        cursor = await self.conn.execute(
            """
            SELECT date, user_id, platform_id, total_seconds, session_count
            FROM daily_traffic
            WHERE user_id = ? AND date = ?
            ORDER BY platform_id
            """,
            (user_id, day),
        )
        rows = await cursor.fetchall()
        return [DailyAggregate(**dict(row)) for row in rows]

    async def get_daily_user_totals(self, day: str) -> dict[int, int]:
        """Total seconds per user across all platforms for one day."""
        cursor = await self.conn.execute(
            """
            SELECT user_id, SUM(total_seconds) as total_seconds
            FROM daily_traffic
            WHERE date = ?
            GROUP BY user_id
            """,
            (day,),
        )
        rows = await cursor.fetchall()
        return {row["user_id"]: row["total_seconds"] or 0 for row in rows}

    async def get_high_usage_users(
        self, start: str, end: str, threshold_seconds: float, min_days: int
    ) -> list[dict]:
        """Users with at least min_days days in [start, end] above the threshold."""
        cursor = await self.conn.execute(
            """
            SELECT user_id, COUNT(*) as high_days, AVG(daily_total) as avg_seconds
            FROM (
                SELECT user_id, date, SUM(total_seconds) as daily_total
                FROM daily_traffic
                WHERE date >= ? AND date <= ?
                GROUP BY user_id, date
                HAVING SUM(total_seconds) > ?
            )
            GROUP BY user_id
            HAVING COUNT(*) >= ?
            ORDER BY user_id
            """,
            (start, end, threshold_seconds, min_days),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # Anomalies

    async def insert_anomalies(self, anomalies: Iterable[Anomaly]) -> int:
        """Insert anomalies, ignoring ones already recorded for (user, date, type)."""
        inserted = 0
        async with self.transaction() as conn:
            for anomaly in anomalies:
                cursor = await conn.execute(
                    """
                    INSERT INTO traffic_anomalies (user_id, date, anomaly_type, details,
                                                   action_taken, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, date, anomaly_type) DO NOTHING
                    """,
                    (
                        anomaly.user_id,
                        anomaly.date,
                        anomaly.type,
                        json.dumps(anomaly.details),
                        anomaly.action,
                        _now_iso(),
                    ),
                )
                inserted += cursor.rowcount
        return inserted

    async def get_anomalies(self, user_id: Optional[int] = None) -> list[Anomaly]:
        if user_id is None:
            cursor = await self.conn.execute(
                "SELECT * FROM traffic_anomalies ORDER BY date, user_id, anomaly_type"
            )
        else:
            cursor = await self.conn.execute(
                """
                SELECT * FROM traffic_anomalies
                WHERE user_id = ?
                ORDER BY date, anomaly_type
                """,
                (user_id,),
            )
        rows = await cursor.fetchall()
        return [
            Anomaly(
                user_id=row["user_id"],
                date=row["date"],
                type=row["anomaly_type"],
                details=json.loads(row["details"]) if row["details"] else {},
                action=row["action_taken"],
            )
            for row in rows
        ]

    async def exclude_user_month(self, user_id: int, start: str, end: str) -> int:
        """Invalidate a user's sessions in [start, end) and mark their anomalies excluded."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE viewing_sessions SET is_valid = FALSE
                WHERE user_id = ? AND started_at >= ? AND started_at < ?
                """,
                (user_id, start, end),
            )
            invalidated = cursor.rowcount
            await conn.execute(
                """
                UPDATE traffic_anomalies SET action_taken = 'excluded'
                WHERE user_id = ? AND date >= ? AND date < ?
                """,
                (user_id, start, end),
            )
        return invalidated

    # Settlement inputs

    async def count_active_subscribers(self, month_start: str) -> int:
        cursor = await self.conn.execute(
            """
            SELECT COUNT(DISTINCT id) as count FROM users
            WHERE subscription_status = 'active'
            AND subscription_start <= ?
            """,
            (month_start,),
        )
        row = await cursor.fetchone()
        return row["count"] or 0

    async def sum_hub_costs(self, month_start: str) -> float:
        cursor = await self.conn.execute(
            "SELECT COALESCE(SUM(amount), 0) as total FROM hub_costs WHERE month = ?",
            (month_start,),
        )
        row = await cursor.fetchone()
        return float(row["total"])

    async def get_platform_traffic(self, start: str, end: str) -> list[dict]:
        """Valid viewing time per platform for sessions started in [start, end)."""
        cursor = await self.conn.execute(
            """
            SELECT
                vs.platform_id,
                p.name as platform_name,
                SUM(vs.duration_sec) as total_seconds,
                COUNT(*) as total_sessions,
                COUNT(DISTINCT vs.user_id) as unique_users
            FROM viewing_sessions vs
            JOIN platforms p ON p.id = vs.platform_id
            WHERE vs.started_at >= ?
              AND vs.started_at < ?
              AND vs.is_valid = TRUE
            GROUP BY vs.platform_id, p.name
            ORDER BY total_seconds DESC, vs.platform_id
            """,
            (start, end),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_user_platform_totals(self, start: str, end: str) -> list[dict]:
        """Per-user, per-platform seconds from daily aggregates, skipping excluded users."""
        cursor = await self.conn.execute(
            """
            SELECT user_id, platform_id, SUM(total_seconds) as total_seconds
            FROM daily_traffic
            WHERE date >= ? AND date < ?
              AND user_id NOT IN (
                  SELECT DISTINCT user_id FROM viewing_sessions
                  WHERE is_valid = FALSE AND started_at >= ? AND started_at < ?
              )
            GROUP BY user_id, platform_id
            ORDER BY user_id, platform_id
            """,
            (start, end, start, end),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # Settlement output

    async def save_settlement(
        self, result: SettlementResult, user_shares: list[UserTrafficShare]
    ) -> None:
        """Upsert platform rows, user shares and the summary in one transaction."""
        month_start = f"{result.month}-01"
        now = _now_iso()
        async with self.transaction() as conn:
            for platform in result.platforms:
                await conn.execute(
                    """
                    INSERT INTO monthly_platform_traffic
                        (month, platform_id, total_seconds, total_sessions, unique_users,
                         pct_of_total, settlement_eur, calculated_at, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending')
                    ON CONFLICT(month, platform_id) DO UPDATE SET
                        total_seconds = excluded.total_seconds,
                        total_sessions = excluded.total_sessions,
                        unique_users = excluded.unique_users,
                        pct_of_total = excluded.pct_of_total,
                        settlement_eur = excluded.settlement_eur,
                        calculated_at = excluded.calculated_at
                    """,
                    (
                        month_start,
                        platform.platform_id,
                        platform.total_seconds,
                        platform.total_sessions,
                        platform.unique_users,
                        platform.percent_of_total,
                        platform.amount,
                        now,
                    ),
                )
            await conn.executemany(
                """
                INSERT INTO monthly_user_traffic
                    (month, user_id, platform_id, total_seconds, pct_of_user, amount_eur)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(month, user_id, platform_id) DO UPDATE SET
                    total_seconds = excluded.total_seconds,
                    pct_of_user = excluded.pct_of_user,
                    amount_eur = excluded.amount_eur
                """,
                [
                    (
                        month_start,
                        share.user_id,
                        share.platform_id,
                        share.total_seconds,
                        share.percent_of_user,
                        share.amount,
                    )
                    for share in user_shares
                ],
            )
            await conn.execute(
                """
                INSERT INTO settlement_summary
                    (month, active_users, total_revenue, hub_costs, hub_reserve,
                     total_pool, total_hours, calculated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(month) DO UPDATE SET
                    active_users = excluded.active_users,
                    total_revenue = excluded.total_revenue,
                    hub_costs = excluded.hub_costs,
                    hub_reserve = excluded.hub_reserve,
                    total_pool = excluded.total_pool,
                    total_hours = excluded.total_hours,
                    calculated_at = excluded.calculated_at
                """,
                (
                    month_start,
                    result.active_users,
                    result.total_revenue,
                    result.hub_costs,
                    result.hub_reserve,
                    result.total_pool,
                    result.total_hours,
                    now,
                ),
            )

    async def get_settlement_summary(self, month: str) -> Optional[dict]:
        cursor = await self.conn.execute(
            "SELECT * FROM settlement_summary WHERE month = ?", (f"{month}-01",)
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_platform_settlements(self, month: str) -> list[dict]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM monthly_platform_traffic
            WHERE month = ?
            ORDER BY platform_id
            """,
            (f"{month}-01",),
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_user_traffic(self, month: str, user_id: Optional[int] = None) -> list[dict]:
        if user_id is None:
            cursor = await self.conn.execute(
                """
                SELECT * FROM monthly_user_traffic
                WHERE month = ?
                ORDER BY user_id, platform_id
                """,
                (f"{month}-01",),
            )
        else:
            cursor = await self.conn.execute(
                """
                SELECT * FROM monthly_user_traffic
                WHERE month = ? AND user_id = ?
                ORDER BY platform_id
                """,
                (f"{month}-01", user_id),
            )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    def _row_to_platform(self, row: aiosqlite.Row) -> Platform:
        return Platform(
            id=row["id"],
            name=row["name"],
            base_url=row["base_url"],
            deep_link_template=row["deep_link_template"],
            active=bool(row["active"]),
        )

    def _row_to_record(self, row: aiosqlite.Row) -> ViewingSessionRecord:
        """Convert a database row to a ViewingSessionRecord model."""
        started_at = datetime.fromisoformat(row["started_at"])
        return ViewingSessionRecord(
            id=row["id"],
            session_uid=row["session_uid"],
            user_id=row["user_id"],
            platform_id=row["platform_id"],
            content_id=row["content_id"],
            content_title=row["content_title"],
            started_at=started_at,
            ended_at=datetime.fromisoformat(row["ended_at"]),
            last_heartbeat=(
                datetime.fromisoformat(row["last_heartbeat"])
                if row["last_heartbeat"]
                else started_at
            ),
            duration_sec=row["duration_sec"],
            end_reason=row["end_reason"],
            is_valid=bool(row["is_valid"]),
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
