from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

EndReason = Literal["return", "switch", "timeout", "close", "cap"]
AnomalyType = Literal["volume", "pattern"]
AnomalyAction = Literal["flagged", "excluded", "reviewed"]

END_REASONS: tuple[str, ...] = ("return", "switch", "timeout", "close", "cap")


class WireModel(BaseModel):
    """Base for models sent to clients; serialises field names in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class Platform(BaseModel):
    id: int
    name: str
    base_url: str
    deep_link_template: Optional[str] = None
    active: bool = True

    def redirect_target(self, content_id: Optional[str]) -> str:
        """Deep link for the content when the platform has a template, else the base URL."""
        if content_id and self.deep_link_template:
            return self.deep_link_template.replace("{content_id}", content_id)
        return self.base_url


class LiveSession(WireModel):
    """A session that is currently open, as held in the live store."""

    session_id: str
    user_id: int
    platform_id: int
    platform_name: str
    content_id: Optional[str] = None
    content_title: Optional[str] = None
    started_at: int
    last_heartbeat: int
    duration_sec: int = 0


class SessionStartResult(WireModel):
    session_id: str
    started_at: int
    redirect_target: str


class HeartbeatResult(WireModel):
    duration_sec: int


class SessionStopResult(WireModel):
    session_id: str
    platform_name: str
    duration_seconds: int
    end_reason: EndReason


class ViewingSessionRecord(BaseModel):
    """Immutable durable snapshot of a closed session."""

    id: Optional[int] = None
    session_uid: str
    user_id: int
    platform_id: int
    content_id: Optional[str] = None
    content_title: Optional[str] = None
    started_at: datetime
    ended_at: datetime
    last_heartbeat: datetime
    duration_sec: int
    end_reason: EndReason
    is_valid: bool = True


class DailyAggregate(BaseModel):
    date: str
    user_id: int
    platform_id: int
    total_seconds: int
    session_count: int


class Anomaly(BaseModel):
    user_id: int
    date: str
    type: AnomalyType
    details: dict
    action: AnomalyAction = "flagged"


class PlatformLiveStats(WireModel):
    platform_id: int
    platform_name: str
    active_users: int


class PlatformSettlement(WireModel):
    platform_id: int
    platform_name: str
    total_seconds: int
    total_hours: float
    total_sessions: int
    unique_users: int
    percent_of_total: float
    amount: float
    per_user_average: float


class SettlementResult(WireModel):
    month: str
    active_users: int
    total_revenue: float
    hub_costs: float
    hub_reserve: float
    total_pool: float
    total_seconds: int
    total_hours: float
    platforms: list[PlatformSettlement] = []


class UserTrafficShare(BaseModel):
    """A user's monthly time on one platform and the slice of their pool it earns."""

    month: str
    user_id: int
    platform_id: int
    total_seconds: int
    percent_of_user: float
    amount: float
