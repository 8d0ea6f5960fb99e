from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from timevision.models import END_REASONS
from timevision.services import Services

router = APIRouter()

LIVE_SESSIONS = Gauge("timevision_live_sessions", "Users currently on a partner platform")


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(_Body):
    platform_id: Optional[int] = None
    platform_name: Optional[str] = None
    content_id: Optional[str] = None
    content_title: Optional[str] = None


class HeartbeatRequest(_Body):
    session_id: Optional[str] = None


class StopRequest(_Body):
    session_id: Optional[str] = None
    reason: Optional[str] = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(default=None)) -> int:
    """User id forwarded by the authenticating proxy in front of this service."""
    if not x_user_id or not x_user_id.isdigit():
        raise HTTPException(status_code=401, detail="Authentication required")
    return int(x_user_id)


@router.post("/api/session/start")
async def start_session(
    body: StartRequest,
    user_id: int = Depends(current_user),
    services: Services = Depends(get_services),
):
    result = await services.tracker.start(
        user_id,
        body.platform_id,
        body.platform_name,
        body.content_id,
        body.content_title,
    )
    return result.to_wire()


@router.post("/api/session/heartbeat")
async def heartbeat(
    body: HeartbeatRequest,
    user_id: int = Depends(current_user),
    services: Services = Depends(get_services),
):
    result = await services.tracker.heartbeat(user_id, body.session_id)
    return result.to_wire()


@router.post("/api/session/stop")
async def stop_session(
    body: StopRequest,
    user_id: int = Depends(current_user),
    services: Services = Depends(get_services),
):
    reason = body.reason if body.reason in END_REASONS else "return"
    result = await services.tracker.stop(user_id, body.session_id, reason)
    return result.to_wire()


@router.get("/api/session/active")
async def active_session(
    user_id: int = Depends(current_user),
    services: Services = Depends(get_services),
):
    session = await services.tracker.get_active_session(user_id)
    return {"active": session is not None, "session": session.to_wire() if session else None}


@router.get("/api/settlement/current")
async def settlement_preview(services: Services = Depends(get_services)):
    """Real-time estimate for the month in progress."""
    preview = await services.engine.preview_current_month()
    return preview.to_wire()


@router.get("/api/traffic/live")
async def live_traffic(services: Services = Depends(get_services)):
    """Users currently on each platform."""
    stats = await services.tracker.get_live_platform_stats()
    total_active = sum(s.active_users for s in stats)
    platforms = sorted(
        (
            {
                **s.to_wire(),
                "percentOfTotal": (
                    round(s.active_users / total_active * 100, 2) if total_active > 0 else 0
                ),
            }
            for s in stats
        ),
        key=lambda p: p["activeUsers"],
        reverse=True,
    )
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "totalActiveUsers": total_active,
        "platforms": platforms,
    }


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    """Basic health check."""
    try:
        _ = services.db.conn
        db_connected = True
    except RuntimeError:
        db_connected = False
    return {
        "status": "ok",
        "db_connected": db_connected,
        "redis_connected": await services.live.ping(),
        "watchdog_running": services.watchdog.task.running,
    }


@router.get("/metrics")
async def metrics(services: Services = Depends(get_services)):
    """Prometheus metrics endpoint."""
    stats = await services.tracker.get_live_platform_stats()
    LIVE_SESSIONS.set(sum(s.active_users for s in stats))
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
