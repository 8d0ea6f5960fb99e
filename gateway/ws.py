"""
Duplex session protocol.

Clients hold one socket per hub tab. They send start/pulse/stop/status
messages and get session_started/pulse_ack/session_ended/status back, plus a
heartbeat_request push every heartbeat interval while a session is open. A
dropped socket does not end the session; the watchdog reaps it once the
pulses stop.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from timevision.errors import TimeVisionError
from timevision.models import END_REASONS
from timevision.services import Services

logger = logging.getLogger(__name__)

router = APIRouter()


def format_duration(seconds: int) -> str:
    """Format seconds as human readable duration."""
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


class TrafficConnection:
    def __init__(self, websocket: WebSocket, services: Services, user_id: int):
        self.websocket = websocket
        self.tracker = services.tracker
        self.heartbeat_interval = services.settings.heartbeat_interval_seconds
        self.user_id = user_id
        self.session_id: Optional[str] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)

    async def run(self) -> None:
        await self.send({"type": "connected", "userId": self.user_id})

        existing = await self.tracker.get_active_session(self.user_id)
        if existing:
            self.session_id = existing.session_id
            self._start_heartbeat_requests()
            await self.send({"type": "session_active", "session": existing.to_wire()})

        try:
            while True:
                raw = await self.websocket.receive_text()
                await self._dispatch(raw)
        except WebSocketDisconnect:
            logger.debug(f"Socket closed for user {self.user_id}")
        finally:
            self._stop_heartbeat_requests()

    async def _dispatch(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            if not isinstance(message, dict):
                raise ValueError("message must be an object")
        except ValueError:
            await self.send({"type": "error", "message": "Invalid message"})
            return

        try:
            await self.handle(message)
        except TimeVisionError as e:
            await self.send({"type": "error", "message": e.message})
        except WebSocketDisconnect:
            raise
        except Exception as e:
            logger.error(f"Error handling {message.get('type')} for user {self.user_id}: {e}")
            await self.send({"type": "error", "message": "Internal error"})

    async def handle(self, message: dict) -> None:
        message_type = message.get("type")

        if message_type == "start":
            result = await self.tracker.start(
                self.user_id,
                message.get("platformId"),
                message.get("platformName"),
                message.get("contentId") or None,
                message.get("contentTitle") or None,
            )
            self.session_id = result.session_id
            self._start_heartbeat_requests()
            await self.send({"type": "session_started", **result.to_wire()})

        elif message_type == "pulse":
            session_id = message.get("sessionId") or self.session_id
            if not session_id:
                await self.send({"type": "error", "message": "No active session"})
                return
            result = await self.tracker.heartbeat(self.user_id, session_id)
            await self.send(
                {
                    "type": "pulse_ack",
                    "sessionId": session_id,
                    "durationSec": result.duration_sec,
                    "durationFormatted": format_duration(result.duration_sec),
                }
            )

        elif message_type == "stop":
            session_id = message.get("sessionId") or self.session_id
            if not session_id:
                await self.send({"type": "error", "message": "No active session"})
                return
            reason = message.get("reason")
            if reason not in END_REASONS:
                reason = "return"
            result = await self.tracker.stop(self.user_id, session_id, reason)
            self._stop_heartbeat_requests()
            self.session_id = None
            await self.send(
                {
                    "type": "session_ended",
                    **result.to_wire(),
                    "durationFormatted": format_duration(result.duration_seconds),
                }
            )

        elif message_type == "status":
            session = await self.tracker.get_active_session(self.user_id)
            await self.send(
                {
                    "type": "status",
                    "active": session is not None,
                    "session": session.to_wire() if session else None,
                }
            )

        else:
            await self.send({"type": "error", "message": f"Unknown message type: {message_type}"})

    def _start_heartbeat_requests(self) -> None:
        self._stop_heartbeat_requests()
        self._heartbeat_task = asyncio.create_task(self._request_heartbeats())

    def _stop_heartbeat_requests(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _request_heartbeats(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send({"type": "heartbeat_request"})
            except (RuntimeError, WebSocketDisconnect):
                return


@router.websocket("/ws/traffic")
async def traffic_socket(websocket: WebSocket):
    services: Services = websocket.app.state.services
    raw_user_id = websocket.query_params.get("user_id", "")
    if not raw_user_id.isdigit():
        await websocket.close(code=4001, reason="Authentication required")
        return

    await websocket.accept()
    await TrafficConnection(websocket, services, int(raw_user_id)).run()
