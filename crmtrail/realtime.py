from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session, sessionmaker

from crmtrail.core.auth import actor_from_token
from crmtrail.core.database import get_session_factory
from crmtrail.core.errors import AuthError
from crmtrail.core.events import DomainEvent
from crmtrail.metrics import observe_realtime_event
from crmtrail.security.context import Actor, Role


logger = logging.getLogger("crmtrail.realtime")

router = APIRouter(tags=["realtime"])


def rooms_for(actor: Actor) -> list[str]:
    rooms = [f"user_{actor.id}", f"role_{actor.role.value.lower()}"]
    if actor.role is Role.MANAGER and actor.team_id:
        rooms.append(f"team_{actor.team_id}")
    return rooms


class ConnectionManager:
    """Room-based WebSocket fan-out for post-commit domain events."""

    def __init__(self) -> None:
        self.rooms: dict[str, list[WebSocket]] = defaultdict(list)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task[int]] = set()

    async def connect(self, websocket: WebSocket, rooms: list[str]) -> None:
        self._loop = asyncio.get_running_loop()
        for room in rooms:
            self.rooms[room].append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        for room in list(self.rooms):
            self.rooms[room] = [ws for ws in self.rooms[room] if ws is not websocket]
            if not self.rooms[room]:
                del self.rooms[room]

    async def broadcast(self, rooms: list[str], message: dict) -> int:
        recipients: list[WebSocket] = []
        for room in rooms:
            for ws in self.rooms.get(room, []):
                if all(ws is not seen for seen in recipients):
                    recipients.append(ws)
        delivered = 0
        for ws in recipients:
            try:
                await ws.send_json(message)
                delivered += 1
            except (RuntimeError, WebSocketDisconnect) as exc:
                logger.warning("realtime_send_failed", extra={"event_type": message.get("event"), "error": str(exc)})
                self.disconnect(ws)
        return delivered

    def dispatch(self, event: DomainEvent) -> None:
        """Event-bus handler; safe to call from worker threads."""
        observe_realtime_event(event.name)
        if self._loop is None or self._loop.is_closed() or not event.rooms:
            return
        message = {"event": event.name, "data": event.payload}
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            task = running.create_task(self.broadcast(event.rooms, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            asyncio.run_coroutine_threadsafe(self.broadcast(event.rooms, message), self._loop)


manager = ConnectionManager()


@router.websocket("/ws")
async def websocket_events(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> None:
    await websocket.accept()
    try:
        if not token:
            raise AuthError("no token provided")
        # The socket lives for minutes; the session only for the token check.
        with session_factory() as session:
            actor = actor_from_token(session, token)
    except AuthError as exc:
        await websocket.send_json({"event": "auth:error", "data": exc.message})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    rooms = rooms_for(actor)
    await manager.connect(websocket, rooms)
    await websocket.send_json({"event": "connected", "data": {"user_id": actor.id, "rooms": rooms}})
    logger.info("realtime_connected", extra={"entity_kind": "user", "entity_id": actor.id})
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        manager.disconnect(websocket)
        logger.info("realtime_disconnected", extra={"entity_kind": "user", "entity_id": actor.id})
