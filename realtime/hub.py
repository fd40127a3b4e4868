"""
realtime/hub.py -- In-process WebSocket hubs with named groups.

A Hub keeps group name -> set of connected WebSockets. Routes and services
broadcast with send_group(); the /hubs/* endpoints add and discard sockets as
clients join and leave.

Wire format, server -> client:
    {"event": "<EventName>", "data": {...}}
client -> server:
    {"action": "join_session", "sessionId": 12}

Group names:
    user:{id}  role:{CODE}  global          notifications hub
    support:{sessionId}  support:queue      support chat hub
    ticket:{ticketId}                       tickets hub

Delivery is best effort: no ordering or replay, and a socket that fails a
send is dropped from every group. State is per process; running several
workers needs an external broker and is out of scope.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger("ktk.realtime")

MAX_ROLE_GROUPS = 20
QUEUE_GROUP = "support:queue"
GLOBAL_GROUP = "global"


def user_group(user_id: int) -> str:
    return f"user:{user_id}"


def role_group(role_code: str) -> str:
    return f"role:{role_code.strip().upper()}"


def session_group(session_id: int) -> str:
    return f"support:{session_id}"


def ticket_group(ticket_id: int) -> str:
    return f"ticket:{ticket_id}"


class Hub:
    """Named groups of WebSocket connections for one hub endpoint."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._groups: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def group_add(self, group: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._groups[group].add(websocket)

    async def group_discard(self, group: str, websocket: WebSocket) -> None:
        async with self._lock:
            members = self._groups.get(group)
            if members is None:
                return
            members.discard(websocket)
            if not members:
                del self._groups[group]

    async def discard_all(self, websocket: WebSocket) -> None:
        """Remove a socket from every group (on disconnect)."""
        async with self._lock:
            for group in list(self._groups):
                self._groups[group].discard(websocket)
                if not self._groups[group]:
                    del self._groups[group]

    def member_count(self, group: str) -> int:
        return len(self._groups.get(group, ()))

    async def send_group(self, group: str, event: str, data: Any = None) -> int:
        """Send {"event", "data"} to every member of group. Returns the number delivered."""
        async with self._lock:
            members = list(self._groups.get(group, ()))
        message = {"event": event, "data": data}
        delivered = 0
        dead: list[WebSocket] = []
        for websocket in members:
            try:
                await websocket.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.debug("%s hub: dropping socket from %s: %s", self.name, group, e)
                dead.append(websocket)
        for websocket in dead:
            await self.discard_all(websocket)
        return delivered
