"""
api/routes/hubs.py -- WebSocket endpoints for the three realtime hubs.

  /hubs/notifications   joins user:{id}, global and role:{CODE} on connect
  /hubs/support-chat    join_session / leave_session / join_queue / leave_queue
  /hubs/tickets         join_ticket / leave_ticket

Authentication happens before the handshake completes: the token is read from
the access_token cookie, a Bearer header or the ?access_token= query
parameter. Unauthenticated or locked users are refused with close code 1008.

Client messages are JSON objects with an "action" key. A successful join is
acknowledged with {"event": "Joined", "data": {"group": ...}}; a refused or
malformed request gets {"event": "Error", "data": {"message": ...}} and the
socket stays open.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from auth.constants import is_staff_role
from auth.dependencies import resolve_user
from auth.models import User
from auth.policies import normalize_role_codes
from realtime.hub import (
    GLOBAL_GROUP,
    MAX_ROLE_GROUPS,
    QUEUE_GROUP,
    Hub,
    role_group,
    session_group,
    ticket_group,
    user_group,
)

logger = logging.getLogger("ktk.realtime")

router = APIRouter()

# Returns the group to join/leave, or raises _Refused.
ActionHandler = Callable[[WebSocket, User, str, dict], Awaitable[Optional[str]]]


class _Refused(Exception):
    pass


def _is_staff(user: User) -> bool:
    return any(is_staff_role(code) for code in user.roles)


async def _authenticate(websocket: WebSocket) -> Optional[User]:
    user = resolve_user(websocket, allow_query=True)
    if user is None or not user.is_active:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return user


def _int_field(message: dict, key: str) -> int:
    value = message.get(key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise _Refused(f"{key} is required.") from None


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json({"event": "Error", "data": {"message": message}})


async def _serve(websocket: WebSocket, hub: Hub, user: User, handler: ActionHandler) -> None:
    """Read client actions until disconnect; always leave every group afterwards."""
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            raw = frame.get("text")
            if raw is None:
                await _send_error(websocket, "Binary frames are not supported.")
                continue
            try:
                message: Any = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Malformed message.")
                continue
            if not isinstance(message, dict) or not isinstance(message.get("action"), str):
                await _send_error(websocket, "Missing action.")
                continue
            action = message["action"]
            try:
                group = await handler(websocket, user, action, message)
            except _Refused as e:
                await _send_error(websocket, str(e))
                continue
            if action.startswith("join_") and group:
                await hub.group_add(group, websocket)
                await websocket.send_json({"event": "Joined", "data": {"group": group}})
            elif action.startswith("leave_") and group:
                await hub.group_discard(group, websocket)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.discard_all(websocket)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


async def _no_actions(websocket: WebSocket, user: User, action: str, message: dict) -> Optional[str]:
    raise _Refused(f"Unknown action: {action}")


@router.websocket("/hubs/notifications")
async def notifications_hub(websocket: WebSocket) -> None:
    user = await _authenticate(websocket)
    if user is None:
        return
    hub: Hub = websocket.app.state.notification_hub
    await websocket.accept()
    groups = [user_group(user.id), GLOBAL_GROUP]
    groups += [role_group(code) for code in normalize_role_codes(user.roles)[:MAX_ROLE_GROUPS]]
    for group in groups:
        await hub.group_add(group, websocket)
        await websocket.send_json({"event": "Joined", "data": {"group": group}})
    await _serve(websocket, hub, user, _no_actions)


# ---------------------------------------------------------------------------
# Support chat
# ---------------------------------------------------------------------------


async def _support_action(websocket: WebSocket, user: User, action: str, message: dict) -> Optional[str]:
    if action in ("join_queue", "leave_queue"):
        if not _is_staff(user):
            raise _Refused("Only support staff can watch the queue.")
        return QUEUE_GROUP
    if action == "leave_session":
        return session_group(_int_field(message, "sessionId"))
    if action == "join_session":
        session_id = _int_field(message, "sessionId")
        session = websocket.app.state.support.get_session(session_id)
        if session is None:
            raise _Refused("Chat session not found.")
        allowed = session.customer_id == user.id or session.assigned_staff_id == user.id or _is_staff(user)
        if not allowed:
            raise _Refused("You cannot join this chat session.")
        return session_group(session_id)
    raise _Refused(f"Unknown action: {action}")


@router.websocket("/hubs/support-chat")
async def support_chat_hub(websocket: WebSocket) -> None:
    user = await _authenticate(websocket)
    if user is None:
        return
    await websocket.accept()
    await _serve(websocket, websocket.app.state.support_hub, user, _support_action)


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


async def _ticket_action(websocket: WebSocket, user: User, action: str, message: dict) -> Optional[str]:
    if action == "leave_ticket":
        return ticket_group(_int_field(message, "ticketId"))
    if action == "join_ticket":
        ticket_id = _int_field(message, "ticketId")
        ticket = websocket.app.state.support.get_ticket(ticket_id)
        if ticket is None:
            raise _Refused("Ticket not found.")
        if ticket.user_id != user.id and not _is_staff(user):
            raise _Refused("You cannot join this ticket.")
        return ticket_group(ticket_id)
    raise _Refused(f"Unknown action: {action}")


@router.websocket("/hubs/tickets")
async def tickets_hub(websocket: WebSocket) -> None:
    user = await _authenticate(websocket)
    if user is None:
        return
    await websocket.accept()
    await _serve(websocket, websocket.app.state.ticket_hub, user, _ticket_action)
