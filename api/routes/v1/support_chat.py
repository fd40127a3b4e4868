"""
api/routes/v1/support_chat.py -- Live support chat between customers and staff.

Routes (all under /api/v1/support-chats):
  POST /open-or-get                       reuse the open session or start a Waiting one
  GET  /my-sessions                       customer: own sessions; staff: sessions assigned to me
  GET  /unassigned                        staff: the waiting queue
  GET  /customer/{customerId}/sessions    staff: a customer's other sessions
  GET  /admin/sessions                    ADMIN/CUSTOMER_CARE: filtered session list
  POST /admin/{sessionId}/assign          ADMIN: assign an unassigned session
  POST /admin/{sessionId}/transfer-staff  ADMIN: move an assigned session to another agent
  POST /{sessionId}/claim                 staff: take a session
  POST /{sessionId}/unassign              assignee or ADMIN: back to the queue
  POST /{sessionId}/close                 customer, assignee or ADMIN
  GET  /{sessionId}/messages              see _can_read()
  POST /{sessionId}/messages              customer owner or assigned staff

"Staff" here means a user holding a role whose code contains CARE or ADMIN.
Every change is pushed over the support-chat hub: queue-level events to
support:queue, session-level events to support:{sessionId}.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import (
    ChatMessageCreate,
    ChatMessageResponse,
    ChatSessionResponse,
    ChatStaffAssign,
    OpenChatRequest,
    OpenChatResponse,
)
from auth.constants import RoleCodes, is_care_role, is_staff_role
from auth.dependencies import get_current_user, require_role
from auth.models import User
from auth.store import UserStore
from realtime.hub import QUEUE_GROUP, session_group
from support.models import ChatSession, ChatStatus
from support.store import SupportStore

logger = logging.getLogger("ktk.api")

router = APIRouter(prefix="/support-chats")

_require_support_admin = require_role(RoleCodes.ADMIN, RoleCodes.CUSTOMER_CARE)

CUSTOMER_SESSIONS_LIMIT = 50


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_staff(user: User) -> bool:
    return any(is_staff_role(code) for code in user.roles)


def _is_admin(user: User) -> bool:
    return any("ADMIN" in code.upper() for code in user.roles)


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "chat_forbidden", "message": message})


def _bad_request(message: str, code: str = "invalid_request") -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": message})


def _require_staff_user(user: User) -> None:
    if not _is_staff(user):
        raise _forbidden("Only support staff can use this function.")


def _load(store: SupportStore, session_id: int) -> ChatSession:
    session = store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Chat session not found."})
    return session


def _open(store: SupportStore, session_id: int) -> ChatSession:
    session = _load(store, session_id)
    if session.status == ChatStatus.CLOSED:
        raise _bad_request("Chat session is closed.", code="session_closed")
    return session


def _eligible_staff(users: UserStore, user_id: int) -> User:
    user = users.get_by_id(user_id)
    if user is None or not user.is_active or not any(is_care_role(code) for code in user.roles):
        raise _bad_request("Staff must be an active Customer Care user.", code="invalid_staff")
    return user


def _session_response(users: UserStore, session: ChatSession) -> ChatSessionResponse:
    customer = users.get_by_id(session.customer_id)
    staff = users.get_by_id(session.assigned_staff_id) if session.assigned_staff_id else None
    return ChatSessionResponse.from_session(session, customer, staff)


async def _broadcast_session(request: Request, event: str, response: ChatSessionResponse) -> None:
    hub = request.app.state.support_hub
    payload = response.model_dump(by_alias=True)
    await hub.send_group(QUEUE_GROUP, event, payload)
    await hub.send_group(session_group(response.id), event, payload)


def _can_read(store: SupportStore, session: ChatSession, user: User) -> bool:
    """Who may read a session's messages.

    The customer, the assigned staff member and admins always may. Other
    staff may read a session still waiting in the queue, or an earlier session
    of a customer they are serving (or about to claim) right now.
    """
    if session.customer_id == user.id or _is_admin(user):
        return True
    if not _is_staff(user):
        return False
    if session.assigned_staff_id == user.id:
        return True
    if session.status == ChatStatus.WAITING and session.assigned_staff_id is None:
        return True
    return store.staff_can_see_history(session.customer_id, user.id, exclude_session_id=session.id)


# ---------------------------------------------------------------------------
# Customer entry point
# ---------------------------------------------------------------------------


@router.post("/open-or-get", response_model=OpenChatResponse)
async def open_or_get(
    request: Request,
    body: Optional[OpenChatRequest] = None,
    current_user: User = Depends(get_current_user),
) -> OpenChatResponse:
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    session = store.get_open_session(current_user.id)
    is_new = session is None
    if is_new:
        session_id = store.create_session(current_user.id, current_user.support_priority_level)
        logger.info("Chat session %s opened by user %s", session_id, current_user.id)
    else:
        session_id = session.id

    initial = (body.initial_message if body else None) or ""
    if initial.strip():
        store.add_message(session_id, current_user.id, initial, is_from_staff=False)

    session = store.get_session(session_id)
    last_closed = store.get_last_closed_session(current_user.id)
    base = _session_response(users, session)
    if is_new:
        await request.app.state.support_hub.send_group(
            QUEUE_GROUP, "SupportSessionCreated", base.model_dump(by_alias=True)
        )
    if initial.strip():
        await _broadcast_session(request, "SupportSessionUpdated", base)
    return OpenChatResponse(
        **base.model_dump(),
        is_new=is_new,
        has_previous_closed_session=last_closed is not None,
        last_closed_session_id=last_closed.id if last_closed else None,
        last_closed_at=last_closed.closed_at if last_closed else None,
    )


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


@router.get("/my-sessions", response_model=list[ChatSessionResponse])
def my_sessions(
    request: Request,
    include_closed: bool = Query(default=False, alias="includeClosed"),
    current_user: User = Depends(get_current_user),
) -> list[ChatSessionResponse]:
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    if _is_staff(current_user):
        sessions = store.list_sessions(staff_id=current_user.id, include_closed=include_closed)
    else:
        sessions = store.list_sessions(customer_id=current_user.id)
    return [_session_response(users, s) for s in sessions]


@router.get("/unassigned", response_model=list[ChatSessionResponse])
def unassigned(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[ChatSessionResponse]:
    """The queue: highest priority first, then longest waiting."""
    _require_staff_user(current_user)
    users: UserStore = request.app.state.user_store
    return [_session_response(users, s) for s in request.app.state.support.list_sessions(unassigned_only=True)]


@router.get("/customer/{customer_id}/sessions", response_model=list[ChatSessionResponse])
def customer_sessions(
    request: Request,
    customer_id: int,
    include_closed: bool = Query(default=True, alias="includeClosed"),
    exclude_session_id: Optional[int] = Query(default=None, alias="excludeSessionId"),
    current_user: User = Depends(get_current_user),
) -> list[ChatSessionResponse]:
    """A customer's sessions, for staff handling that customer.

    Non-admin staff need an anchor: excludeSessionId naming a session of this
    customer that they serve or that is waiting in the queue, or any open
    session of this customer assigned to them.
    """
    _require_staff_user(current_user)
    store: SupportStore = request.app.state.support
    if not _is_admin(current_user):
        allowed = False
        if exclude_session_id is not None:
            anchor = store.get_session(exclude_session_id)
            if anchor is not None and anchor.customer_id == customer_id:
                queued = anchor.status == ChatStatus.WAITING and anchor.assigned_staff_id is None
                allowed = anchor.assigned_staff_id == current_user.id or queued
        if not allowed:
            allowed = store.staff_serves_customer(customer_id, current_user.id)
        if not allowed:
            raise _forbidden("You cannot view this customer's sessions.")

    sessions = store.list_sessions(customer_id=customer_id, include_closed=include_closed)
    if exclude_session_id is not None:
        sessions = [s for s in sessions if s.id != exclude_session_id]
    users: UserStore = request.app.state.user_store
    return [_session_response(users, s) for s in sessions[:CUSTOMER_SESSIONS_LIMIT]]


@router.get("/admin/sessions", response_model=list[ChatSessionResponse])
def admin_sessions(
    request: Request,
    status: Optional[str] = Query(default=None, max_length=20),
    staff_id: Optional[int] = Query(default=None, alias="assignedStaffId"),
    priority_level: Optional[int] = Query(default=None, alias="priorityLevel", ge=1, le=3),
    started_from: Optional[str] = Query(default=None, alias="from", max_length=40),
    started_to: Optional[str] = Query(default=None, alias="to", max_length=40),
    q: Optional[str] = Query(default=None, max_length=100),
    claims: dict = Depends(_require_support_admin),
    current_user: User = Depends(get_current_user),
) -> list[ChatSessionResponse]:
    users: UserStore = request.app.state.user_store
    sessions = request.app.state.support.list_sessions(
        staff_id=staff_id,
        status=status,
        priority_level=priority_level,
        started_from=started_from,
        started_to=started_to,
    )
    if q:
        customer_ids = {u.id for u in users.list_users(search=q)}
        sessions = [s for s in sessions if s.customer_id in customer_ids]
    return [_session_response(users, s) for s in sessions]


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------


@router.post("/admin/{session_id}/assign", response_model=ChatSessionResponse)
async def admin_assign(
    request: Request,
    session_id: int,
    body: ChatStaffAssign,
    claims: dict = Depends(_require_support_admin),
    current_user: User = Depends(get_current_user),
) -> ChatSessionResponse:
    """Assign an unassigned session. Status stays as is until staff replies."""
    if not _is_admin(current_user):
        raise _forbidden("Only admins can assign chat sessions.")
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    session = _open(store, session_id)
    if session.assigned_staff_id is not None:
        raise _bad_request("Session already has staff; transfer it instead.", code="already_assigned")
    _eligible_staff(users, body.staff_id)
    response = _session_response(users, store.update_session(session_id, assigned_staff_id=body.staff_id))
    await _broadcast_session(request, "SupportSessionUpdated", response)
    return response


@router.post("/admin/{session_id}/transfer-staff", response_model=ChatSessionResponse)
async def admin_transfer(
    request: Request,
    session_id: int,
    body: ChatStaffAssign,
    claims: dict = Depends(_require_support_admin),
    current_user: User = Depends(get_current_user),
) -> ChatSessionResponse:
    if not _is_admin(current_user):
        raise _forbidden("Only admins can transfer chat sessions.")
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    session = _open(store, session_id)
    if session.assigned_staff_id is None:
        raise _bad_request("Session has no staff yet; assign it instead.", code="not_assigned")
    if session.assigned_staff_id == body.staff_id:
        raise _bad_request("Choose a different staff member.", code="same_staff")
    _eligible_staff(users, body.staff_id)
    response = _session_response(users, store.update_session(session_id, assigned_staff_id=body.staff_id))
    await _broadcast_session(request, "SupportSessionUpdated", response)
    return response


@router.post("/{session_id}/claim", response_model=ChatSessionResponse)
async def claim(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> ChatSessionResponse:
    _require_staff_user(current_user)
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    session = _open(store, session_id)
    if session.assigned_staff_id == current_user.id:
        return _session_response(users, session)
    if session.assigned_staff_id is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "already_claimed", "message": "Session is assigned to another staff member."},
        )
    session = store.update_session(session_id, assigned_staff_id=current_user.id, status=ChatStatus.ACTIVE)
    response = _session_response(users, session)
    await _broadcast_session(request, "SupportSessionUpdated", response)
    return response


@router.post("/{session_id}/unassign", response_model=ChatSessionResponse)
async def unassign(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> ChatSessionResponse:
    """Return a session to the queue: Waiting, no assignee."""
    _require_staff_user(current_user)
    store: SupportStore = request.app.state.support
    session = _open(store, session_id)
    if session.assigned_staff_id != current_user.id and not _is_admin(current_user):
        raise _forbidden("Only the assigned staff member can release this session.")
    session = store.update_session(session_id, assigned_staff_id=None, status=ChatStatus.WAITING)
    response = _session_response(request.app.state.user_store, session)
    await _broadcast_session(request, "SupportSessionUpdated", response)
    return response


@router.post("/{session_id}/close", status_code=204)
async def close(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    store: SupportStore = request.app.state.support
    session = _load(store, session_id)
    allowed = (
        session.customer_id == current_user.id
        or session.assigned_staff_id == current_user.id
        or _is_admin(current_user)
    )
    if not allowed:
        raise _forbidden("You cannot close this session.")
    if session.status == ChatStatus.CLOSED:
        return Response(status_code=204)
    session = store.close_session(session_id)
    response = _session_response(request.app.state.user_store, session)
    hub = request.app.state.support_hub
    payload = response.model_dump(by_alias=True)
    await hub.send_group(session_group(session_id), "SupportSessionClosed", payload)
    await hub.send_group(QUEUE_GROUP, "SupportSessionUpdated", payload)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.get("/{session_id}/messages", response_model=list[ChatMessageResponse])
def list_messages(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> list[ChatMessageResponse]:
    store: SupportStore = request.app.state.support
    session = _load(store, session_id)
    if not _can_read(store, session, current_user):
        raise _forbidden("You cannot access this chat session.")
    return [ChatMessageResponse.from_message(m) for m in store.list_messages(session_id)]


@router.post("/{session_id}/messages", response_model=ChatMessageResponse, status_code=201)
async def post_message(
    request: Request,
    session_id: int,
    body: ChatMessageCreate,
    current_user: User = Depends(get_current_user),
) -> ChatMessageResponse:
    """Send a message. A staff message on a Waiting session makes it Active."""
    if not body.content.strip():
        raise _bad_request("Message content is empty.", code="empty_message")
    store: SupportStore = request.app.state.support
    session = _open(store, session_id)
    is_customer = session.customer_id == current_user.id
    is_assigned_staff = session.assigned_staff_id == current_user.id and _is_staff(current_user)
    if not (is_customer or is_assigned_staff):
        raise _forbidden("You cannot post in this chat session.")

    message = store.add_message(session_id, current_user.id, body.content, is_from_staff=not is_customer)
    response = ChatMessageResponse.from_message(message)
    hub = request.app.state.support_hub
    await hub.send_group(session_group(session_id), "ReceiveSupportMessage", response.model_dump(by_alias=True))
    session_response = _session_response(request.app.state.user_store, store.get_session(session_id))
    await hub.send_group(QUEUE_GROUP, "SupportSessionUpdated", session_response.model_dump(by_alias=True))
    return response
