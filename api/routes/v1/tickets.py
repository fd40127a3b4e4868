"""
api/routes/v1/tickets.py -- Customer tickets, the staff queue, assignment and replies.

Routes (all under /api/v1/tickets):
  POST /create                      customer: open a ticket from a subject template
  GET  /customer                    customer: own tickets, paginated
  GET  /customer/{ticketId}         customer: own ticket with replies
  GET  /subject-templates           authenticated: active subject templates
  GET  /assignees                   staff: eligible assignees
  GET  /assignees/transfer          staff: eligible assignees minus excludeUserId
  GET  ""                           staff: queue with filters, paginated
  GET  /{ticketId}                  staff: detail with replies and related tickets
  POST /{ticketId}/assign           ADMIN: assign to a Customer Care user
  POST /{ticketId}/assign-me        staff: take an unassigned ticket
  POST /{ticketId}/transfer-tech    assignee or ADMIN: hand over to another assignee
  POST /{ticketId}/complete         assignee or ADMIN: InProgress -> Completed
  POST /{ticketId}/close            ADMIN: New -> Closed
  POST /{ticketId}/replies          owner, assignee or ADMIN

"Staff" is the role policy RequireRole:ADMIN,CUSTOMER_CARE, checked against
the JWT claims. The actor is still loaded from the DB afterwards so a locked
account is refused with 403 even while its token is valid.

Completed and Closed tickets are locked: every mutation returns 400.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    StaffSummary,
    SubjectTemplateResponse,
    TicketAssign,
    TicketCreate,
    TicketDetailResponse,
    TicketPage,
    TicketReplyCreate,
    TicketReplyResponse,
    TicketResponse,
)
from auth.constants import RoleCodes, is_care_role
from auth.dependencies import get_current_user, require_role
from auth.models import User
from auth.policies import roles_from_claims
from auth.store import UserStore
from realtime.hub import ticket_group, user_group
from support.models import AssignmentState, Ticket, TicketStatus
from support.store import SupportStore

logger = logging.getLogger("ktk.api")

router = APIRouter(prefix="/tickets")

_require_staff = require_role(RoleCodes.ADMIN, RoleCodes.CUSTOMER_CARE)
_require_admin = require_role(RoleCodes.ADMIN)
_require_customer = require_role(RoleCodes.CUSTOMER)

RELATED_TICKETS_LIMIT = 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _bad_request(message: str, code: str = "invalid_request") -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": message})


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Ticket not found."})


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "ticket_forbidden", "message": message})


def _is_admin(claims: dict) -> bool:
    return RoleCodes.ADMIN in roles_from_claims(claims)


def _load(store: SupportStore, ticket_id: int) -> Ticket:
    ticket = store.get_ticket(ticket_id)
    if ticket is None:
        raise _not_found()
    return ticket


def _unlocked(store: SupportStore, ticket_id: int) -> Ticket:
    ticket = _load(store, ticket_id)
    if ticket.is_locked:
        raise _bad_request("Ticket is locked.", code="ticket_locked")
    return ticket


def _eligible_assignee(users: UserStore, user_id: int) -> User:
    """An assignee must be an active user holding a Customer Care role."""
    user = users.get_by_id(user_id)
    if user is None or not user.is_active or not any(is_care_role(code) for code in user.roles):
        raise _bad_request("Assignee must be an active Customer Care user.", code="invalid_assignee")
    return user


def _ticket_response(users: UserStore, ticket: Ticket) -> TicketResponse:
    customer = users.get_by_id(ticket.user_id)
    assignee = users.get_by_id(ticket.assignee_id) if ticket.assignee_id else None
    return TicketResponse.from_ticket(ticket, customer, assignee)


def _detail(users: UserStore, store: SupportStore, ticket: Ticket, with_related: bool) -> TicketDetailResponse:
    names: dict[int, Optional[str]] = {}
    replies = []
    for reply in store.list_replies(ticket.id):
        if reply.sender_id not in names:
            sender = users.get_by_id(reply.sender_id)
            names[reply.sender_id] = sender.display_name if sender else None
        replies.append(TicketReplyResponse.from_reply(reply, names[reply.sender_id]))
    related = []
    if with_related:
        others = store.list_customer_tickets(ticket.user_id, exclude_id=ticket.id, limit=RELATED_TICKETS_LIMIT)
        related = [TicketResponse.from_ticket(t) for t in others]
    base = _ticket_response(users, ticket)
    return TicketDetailResponse(**base.model_dump(), replies=replies, related_tickets=related)


async def _notify_assignee(request: Request, ticket: Ticket) -> None:
    if ticket.assignee_id is None:
        return
    await request.app.state.notification_hub.send_group(
        user_group(ticket.assignee_id),
        "ReceiveNotification",
        {
            "type": "TicketAssigned",
            "ticketId": ticket.id,
            "ticketCode": ticket.ticket_code,
            "message": f"Ticket {ticket.ticket_code} has been assigned to you.",
        },
    )


# ---------------------------------------------------------------------------
# Customer side
# ---------------------------------------------------------------------------


@router.post("/create", response_model=TicketResponse, status_code=201)
def create_ticket(
    request: Request,
    body: TicketCreate,
    claims: dict = Depends(_require_customer),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    template = store.get_template(body.template_code.strip(), active_only=True)
    if template is None:
        raise _bad_request("Unknown or inactive ticket subject.", code="invalid_template")
    ticket = store.create_ticket(
        current_user.id,
        template,
        (body.description or "").strip() or None,
        priority_level=current_user.support_priority_level,
    )
    return _ticket_response(request.app.state.user_store, ticket)


@router.get("/customer", response_model=TicketPage)
def my_tickets(
    request: Request,
    status: Optional[str] = Query(default=None, max_length=20),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    current_user: User = Depends(get_current_user),
) -> TicketPage:
    tickets = request.app.state.support.list_customer_tickets(current_user.id, status=status)
    start = (page - 1) * page_size
    items = [TicketResponse.from_ticket(t, customer=current_user) for t in tickets[start : start + page_size]]
    return TicketPage(items=items, total=len(tickets), page=page, page_size=page_size)


@router.get("/customer/{ticket_id}", response_model=TicketDetailResponse)
def my_ticket(
    request: Request,
    ticket_id: int,
    current_user: User = Depends(get_current_user),
) -> TicketDetailResponse:
    store: SupportStore = request.app.state.support
    ticket = _load(store, ticket_id)
    if ticket.user_id != current_user.id:
        raise _forbidden("You cannot access this ticket.")
    return _detail(request.app.state.user_store, store, ticket, with_related=False)


@router.get("/subject-templates", response_model=list[SubjectTemplateResponse])
def subject_templates(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[SubjectTemplateResponse]:
    return [SubjectTemplateResponse.from_template(t) for t in request.app.state.support.list_templates()]


# ---------------------------------------------------------------------------
# Staff side
# ---------------------------------------------------------------------------


def _assignees(users: UserStore, q: Optional[str], exclude_id: Optional[int] = None) -> list[StaffSummary]:
    staff = users.list_active_staff(care_only=True)
    if exclude_id is not None:
        staff = [u for u in staff if u.id != exclude_id]
    if q and q.strip():
        key = q.strip().lower()
        staff = [u for u in staff if key in (u.full_name or "").lower() or key in u.email.lower()]
    staff.sort(key=lambda u: (u.full_name or u.email).lower())
    return [StaffSummary.from_user(u) for u in staff]


@router.get("/assignees", response_model=list[StaffSummary])
def assignees(
    request: Request,
    q: Optional[str] = Query(default=None, max_length=100),
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> list[StaffSummary]:
    return _assignees(request.app.state.user_store, q)


@router.get("/assignees/transfer", response_model=list[StaffSummary])
def transfer_assignees(
    request: Request,
    q: Optional[str] = Query(default=None, max_length=100),
    exclude_user_id: Optional[int] = Query(default=None, alias="excludeUserId"),
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> list[StaffSummary]:
    return _assignees(request.app.state.user_store, q, exclude_id=exclude_user_id)


@router.get("", response_model=TicketPage)
def list_tickets(
    request: Request,
    q: Optional[str] = Query(default=None, max_length=100),
    status: Optional[str] = Query(default=None, max_length=20),
    severity: Optional[str] = Query(default=None, max_length=20),
    sla_status: Optional[str] = Query(default=None, alias="sla", max_length=20),
    assigned: Optional[str] = Query(default=None, max_length=20),
    mine: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> TicketPage:
    """Staff queue ordered Overdue, Warning, OK; unassigned first within each band."""
    users: UserStore = request.app.state.user_store
    customer_ids = [u.id for u in users.list_users(search=q)] if q else None
    items, total = request.app.state.support.list_tickets(
        search=q,
        customer_ids=customer_ids,
        status=status,
        severity=severity,
        sla_status=sla_status,
        assignment_state=assigned,
        assignee_id=current_user.id if mine else None,
        page=page,
        page_size=page_size,
    )
    return TicketPage(
        items=[_ticket_response(users, t) for t in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{ticket_id}", response_model=TicketDetailResponse)
def ticket_detail(
    request: Request,
    ticket_id: int,
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> TicketDetailResponse:
    store: SupportStore = request.app.state.support
    return _detail(request.app.state.user_store, store, _load(store, ticket_id), with_related=True)


@router.post("/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    request: Request,
    ticket_id: int,
    body: TicketAssign,
    claims: dict = Depends(_require_admin),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    ticket = _unlocked(store, ticket_id)
    _eligible_assignee(users, body.assignee_id)
    changes = {"assignee_id": body.assignee_id}
    if ticket.assignment_state == AssignmentState.UNASSIGNED:
        changes["assignment_state"] = AssignmentState.ASSIGNED
    if ticket.status in (TicketStatus.NEW, TicketStatus.OPEN):
        changes["status"] = TicketStatus.IN_PROGRESS
    ticket = store.update_ticket(ticket_id, **changes)
    logger.info("Ticket %s assigned to user %s by %s", ticket.ticket_code, body.assignee_id, current_user.id)
    await _notify_assignee(request, ticket)
    return _ticket_response(users, ticket)


@router.post("/{ticket_id}/assign-me", response_model=TicketResponse)
def assign_me(
    request: Request,
    ticket_id: int,
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    ticket = _unlocked(store, ticket_id)
    if ticket.assignee_id is not None:
        raise _bad_request("Ticket already has an assignee.", code="already_assigned")
    changes = {"assignee_id": current_user.id, "assignment_state": AssignmentState.ASSIGNED}
    if ticket.status in (TicketStatus.NEW, TicketStatus.OPEN):
        changes["status"] = TicketStatus.IN_PROGRESS
    ticket = store.update_ticket(ticket_id, **changes)
    return _ticket_response(request.app.state.user_store, ticket)


@router.post("/{ticket_id}/transfer-tech", response_model=TicketResponse)
async def transfer_tech(
    request: Request,
    ticket_id: int,
    body: TicketAssign,
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    users: UserStore = request.app.state.user_store
    ticket = _load(store, ticket_id)
    if not _is_admin(claims) and ticket.assignee_id != current_user.id:
        raise _forbidden("Only the assignee can transfer this ticket.")
    if ticket.is_locked:
        raise _bad_request("Ticket is locked.", code="ticket_locked")
    if ticket.assignee_id is None:
        raise _bad_request("Assign the ticket before transferring it.", code="not_assigned")
    if ticket.assignee_id == body.assignee_id:
        raise _bad_request("Choose a different assignee.", code="same_assignee")
    _eligible_assignee(users, body.assignee_id)
    ticket = store.update_ticket(
        ticket_id, assignee_id=body.assignee_id, assignment_state=AssignmentState.TECHNICAL
    )
    await _notify_assignee(request, ticket)
    return _ticket_response(users, ticket)


@router.post("/{ticket_id}/complete", response_model=TicketResponse)
def complete_ticket(
    request: Request,
    ticket_id: int,
    claims: dict = Depends(_require_staff),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    ticket = _load(store, ticket_id)
    if not _is_admin(claims) and ticket.assignee_id != current_user.id:
        raise _forbidden("Only the assignee can complete this ticket.")
    if ticket.is_locked:
        raise _bad_request("Ticket is locked.", code="ticket_locked")
    if ticket.status != TicketStatus.IN_PROGRESS:
        raise _bad_request("Only tickets in progress can be completed.", code="invalid_status")
    ticket = store.resolve_ticket(ticket_id, TicketStatus.COMPLETED)
    return _ticket_response(request.app.state.user_store, ticket)


@router.post("/{ticket_id}/close", response_model=TicketResponse)
def close_ticket(
    request: Request,
    ticket_id: int,
    claims: dict = Depends(_require_admin),
    current_user: User = Depends(get_current_user),
) -> TicketResponse:
    store: SupportStore = request.app.state.support
    ticket = _unlocked(store, ticket_id)
    if ticket.status not in (TicketStatus.NEW, TicketStatus.OPEN):
        raise _bad_request("Only new tickets can be closed.", code="invalid_status")
    ticket = store.resolve_ticket(ticket_id, TicketStatus.CLOSED)
    return _ticket_response(request.app.state.user_store, ticket)


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


@router.post("/{ticket_id}/replies", response_model=TicketReplyResponse, status_code=201)
async def add_reply(
    request: Request,
    ticket_id: int,
    body: TicketReplyCreate,
    current_user: User = Depends(get_current_user),
) -> TicketReplyResponse:
    """Post a reply and push it to everyone watching the ticket.

    A reply from anyone other than the owner counts as a staff reply: it stops
    the first-response clock and moves a New ticket to InProgress.
    """
    store: SupportStore = request.app.state.support
    ticket = _unlocked(store, ticket_id)
    is_owner = ticket.user_id == current_user.id
    is_admin = RoleCodes.ADMIN in current_user.roles
    if not (is_owner or is_admin or ticket.assignee_id == current_user.id):
        raise _forbidden("You cannot reply to this ticket.")

    reply = store.add_reply(ticket_id, current_user.id, body.message.strip(), is_staff_reply=not is_owner)
    response = TicketReplyResponse.from_reply(reply, current_user.display_name)
    payload = response.model_dump(by_alias=True)
    await request.app.state.ticket_hub.send_group(ticket_group(ticket_id), "ReceiveReply", payload)
    if not is_owner:
        await request.app.state.notification_hub.send_group(
            user_group(ticket.user_id),
            "ReceiveNotification",
            {
                "type": "TicketReply",
                "ticketId": ticket.id,
                "ticketCode": ticket.ticket_code,
                "message": f"New reply on ticket {ticket.ticket_code}.",
            },
        )
    return response
