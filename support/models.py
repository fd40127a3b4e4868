"""
support/models.py -- Domain dataclasses for tickets, SLA rules and support chat.

Pure data containers. SLA evaluation lives in support/sla.py; persistence and
state transitions in support/store.py.
"""

from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

SEVERITIES = ("Low", "Medium", "High", "Critical")


class TicketStatus:
    NEW = "New"
    OPEN = "Open"  # legacy alias of New
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CLOSED = "Closed"

    LOCKED = (COMPLETED, CLOSED)


class AssignmentState:
    UNASSIGNED = "Unassigned"
    ASSIGNED = "Assigned"
    TECHNICAL = "Technical"


class SlaState:
    OK = "OK"
    WARNING = "Warning"
    OVERDUE = "Overdue"

    ORDER = (OK, WARNING, OVERDUE)


class ChatStatus:
    WAITING = "Waiting"
    ACTIVE = "Active"
    CLOSED = "Closed"


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


@dataclass
class TicketSubjectTemplate:
    template_code: str
    title: str
    severity: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True


@dataclass
class SlaRule:
    """Response/resolution budget for one (severity, priority level) pair."""

    name: str
    severity: str
    priority_level: int
    first_response_minutes: int
    resolution_minutes: int
    id: Optional[int] = None
    is_active: bool = True


@dataclass
class Ticket:
    user_id: int
    subject: str
    ticket_code: str = ""
    id: Optional[int] = None
    description: Optional[str] = None
    status: str = TicketStatus.NEW
    severity: str = "Medium"
    priority_level: int = 0
    sla_rule_id: Optional[int] = None
    sla_status: str = SlaState.OK
    assignment_state: str = AssignmentState.UNASSIGNED
    assignee_id: Optional[int] = None
    first_response_due_at: Optional[str] = None
    first_responded_at: Optional[str] = None
    resolution_due_at: Optional[str] = None
    resolved_at: Optional[str] = None
    created_at: str = ""
    updated_at: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.status in TicketStatus.LOCKED


@dataclass
class TicketReply:
    ticket_id: int
    sender_id: int
    message: str
    is_staff_reply: bool = False
    id: Optional[int] = None
    sent_at: str = ""


# ---------------------------------------------------------------------------
# Support chat
# ---------------------------------------------------------------------------


@dataclass
class ChatSession:
    customer_id: int
    id: Optional[int] = None
    assigned_staff_id: Optional[int] = None
    status: str = ChatStatus.WAITING
    priority_level: int = 1
    started_at: str = ""
    last_message_at: Optional[str] = None
    last_message_preview: Optional[str] = None
    closed_at: Optional[str] = None


@dataclass
class ChatMessage:
    session_id: int
    sender_id: int
    content: str
    is_from_staff: bool = False
    id: Optional[int] = None
    sent_at: str = ""
