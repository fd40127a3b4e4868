"""
support/sla.py -- Ticket SLA evaluation.

A ticket runs two clocks from created_at: first response and resolution. Each
clock is evaluated independently and the ticket's status is the worst of the
two (OK < Warning < Overdue):

  stopped clock (actual time set):  Overdue if actual > due, else OK
  running clock:                    Overdue if now > due,
                                    Warning once 75% of created->due elapsed,
                                    else OK

A ticket without an SLA rule is always OK.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from support.models import SEVERITIES, SlaRule, SlaState, Ticket

WARNING_THRESHOLD = 0.75


def normalize_severity(raw: Optional[str], default: str = "Medium") -> str:
    """Case-insensitive match against Low/Medium/High/Critical; default otherwise."""
    value = (raw or "").strip().lower()
    for severity in SEVERITIES:
        if severity.lower() == value:
            return severity
    return default


def _parse(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def due_times(rule: Optional[SlaRule], created: datetime) -> tuple[Optional[datetime], Optional[datetime]]:
    """(first_response_due, resolution_due) for a ticket created at created."""
    if rule is None:
        return None, None
    return (
        created + timedelta(minutes=rule.first_response_minutes),
        created + timedelta(minutes=rule.resolution_minutes),
    )


def clock_state(start: datetime, due: Optional[datetime], actual: Optional[datetime], now: datetime) -> str:
    if due is None:
        return SlaState.OK
    if due < start:
        due = start
    if actual is not None:
        return SlaState.OVERDUE if actual > due else SlaState.OK
    if now > due:
        return SlaState.OVERDUE
    if now >= start + (due - start) * WARNING_THRESHOLD:
        return SlaState.WARNING
    return SlaState.OK


def _worst(*states: str) -> str:
    return max(states, key=SlaState.ORDER.index)


def compute_sla_status(ticket: Ticket, now: Optional[datetime] = None) -> str:
    if ticket.sla_rule_id is None:
        return SlaState.OK
    now = now or datetime.now(timezone.utc)
    start = _parse(ticket.created_at) or now
    return _worst(
        clock_state(start, _parse(ticket.first_response_due_at), _parse(ticket.first_responded_at), now),
        clock_state(start, _parse(ticket.resolution_due_at), _parse(ticket.resolved_at), now),
    )
