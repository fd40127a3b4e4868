"""
support/store.py -- SQLAlchemy Core persistence layer for tickets and support chat.

Pattern: Repository + Data Mapper, same as auth/store.py and shop/store.py.

Ticket codes are TCK-0001, TCK-0002, ... allocated inside the insert
transaction from the highest existing code. Both seq and ticket_code are
unique, so two writers that read the same maximum cannot both insert; the
loser retries with a fresh number. The numeric part is fixed-width,
so string ordering equals numeric ordering up to TCK-9999; past that the
sequence keeps counting (TCK-10000) and ordering is done on the integer value.

sla_status is stored so list filters can use it, and recomputed on every
ticket write and before every list (open tickets only).

Security: all queries use bound parameters. No f-strings in SQL.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from support.models import (
    SEVERITIES,
    AssignmentState,
    ChatMessage,
    ChatSession,
    ChatStatus,
    SlaRule,
    SlaState,
    Ticket,
    TicketReply,
    TicketStatus,
    TicketSubjectTemplate,
)
from support.sla import compute_sla_status, due_times, normalize_severity

logger = logging.getLogger("ktk.support")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ktk_support.db'}"

TICKET_CODE_PREFIX = "TCK-"
TICKET_CODE_ATTEMPTS = 5
PREVIEW_MAX_LENGTH = 255

DEFAULT_TEMPLATES = (
    TicketSubjectTemplate("ACCOUNT_LOGIN", "Cannot sign in to the purchased account", "High", "Account"),
    TicketSubjectTemplate("KEY_INVALID", "License key is invalid or already used", "High", "License"),
    TicketSubjectTemplate("KEY_NOT_RECEIVED", "Did not receive the license key", "Critical", "License"),
    TicketSubjectTemplate("PAYMENT_ISSUE", "Paid but the order is not completed", "Critical", "Payment"),
    TicketSubjectTemplate("RENEWAL", "Renewal or warranty request", "Medium", "License"),
    TicketSubjectTemplate("OTHER", "Other question", "Low", "General"),
)

# severity -> (first response, resolution) minutes at priority level 0
DEFAULT_SLA_MINUTES = {
    "Low": (24 * 60, 5 * 24 * 60),
    "Medium": (8 * 60, 3 * 24 * 60),
    "High": (4 * 60, 24 * 60),
    "Critical": (60, 8 * 60),
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_templates = Table(
    "ticket_subject_templates",
    _metadata,
    Column("template_code", String(50), primary_key=True),
    Column("title", String(200), nullable=False),
    Column("severity", String(20)),
    Column("category", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_sla_rules = Table(
    "sla_rules",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(120), nullable=False),
    Column("severity", String(20), nullable=False),
    Column("priority_level", Integer, nullable=False),
    Column("first_response_minutes", Integer, nullable=False),
    Column("resolution_minutes", Integer, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_tickets = Table(
    "tickets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_code", String(20), nullable=False, unique=True),
    Column("seq", Integer, nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("subject", String(255), nullable=False),
    Column("description", Text),
    Column("status", String(20), nullable=False),
    Column("severity", String(20), nullable=False),
    Column("priority_level", Integer, nullable=False, server_default="0"),
    Column("sla_rule_id", Integer),
    Column("sla_status", String(20), nullable=False),
    Column("assignment_state", String(20), nullable=False),
    Column("assignee_id", Integer),
    Column("first_response_due_at", String(40)),
    Column("first_responded_at", String(40)),
    Column("resolution_due_at", String(40)),
    Column("resolved_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40)),
)

_replies = Table(
    "ticket_replies",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_id", Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False),
    Column("sender_id", Integer, nullable=False),
    Column("message", Text, nullable=False),
    Column("is_staff_reply", Integer, nullable=False, server_default="0"),
    Column("sent_at", String(40), nullable=False),
)

_sessions = Table(
    "support_chat_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", Integer, nullable=False),
    Column("assigned_staff_id", Integer),
    Column("status", String(20), nullable=False),
    Column("priority_level", Integer, nullable=False, server_default="1"),
    Column("started_at", String(40), nullable=False),
    Column("last_message_at", String(40)),
    Column("last_message_preview", String(PREVIEW_MAX_LENGTH)),
    Column("closed_at", String(40)),
)

_messages = Table(
    "support_chat_messages",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", Integer, ForeignKey("support_chat_sessions.id", ondelete="CASCADE"), nullable=False),
    Column("sender_id", Integer, nullable=False),
    Column("content", Text, nullable=False),
    Column("is_from_staff", Integer, nullable=False, server_default="0"),
    Column("sent_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def build_preview(content: str) -> str:
    return (content or "").strip()[:PREVIEW_MAX_LENGTH]


def clamp_chat_priority(level: Optional[int]) -> int:
    return min(max(level or 1, 1), 3)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SupportStore:
    """Repository for tickets, replies, SLA configuration and chat sessions."""

    _TICKET_FIELDS: set = {
        "status",
        "assignment_state",
        "assignee_id",
        "first_responded_at",
        "resolved_at",
    }
    _SESSION_FIELDS: set = {"assigned_staff_id", "status", "closed_at"}

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ==================================================================
    # Seeding
    # ==================================================================

    def seed_defaults(self) -> None:
        """Create the default subject templates and SLA grid when the tables are empty.

        Rules cover every severity for priority levels 0..3; each level up
        shortens both budgets. Existing rows are never touched.
        """
        if not self.list_templates(active_only=False):
            for template in DEFAULT_TEMPLATES:
                self.upsert_template(template)
        with self.engine.connect() as conn:
            has_rules = conn.execute(select(_sla_rules.c.id).limit(1)).first() is not None
        if has_rules:
            return
        for severity, (first_response, resolution) in DEFAULT_SLA_MINUTES.items():
            for level in range(4):
                factor = 2**level
                self.create_sla_rule(
                    SlaRule(
                        name=f"{severity} / P{level}",
                        severity=severity,
                        priority_level=level,
                        first_response_minutes=max(first_response // factor, 5),
                        resolution_minutes=max(resolution // factor, 30),
                    )
                )
        logger.info("Seeded default ticket templates and SLA rules")

    # ==================================================================
    # Subject templates and SLA rules
    # ==================================================================

    def upsert_template(self, template: TicketSubjectTemplate) -> None:
        values = {
            "title": template.title,
            "severity": template.severity,
            "category": template.category,
            "is_active": 1 if template.is_active else 0,
        }
        with self.engine.connect() as conn:
            result = conn.execute(
                _templates.update().where(_templates.c.template_code == template.template_code).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_templates.insert().values(template_code=template.template_code, **values))
            conn.commit()

    def get_template(self, template_code: str, active_only: bool = True) -> Optional[TicketSubjectTemplate]:
        query = _templates.select().where(_templates.c.template_code == template_code)
        if active_only:
            query = query.where(_templates.c.is_active == 1)
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_template(row) if row is not None else None

    def list_templates(self, active_only: bool = True) -> list[TicketSubjectTemplate]:
        query = _templates.select().order_by(func.coalesce(_templates.c.category, "General"), _templates.c.title)
        if active_only:
            query = query.where(_templates.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_template(r) for r in rows]

    def template_title_taken(self, title: str, exclude_code: Optional[str] = None) -> bool:
        query = select(_templates.c.template_code).where(func.lower(_templates.c.title) == title.strip().lower())
        if exclude_code is not None:
            query = query.where(_templates.c.template_code != exclude_code)
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    def delete_template(self, template_code: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_templates.delete().where(_templates.c.template_code == template_code))
            conn.commit()
        return result.rowcount > 0

    def create_sla_rule(self, rule: SlaRule) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sla_rules.insert().values(
                    name=rule.name,
                    severity=normalize_severity(rule.severity),
                    priority_level=rule.priority_level,
                    first_response_minutes=rule.first_response_minutes,
                    resolution_minutes=rule.resolution_minutes,
                    is_active=1 if rule.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_sla_rule(self, severity: str, priority_level: int) -> Optional[SlaRule]:
        """Active rule for (severity, priority); lowest id wins."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sla_rules.select()
                .where(
                    (_sla_rules.c.is_active == 1)
                    & (_sla_rules.c.severity == severity)
                    & (_sla_rules.c.priority_level == priority_level)
                )
                .order_by(_sla_rules.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_sla_rule(row) if row is not None else None

    def get_sla_rule(self, rule_id: int) -> Optional[SlaRule]:
        with self.engine.connect() as conn:
            row = conn.execute(_sla_rules.select().where(_sla_rules.c.id == rule_id)).fetchone()
        return _row_to_sla_rule(row) if row is not None else None

    def list_sla_rules(
        self,
        severity: Optional[str] = None,
        priority_level: Optional[int] = None,
        active: Optional[bool] = None,
    ) -> list[SlaRule]:
        query = _sla_rules.select().order_by(
            _sla_rules.c.priority_level,
            case(*((_sla_rules.c.severity == s, i) for i, s in enumerate(SEVERITIES)), else_=len(SEVERITIES)),
            _sla_rules.c.id,
        )
        if severity:
            query = query.where(_sla_rules.c.severity == severity)
        if priority_level is not None:
            query = query.where(_sla_rules.c.priority_level == priority_level)
        if active is not None:
            query = query.where(_sla_rules.c.is_active == (1 if active else 0))
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_sla_rule(r) for r in rows]

    def sla_rule_taken(self, severity: str, priority_level: int, exclude_id: Optional[int] = None) -> bool:
        """True when another rule already covers this (severity, priority level) pair."""
        query = select(_sla_rules.c.id).where(
            (_sla_rules.c.severity == severity) & (_sla_rules.c.priority_level == priority_level)
        )
        if exclude_id is not None:
            query = query.where(_sla_rules.c.id != exclude_id)
        with self.engine.connect() as conn:
            return conn.execute(query.limit(1)).first() is not None

    def update_sla_rule(self, rule: SlaRule) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sla_rules.update()
                .where(_sla_rules.c.id == rule.id)
                .values(
                    name=rule.name,
                    severity=normalize_severity(rule.severity),
                    priority_level=rule.priority_level,
                    first_response_minutes=rule.first_response_minutes,
                    resolution_minutes=rule.resolution_minutes,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def set_sla_rule_active(self, rule_id: int, active: bool) -> bool:
        """Switch a rule on or off. Switching on turns off other rules for the same pair."""
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_sla_rules.c.severity, _sla_rules.c.priority_level).where(_sla_rules.c.id == rule_id)
            ).first()
            if row is None:
                return False
            if active:
                conn.execute(
                    _sla_rules.update()
                    .where(
                        (_sla_rules.c.severity == row.severity)
                        & (_sla_rules.c.priority_level == row.priority_level)
                        & (_sla_rules.c.id != rule_id)
                    )
                    .values(is_active=0)
                )
            conn.execute(_sla_rules.update().where(_sla_rules.c.id == rule_id).values(is_active=1 if active else 0))
        return True

    def count_tickets_with_rule(self, rule_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_tickets).where(_tickets.c.sla_rule_id == rule_id)
            ).scalar()

    def delete_sla_rule(self, rule_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sla_rules.delete().where(_sla_rules.c.id == rule_id))
            conn.commit()
        return result.rowcount > 0

    # ==================================================================
    # Tickets
    # ==================================================================

    def create_ticket(
        self,
        user_id: int,
        template: TicketSubjectTemplate,
        description: Optional[str],
        priority_level: int,
        now: Optional[datetime] = None,
    ) -> Ticket:
        """Open a New, Unassigned ticket from a subject template and apply SLA."""
        now = now or _now()
        severity = normalize_severity(template.severity)
        rule = self.find_sla_rule(severity, priority_level)
        first_due, resolution_due = due_times(rule, now)
        ticket = Ticket(
            user_id=user_id,
            subject=template.title,
            description=description or None,
            severity=severity,
            priority_level=priority_level,
            sla_rule_id=rule.id if rule else None,
            first_response_due_at=_iso(first_due),
            resolution_due_at=_iso(resolution_due),
            created_at=_iso(now),
            updated_at=_iso(now),
        )
        ticket.sla_status = compute_sla_status(ticket, now)
        for attempt in range(1, TICKET_CODE_ATTEMPTS + 1):
            try:
                with self.engine.begin() as conn:
                    seq = self._next_seq(conn)
                    ticket.ticket_code = f"{TICKET_CODE_PREFIX}{seq:04d}"
                    result = conn.execute(
                        _tickets.insert().values(
                            ticket_code=ticket.ticket_code,
                            seq=seq,
                            user_id=ticket.user_id,
                            subject=ticket.subject,
                            description=ticket.description,
                            status=ticket.status,
                            severity=ticket.severity,
                            priority_level=ticket.priority_level,
                            sla_rule_id=ticket.sla_rule_id,
                            sla_status=ticket.sla_status,
                            assignment_state=ticket.assignment_state,
                            first_response_due_at=ticket.first_response_due_at,
                            resolution_due_at=ticket.resolution_due_at,
                            created_at=ticket.created_at,
                            updated_at=ticket.updated_at,
                        )
                    )
                    ticket.id = result.inserted_primary_key[0]
                break
            except IntegrityError:
                # Another writer took this code between the read and the insert.
                if attempt == TICKET_CODE_ATTEMPTS:
                    raise
                logger.warning("Ticket code %s already taken, retrying (%d)", ticket.ticket_code, attempt)
        logger.info("Ticket %s created for user %s (severity=%s)", ticket.ticket_code, user_id, severity)
        return ticket

    def _next_seq(self, conn) -> int:
        last = conn.execute(select(func.max(_tickets.c.seq))).scalar()
        return (last or 0) + 1

    def get_ticket(self, ticket_id: int) -> Optional[Ticket]:
        with self.engine.connect() as conn:
            row = conn.execute(_tickets.select().where(_tickets.c.id == ticket_id)).fetchone()
        return _row_to_ticket(row) if row is not None else None

    def update_ticket(self, ticket_id: int, now: Optional[datetime] = None, **fields) -> Optional[Ticket]:
        """Apply whitelisted field changes and recompute sla_status."""
        unknown = set(fields) - self._TICKET_FIELDS
        if unknown:
            raise ValueError(f"Unknown ticket fields: {unknown!r}")
        now = now or _now()
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return None
        for name, value in fields.items():
            setattr(ticket, name, value)
        ticket.updated_at = _iso(now)
        ticket.sla_status = compute_sla_status(ticket, now)
        with self.engine.connect() as conn:
            conn.execute(
                _tickets.update()
                .where(_tickets.c.id == ticket_id)
                .values(updated_at=ticket.updated_at, sla_status=ticket.sla_status, **fields)
            )
            conn.commit()
        return ticket

    def resolve_ticket(self, ticket_id: int, status: str, now: Optional[datetime] = None) -> Optional[Ticket]:
        """Move a ticket to Completed or Closed and stamp resolved_at."""
        if status not in TicketStatus.LOCKED:
            raise ValueError(f"Not a resolving status: {status!r}")
        now = now or _now()
        return self.update_ticket(ticket_id, now=now, status=status, resolved_at=_iso(now))

    def refresh_sla_statuses(self, now: Optional[datetime] = None) -> int:
        """Recompute stored sla_status for every open ticket. Returns the number changed."""
        now = now or _now()
        changed = 0
        with self.engine.connect() as conn:
            rows = conn.execute(
                _tickets.select().where(
                    _tickets.c.sla_rule_id.is_not(None) & _tickets.c.status.not_in(TicketStatus.LOCKED)
                )
            ).fetchall()
            for row in rows:
                status = compute_sla_status(_row_to_ticket(row), now)
                if status != row.sla_status:
                    conn.execute(_tickets.update().where(_tickets.c.id == row.id).values(sla_status=status))
                    changed += 1
            conn.commit()
        return changed

    def list_tickets(
        self,
        search: Optional[str] = None,
        customer_ids: Optional[Iterable[int]] = None,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        sla_status: Optional[str] = None,
        assignment_state: Optional[str] = None,
        assignee_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 10,
    ) -> tuple[list[Ticket], int]:
        """Staff ticket queue. Returns (page_items, total).

        search matches ticket code or subject, or any of customer_ids (callers
        resolve customer name/email matches to ids). status "New" also matches
        the legacy "Open". Ordering: Overdue, Warning, OK; Unassigned first;
        then the relevant due time; then newest code.
        """
        self.refresh_sla_statuses()
        page = max(page, 1)
        page_size = min(max(page_size, 1), 100)

        conditions = []
        if search:
            pattern = f"%{search.strip().lower()}%"
            matches = [func.lower(_tickets.c.ticket_code).like(pattern), func.lower(_tickets.c.subject).like(pattern)]
            ids = list(customer_ids or [])
            if ids:
                matches.append(_tickets.c.user_id.in_(ids))
            conditions.append(or_(*matches))
        if status:
            if status.strip() == TicketStatus.NEW:
                conditions.append(_tickets.c.status.in_([TicketStatus.NEW, TicketStatus.OPEN]))
            else:
                conditions.append(_tickets.c.status == status.strip())
        if severity:
            conditions.append(_tickets.c.severity == severity.strip())
        if sla_status:
            conditions.append(_tickets.c.sla_status == sla_status.strip())
        if assignee_id is not None:
            conditions.append(_tickets.c.assignee_id == assignee_id)
        elif assignment_state:
            conditions.append(_tickets.c.assignment_state == assignment_state.strip())

        unassigned = _tickets.c.assignment_state == AssignmentState.UNASSIGNED
        order = (
            case(
                (_tickets.c.sla_status == SlaState.OVERDUE, 0),
                (_tickets.c.sla_status == SlaState.WARNING, 1),
                (_tickets.c.sla_status == SlaState.OK, 2),
                else_=3,
            ),
            case((unassigned, 0), else_=1),
            func.coalesce(
                case((unassigned, _tickets.c.first_response_due_at), else_=_tickets.c.resolution_due_at),
                "9999",
            ),
            _tickets.c.seq.desc(),
        )
        query = _tickets.select().order_by(*order)
        count_query = select(func.count()).select_from(_tickets)
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)
        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar_one()
            rows = conn.execute(query.limit(page_size).offset((page - 1) * page_size)).fetchall()
        return [_row_to_ticket(r) for r in rows], total

    def list_customer_tickets(
        self, user_id: int, status: Optional[str] = None, exclude_id: Optional[int] = None, limit: Optional[int] = None
    ) -> list[Ticket]:
        query = _tickets.select().where(_tickets.c.user_id == user_id).order_by(_tickets.c.created_at.desc())
        if status:
            query = query.where(_tickets.c.status == status)
        if exclude_id is not None:
            query = query.where(_tickets.c.id != exclude_id)
        if limit:
            query = query.limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_ticket(r) for r in rows]

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    def add_reply(
        self, ticket_id: int, sender_id: int, message: str, is_staff_reply: bool, now: Optional[datetime] = None
    ) -> TicketReply:
        """Store a reply. A staff reply stops the first-response clock and starts work."""
        now = now or _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _replies.insert().values(
                    ticket_id=ticket_id,
                    sender_id=sender_id,
                    message=message,
                    is_staff_reply=1 if is_staff_reply else 0,
                    sent_at=_iso(now),
                )
            )
            conn.commit()
            reply_id = result.inserted_primary_key[0]

        ticket = self.get_ticket(ticket_id)
        changes: dict = {}
        if is_staff_reply and ticket is not None:
            if not ticket.first_responded_at:
                changes["first_responded_at"] = _iso(now)
            if ticket.status in (TicketStatus.NEW, TicketStatus.OPEN):
                changes["status"] = TicketStatus.IN_PROGRESS
        self.update_ticket(ticket_id, now=now, **changes)
        return TicketReply(
            id=reply_id,
            ticket_id=ticket_id,
            sender_id=sender_id,
            message=message,
            is_staff_reply=is_staff_reply,
            sent_at=_iso(now),
        )

    def list_replies(self, ticket_id: int) -> list[TicketReply]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _replies.select().where(_replies.c.ticket_id == ticket_id).order_by(_replies.c.sent_at, _replies.c.id)
            ).fetchall()
        return [_row_to_reply(r) for r in rows]

    # ==================================================================
    # Support chat
    # ==================================================================

    def create_session(self, customer_id: int, priority_level: Optional[int], now: Optional[datetime] = None) -> int:
        now = now or _now()
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    customer_id=customer_id,
                    status=ChatStatus.WAITING,
                    priority_level=clamp_chat_priority(priority_level),
                    started_at=_iso(now),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_session(self, session_id: int) -> Optional[ChatSession]:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_open_session(self, customer_id: int) -> Optional[ChatSession]:
        """Most recent Waiting/Active session of the customer."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select()
                .where((_sessions.c.customer_id == customer_id) & (_sessions.c.status != ChatStatus.CLOSED))
                .order_by(_sessions.c.started_at.desc(), _sessions.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_last_closed_session(self, customer_id: int) -> Optional[ChatSession]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select()
                .where((_sessions.c.customer_id == customer_id) & (_sessions.c.status == ChatStatus.CLOSED))
                .order_by(func.coalesce(_sessions.c.closed_at, _sessions.c.started_at).desc())
                .limit(1)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def update_session(self, session_id: int, **fields) -> Optional[ChatSession]:
        unknown = set(fields) - self._SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {unknown!r}")
        with self.engine.connect() as conn:
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(**fields))
            conn.commit()
        return self.get_session(session_id)

    def close_session(self, session_id: int, now: Optional[datetime] = None) -> Optional[ChatSession]:
        return self.update_session(session_id, status=ChatStatus.CLOSED, closed_at=_iso(now or _now()))

    def add_message(
        self, session_id: int, sender_id: int, content: str, is_from_staff: bool, now: Optional[datetime] = None
    ) -> ChatMessage:
        """Store a chat message and bump the session preview.

        A staff message on a Waiting session makes it Active.
        """
        now = now or _now()
        content = content.strip()
        with self.engine.connect() as conn:
            result = conn.execute(
                _messages.insert().values(
                    session_id=session_id,
                    sender_id=sender_id,
                    content=content,
                    is_from_staff=1 if is_from_staff else 0,
                    sent_at=_iso(now),
                )
            )
            values = {"last_message_at": _iso(now), "last_message_preview": build_preview(content)}
            conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(**values))
            if is_from_staff:
                conn.execute(
                    _sessions.update()
                    .where((_sessions.c.id == session_id) & (_sessions.c.status == ChatStatus.WAITING))
                    .values(status=ChatStatus.ACTIVE)
                )
            conn.commit()
            message_id = result.inserted_primary_key[0]
        return ChatMessage(
            id=message_id,
            session_id=session_id,
            sender_id=sender_id,
            content=content,
            is_from_staff=is_from_staff,
            sent_at=_iso(now),
        )

    def list_messages(self, session_id: int) -> list[ChatMessage]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _messages.select()
                .where(_messages.c.session_id == session_id)
                .order_by(_messages.c.sent_at, _messages.c.id)
            ).fetchall()
        return [_row_to_message(r) for r in rows]

    def list_sessions(
        self,
        customer_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        status: Optional[str] = None,
        unassigned_only: bool = False,
        priority_level: Optional[int] = None,
        started_from: Optional[str] = None,
        started_to: Optional[str] = None,
        include_closed: bool = True,
    ) -> list[ChatSession]:
        query = _sessions.select()
        if customer_id is not None:
            query = query.where(_sessions.c.customer_id == customer_id)
        if staff_id is not None:
            query = query.where(_sessions.c.assigned_staff_id == staff_id)
        if status:
            query = query.where(_sessions.c.status == status)
        if not include_closed:
            query = query.where(_sessions.c.status != ChatStatus.CLOSED)
        if priority_level is not None:
            query = query.where(_sessions.c.priority_level == priority_level)
        if started_from:
            query = query.where(_sessions.c.started_at >= started_from)
        if started_to:
            query = query.where(_sessions.c.started_at <= started_to)
        if unassigned_only:
            # Queue: highest priority first, then longest waiting.
            query = query.where(
                (_sessions.c.status == ChatStatus.WAITING) & _sessions.c.assigned_staff_id.is_(None)
            ).order_by(
                _sessions.c.priority_level.desc(),
                func.coalesce(_sessions.c.last_message_at, _sessions.c.started_at),
            )
        else:
            query = query.order_by(
                func.coalesce(_sessions.c.last_message_at, _sessions.c.started_at).desc(), _sessions.c.id.desc()
            )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_session(r) for r in rows]

    def staff_can_see_history(self, customer_id: int, staff_id: int, exclude_session_id: int) -> bool:
        """True when staff serves (Active) or may claim (queued) another session of this customer."""
        with self.engine.connect() as conn:
            hit = conn.execute(
                select(_sessions.c.id)
                .where(
                    (_sessions.c.customer_id == customer_id)
                    & (_sessions.c.id != exclude_session_id)
                    & or_(
                        (_sessions.c.assigned_staff_id == staff_id) & (_sessions.c.status == ChatStatus.ACTIVE),
                        (_sessions.c.status == ChatStatus.WAITING) & _sessions.c.assigned_staff_id.is_(None),
                    )
                )
                .limit(1)
            ).first()
        return hit is not None

    def staff_serves_customer(self, customer_id: int, staff_id: int) -> bool:
        with self.engine.connect() as conn:
            hit = conn.execute(
                select(_sessions.c.id)
                .where(
                    (_sessions.c.customer_id == customer_id)
                    & (_sessions.c.assigned_staff_id == staff_id)
                    & (_sessions.c.status != ChatStatus.CLOSED)
                )
                .limit(1)
            ).first()
        return hit is not None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_template(row) -> TicketSubjectTemplate:
    return TicketSubjectTemplate(
        template_code=row.template_code,
        title=row.title,
        severity=row.severity,
        category=row.category,
        is_active=bool(row.is_active),
    )


def _row_to_sla_rule(row) -> SlaRule:
    return SlaRule(
        id=row.id,
        name=row.name,
        severity=row.severity,
        priority_level=row.priority_level,
        first_response_minutes=row.first_response_minutes,
        resolution_minutes=row.resolution_minutes,
        is_active=bool(row.is_active),
    )


def _row_to_ticket(row) -> Ticket:
    return Ticket(
        id=row.id,
        ticket_code=row.ticket_code,
        user_id=row.user_id,
        subject=row.subject,
        description=row.description,
        status=row.status,
        severity=row.severity,
        priority_level=row.priority_level,
        sla_rule_id=row.sla_rule_id,
        sla_status=row.sla_status,
        assignment_state=row.assignment_state,
        assignee_id=row.assignee_id,
        first_response_due_at=row.first_response_due_at,
        first_responded_at=row.first_responded_at,
        resolution_due_at=row.resolution_due_at,
        resolved_at=row.resolved_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_reply(row) -> TicketReply:
    return TicketReply(
        id=row.id,
        ticket_id=row.ticket_id,
        sender_id=row.sender_id,
        message=row.message,
        is_staff_reply=bool(row.is_staff_reply),
        sent_at=row.sent_at,
    )


def _row_to_session(row) -> ChatSession:
    return ChatSession(
        id=row.id,
        customer_id=row.customer_id,
        assigned_staff_id=row.assigned_staff_id,
        status=row.status,
        priority_level=row.priority_level,
        started_at=row.started_at,
        last_message_at=row.last_message_at,
        last_message_preview=row.last_message_preview,
        closed_at=row.closed_at,
    )


def _row_to_message(row) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        session_id=row.session_id,
        sender_id=row.sender_id,
        content=row.content,
        is_from_staff=bool(row.is_from_staff),
        sent_at=row.sent_at,
    )
