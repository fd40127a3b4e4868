"""Unit tests for ticket SLA evaluation in support/sla.py and the SLA grid in support/store.py.

Covers:
- Severity normalisation (case-insensitive, default Medium)
- Due times from a rule; no rule means no due times
- Single clock states: running OK / Warning at 75% / Overdue, stopped OK / Overdue
- Worst-of-two-clocks aggregation; tickets without a rule are always OK
- Seeded SLA grid: every severity x level 0..3, higher levels never slower
"""

from datetime import datetime, timedelta, timezone

import pytest

from support.models import SEVERITIES, SlaRule, SlaState, Ticket
from support.sla import clock_state, compute_sla_status, due_times, normalize_severity
from support.store import SupportStore

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _ticket(first_due_min: int = 60, resolution_due_min: int = 480, **fields) -> Ticket:
    ticket = Ticket(
        user_id=1,
        subject="Key not received",
        sla_rule_id=1,
        created_at=T0.isoformat(),
        first_response_due_at=(T0 + timedelta(minutes=first_due_min)).isoformat(),
        resolution_due_at=(T0 + timedelta(minutes=resolution_due_min)).isoformat(),
    )
    for name, value in fields.items():
        setattr(ticket, name, value)
    return ticket


# ---------------------------------------------------------------------------
# TestNormalizeSeverity
# ---------------------------------------------------------------------------


class TestNormalizeSeverity:
    @pytest.mark.parametrize("raw,expected", [("high", "High"), (" CRITICAL ", "Critical"), ("Low", "Low")])
    def test_known_values(self, raw, expected):
        assert normalize_severity(raw) == expected

    def test_unknown_falls_back_to_default(self):
        assert normalize_severity("urgent") == "Medium"
        assert normalize_severity(None) == "Medium"
        assert normalize_severity("", default="Low") == "Low"


# ---------------------------------------------------------------------------
# TestDueTimes
# ---------------------------------------------------------------------------


class TestDueTimes:
    def test_rule_offsets(self):
        rule = SlaRule(name="r", severity="High", priority_level=0, first_response_minutes=30, resolution_minutes=240)
        first, resolution = due_times(rule, T0)
        assert first == T0 + timedelta(minutes=30)
        assert resolution == T0 + timedelta(hours=4)

    def test_no_rule(self):
        assert due_times(None, T0) == (None, None)


# ---------------------------------------------------------------------------
# TestClockState
# ---------------------------------------------------------------------------


class TestClockState:
    due = T0 + timedelta(minutes=100)

    def test_running_early_is_ok(self):
        assert clock_state(T0, self.due, None, T0 + timedelta(minutes=50)) == SlaState.OK

    def test_running_at_75_percent_is_warning(self):
        assert clock_state(T0, self.due, None, T0 + timedelta(minutes=75)) == SlaState.WARNING

    def test_running_past_due_is_overdue(self):
        assert clock_state(T0, self.due, None, T0 + timedelta(minutes=101)) == SlaState.OVERDUE

    def test_stopped_in_time_is_ok_forever(self):
        actual = T0 + timedelta(minutes=99)
        assert clock_state(T0, self.due, actual, T0 + timedelta(days=30)) == SlaState.OK

    def test_stopped_late_is_overdue(self):
        actual = T0 + timedelta(minutes=101)
        assert clock_state(T0, self.due, actual, actual) == SlaState.OVERDUE

    def test_no_due_is_ok(self):
        assert clock_state(T0, None, None, T0 + timedelta(days=365)) == SlaState.OK


# ---------------------------------------------------------------------------
# TestComputeSlaStatus
# ---------------------------------------------------------------------------


class TestComputeSlaStatus:
    def test_ticket_without_rule_is_ok(self):
        ticket = _ticket(sla_rule_id=None)
        assert compute_sla_status(ticket, T0 + timedelta(days=10)) == SlaState.OK

    def test_worst_clock_wins(self):
        # First response overdue, resolution still early.
        ticket = _ticket(first_due_min=10, resolution_due_min=1000)
        assert compute_sla_status(ticket, T0 + timedelta(minutes=20)) == SlaState.OVERDUE

    def test_answered_ticket_follows_resolution_clock(self):
        ticket = _ticket(
            first_due_min=10,
            resolution_due_min=100,
            first_responded_at=(T0 + timedelta(minutes=5)).isoformat(),
        )
        assert compute_sla_status(ticket, T0 + timedelta(minutes=20)) == SlaState.OK
        assert compute_sla_status(ticket, T0 + timedelta(minutes=80)) == SlaState.WARNING

    def test_resolved_in_time_stays_ok(self):
        ticket = _ticket(
            first_responded_at=(T0 + timedelta(minutes=5)).isoformat(),
            resolved_at=(T0 + timedelta(minutes=200)).isoformat(),
        )
        assert compute_sla_status(ticket, T0 + timedelta(days=60)) == SlaState.OK


# ---------------------------------------------------------------------------
# TestSeededGrid
# ---------------------------------------------------------------------------


class TestSeededGrid:
    @pytest.fixture
    def store(self):
        s = SupportStore("sqlite:///:memory:")
        s.seed_defaults()
        yield s
        s.close()

    def test_every_severity_and_level_has_a_rule(self, store):
        for severity in SEVERITIES:
            for level in range(4):
                assert store.find_sla_rule(severity, level) is not None, (severity, level)

    def test_higher_level_is_never_slower(self, store):
        for severity in SEVERITIES:
            rules = [store.find_sla_rule(severity, level) for level in range(4)]
            first = [r.first_response_minutes for r in rules]
            resolution = [r.resolution_minutes for r in rules]
            assert first == sorted(first, reverse=True)
            assert resolution == sorted(resolution, reverse=True)

    def test_reseed_adds_nothing(self, store):
        before = len(store.list_templates(active_only=False))
        store.seed_defaults()
        assert len(store.list_templates(active_only=False)) == before
        next_id = store.create_sla_rule(
            SlaRule(name="extra", severity="Low", priority_level=0, first_response_minutes=1, resolution_minutes=2)
        )
        assert next_id == len(SEVERITIES) * 4 + 1
