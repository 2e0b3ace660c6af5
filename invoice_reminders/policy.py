"""
Reminder Policy Engine

Decides, for one pending invoice, whether a payment reminder is due now,
which sequence number it would be, and which tone to use.

Cadence rules:
    First reminder:  offset >= 0  -> on or after the due date
                     offset <  0  -> at least |offset| days after the due date
    Follow-ups:      every ``follow_up_interval_days`` after the last reminder
    Cap:             nothing after ``max_reminders`` reminders, ever
    Tone:            1 -> first tone, 2 -> second tone, 3+ -> third tone

The engine is a pure function of (invoice, config, history, now).  It does
not read invoice.status; the campaign runner only passes pending invoices.
"""

from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence

from .clock import Clock, SystemClock, to_utc
from .models import Invoice, ReminderDecision, ReminderPolicyConfig, ReminderRecord

_SECONDS_PER_DAY = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Day arithmetic
# ---------------------------------------------------------------------------

def _as_instant(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def days_between(start: date | datetime, end: date | datetime) -> int:
    """Whole days from ``start`` to ``end``, floored.

    Negative when ``end`` is before ``start``.  Plain dates are taken as
    midnight UTC, naive datetimes as UTC.

    Examples:
        >>> days_between(date(2024, 3, 1), date(2024, 3, 11))
        10
        >>> days_between(date(2024, 3, 11), datetime(2024, 3, 10, 12, 0))
        -1
    """
    seconds = (_as_instant(end) - _as_instant(start)).total_seconds()
    return math.floor(seconds / _SECONDS_PER_DAY)


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------

def last_reminder(history: Iterable[ReminderRecord]) -> Optional[ReminderRecord]:
    """The record with the highest sequence number, or None."""
    last: Optional[ReminderRecord] = None
    for record in history:
        if last is None or record.sequence_number > last.sequence_number:
            last = record
    return last


def history_has_gaps(history: Sequence[ReminderRecord]) -> bool:
    """True unless the sequence numbers are exactly 1..N.

    A gapped history is treated as data corruption: ``decide`` still uses
    the highest sequence number and never renumbers anything.
    """
    numbers = sorted(r.sequence_number for r in history)
    return numbers != list(range(1, len(numbers) + 1))


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

def _first_reminder_due(days_overdue: int, offset_days: int) -> bool:
    # Any non-negative offset behaves like "on the due date"; its magnitude
    # is not used to send early.
    if offset_days >= 0:
        return days_overdue >= 0
    return days_overdue >= abs(offset_days)


def decide(
    invoice: Invoice,
    config: ReminderPolicyConfig,
    history: Sequence[ReminderRecord],
    *,
    now: datetime,
) -> ReminderDecision:
    """Evaluate the reminder policy for one invoice at ``now``.

    Args:
        invoice: The invoice; only ``due_date`` is read.
        config: The owner's normalized reminder settings.
        history: Every reminder already sent for this invoice, any order.
        now: The evaluation instant.

    Returns:
        A ReminderDecision.  ``days_overdue`` is always filled in, even
        when nothing should be sent.

    Examples:
        >>> from datetime import date, datetime, timezone
        >>> inv = Invoice(id="i1", user_id="u1", invoice_number="INV-1",
        ...               client_name="Acme", due_date=date(2024, 3, 1))
        >>> d = decide(inv, ReminderPolicyConfig(), [],
        ...            now=datetime(2024, 3, 1, 9, tzinfo=timezone.utc))
        >>> (d.should_send, d.sequence_number, d.tone.value, d.days_overdue)
        (True, 1, 'polite', 0)
    """
    days_overdue = days_between(invoice.due_date, now)

    last = last_reminder(history)
    if last is None:
        first_tone = config.tone_for_sequence(1)
        if _first_reminder_due(days_overdue, config.first_reminder_offset_days):
            return ReminderDecision(True, 1, first_tone, days_overdue)
        return ReminderDecision(False, 0, first_tone, days_overdue)

    if last.sequence_number >= config.max_reminders:
        return ReminderDecision(False, last.sequence_number, last.tone, days_overdue)

    days_since_last = days_between(last.sent_at, now)
    if days_since_last >= config.follow_up_interval_days:
        next_number = last.sequence_number + 1
        return ReminderDecision(
            True, next_number, config.tone_for_sequence(next_number), days_overdue
        )

    return ReminderDecision(False, last.sequence_number, last.tone, days_overdue)


class ReminderPolicyEngine:
    """``decide`` bound to an injected clock.

    Holds no mutable state; safe to share across threads.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()

    def decide(
        self,
        invoice: Invoice,
        config: ReminderPolicyConfig,
        history: Sequence[ReminderRecord],
    ) -> ReminderDecision:
        return decide(invoice, config, history, now=self.clock.now())

    def next_reminder_date(
        self,
        invoice: Invoice,
        config: ReminderPolicyConfig,
        history: Sequence[ReminderRecord],
    ) -> Optional[date]:
        return next_reminder_date(invoice, config, history)


# ---------------------------------------------------------------------------
# State machine view
# ---------------------------------------------------------------------------

class ReminderState(str, Enum):
    """Where an invoice sits in its reminder lifecycle."""

    NO_REMINDER_SENT = "no_reminder_sent"
    REMINDING = "reminding"
    CAPPED = "capped"


def reminder_state(
    history: Sequence[ReminderRecord],
    config: ReminderPolicyConfig,
) -> ReminderState:
    """Classify a history as NoReminderSent, Reminder(n) or Capped."""
    last = last_reminder(history)
    if last is None:
        return ReminderState.NO_REMINDER_SENT
    if last.sequence_number >= config.max_reminders:
        return ReminderState.CAPPED
    return ReminderState.REMINDING


def next_reminder_date(
    invoice: Invoice,
    config: ReminderPolicyConfig,
    history: Sequence[ReminderRecord],
) -> Optional[date]:
    """The UTC calendar date from which ``decide`` starts saying send.

    Returns None when the invoice is capped.  The date may be in the past
    when a reminder is already overdue to go out.  Follow-up intervals count
    from the exact send time, so a run early on that date may still wait.
    """
    last = last_reminder(history)
    if last is None:
        if invoice.due_date is None:
            return None
        offset = config.first_reminder_offset_days
        wait = 0 if offset >= 0 else abs(offset)
        return _as_instant(invoice.due_date).date() + timedelta(days=wait)
    if last.sequence_number >= config.max_reminders:
        return None
    ready_at = to_utc(last.sent_at) + timedelta(days=config.follow_up_interval_days)
    return ready_at.date()
