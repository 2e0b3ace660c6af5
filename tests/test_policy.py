"""Tests for invoice_reminders.policy -- the reminder decision engine.

Covers:
- days_between flooring, date vs datetime inputs, naive datetimes
- First reminder trigger for non-negative and negative offsets
- Follow-up cadence and tone escalation (1 -> first, 2 -> second, 3+ -> third)
- The hard cap on reminders per invoice
- Gapped histories (highest sequence number wins, nothing renumbered)
- Idempotence and the injected clock
- reminder_state and next_reminder_date
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from invoice_reminders.clock import FixedClock
from invoice_reminders.models import (
    Invoice,
    InvoiceStatus,
    ReminderDecision,
    ReminderPolicyConfig,
    ReminderRecord,
    Tone,
)
from invoice_reminders.policy import (
    ReminderPolicyEngine,
    ReminderState,
    days_between,
    decide,
    history_has_gaps,
    last_reminder,
    next_reminder_date,
    reminder_state,
)


NOW = datetime(2024, 3, 15, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def _invoice(due: date | None = TODAY, status: InvoiceStatus = InvoiceStatus.PENDING) -> Invoice:
    return Invoice(
        id="inv-1",
        user_id="user-1",
        invoice_number="INV-1042",
        client_name="Acme Corp",
        client_email="ap@acme.example",
        amount=1250.0,
        due_date=due,
        status=status,
    )


def _record(seq: int, days_ago: float, tone: Tone = Tone.POLITE) -> ReminderRecord:
    return ReminderRecord(
        invoice_id="inv-1",
        sequence_number=seq,
        tone=tone,
        sent_at=NOW - timedelta(days=days_ago),
    )


def _history(*seqs_and_days: tuple[int, float]) -> list[ReminderRecord]:
    tones = {1: Tone.POLITE, 2: Tone.FIRM}
    return [_record(s, d, tones.get(s, Tone.URGENT)) for s, d in seqs_and_days]


# ============================================================================
# days_between
# ============================================================================

class TestDaysBetween:

    @pytest.mark.parametrize("start,end,expected", [
        (date(2024, 3, 1), date(2024, 3, 11), 10),
        (date(2024, 3, 11), date(2024, 3, 1), -10),
        (date(2024, 3, 1), date(2024, 3, 1), 0),
        # Partial days floor toward negative infinity
        (date(2024, 3, 1), datetime(2024, 3, 1, 23, 59, tzinfo=timezone.utc), 0),
        (date(2024, 3, 11), datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc), -1),
        (datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc),
         datetime(2024, 3, 8, 17, 59, tzinfo=timezone.utc), 6),
        (datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc),
         datetime(2024, 3, 8, 18, 0, tzinfo=timezone.utc), 7),
    ])
    def test_floored_whole_days(self, start, end, expected):
        assert days_between(start, end) == expected

    def test_naive_datetime_is_utc(self):
        naive = datetime(2024, 3, 5, 0, 0)
        aware = datetime(2024, 3, 5, 0, 0, tzinfo=timezone.utc)
        assert days_between(date(2024, 3, 1), naive) == days_between(date(2024, 3, 1), aware)

    def test_other_timezones_are_converted(self):
        # 2024-03-04 23:00 at UTC-05:00 is 2024-03-05 04:00 UTC
        eastern = timezone(timedelta(hours=-5))
        assert days_between(date(2024, 3, 1), datetime(2024, 3, 4, 23, 0, tzinfo=eastern)) == 4


# ============================================================================
# First reminder
# ============================================================================

class TestFirstReminder:
    """Empty history: trigger depends on the sign of the offset."""

    def test_due_today_positive_offset_sends(self):
        config = ReminderPolicyConfig(first_reminder_offset_days=3)
        d = decide(_invoice(due=TODAY), config, [], now=NOW)
        assert d == ReminderDecision(True, 1, Tone.POLITE, 0)

    def test_negative_offset_after_enough_days_sends(self):
        config = ReminderPolicyConfig(first_reminder_offset_days=-3)
        d = decide(_invoice(due=TODAY - timedelta(days=10)), config, [], now=NOW)
        assert d.should_send is True
        assert d.sequence_number == 1
        assert d.days_overdue == 10

    @pytest.mark.parametrize("offset", [0, 1, 3, 30])
    @pytest.mark.parametrize("days_overdue,expected", [
        (-5, False),
        (-1, False),
        (0, True),
        (1, True),
        (45, True),
    ])
    def test_non_negative_offset_triggers_on_due_date(self, offset, days_overdue, expected):
        config = ReminderPolicyConfig(first_reminder_offset_days=offset)
        invoice = _invoice(due=TODAY - timedelta(days=days_overdue))
        d = decide(invoice, config, [], now=NOW)
        assert d.should_send is expected
        assert d.days_overdue == days_overdue

    @pytest.mark.parametrize("offset,days_overdue,expected", [
        (-3, 0, False),
        (-3, 2, False),
        (-3, 3, True),
        (-3, 4, True),
        (-1, 0, False),
        (-1, 1, True),
        (-30, 29, False),
        (-30, 30, True),
    ])
    def test_negative_offset_waits_after_due_date(self, offset, days_overdue, expected):
        config = ReminderPolicyConfig(first_reminder_offset_days=offset)
        invoice = _invoice(due=TODAY - timedelta(days=days_overdue))
        assert decide(invoice, config, [], now=NOW).should_send is expected

    def test_not_due_yet_reports_sequence_zero_and_first_tone(self):
        config = ReminderPolicyConfig(first_tone=Tone.FRIENDLY)
        d = decide(_invoice(due=TODAY + timedelta(days=4)), config, [], now=NOW)
        assert d == ReminderDecision(False, 0, Tone.FRIENDLY, -4)

    def test_first_reminder_uses_first_tone(self):
        config = ReminderPolicyConfig(first_tone=Tone.NEUTRAL)
        d = decide(_invoice(), config, [], now=NOW)
        assert d.tone is Tone.NEUTRAL

    def test_status_is_not_inspected(self):
        """Filtering out paid invoices is the runner's job."""
        paid = _invoice(status=InvoiceStatus.PAID)
        assert decide(paid, ReminderPolicyConfig(), [], now=NOW).should_send is True


# ============================================================================
# Follow-ups
# ============================================================================

class TestFollowUps:

    def test_interval_not_elapsed_holds(self):
        config = ReminderPolicyConfig(follow_up_interval_days=7)
        history = [_record(1, 5, Tone.POLITE)]
        d = decide(_invoice(due=TODAY - timedelta(days=8)), config, history, now=NOW)
        assert d == ReminderDecision(False, 1, Tone.POLITE, 8)

    def test_interval_elapsed_sends_next(self):
        config = ReminderPolicyConfig(follow_up_interval_days=7)
        history = [_record(1, 7, Tone.POLITE)]
        d = decide(_invoice(due=TODAY - timedelta(days=10)), config, history, now=NOW)
        assert d == ReminderDecision(True, 2, Tone.FIRM, 10)

    def test_interval_counts_from_exact_send_time(self):
        config = ReminderPolicyConfig(follow_up_interval_days=7)
        history = [_record(1, 6.99, Tone.POLITE)]
        assert decide(_invoice(), config, history, now=NOW).should_send is False

    def test_holding_reports_last_tone_not_config_tone(self):
        config = ReminderPolicyConfig(second_tone=Tone.DIRECT)
        history = [_record(1, 1, Tone.FRIENDLY)]
        d = decide(_invoice(), config, history, now=NOW)
        assert d.should_send is False
        assert d.tone is Tone.FRIENDLY

    @pytest.mark.parametrize("sent,expected_tone", [
        (1, Tone.FIRM),
        (2, Tone.URGENT),
        (3, Tone.URGENT),
        (6, Tone.URGENT),
    ])
    def test_tone_escalation(self, sent, expected_tone):
        config = ReminderPolicyConfig(max_reminders=10, follow_up_interval_days=3)
        history = [_record(n, 3 * (sent - n + 1)) for n in range(1, sent + 1)]
        d = decide(_invoice(due=TODAY - timedelta(days=60)), config, history, now=NOW)
        assert d.should_send is True
        assert d.sequence_number == sent + 1
        assert d.tone is expected_tone

    def test_history_order_does_not_matter(self):
        config = ReminderPolicyConfig(max_reminders=5)
        history = _history((2, 8), (1, 15))
        d = decide(_invoice(), config, history, now=NOW)
        assert d.sequence_number == 3
        assert d.should_send is True


# ============================================================================
# Cap
# ============================================================================

class TestCap:

    def test_capped_never_sends_again(self):
        config = ReminderPolicyConfig(max_reminders=3)
        history = _history((1, 30), (2, 23), (3, 16))
        for days_later in (0, 7, 365):
            d = decide(_invoice(due=TODAY - timedelta(days=40)), config, history,
                       now=NOW + timedelta(days=days_later))
            assert d.should_send is False
            assert d.sequence_number == 3
            assert d.tone is Tone.URGENT

    def test_max_one(self):
        config = ReminderPolicyConfig(max_reminders=1)
        d = decide(_invoice(), config, [_record(1, 100)], now=NOW)
        assert d.should_send is False

    def test_history_beyond_cap_is_still_capped(self):
        config = ReminderPolicyConfig(max_reminders=2)
        history = _history((1, 30), (2, 20), (3, 10))
        assert decide(_invoice(), config, history, now=NOW).should_send is False

    @pytest.mark.parametrize("max_reminders", [1, 2, 3, 5, 10])
    def test_simulated_daily_runs_stop_at_cap(self, max_reminders):
        """Drive decide() day by day and append what it says to send."""
        config = ReminderPolicyConfig(
            first_reminder_offset_days=0,
            follow_up_interval_days=2,
            max_reminders=max_reminders,
        )
        clock = FixedClock(NOW)
        engine = ReminderPolicyEngine(clock)
        invoice = _invoice(due=TODAY)
        history: list[ReminderRecord] = []

        for _ in range(60):
            d = engine.decide(invoice, config, history)
            if d.should_send:
                history.append(ReminderRecord("inv-1", d.sequence_number, d.tone, clock.now()))
            clock.advance(days=1)

        assert [r.sequence_number for r in history] == list(range(1, max_reminders + 1))
        assert not history_has_gaps(history)


# ============================================================================
# Gapped history
# ============================================================================

class TestGappedHistory:

    def test_highest_sequence_is_authoritative(self):
        config = ReminderPolicyConfig(max_reminders=3, follow_up_interval_days=7)
        history = [_record(2, 10, Tone.FIRM)]
        d = decide(_invoice(), config, history, now=NOW)
        assert d == ReminderDecision(True, 3, Tone.URGENT, 0)

    def test_gap_reaching_cap_is_capped(self):
        config = ReminderPolicyConfig(max_reminders=3)
        history = [_record(1, 30), _record(3, 10, Tone.URGENT)]
        assert decide(_invoice(), config, history, now=NOW).should_send is False

    @pytest.mark.parametrize("seqs,expected", [
        ([], False),
        ([1], False),
        ([1, 2, 3], False),
        ([3, 1, 2], False),
        ([2], True),
        ([1, 3], True),
        ([1, 1], True),
    ])
    def test_history_has_gaps(self, seqs, expected):
        history = [_record(s, 1) for s in seqs]
        assert history_has_gaps(history) is expected

    def test_last_reminder_picks_highest_sequence(self):
        history = [_record(1, 1), _record(3, 20), _record(2, 2)]
        assert last_reminder(history).sequence_number == 3
        assert last_reminder([]) is None


# ============================================================================
# Engine / purity
# ============================================================================

class TestEngine:

    def test_identical_inputs_identical_decision(self):
        config = ReminderPolicyConfig()
        history = [_record(1, 8)]
        first = decide(_invoice(), config, history, now=NOW)
        second = decide(_invoice(), config, history, now=NOW)
        assert first == second

    def test_decide_does_not_mutate_history(self):
        history = [_record(1, 8)]
        snapshot = list(history)
        decide(_invoice(), ReminderPolicyConfig(), history, now=NOW)
        assert history == snapshot

    def test_engine_reads_injected_clock(self):
        clock = FixedClock(NOW - timedelta(days=2))
        engine = ReminderPolicyEngine(clock)
        invoice = _invoice(due=TODAY)
        assert engine.decide(invoice, ReminderPolicyConfig(), []).should_send is False
        clock.advance(days=2)
        assert engine.decide(invoice, ReminderPolicyConfig(), []).should_send is True

    def test_decision_is_frozen(self):
        d = decide(_invoice(), ReminderPolicyConfig(), [], now=NOW)
        with pytest.raises(AttributeError):
            d.should_send = False


# ============================================================================
# State machine view
# ============================================================================

class TestReminderState:

    def test_states(self):
        config = ReminderPolicyConfig(max_reminders=2)
        assert reminder_state([], config) is ReminderState.NO_REMINDER_SENT
        assert reminder_state([_record(1, 1)], config) is ReminderState.REMINDING
        assert reminder_state(_history((1, 9), (2, 1)), config) is ReminderState.CAPPED


class TestNextReminderDate:

    def test_first_reminder_positive_offset_is_due_date(self):
        config = ReminderPolicyConfig(first_reminder_offset_days=5)
        invoice = _invoice(due=date(2024, 4, 1))
        assert next_reminder_date(invoice, config, []) == date(2024, 4, 1)

    def test_first_reminder_negative_offset(self):
        config = ReminderPolicyConfig(first_reminder_offset_days=-3)
        invoice = _invoice(due=date(2024, 4, 1))
        assert next_reminder_date(invoice, config, []) == date(2024, 4, 4)

    def test_follow_up_date(self):
        config = ReminderPolicyConfig(follow_up_interval_days=7)
        history = [ReminderRecord("inv-1", 1, Tone.POLITE,
                                  datetime(2024, 3, 10, 18, 30, tzinfo=timezone.utc))]
        assert next_reminder_date(_invoice(), config, history) == date(2024, 3, 17)

    def test_capped_has_no_next_date(self):
        config = ReminderPolicyConfig(max_reminders=1)
        assert next_reminder_date(_invoice(), config, [_record(1, 3)]) is None

    def test_no_due_date(self):
        assert next_reminder_date(_invoice(due=None), ReminderPolicyConfig(), []) is None

    def test_agrees_with_decide(self):
        config = ReminderPolicyConfig(first_reminder_offset_days=-2)
        invoice = _invoice(due=TODAY)
        first_day = next_reminder_date(invoice, config, [])
        at = datetime.combine(first_day, datetime.min.time(), tzinfo=timezone.utc)
        assert decide(invoice, config, [], now=at - timedelta(seconds=1)).should_send is False
        assert decide(invoice, config, [], now=at).should_send is True

    def test_engine_delegates(self):
        engine = ReminderPolicyEngine(FixedClock(NOW))
        invoice = _invoice(due=date(2024, 4, 1))
        assert engine.next_reminder_date(invoice, ReminderPolicyConfig(), []) == date(2024, 4, 1)
