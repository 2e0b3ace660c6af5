"""Data models for the invoice reminder service.

All models are plain dataclasses with type hints.  No ORM, no Pydantic --
the SQLite store in ``store.py`` converts rows to and from these types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from .errors import InvoiceNotEligible


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Register(str, Enum):
    """The three prose registers a reminder email can be written in."""

    GENTLE = "gentle"
    FIRM = "firm"
    URGENT = "urgent"


class Tone(str, Enum):
    """Email voice selected per reminder sequence position.

    Users may pick any of these for each of their three tone slots.  Each
    tone belongs to one prose register, which picks the built-in template.
    """

    POLITE = "polite"
    FRIENDLY = "friendly"
    NEUTRAL = "neutral"
    FIRM = "firm"
    DIRECT = "direct"
    ASSERTIVE = "assertive"
    URGENT = "urgent"
    FINAL = "final"
    SERIOUS = "serious"

    @property
    def register(self) -> Register:
        return _TONE_REGISTERS[self]

    @classmethod
    def parse(cls, value: Any) -> Tone:
        """Coerce a string (any case, surrounding whitespace) to a Tone.

        Raises ValueError for unknown names.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown tone {value!r}; expected one of "
                f"{', '.join(t.value for t in cls)}"
            ) from None


_TONE_REGISTERS: dict[Tone, Register] = {
    Tone.POLITE: Register.GENTLE,
    Tone.FRIENDLY: Register.GENTLE,
    Tone.NEUTRAL: Register.GENTLE,
    Tone.FIRM: Register.FIRM,
    Tone.DIRECT: Register.FIRM,
    Tone.ASSERTIVE: Register.FIRM,
    Tone.URGENT: Register.URGENT,
    Tone.FINAL: Register.URGENT,
    Tone.SERIOUS: Register.URGENT,
}


class InvoiceStatus(str, Enum):
    """Lifecycle status of a client invoice."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    DRAFT = "draft"
    PARTIALLY_PAID = "partially_paid"


class DeliveryStatus(str, Enum):
    """Delivery state of a sent reminder (the only mutable part of a record)."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"
    REPLIED = "replied"
    BOUNCED = "bounced"


# ---------------------------------------------------------------------------
# Per-user reminder policy
# ---------------------------------------------------------------------------

DEFAULT_FIRST_REMINDER_OFFSET_DAYS = 3
DEFAULT_FOLLOW_UP_INTERVAL_DAYS = 7
DEFAULT_MAX_REMINDERS = 3
DEFAULT_EMAIL_SIGNATURE = "Best regards,"


@dataclass
class ReminderPolicyConfig:
    """A user's reminder cadence and tone escalation settings.

    ``first_reminder_offset_days`` is signed:
      positive  send N days before the due date
      zero      send on the due date
      negative  send N days after the due date

    Values are expected to be normalized already (see
    ``config.normalize_policy_config``); the policy engine does not clamp.
    """

    automated_reminders_enabled: bool = True
    first_reminder_offset_days: int = DEFAULT_FIRST_REMINDER_OFFSET_DAYS
    follow_up_interval_days: int = DEFAULT_FOLLOW_UP_INTERVAL_DAYS
    max_reminders: int = DEFAULT_MAX_REMINDERS
    first_tone: Tone = Tone.POLITE
    second_tone: Tone = Tone.FIRM
    third_tone: Tone = Tone.URGENT

    # Used by templating, not by the policy decision
    business_name: str = ""
    email_signature: str = DEFAULT_EMAIL_SIGNATURE

    def tone_for_sequence(self, sequence_number: int) -> Tone:
        """Tone for the Nth reminder: 1 -> first, 2 -> second, 3+ -> third."""
        if sequence_number <= 1:
            return self.first_tone
        if sequence_number == 2:
            return self.second_tone
        return self.third_tone

    @property
    def tones(self) -> tuple[Tone, Tone, Tone]:
        return (self.first_tone, self.second_tone, self.third_tone)

    def to_dict(self) -> dict[str, Any]:
        return {
            "automated_reminders_enabled": self.automated_reminders_enabled,
            "first_reminder_offset_days": self.first_reminder_offset_days,
            "follow_up_interval_days": self.follow_up_interval_days,
            "max_reminders": self.max_reminders,
            "first_tone": self.first_tone.value,
            "second_tone": self.second_tone.value,
            "third_tone": self.third_tone.value,
            "business_name": self.business_name,
            "email_signature": self.email_signature,
        }


# ---------------------------------------------------------------------------
# Core records
# ---------------------------------------------------------------------------

@dataclass
class UserAccount:
    """A tenant of the invoicing product."""

    user_id: str
    email: str = ""
    name: str = ""


@dataclass
class Invoice:
    """A client invoice owned by one user.  Read-only to the policy engine."""

    id: str
    user_id: str
    invoice_number: str
    client_name: str
    client_email: str = ""
    amount: float = 0.0
    currency: str = "USD"
    issue_date: date | None = None
    due_date: date | None = None
    status: InvoiceStatus = InvoiceStatus.PENDING
    description: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status is InvoiceStatus.PENDING

    @property
    def amount_formatted(self) -> str:
        """Currency-prefixed amount, e.g. 'USD 1,250.00'."""
        return f"{self.currency} {self.amount:,.2f}"

    @property
    def due_date_formatted(self) -> str:
        """Human-readable due date, e.g. 'Mar 15, 2024'."""
        if self.due_date is None:
            return ""
        return self.due_date.strftime("%b %d, %Y")


def ensure_eligible(invoice: Invoice) -> Invoice:
    """Raise InvoiceNotEligible unless the invoice is pending."""
    if not invoice.is_pending:
        raise InvoiceNotEligible(invoice.id, invoice.status.value)
    return invoice


@dataclass
class ReminderRecord:
    """One sent reminder.  Append-only; only delivery fields change later."""

    invoice_id: str
    sequence_number: int
    tone: Tone
    sent_at: datetime
    id: str = ""
    user_id: str = ""
    email_subject: str = ""
    email_content: str = ""
    status: DeliveryStatus = DeliveryStatus.SENT
    message_id: str = ""
    delivered_at: datetime | None = None
    opened_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "user_id": self.user_id,
            "sequence_number": self.sequence_number,
            "tone": self.tone.value,
            "sent_at": self.sent_at.isoformat(),
            "email_subject": self.email_subject,
            "status": self.status.value,
            "message_id": self.message_id,
        }


@dataclass(frozen=True)
class ReminderDecision:
    """Output of one policy evaluation.  Never persisted by the engine."""

    should_send: bool
    sequence_number: int
    tone: Tone
    days_overdue: int


@dataclass
class RenderedEmail:
    """Subject and body produced by the template engine."""

    subject: str
    body: str
    is_html: bool = False
    body_html: str = ""

    @property
    def content(self) -> str:
        """The body the transport should send, honoring ``is_html``."""
        return self.body_html if self.is_html and self.body_html else self.body


@dataclass
class EmailTemplate:
    """A user's custom template for one tone.

    ``subject`` and ``content`` use ``{placeholder}`` syntax.  An active
    default template replaces the built-in prose for its tone.
    """

    user_id: str
    name: str
    tone: Tone
    subject: str
    content: str
    id: str = ""
    is_html: bool = False
    is_default: bool = False
    is_active: bool = True
    description: str = ""
    tags: list[str] = field(default_factory=list)
