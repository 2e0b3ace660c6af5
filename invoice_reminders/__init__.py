"""Invoice Reminders - Reminder Cadence and Tone Escalation.

Dataclasses for invoices, reminder history and per-user reminder policy,
the pure policy engine that decides when to remind and in which tone, and
the campaign runner that renders, sends and records reminders.

The ReminderStore provides SQLite-backed storage with an append-only
reminder history and campaign run tracking.
"""

from .models import (
    DeliveryStatus,
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    Register,
    ReminderDecision,
    ReminderPolicyConfig,
    ReminderRecord,
    RenderedEmail,
    Tone,
    UserAccount,
)
from .policy import ReminderPolicyEngine, decide

from .campaign import CampaignResult, ReminderCampaignRunner
from .store import ReminderStore

__all__ = [
    "CampaignResult",
    "DeliveryStatus",
    "EmailTemplate",
    "Invoice",
    "InvoiceStatus",
    "Register",
    "ReminderCampaignRunner",
    "ReminderDecision",
    "ReminderPolicyConfig",
    "ReminderPolicyEngine",
    "ReminderRecord",
    "ReminderStore",
    "RenderedEmail",
    "Tone",
    "UserAccount",
    "decide",
]
