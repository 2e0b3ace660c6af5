"""Exception hierarchy for the invoice reminder service.

The policy engine itself raises nothing for well-formed input.  Everything
here is raised by collaborators (configuration loader, store, transport)
and caught per invoice by the campaign runner.
"""

from __future__ import annotations

from typing import Optional


class ReminderError(Exception):
    """Base class for all reminder service errors."""


class ConfigurationError(ReminderError):
    """A reminder policy or application config value cannot be interpreted.

    Out-of-range numbers are clamped by the loader; this is only raised for
    values that have no sensible clamp (unknown tone names, non-numeric
    strings, unreadable YAML).
    """


class InvoiceNotEligible(ReminderError):
    """The invoice is not a reminder candidate (status is not ``pending``).

    Not an error condition for the scheduled run, which filters these
    upstream.  Manual send paths raise it so the caller can report why.
    """

    def __init__(self, invoice_id: str, status: str) -> None:
        super().__init__(
            f"Invoice {invoice_id} is not eligible for reminders (status: {status})"
        )
        self.invoice_id = invoice_id
        self.status = status


class PersistenceError(ReminderError):
    """A storage read or write failed."""


class SendError(ReminderError):
    """The email transport could not deliver a message."""

    def __init__(
        self,
        message: str,
        *,
        recipient: str = "",
        code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.recipient = recipient
        self.code = code
