"""Invoice Reminders -- Campaign Runner.

One scheduled run of the reminder service:

    1. List users with automated reminders enabled
    2. Load each user's normalized reminder settings
    3. Load the user's pending invoices
    4. For each invoice, read its history and ask the policy engine
    5. If a reminder is due: render it, send it, append it to the history
    6. Collect per-invoice failures without stopping the run
    7. Record the run and print a summary

A failed send writes no history, so the next run re-evaluates the same
invoice and tries again.  There are no retries inside a run.

Usage::

    from invoice_reminders.campaign import ReminderCampaignRunner

    runner = ReminderCampaignRunner(store, sender, clock=SystemClock())
    result = runner.run()
    print(result.summary())
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from jinja2 import TemplateError

from .clock import Clock, SystemClock
from .email_sender import EmailSender
from .errors import ConfigurationError, PersistenceError, ReminderError, SendError
from .models import (
    DeliveryStatus,
    Invoice,
    ReminderPolicyConfig,
    ReminderRecord,
)
from .policy import ReminderPolicyEngine, ReminderState, history_has_gaps, reminder_state
from .store import ReminderStore
from .template_engine import TemplateEngine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Campaign Result
# ---------------------------------------------------------------------------

@dataclass
class CampaignError:
    """One failure collected during a run."""

    user_id: str
    invoice_id: str
    stage: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "user_id": self.user_id,
            "invoice_id": self.invoice_id,
            "stage": self.stage,
            "message": self.message,
        }


@dataclass
class PlannedReminder:
    """A reminder a dry run would have sent."""

    user_id: str
    invoice_id: str
    invoice_number: str
    recipient: str
    sequence_number: int
    tone: str
    subject: str


@dataclass
class CampaignResult:
    """Container for the output of one campaign run."""

    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    dry_run: bool = False

    # Reminders sent and recorded
    processed_count: int = 0
    errors: list[CampaignError] = field(default_factory=list)

    # Statistics
    users_processed: int = 0
    invoices_evaluated: int = 0
    skipped_count: int = 0
    capped_count: int = 0
    gap_warnings: int = 0
    planned: list[PlannedReminder] = field(default_factory=list)

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def duration_seconds(self) -> float:
        """Run time in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def add_error(self, user_id: str, invoice_id: str, stage: str, message: str) -> None:
        self.errors.append(CampaignError(user_id, invoice_id, stage, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "processed_count": self.processed_count,
            "users_processed": self.users_processed,
            "invoices_evaluated": self.invoices_evaluated,
            "skipped_count": self.skipped_count,
            "capped_count": self.capped_count,
            "gap_warnings": self.gap_warnings,
            "planned_count": len(self.planned),
            "errors": [e.to_dict() for e in self.errors],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def summary(self) -> str:
        """Human-readable summary of the run."""
        lines = [
            "=" * 65,
            "  Invoice Reminders -- Campaign Summary"
            + ("  [DRY RUN]" if self.dry_run else ""),
            "=" * 65,
            f"  Users processed     : {self.users_processed}",
            f"  Invoices evaluated  : {self.invoices_evaluated}",
            f"  Not due yet         : {self.skipped_count}",
            f"  Capped              : {self.capped_count}",
            "-" * 65,
        ]
        if self.dry_run:
            lines.append(f"  WOULD SEND          : {len(self.planned)}")
            for p in self.planned:
                lines.append(
                    f"    #{p.sequence_number} {p.tone:<9s} {p.invoice_number:<14s} "
                    f"-> {p.recipient}"
                )
        else:
            lines.append(f"  REMINDERS SENT      : {self.processed_count}")
        if self.gap_warnings:
            lines.append(f"  Gapped histories    : {self.gap_warnings}")
        if self.errors:
            lines.append("-" * 65)
            lines.append(f"  Errors ({len(self.errors)}):")
            for err in self.errors:
                where = err.invoice_id or "-"
                lines.append(f"    [{err.stage}] user={err.user_id} invoice={where}: {err.message}")
        lines.append("=" * 65)
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ReminderCampaignRunner:
    """Drives one run over every opted-in user and their pending invoices.

    Invoices are processed sequentially.  Any failure for one invoice (or
    one user's settings) is logged, collected into ``result.errors``, and
    the run moves on.
    """

    def __init__(
        self,
        store: ReminderStore,
        sender: EmailSender,
        *,
        clock: Optional[Clock] = None,
        engine: Optional[ReminderPolicyEngine] = None,
        renderer: Optional[TemplateEngine] = None,
        dry_run: bool = False,
        use_html: bool = False,
        default_sender: str = "",
    ) -> None:
        self.store = store
        self.sender = sender
        self.clock = clock or SystemClock()
        self.engine = engine or ReminderPolicyEngine(self.clock)
        self.renderer = renderer or TemplateEngine()
        self.dry_run = dry_run
        self.use_html = use_html
        self.default_sender = default_sender

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def run(self) -> CampaignResult:
        """Execute one campaign run and return its result."""
        result = CampaignResult(dry_run=self.dry_run, started_at=self.clock.now())
        logger.info(
            "Starting reminder campaign %s%s",
            result.run_id[:8], " (dry run)" if self.dry_run else "",
        )

        try:
            user_ids = self.store.get_opted_in_user_ids()
        except PersistenceError as exc:
            logger.error("Cannot list opted-in users: %s", exc)
            result.add_error("", "", "users", str(exc))
            user_ids = []

        logger.info("Found %d users with automated reminders enabled", len(user_ids))

        for user_id in user_ids:
            self._process_user(user_id, result)

        result.completed_at = self.clock.now()
        self._record_run(result)

        logger.info(
            "Campaign %s complete: %d sent, %d errors",
            result.run_id[:8], result.processed_count, len(result.errors),
        )
        return result

    # -------------------------------------------------------------------
    # Internal: per user
    # -------------------------------------------------------------------

    def _process_user(self, user_id: str, result: CampaignResult) -> None:
        stage = "settings"
        try:
            config = self.store.get_settings(user_id)
            stage = "invoices"
            invoices = self.store.get_pending_invoices(user_id)
            user = self.store.get_user(user_id)
        except (ConfigurationError, PersistenceError) as exc:
            logger.error("Skipping user %s (%s): %s", user_id, stage, exc)
            result.add_error(user_id, "", stage, str(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error loading user %s (%s)", user_id, stage)
            result.add_error(user_id, "", stage, f"{type(exc).__name__}: {exc}")
            return

        result.users_processed += 1
        from_addr = (user.email if user else "") or self.default_sender
        sender_name = user.name if user else ""
        logger.debug("User %s: %d pending invoices", user_id, len(invoices))

        sent_before = result.processed_count
        for invoice in invoices:
            result.invoices_evaluated += 1
            self._process_invoice(invoice, config, result, from_addr, sender_name)

        logger.info(
            "Processed %d reminders for user %s",
            result.processed_count - sent_before, user_id,
        )

    # -------------------------------------------------------------------
    # Internal: per invoice
    # -------------------------------------------------------------------

    def _process_invoice(
        self,
        invoice: Invoice,
        config: ReminderPolicyConfig,
        result: CampaignResult,
        from_addr: str,
        sender_name: str,
    ) -> None:
        stage = "history"
        try:
            history = self.store.get_reminder_history(invoice.id)
            if history_has_gaps(history):
                result.gap_warnings += 1
                logger.warning(
                    "Invoice %s has a gapped reminder history: %s",
                    invoice.id, [r.sequence_number for r in history],
                )

            stage = "decide"
            decision = self.engine.decide(invoice, config, history)
            if not decision.should_send:
                if reminder_state(history, config) is ReminderState.CAPPED:
                    result.capped_count += 1
                else:
                    result.skipped_count += 1
                return

            logger.info(
                "Reminder #%d (%s) due for invoice %s, %d days overdue",
                decision.sequence_number, decision.tone.value,
                invoice.invoice_number, decision.days_overdue,
            )

            stage = "render"
            template = self.store.get_default_template(invoice.user_id, decision.tone)
            now = self.clock.now()
            email = self.renderer.render(
                decision.tone,
                invoice,
                config,
                days_overdue=decision.days_overdue,
                is_html=self.use_html,
                template=template,
                sender_name=sender_name,
                today=now.date(),
            )

            if self.dry_run:
                result.planned.append(PlannedReminder(
                    user_id=invoice.user_id,
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    recipient=invoice.client_email,
                    sequence_number=decision.sequence_number,
                    tone=decision.tone.value,
                    subject=email.subject,
                ))
                return

            stage = "send"
            message_id = self.sender.send(
                email.subject,
                email.content,
                invoice.client_email,
                sender=from_addr or None,
                is_html=email.is_html,
            )

            stage = "record"
            self.store.append_reminder_record(ReminderRecord(
                invoice_id=invoice.id,
                user_id=invoice.user_id,
                sequence_number=decision.sequence_number,
                tone=decision.tone,
                sent_at=now,
                email_subject=email.subject,
                email_content=email.content,
                status=DeliveryStatus.SENT,
                message_id=message_id,
            ))
            result.processed_count += 1

        except SendError as exc:
            logger.error("Send failed for invoice %s: %s", invoice.id, exc)
            result.add_error(invoice.user_id, invoice.id, stage, str(exc))
        except PersistenceError as exc:
            if stage == "record":
                logger.error(
                    "Reminder for invoice %s was sent but not recorded: %s",
                    invoice.id, exc,
                )
            else:
                logger.error("Storage error for invoice %s: %s", invoice.id, exc)
            result.add_error(invoice.user_id, invoice.id, stage, str(exc))
        except (ReminderError, TemplateError) as exc:
            logger.error("Failed on invoice %s (%s): %s", invoice.id, stage, exc)
            result.add_error(invoice.user_id, invoice.id, stage, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error on invoice %s (%s)", invoice.id, stage)
            result.add_error(invoice.user_id, invoice.id, stage, f"{type(exc).__name__}: {exc}")

    def _record_run(self, result: CampaignResult) -> None:
        try:
            self.store.record_campaign_run(result.to_dict())
        except PersistenceError as exc:
            logger.error("Could not record campaign run %s: %s", result.run_id, exc)
            result.add_error("", "", "report", str(exc))
