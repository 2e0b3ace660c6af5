"""Invoice Reminders -- Command Line Entry Point.

Subcommands:

    run       Run one reminder campaign over every opted-in user
    import    Import client invoices for a user from an XLSX workbook
    history   Show an invoice's reminder history and what happens next
    preview   Render the next reminder for an invoice without sending it
    runs      List recent campaign runs

Usage::

    # Scheduled daily run (cron / systemd timer):
    python -m invoice_reminders.main run

    # See what would go out, without sending or recording anything:
    python -m invoice_reminders.main run --dry-run

    # Write .eml files instead of using SMTP:
    python -m invoice_reminders.main run --eml-dir output/eml

    # ... or to output.eml_dir from config.yaml:
    python -m invoice_reminders.main run --eml

    # Replay a run at a fixed instant:
    python -m invoice_reminders.main run --now 2024-03-15T09:00:00Z
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .campaign import ReminderCampaignRunner
from .clock import Clock, FixedClock, SystemClock, parse_instant
from .config import AppConfig, get_config
from .data_loader import load_invoices
from .email_sender import EmailSender, EmlFileSender, RecordingSender, SMTPEmailSender
from .errors import PersistenceError, ReminderError
from .models import UserAccount, ensure_eligible
from .policy import (
    ReminderPolicyEngine,
    ReminderState,
    next_reminder_date,
    reminder_state,
)
from .store import ReminderStore
from .template_engine import TemplateEngine, format_date

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool, log_file: str = "") -> None:
    log_level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
        handlers=handlers,
    )


def _open_store(config: AppConfig, db_override: Optional[str]) -> ReminderStore:
    db_path = Path(db_override) if db_override else config.storage.resolved_path
    return ReminderStore(
        db_path,
        defaults=config.default_policy(),
        limits=config.limits,
    )


def _make_clock(now: Optional[str]) -> Clock:
    if now:
        return FixedClock(parse_instant(now))
    return SystemClock()


def _make_sender(config: AppConfig, args: argparse.Namespace) -> EmailSender:
    if args.dry_run:
        return RecordingSender()
    if args.eml_dir or args.eml:
        eml_dir = args.eml_dir or config.output.resolve(config.output.eml_dir)
        return EmlFileSender(eml_dir, default_sender=config.sender.email)
    if not config.smtp.is_configured:
        raise ReminderError(
            "SMTP is not configured. Set SMTP_USERNAME / SMTP_PASSWORD, "
            "or use --eml-dir or --dry-run."
        )
    return SMTPEmailSender(config.smtp, default_sender=config.sender.email)


def _make_renderer(config: AppConfig) -> TemplateEngine:
    return TemplateEngine(config.templates.resolved_dir, sender_name=config.sender.name)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace, config: AppConfig) -> int:
    logger.debug(
        "Configured schedule: daily at %s %s",
        config.schedule.run_time, config.schedule.timezone,
    )
    store = _open_store(config, args.db)
    clock = _make_clock(args.now)
    runner = ReminderCampaignRunner(
        store,
        _make_sender(config, args),
        clock=clock,
        engine=ReminderPolicyEngine(clock),
        renderer=_make_renderer(config),
        dry_run=args.dry_run,
        use_html=config.templates.use_html,
        default_sender=config.sender.email,
    )
    result = runner.run()

    print()
    print(result.summary())
    print(f"\nCampaign {result.run_id[:8]} finished in {result.duration_seconds:.1f}s")
    return 0 if result.success else 1


def cmd_import(args: argparse.Namespace, config: AppConfig) -> int:
    store = _open_store(config, args.db)
    result = load_invoices(args.xlsx, user_id=args.user, sheet=args.sheet)
    result.print_summary()

    existing = store.get_user(args.user)
    store.upsert_user(UserAccount(
        user_id=args.user,
        email=args.email or (existing.email if existing else ""),
        name=args.name or (existing.name if existing else ""),
    ))
    store.get_settings(args.user)

    added = 0
    duplicates = 0
    for invoice in result.invoices:
        if store.find_invoice(args.user, invoice.invoice_number) is not None:
            duplicates += 1
            logger.warning("Invoice %s already exists -- skipping", invoice.invoice_number)
            continue
        store.add_invoice(invoice)
        added += 1

    print(f"\nImported {added} invoices for {args.user} ({duplicates} already present)")
    return 0


def cmd_history(args: argparse.Namespace, config: AppConfig) -> int:
    store = _open_store(config, args.db)
    invoice = store.get_invoice(args.invoice_id)
    if invoice is None:
        print(f"\nERROR: invoice {args.invoice_id} not found")
        return 1

    policy = store.get_settings(invoice.user_id)
    history = store.get_reminder_history(invoice.id)

    print("=" * 65)
    print(f"  Invoice {invoice.invoice_number}  {invoice.client_name}")
    due = invoice.due_date_formatted or "-"
    print(f"  {invoice.amount_formatted}  due {due}  [{invoice.status.value}]")
    print("-" * 65)
    if not history:
        print("  No reminders sent yet.")
    for record in history:
        print(
            f"  #{record.sequence_number}  {record.sent_at:%Y-%m-%d %H:%M}  "
            f"{record.tone.value:<9s} {record.status.value:<9s} {record.email_subject}"
        )
    print("-" * 65)
    print(f"  State          : {reminder_state(history, policy).value}")
    if invoice.due_date is None:
        print("  NOTE: invoice has no due date; no reminder can be scheduled.")
    else:
        engine = ReminderPolicyEngine(_make_clock(args.now))
        decision = engine.decide(invoice, policy, history)
        print(f"  Days overdue   : {decision.days_overdue}")
        if decision.should_send:
            print(f"  Next run sends : #{decision.sequence_number} ({decision.tone.value})")
        else:
            next_date = next_reminder_date(invoice, policy, history)
            print(f"  Next reminder  : {format_date(next_date) if next_date else 'none (capped)'}")
    if not invoice.is_pending:
        print("  NOTE: invoice is not pending; the scheduled run will skip it.")
    print("=" * 65)
    return 0


def cmd_preview(args: argparse.Namespace, config: AppConfig) -> int:
    store = _open_store(config, args.db)
    invoice = store.get_invoice(args.invoice_id)
    if invoice is None:
        print(f"\nERROR: invoice {args.invoice_id} not found")
        return 1
    ensure_eligible(invoice)
    if invoice.due_date is None:
        print(f"\nERROR: invoice {invoice.invoice_number} has no due date; nothing to preview")
        return 1

    policy = store.get_settings(invoice.user_id)
    history = store.get_reminder_history(invoice.id)
    clock = _make_clock(args.now)
    decision = ReminderPolicyEngine(clock).decide(invoice, policy, history)

    if decision.should_send:
        sequence = decision.sequence_number
    elif reminder_state(history, policy) is ReminderState.CAPPED:
        print(f"\nInvoice {invoice.invoice_number} has reached its reminder limit.")
        return 0
    else:
        sequence = decision.sequence_number + 1
    tone = policy.tone_for_sequence(sequence)

    user = store.get_user(invoice.user_id)
    email = _make_renderer(config).render(
        tone,
        invoice,
        policy,
        days_overdue=decision.days_overdue,
        is_html=args.html,
        template=store.get_default_template(invoice.user_id, tone),
        sender_name=user.name if user else "",
        today=clock.now().date(),
    )

    status = "due now" if decision.should_send else "not due yet"
    print(f"Reminder #{sequence} ({tone.value}, {status})")
    print(f"To:      {invoice.client_email or '(no email)'}")
    print(f"Subject: {email.subject}")
    print("-" * 65)
    print(email.content)
    return 0


def cmd_runs(args: argparse.Namespace, config: AppConfig) -> int:
    store = _open_store(config, args.db)
    runs = store.get_campaign_runs(limit=args.limit)
    if not runs:
        print("No campaign runs recorded.")
        return 0

    print(f"{'Run':<10s} {'Started':<26s} {'Sent':>5s} {'Skip':>5s} {'Cap':>5s} {'Err':>5s}")
    print("-" * 65)
    for run in runs:
        flag = " dry" if run["dry_run"] else ""
        print(
            f"{run['run_id'][:8]:<10s} {run['started_at'][:25]:<26s} "
            f"{run['processed_count']:>5d} {run['skipped_count']:>5d} "
            f"{run['capped_count']:>5d} {run['error_count']:>5d}{flag}"
        )
    return 0


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice-reminders",
        description="Invoice Reminders - automated payment reminder emails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python -m invoice_reminders.main run\n"
            "  python -m invoice_reminders.main run --dry-run --now 2024-03-15\n"
            "  python -m invoice_reminders.main import data/invoices.xlsx --user u1\n"
            "  python -m invoice_reminders.main history <invoice-id>\n"
            "  python -m invoice_reminders.main runs --limit 5\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: project root config.yaml)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the SQLite database (overrides config)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Run one reminder campaign")
    p_run.add_argument("--dry-run", action="store_true",
                       help="Evaluate and render, but neither send nor record")
    p_run.add_argument("--now", type=str, default=None,
                       help="Evaluate at this ISO 8601 instant instead of the current time")
    p_run.add_argument("--eml-dir", type=str, default=None,
                       help="Write .eml files to this directory instead of using SMTP")
    p_run.add_argument("--eml", action="store_true",
                       help="Write .eml files to output.eml_dir from the config")
    p_run.set_defaults(func=cmd_run)

    p_import = sub.add_parser("import", help="Import invoices from an XLSX workbook")
    p_import.add_argument("xlsx", type=str, help="Path to the workbook")
    p_import.add_argument("--user", required=True, help="Owner user id")
    p_import.add_argument("--email", default="", help="Owner email (From address)")
    p_import.add_argument("--name", default="", help="Owner display name")
    p_import.add_argument("--sheet", default=None, help="Sheet name (default: active sheet)")
    p_import.set_defaults(func=cmd_import)

    p_history = sub.add_parser("history", help="Show an invoice's reminder history")
    p_history.add_argument("invoice_id")
    p_history.add_argument("--now", type=str, default=None)
    p_history.set_defaults(func=cmd_history)

    p_preview = sub.add_parser("preview", help="Render the next reminder for an invoice")
    p_preview.add_argument("invoice_id")
    p_preview.add_argument("--html", action="store_true", help="Render the HTML body")
    p_preview.add_argument("--now", type=str, default=None)
    p_preview.set_defaults(func=cmd_preview)

    p_runs = sub.add_parser("runs", help="List recent campaign runs")
    p_runs.add_argument("--limit", type=int, default=20)
    p_runs.set_defaults(func=cmd_runs)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point.

    Returns:
        Exit code (0 = success, 1 = error or a run that collected errors).
    """
    args = build_parser().parse_args(argv)

    try:
        config = get_config(args.config)
    except ReminderError as exc:
        print(f"\nERROR: {exc}")
        return 1

    log_file = config.output.resolve(config.output.log_file) if config.output.log_file else ""
    _configure_logging(args.verbose, str(log_file))

    try:
        return args.func(args, config)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except PersistenceError as exc:
        logger.error("Storage error: %s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except (ReminderError, ValueError) as exc:
        logger.error("%s", exc)
        print(f"\nERROR: {exc}")
        return 1
    except Exception as exc:
        logger.exception("Unexpected error")
        print(f"\nUNEXPECTED ERROR: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
