"""
Invoice Reminders -- SQLite Store

Persistent storage for users, their reminder settings, client invoices,
the append-only reminder history, custom email templates and campaign runs.

Database schema:
    users              - Tenants of the invoicing product
    user_settings      - One reminder policy row per user
    client_invoices    - Invoices owned by users
    invoice_reminders  - Append-only history, UNIQUE(invoice_id, reminder_number)
    email_templates    - Per-user custom templates keyed by tone
    campaign_runs      - One row per scheduled run

Usage:
    from invoice_reminders.store import ReminderStore

    store = ReminderStore("reminders.db")
    for user_id, config in store.get_opted_in_users_with_settings():
        for invoice in store.get_pending_invoices(user_id):
            history = store.get_reminder_history(invoice.id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from .clock import parse_instant, to_utc
from .config import PolicyLimits, normalize_policy_config
from .errors import PersistenceError
from .models import (
    DeliveryStatus,
    EmailTemplate,
    Invoice,
    InvoiceStatus,
    ReminderPolicyConfig,
    ReminderRecord,
    Tone,
    UserAccount,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_PRAGMA_SETTINGS = [
    "PRAGMA journal_mode=WAL;",
    "PRAGMA foreign_keys=ON;",
    "PRAGMA busy_timeout=5000;",
]

_SETTINGS_COLUMNS = (
    "automated_reminders_enabled",
    "first_reminder_offset_days",
    "follow_up_interval_days",
    "max_reminders",
    "first_tone",
    "second_tone",
    "third_tone",
    "business_name",
    "email_signature",
)


# ---------------------------------------------------------------------------
# Database Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    user_id     TEXT PRIMARY KEY,
    email       TEXT NOT NULL DEFAULT '',
    name        TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL DEFAULT ''
);

-- Values are stored as entered; they are normalized on read
CREATE TABLE IF NOT EXISTS user_settings (
    user_id                     TEXT PRIMARY KEY,
    automated_reminders_enabled INTEGER NOT NULL DEFAULT 1,
    first_reminder_offset_days  INTEGER,
    follow_up_interval_days     INTEGER,
    max_reminders               INTEGER,
    first_tone                  TEXT,
    second_tone                 TEXT,
    third_tone                  TEXT,
    business_name               TEXT NOT NULL DEFAULT '',
    email_signature             TEXT NOT NULL DEFAULT '',
    updated_at                  TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

CREATE TABLE IF NOT EXISTS client_invoices (
    id              TEXT PRIMARY KEY,
    user_id         TEXT NOT NULL,
    invoice_number  TEXT NOT NULL,
    client_name     TEXT NOT NULL DEFAULT '',
    client_email    TEXT NOT NULL DEFAULT '',
    amount          REAL NOT NULL DEFAULT 0.0,
    currency        TEXT NOT NULL DEFAULT 'USD',
    issue_date      TEXT,
    due_date        TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    description     TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL DEFAULT '',
    updated_at      TEXT NOT NULL DEFAULT '',
    UNIQUE (user_id, invoice_number),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
);

-- Append-only; only the delivery columns are ever updated
CREATE TABLE IF NOT EXISTS invoice_reminders (
    id               TEXT PRIMARY KEY,
    invoice_id       TEXT NOT NULL,
    user_id          TEXT NOT NULL DEFAULT '',
    reminder_number  INTEGER NOT NULL CHECK (reminder_number >= 1),
    tone             TEXT NOT NULL,
    email_subject    TEXT NOT NULL DEFAULT '',
    email_content    TEXT NOT NULL DEFAULT '',
    status           TEXT NOT NULL DEFAULT 'sent',
    message_id       TEXT NOT NULL DEFAULT '',
    sent_at          TEXT NOT NULL,
    delivered_at     TEXT,
    opened_at        TEXT,
    UNIQUE (invoice_id, reminder_number),
    FOREIGN KEY (invoice_id) REFERENCES client_invoices(id)
);

CREATE TABLE IF NOT EXISTS email_templates (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    tone        TEXT NOT NULL,
    subject     TEXT NOT NULL DEFAULT '',
    content     TEXT NOT NULL DEFAULT '',
    is_html     INTEGER NOT NULL DEFAULT 0,
    is_default  INTEGER NOT NULL DEFAULT 0,
    is_active   INTEGER NOT NULL DEFAULT 1,
    description TEXT NOT NULL DEFAULT '',
    tags_json   TEXT NOT NULL DEFAULT '[]',
    created_at  TEXT NOT NULL DEFAULT '',
    updated_at  TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS campaign_runs (
    run_id              TEXT PRIMARY KEY,
    started_at          TEXT NOT NULL DEFAULT '',
    completed_at        TEXT,
    dry_run             INTEGER NOT NULL DEFAULT 0,
    users_processed     INTEGER NOT NULL DEFAULT 0,
    invoices_evaluated  INTEGER NOT NULL DEFAULT 0,
    processed_count     INTEGER NOT NULL DEFAULT 0,
    skipped_count       INTEGER NOT NULL DEFAULT 0,
    capped_count        INTEGER NOT NULL DEFAULT 0,
    error_count         INTEGER NOT NULL DEFAULT 0,
    errors_json         TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_invoices_user_status ON client_invoices(user_id, status);
CREATE INDEX IF NOT EXISTS idx_reminders_invoice ON invoice_reminders(invoice_id);
CREATE INDEX IF NOT EXISTS idx_reminders_user ON invoice_reminders(user_id);
CREATE INDEX IF NOT EXISTS idx_templates_user_tone ON email_templates(user_id, tone);
CREATE INDEX IF NOT EXISTS idx_runs_started ON campaign_runs(started_at);
"""


# ---------------------------------------------------------------------------
# Serialization Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return current UTC datetime as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _instant_to_text(value: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so ORDER BY sent_at is chronological
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def _text_to_instant(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return parse_instant(value)


def _date_to_text(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _text_to_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value[:10])


def _row_to_invoice(row: dict[str, Any]) -> Invoice:
    try:
        return Invoice(
            id=row["id"],
            user_id=row["user_id"],
            invoice_number=row["invoice_number"],
            client_name=row["client_name"],
            client_email=row["client_email"],
            amount=float(row["amount"] or 0.0),
            currency=row["currency"] or "USD",
            issue_date=_text_to_date(row["issue_date"]),
            due_date=_text_to_date(row["due_date"]),
            status=InvoiceStatus(row["status"]),
            description=row["description"],
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Unreadable invoice row {row.get('id')}: {exc}") from exc


def _row_to_record(row: dict[str, Any]) -> ReminderRecord:
    try:
        return ReminderRecord(
            id=row["id"],
            invoice_id=row["invoice_id"],
            user_id=row["user_id"],
            sequence_number=int(row["reminder_number"]),
            tone=Tone.parse(row["tone"]),
            sent_at=_text_to_instant(row["sent_at"]),
            email_subject=row["email_subject"],
            email_content=row["email_content"],
            status=DeliveryStatus(row["status"]),
            message_id=row["message_id"],
            delivered_at=_text_to_instant(row["delivered_at"]),
            opened_at=_text_to_instant(row["opened_at"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Unreadable reminder row {row.get('id')}: {exc}") from exc


def _row_to_template(row: dict[str, Any]) -> EmailTemplate:
    try:
        tags = json.loads(row["tags_json"] or "[]")
    except json.JSONDecodeError:
        tags = []
    return EmailTemplate(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        tone=Tone.parse(row["tone"]),
        subject=row["subject"],
        content=row["content"],
        is_html=bool(row["is_html"]),
        is_default=bool(row["is_default"]),
        is_active=bool(row["is_active"]),
        description=row["description"],
        tags=tags if isinstance(tags, list) else [],
    )


# ---------------------------------------------------------------------------
# ReminderStore -- the main public API
# ---------------------------------------------------------------------------

class ReminderStore:
    """SQLite implementation of the reminder storage collaborator.

    Each method opens and closes its own connection.  WAL journal mode lets
    the CLI read while a scheduled run is writing.  Every sqlite error is
    re-raised as PersistenceError.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        defaults: Optional[ReminderPolicyConfig] = None,
        limits: Optional[PolicyLimits] = None,
    ):
        self.db_path = Path(db_path)
        self.defaults = defaults or ReminderPolicyConfig()
        self.limits = limits or PolicyLimits()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Database connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        """Open a new SQLite connection with row_factory and pragmas."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        for pragma in _PRAGMA_SETTINGS:
            conn.execute(pragma)
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open {self.db_path}: {exc}") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._connection() as conn:
            conn.executescript(_SCHEMA_SQL)
            conn.commit()

    # ------------------------------------------------------------------
    # Users and settings
    # ------------------------------------------------------------------

    def upsert_user(self, user: UserAccount) -> None:
        """Insert a user or update their email and name."""
        with self._connection() as conn:
            conn.execute(
                """INSERT INTO users (user_id, email, name, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       email = excluded.email,
                       name = excluded.name""",
                (user.user_id, user.email, user.name, _now_iso()),
            )
            conn.commit()

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT user_id, email, name FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return UserAccount(user_id=row["user_id"], email=row["email"], name=row["name"])

    def get_settings(self, user_id: str) -> ReminderPolicyConfig:
        """Return the user's normalized policy, creating defaults on first access.

        Raises:
            ConfigurationError: If a stored value cannot be interpreted.
            PersistenceError: If the user does not exist or sqlite fails.
        """
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM user_settings WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                self._insert_settings(conn, user_id, self.defaults.to_dict())
                conn.commit()
                logger.debug("Created default reminder settings for user %s", user_id)
                return normalize_policy_config(
                    self.defaults.to_dict(), self.limits, self.defaults
                )
        return normalize_policy_config(dict(row), self.limits, self.defaults)

    def update_settings(self, user_id: str, **changes: Any) -> ReminderPolicyConfig:
        """Merge ``changes`` into the user's settings and store them normalized.

        Unknown keys raise ValueError; uninterpretable values raise
        ConfigurationError before anything is written.
        """
        unknown = set(changes) - set(_SETTINGS_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")

        current = self.get_settings(user_id).to_dict()
        current.update(changes)
        config = normalize_policy_config(current, self.limits, self.defaults)
        values = config.to_dict()

        with self._connection() as conn:
            assignments = ", ".join(f"{col} = ?" for col in _SETTINGS_COLUMNS)
            conn.execute(
                f"UPDATE user_settings SET {assignments}, updated_at = ? WHERE user_id = ?",
                [_settings_value(values[c]) for c in _SETTINGS_COLUMNS]
                + [_now_iso(), user_id],
            )
            conn.commit()
        return config

    def _insert_settings(
        self, conn: sqlite3.Connection, user_id: str, values: dict[str, Any]
    ) -> None:
        columns = ("user_id",) + _SETTINGS_COLUMNS + ("updated_at",)
        placeholders = ", ".join(["?"] * len(columns))
        conn.execute(
            f"INSERT INTO user_settings ({', '.join(columns)}) VALUES ({placeholders})",
            [user_id]
            + [_settings_value(values.get(c)) for c in _SETTINGS_COLUMNS]
            + [_now_iso()],
        )

    def get_opted_in_user_ids(self) -> list[str]:
        """Users whose settings row has automated reminders switched on."""
        with self._connection() as conn:
            rows = conn.execute(
                """SELECT u.user_id FROM users u
                   JOIN user_settings s ON s.user_id = u.user_id
                   WHERE s.automated_reminders_enabled = 1
                   ORDER BY u.user_id"""
            ).fetchall()
        return [r["user_id"] for r in rows]

    def get_opted_in_users_with_settings(self) -> list[tuple[str, ReminderPolicyConfig]]:
        """All opted-in users with their normalized policy.

        Raises ConfigurationError on the first unreadable settings row; the
        campaign runner reads users one by one to isolate that failure.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """SELECT s.* FROM users u
                   JOIN user_settings s ON s.user_id = u.user_id
                   WHERE s.automated_reminders_enabled = 1
                   ORDER BY u.user_id"""
            ).fetchall()
        return [
            (
                row["user_id"],
                normalize_policy_config(dict(row), self.limits, self.defaults),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def add_invoice(self, invoice: Invoice) -> str:
        """Insert an invoice and return its id (generated when empty).

        Raises:
            PersistenceError: On a duplicate invoice number for the user or
                an unknown user.
        """
        invoice_id = invoice.id or str(uuid.uuid4())
        now = _now_iso()
        with self._connection() as conn:
            conn.execute(
                """INSERT INTO client_invoices
                   (id, user_id, invoice_number, client_name, client_email, amount,
                    currency, issue_date, due_date, status, description,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    invoice_id,
                    invoice.user_id,
                    invoice.invoice_number,
                    invoice.client_name,
                    invoice.client_email,
                    invoice.amount,
                    invoice.currency,
                    _date_to_text(invoice.issue_date),
                    _date_to_text(invoice.due_date),
                    invoice.status.value,
                    invoice.description,
                    now,
                    now,
                ),
            )
            conn.commit()
        invoice.id = invoice_id
        return invoice_id

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM client_invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
        return _row_to_invoice(dict(row)) if row else None

    def find_invoice(self, user_id: str, invoice_number: str) -> Optional[Invoice]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM client_invoices WHERE user_id = ? AND invoice_number = ?",
                (user_id, invoice_number),
            ).fetchone()
        return _row_to_invoice(dict(row)) if row else None

    def set_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> bool:
        """Change an invoice's status.  Returns False if it doesn't exist."""
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE client_invoices SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _now_iso(), invoice_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_invoices(
        self,
        user_id: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
    ) -> list[Invoice]:
        """Invoices filtered by owner and/or status, oldest due date first."""
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM client_invoices {where} "
                "ORDER BY due_date IS NULL, due_date, invoice_number",
                params,
            ).fetchall()
        return [_row_to_invoice(dict(r)) for r in rows]

    def get_pending_invoices(self, user_id: str) -> list[Invoice]:
        """The user's ``pending`` invoices that have a due date."""
        return [
            inv
            for inv in self.list_invoices(user_id, InvoiceStatus.PENDING)
            if inv.due_date is not None
        ]

    # ------------------------------------------------------------------
    # Reminder history
    # ------------------------------------------------------------------

    def get_reminder_history(self, invoice_id: str) -> list[ReminderRecord]:
        """All reminders for an invoice, ordered by sent_at ascending."""
        with self._connection() as conn:
            rows = conn.execute(
                """SELECT * FROM invoice_reminders WHERE invoice_id = ?
                   ORDER BY sent_at ASC, reminder_number ASC""",
                (invoice_id,),
            ).fetchall()
        return [_row_to_record(dict(r)) for r in rows]

    def append_reminder_record(self, record: ReminderRecord) -> str:
        """Append one reminder inside an immediate transaction.

        The UNIQUE(invoice_id, reminder_number) constraint makes a second
        writer for the same sequence number fail instead of duplicating it.

        Returns:
            The record id (generated when empty).

        Raises:
            PersistenceError: On a duplicate sequence number or any sqlite error.
        """
        record_id = record.id or str(uuid.uuid4())
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """INSERT INTO invoice_reminders
                       (id, invoice_id, user_id, reminder_number, tone, email_subject,
                        email_content, status, message_id, sent_at, delivered_at,
                        opened_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record_id,
                        record.invoice_id,
                        record.user_id,
                        record.sequence_number,
                        record.tone.value,
                        record.email_subject,
                        record.email_content,
                        record.status.value,
                        record.message_id,
                        _instant_to_text(record.sent_at),
                        _instant_to_text(record.delivered_at),
                        _instant_to_text(record.opened_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise PersistenceError(
                    f"Cannot record reminder #{record.sequence_number} for invoice "
                    f"{record.invoice_id}: {exc}"
                ) from exc
            conn.commit()
        record.id = record_id
        return record_id

    def update_delivery_status(
        self,
        reminder_id: str,
        status: DeliveryStatus,
        at: Optional[datetime] = None,
    ) -> bool:
        """Update the delivery fields of a sent reminder.

        ``delivered`` stamps ``delivered_at`` and ``opened`` stamps
        ``opened_at``.  Returns False if the reminder doesn't exist.
        """
        stamp = _instant_to_text(at) or _now_iso()
        sets = ["status = ?"]
        params: list[Any] = [status.value]
        if status is DeliveryStatus.DELIVERED:
            sets.append("delivered_at = ?")
            params.append(stamp)
        elif status is DeliveryStatus.OPENED:
            sets.append("opened_at = ?")
            params.append(stamp)
        params.append(reminder_id)

        with self._connection() as conn:
            cursor = conn.execute(
                f"UPDATE invoice_reminders SET {', '.join(sets)} WHERE id = ?", params
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_reminder_stats(self, user_id: Optional[str] = None) -> dict[str, Any]:
        """Reminder counts for a dashboard.

        Returns a dict with:
            total: N
            by_tone: {polite: N, firm: N, ...}
            by_status: {sent: N, opened: N, ...}
            invoices_reminded: N
            last_sent_at: ISO string or None
        """
        where = "WHERE user_id = ?" if user_id is not None else ""
        params: tuple = (user_id,) if user_id is not None else ()

        with self._connection() as conn:
            tone_rows = conn.execute(
                f"SELECT tone, COUNT(*) AS cnt FROM invoice_reminders {where} GROUP BY tone",
                params,
            ).fetchall()
            status_rows = conn.execute(
                f"SELECT status, COUNT(*) AS cnt FROM invoice_reminders {where} GROUP BY status",
                params,
            ).fetchall()
            summary = conn.execute(
                f"""SELECT COUNT(*) AS total,
                           COUNT(DISTINCT invoice_id) AS invoices,
                           MAX(sent_at) AS last_sent
                    FROM invoice_reminders {where}""",
                params,
            ).fetchone()

        return {
            "total": summary["total"] or 0,
            "by_tone": {r["tone"]: r["cnt"] for r in tone_rows},
            "by_status": {r["status"]: r["cnt"] for r in status_rows},
            "invoices_reminded": summary["invoices"] or 0,
            "last_sent_at": summary["last_sent"],
        }

    # ------------------------------------------------------------------
    # Email templates
    # ------------------------------------------------------------------

    def save_template(self, template: EmailTemplate) -> str:
        """Insert or replace a template.

        Saving a default template clears the default flag on the user's
        other templates for the same tone.
        """
        template_id = template.id or str(uuid.uuid4())
        now = _now_iso()
        with self._connection() as conn:
            if template.is_default:
                conn.execute(
                    """UPDATE email_templates SET is_default = 0, updated_at = ?
                       WHERE user_id = ? AND tone = ? AND id != ?""",
                    (now, template.user_id, template.tone.value, template_id),
                )
            conn.execute(
                """INSERT INTO email_templates
                   (id, user_id, name, tone, subject, content, is_html, is_default,
                    is_active, description, tags_json, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name,
                       tone = excluded.tone,
                       subject = excluded.subject,
                       content = excluded.content,
                       is_html = excluded.is_html,
                       is_default = excluded.is_default,
                       is_active = excluded.is_active,
                       description = excluded.description,
                       tags_json = excluded.tags_json,
                       updated_at = excluded.updated_at""",
                (
                    template_id,
                    template.user_id,
                    template.name,
                    template.tone.value,
                    template.subject,
                    template.content,
                    int(template.is_html),
                    int(template.is_default),
                    int(template.is_active),
                    template.description,
                    json.dumps(template.tags),
                    now,
                    now,
                ),
            )
            conn.commit()
        template.id = template_id
        return template_id

    def get_default_template(self, user_id: str, tone: Tone) -> Optional[EmailTemplate]:
        """The user's active default template for a tone, if any."""
        with self._connection() as conn:
            row = conn.execute(
                """SELECT * FROM email_templates
                   WHERE user_id = ? AND tone = ? AND is_default = 1 AND is_active = 1
                   ORDER BY updated_at DESC LIMIT 1""",
                (user_id, tone.value),
            ).fetchone()
        return _row_to_template(dict(row)) if row else None

    def list_templates(self, user_id: str) -> list[EmailTemplate]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM email_templates WHERE user_id = ? ORDER BY tone, name",
                (user_id,),
            ).fetchall()
        return [_row_to_template(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Campaign Run Tracking
    # ------------------------------------------------------------------

    def record_campaign_run(self, run: dict[str, Any]) -> None:
        """Store a finished run, as produced by ``CampaignResult.to_dict()``."""
        with self._connection() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO campaign_runs
                   (run_id, started_at, completed_at, dry_run, users_processed,
                    invoices_evaluated, processed_count, skipped_count,
                    capped_count, error_count, errors_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    run["run_id"],
                    run.get("started_at") or "",
                    run.get("completed_at"),
                    int(bool(run.get("dry_run"))),
                    run.get("users_processed", 0),
                    run.get("invoices_evaluated", 0),
                    run.get("processed_count", 0),
                    run.get("skipped_count", 0),
                    run.get("capped_count", 0),
                    len(run.get("errors", [])),
                    json.dumps(run.get("errors", [])),
                ),
            )
            conn.commit()

    def get_campaign_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return recent campaign runs, newest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM campaign_runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        runs = []
        for r in rows:
            d = dict(r)
            d["dry_run"] = bool(d["dry_run"])
            d["errors"] = json.loads(d.pop("errors_json") or "[]")
            runs.append(d)
        return runs


def _settings_value(value: Any) -> Any:
    # Tones go in as their string value, booleans as 0/1
    if isinstance(value, Tone):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value
