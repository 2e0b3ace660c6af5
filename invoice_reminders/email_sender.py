"""
Invoice Reminders -- Email Transport

Everything that actually puts a reminder on the wire (or on disk).

Every sender implements ``send(subject, body, recipient, *, sender=None,
is_html=False) -> message_id`` and raises SendError on failure:

    SMTPEmailSender  - smtplib + STARTTLS, credentials from config / env vars
    EmlFileSender    - writes .eml files for manual sending in Outlook/Gmail
    RecordingSender  - keeps messages in memory (dry runs and tests)
"""

from __future__ import annotations

import logging
import re
import smtplib
import ssl
import uuid
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import Optional, Protocol

from .config import SMTPSettings
from .errors import SendError
from .template_engine import html_to_plaintext

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmailSender(Protocol):
    def send(
        self,
        subject: str,
        body: str,
        recipient: str,
        *,
        sender: Optional[str] = None,
        is_html: bool = False,
    ) -> str: ...


def _require_recipient(recipient: str) -> str:
    address = (recipient or "").strip()
    if not address:
        raise SendError("No recipient email address", recipient=recipient)
    if not _EMAIL_RE.match(address):
        raise SendError(f"Invalid recipient address: {address!r}", recipient=recipient)
    return address


def build_message(
    subject: str,
    body: str,
    recipient: str,
    *,
    sender: Optional[str] = None,
    is_html: bool = False,
) -> MIMEMultipart:
    """Build the MIME message for one reminder.

    HTML bodies get a multipart/alternative with a plain-text fallback
    first; plain bodies are a single text/plain part.
    """
    sender = sender or ""
    domain = sender.rsplit("@", 1)[-1].strip("> ") if "@" in sender else None

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = recipient
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    msg["Message-ID"] = make_msgid(domain=domain)

    if is_html:
        msg.attach(MIMEText(html_to_plaintext(body), "plain", "utf-8"))
        msg.attach(MIMEText(body, "html", "utf-8"))
    else:
        msg.attach(MIMEText(body, "plain", "utf-8"))
    return msg


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------

class SMTPEmailSender:
    """Send via an SMTP relay with STARTTLS (Gmail app passwords work)."""

    def __init__(self, settings: SMTPSettings, default_sender: str = "") -> None:
        self.settings = settings
        self.default_sender = default_sender or settings.username

    def send(
        self,
        subject: str,
        body: str,
        recipient: str,
        *,
        sender: Optional[str] = None,
        is_html: bool = False,
    ) -> str:
        address = _require_recipient(recipient)
        if not self.settings.is_configured:
            raise SendError(
                "SMTP is not configured (set SMTP_USERNAME and SMTP_PASSWORD)",
                recipient=address,
            )

        from_addr = sender or self.default_sender
        msg = build_message(subject, body, address, sender=from_addr, is_html=is_html)

        try:
            with smtplib.SMTP(
                self.settings.host,
                self.settings.port,
                timeout=self.settings.timeout_seconds,
            ) as server:
                if self.settings.use_tls:
                    server.starttls(context=ssl.create_default_context())
                server.login(self.settings.username, self.settings.password)
                server.sendmail(from_addr, [address], msg.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            raise SendError(
                "SMTP authentication failed. Check the app password.",
                recipient=address,
                code=exc.smtp_code,
            ) from exc
        except smtplib.SMTPRecipientsRefused as exc:
            raise SendError(f"Recipient refused: {address}", recipient=address) from exc
        except smtplib.SMTPResponseException as exc:
            raise SendError(
                f"SMTP error {exc.smtp_code}: {exc.smtp_error!r}",
                recipient=address,
                code=exc.smtp_code,
            ) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise SendError(f"Send failed - {exc}", recipient=address) from exc

        logger.info("Sent '%s' to %s", subject, address)
        return msg["Message-ID"]


# ---------------------------------------------------------------------------
# .eml export
# ---------------------------------------------------------------------------

class EmlFileSender:
    """Write each message to ``<output_dir>/<recipient>_<token>.eml``.

    Names are unique per message, so earlier runs are never overwritten.
    """

    def __init__(self, output_dir: str | Path, default_sender: str = "") -> None:
        self.output_dir = Path(output_dir)
        self.default_sender = default_sender
        self.written: list[Path] = []

    def send(
        self,
        subject: str,
        body: str,
        recipient: str,
        *,
        sender: Optional[str] = None,
        is_html: bool = False,
    ) -> str:
        address = _require_recipient(recipient)
        msg = build_message(
            subject, body, address, sender=sender or self.default_sender, is_html=is_html
        )

        safe_name = re.sub(r"[^A-Za-z0-9._-]", "_", address)
        filename = f"{safe_name}_{uuid.uuid4().hex[:12]}.eml"
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path = self.output_dir / filename
            path.write_text(msg.as_string(), encoding="utf-8")
        except OSError as exc:
            raise SendError(f"Cannot write {filename}: {exc}", recipient=address) from exc

        self.written.append(path)
        logger.debug("Wrote %s", path)
        return msg["Message-ID"]


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

@dataclass
class SentMessage:
    subject: str
    body: str
    recipient: str
    sender: Optional[str]
    is_html: bool
    message_id: str


@dataclass
class RecordingSender:
    """Keeps every message instead of sending it.

    ``fail_for`` lists recipients whose sends raise SendError.
    """

    fail_for: set[str] = field(default_factory=set)
    sent: list[SentMessage] = field(default_factory=list)

    def send(
        self,
        subject: str,
        body: str,
        recipient: str,
        *,
        sender: Optional[str] = None,
        is_html: bool = False,
    ) -> str:
        address = _require_recipient(recipient)
        if address in self.fail_for:
            raise SendError(f"Simulated failure for {address}", recipient=address)
        message_id = f"<recorded-{len(self.sent) + 1}@localhost>"
        self.sent.append(SentMessage(subject, body, address, sender, is_html, message_id))
        return message_id
