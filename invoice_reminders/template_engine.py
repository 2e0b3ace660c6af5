"""
Invoice Reminders -- Template Engine

Turns a (tone, invoice, policy config) triple into the subject and body of a
reminder email.

Responsibilities:
  1. Pick one of three built-in prose templates from the tone's register
     (gentle / firm / urgent), or a user's custom EmailTemplate
  2. Substitute ``{placeholder}`` fields with invoice and sender data
  3. Optionally wrap the body in the Jinja2 HTML layout (templates/reminder.html)
  4. Generate a plain-text version of HTML custom templates
  5. Format dates (Mon DD, YYYY) and currency (USD 1,250.00) consistently

Placeholders are replaced by a single regex pass.  Unknown placeholders are
left as written.  No HTML escaping is performed: invoice fields are trusted.

Usage:
    from invoice_reminders.template_engine import TemplateEngine

    engine = TemplateEngine()
    email = engine.render(Tone.FIRM, invoice, config, days_overdue=12)
    print(email.subject)    # REMINDER: Invoice #INV-1042 is 12 days overdue
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable, Optional

from jinja2 import Environment, FileSystemLoader

from .config import PACKAGE_TEMPLATE_DIR
from .models import (
    DEFAULT_EMAIL_SIGNATURE,
    EmailTemplate,
    Invoice,
    Register,
    ReminderPolicyConfig,
    RenderedEmail,
    Tone,
)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Date format: "Mar 05, 2024"
_DATE_FORMAT = "%b %d, %Y"

_LAYOUT_TEMPLATE = "reminder.html"

_FALLBACK_BUSINESS_NAME = "Your Business"

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

_PLACEHOLDERS: list[tuple[str, str, str]] = [
    ("client_name", "Client full name", "John Smith"),
    ("client_email", "Client email address", "john@example.com"),
    ("invoice_number", "Invoice number", "INV-001"),
    ("invoice_amount", "Formatted invoice amount", "USD 1,250.00"),
    ("currency", "Currency code", "USD"),
    ("due_date", "Formatted due date", "Mar 15, 2024"),
    ("issue_date", "Formatted issue date", "Mar 01, 2024"),
    ("days_overdue", "Days overdue count", "5 days"),
    ("sender_name", "Your name", "Jane Doe"),
    ("company_name", "Your company name", "Acme Corp"),
    ("email_signature", "Closing line before your name", "Best regards,"),
    ("current_date", "Date the reminder is sent", "Mar 20, 2024"),
]


# ---------------------------------------------------------------------------
# Built-in prose, one per register
# ---------------------------------------------------------------------------

_SUBJECTS: dict[Register, str] = {
    Register.GENTLE: "Friendly reminder: Invoice #{invoice_number} payment",
    Register.FIRM: "REMINDER: Invoice #{invoice_number} is {days_overdue} overdue",
    Register.URGENT: "URGENT: Invoice #{invoice_number} requires immediate attention",
}

_GENTLE_OPENING_OVERDUE = (
    "I hope this email finds you well. This is a friendly reminder about "
    "invoice #{invoice_number} for {invoice_amount}, which was due on "
    "{due_date} and is currently {days_overdue} overdue."
)

_GENTLE_OPENING_NOT_OVERDUE = (
    "I hope this email finds you well. This is a friendly reminder about "
    "invoice #{invoice_number} for {invoice_amount}, which is due on {due_date}."
)

_GENTLE_BODY = """\
Dear {client_name},

{opening}

If you've already sent your payment, please disregard this message. \
Otherwise, I would appreciate your prompt attention to this matter.

Please let me know if you have any questions about this invoice.

Thank you for your business.

{email_signature}
{company_name}"""

_FIRM_BODY = """\
Dear {client_name},

This is a reminder that invoice #{invoice_number} for {invoice_amount} was \
due on {due_date} and is currently {days_overdue} overdue.

Please process this payment as soon as possible to avoid any late fees or \
further action.

If you have any questions or concerns about this invoice, please contact us \
immediately.

Thank you for your attention to this matter.

{email_signature}
{company_name}"""

_URGENT_BODY = """\
Dear {client_name},

URGENT REMINDER: Invoice #{invoice_number} for {invoice_amount} was due on \
{due_date} and is now {days_overdue} overdue. This requires your immediate \
attention.

Please process this payment within 48 hours to avoid additional late fees \
and further consequences.

If you're experiencing difficulties with payment, please contact us \
immediately to discuss payment options.

{email_signature}
{company_name}"""


def builtin_template(register: Register, days_overdue: int) -> tuple[str, str]:
    """Return the (subject, body) pair of built-in prose for a register."""
    subject = _SUBJECTS[register]
    if register is Register.GENTLE:
        opening = (
            _GENTLE_OPENING_OVERDUE if days_overdue > 0 else _GENTLE_OPENING_NOT_OVERDUE
        )
        return subject, _GENTLE_BODY.replace("{opening}", opening)
    if register is Register.FIRM:
        return subject, _FIRM_BODY
    return subject, _URGENT_BODY


# ---------------------------------------------------------------------------
# Helper: Format Utilities
# ---------------------------------------------------------------------------

def format_date(d: date | None) -> str:
    """Format a date as 'Mon DD, YYYY' (e.g. 'Mar 05, 2024').

    Returns empty string for None.
    """
    if d is None:
        return ""
    return d.strftime(_DATE_FORMAT)


def format_currency(amount: float | None, currency: str = "USD") -> str:
    """Format an amount with its currency code: 'USD 1,250.00'.

    Returns '<CUR> 0.00' for None.
    """
    return f"{currency} {(amount or 0.0):,.2f}"


def format_days_overdue(days: int) -> str:
    """'0 days' for anything not overdue, else '1 day' / 'N days'.

    Examples:
        >>> format_days_overdue(-3)
        '0 days'
        >>> format_days_overdue(1)
        '1 day'
        >>> format_days_overdue(12)
        '12 days'
    """
    if days <= 0:
        return "0 days"
    return f"{days} day{'s' if days != 1 else ''}"


# ---------------------------------------------------------------------------
# Helper: Placeholder utilities
# ---------------------------------------------------------------------------

def substitute(text: str, values: dict[str, str]) -> str:
    """Replace every ``{name}`` in ``text`` whose name is in ``values``."""

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in values:
            return values[name]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def extract_placeholders(text: str) -> list[str]:
    """All distinct ``{name}`` placeholders in order of first appearance."""
    seen: list[str] = []
    for match in _PLACEHOLDER_RE.finditer(text or ""):
        token = match.group(0)
        if token not in seen:
            seen.append(token)
    return seen


def available_placeholders() -> list[dict[str, str]]:
    """Placeholders the renderer fills in, with a description and example."""
    return [
        {"placeholder": "{" + name + "}", "description": desc, "example": example}
        for name, desc, example in _PLACEHOLDERS
    ]


@dataclass
class TemplateValidation:
    """Result of ``validate_template``."""
    valid: bool
    missing: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)


def validate_template(
    text: str,
    required: Iterable[str] = (),
) -> TemplateValidation:
    """Check a custom template for required and unrecognized placeholders.

    ``required`` entries may be given with or without braces.  Unknown
    placeholders are reported but do not make the template invalid; they
    are sent as written.
    """
    found = extract_placeholders(text)
    known = {"{" + name + "}" for name, _, _ in _PLACEHOLDERS}
    wanted = [r if r.startswith("{") else "{" + r + "}" for r in required]
    missing = [r for r in wanted if r not in found]
    unknown = [p for p in found if p not in known]
    return TemplateValidation(valid=not missing, missing=missing, unknown=unknown)


# ---------------------------------------------------------------------------
# Helper: HTML formatting
# ---------------------------------------------------------------------------

_EMPHASIS_RE = re.compile(r"(URGENT|OVERDUE|FINAL NOTICE)", re.IGNORECASE)
_THANKS_RE = re.compile(r"(Thank you|Thanks)", re.IGNORECASE)


def text_to_html(text: str) -> str:
    """Line breaks to ``<br>``, warnings in red, thanks in green."""
    formatted = text.replace("\n", "<br>")
    formatted = _EMPHASIS_RE.sub(r'<strong style="color: #e53e3e;">\1</strong>', formatted)
    formatted = _THANKS_RE.sub(r'<em style="color: #38a169;">\1</em>', formatted)
    return formatted


def html_to_plaintext(html_content: str) -> str:
    """Convert an HTML email body to a reasonable plain-text version.

    Used for the text/plain alternative of HTML custom templates.  Strips
    tags, keeps links as ``text (url)`` and collapses blank lines.
    """
    text = html_content

    # Replace common block elements with newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</div>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</li>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<li[^>]*>", "  - ", text, flags=re.IGNORECASE)

    text = re.sub(
        r'<a[^>]+href=["\']([^"\']+)["\'][^>]*>(.*?)</a>',
        r"\2 (\1)",
        text,
        flags=re.IGNORECASE | re.DOTALL,
    )

    # Strip all remaining HTML tags, then entities
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)

    text = re.sub(r"\n{3,}", "\n\n", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return text.strip()


# ===========================================================================
# Main Template Engine Class
# ===========================================================================

class TemplateEngine:
    """Renders reminder emails from built-in prose or a custom template.

    Attributes:
        env: Jinja2 Environment over the HTML layout directory.
        template_dir: Directory containing ``reminder.html``.
        sender_name: Default ``{sender_name}`` when the caller gives none.
    """

    def __init__(
        self,
        template_dir: str | Path | None = None,
        sender_name: str = "",
    ) -> None:
        self.template_dir = Path(template_dir) if template_dir else PACKAGE_TEMPLATE_DIR
        self.sender_name = sender_name

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,  # bodies are trusted and already formatted
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["format_currency"] = format_currency

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def render(
        self,
        tone: Tone,
        invoice: Invoice,
        config: ReminderPolicyConfig,
        *,
        days_overdue: int,
        is_html: bool = False,
        template: Optional[EmailTemplate] = None,
        sender_name: str = "",
        today: Optional[date] = None,
    ) -> RenderedEmail:
        """Render one reminder.

        Args:
            tone: Tone chosen by the policy engine.
            invoice: The invoice being chased.
            config: The owner's policy config (business name, signature).
            days_overdue: From the policy decision; drives the wording.
            is_html: Also produce an HTML body wrapped in the layout.
            template: A custom template to use instead of built-in prose.
            sender_name: Overrides the engine's default sender name.
            today: Value for ``{current_date}``.  Defaults to the due date
                plus ``days_overdue``, which is the evaluation date.

        Returns:
            A RenderedEmail.  ``body`` is always plain text.

        Raises:
            jinja2.TemplateError: If the HTML layout is missing or broken.
        """
        values = self.build_context(
            invoice,
            config,
            days_overdue=days_overdue,
            sender_name=sender_name,
            today=today,
        )

        if template is not None:
            subject = substitute(template.subject, values)
            content = substitute(template.content, values)
            if template.is_html:
                return RenderedEmail(
                    subject=subject,
                    body=html_to_plaintext(content),
                    is_html=True,
                    body_html=content,
                )
            body = content
        else:
            subject_tpl, body_tpl = builtin_template(tone.register, days_overdue)
            subject = substitute(subject_tpl, values)
            body = substitute(body_tpl, values)

        if not is_html:
            return RenderedEmail(subject=subject, body=body)

        body_html = self.render_layout(
            content_html=text_to_html(body),
            subject=subject,
            tone=tone,
            **values,
        )
        return RenderedEmail(subject=subject, body=body, is_html=True, body_html=body_html)

    def build_context(
        self,
        invoice: Invoice,
        config: ReminderPolicyConfig,
        *,
        days_overdue: int,
        sender_name: str = "",
        today: Optional[date] = None,
    ) -> dict[str, str]:
        """All placeholder values for one invoice, as strings."""
        company_name = config.business_name or _FALLBACK_BUSINESS_NAME
        if today is None and invoice.due_date is not None:
            today = invoice.due_date + timedelta(days=days_overdue)

        return {
            "client_name": invoice.client_name,
            "client_email": invoice.client_email,
            "invoice_number": str(invoice.invoice_number),
            "invoice_amount": format_currency(invoice.amount, invoice.currency),
            "currency": invoice.currency,
            "due_date": format_date(invoice.due_date),
            "issue_date": format_date(invoice.issue_date),
            "days_overdue": format_days_overdue(days_overdue),
            "sender_name": sender_name or self.sender_name or company_name,
            "company_name": company_name,
            "email_signature": config.email_signature or DEFAULT_EMAIL_SIGNATURE,
            "current_date": format_date(today),
        }

    def render_layout(self, **context) -> str:
        """Render the HTML layout with the given context."""
        template = self.env.get_template(_LAYOUT_TEMPLATE)
        return template.render(**context)

    def get_available_templates(self) -> list[str]:
        """List all HTML template files in the template directory."""
        if not self.template_dir.is_dir():
            return []
        return sorted(
            f.name
            for f in self.template_dir.iterdir()
            if f.suffix == ".html" and f.is_file()
        )


# ---------------------------------------------------------------------------
# Module-level convenience function
# ---------------------------------------------------------------------------

_default_engine: Optional[TemplateEngine] = None


def render(
    tone: Tone,
    invoice: Invoice,
    config: ReminderPolicyConfig,
    *,
    days_overdue: int,
    is_html: bool = False,
    template: Optional[EmailTemplate] = None,
) -> RenderedEmail:
    """Module-level convenience: render with a shared default TemplateEngine."""
    global _default_engine
    if _default_engine is None:
        _default_engine = TemplateEngine()
    return _default_engine.render(
        tone,
        invoice,
        config,
        days_overdue=days_overdue,
        is_html=is_html,
        template=template,
    )
