"""Invoice Reminders - XLSX Invoice Importer.

Parses a workbook of client invoices and returns typed ``Invoice`` objects
for one user, ready to be added to the store.

Expected columns (matched by header text, any order, case-insensitive):

+-------------------+----------+-------------------------------------------+
| Column            | Required | Notes                                     |
+===================+==========+===========================================+
| Invoice Number    | yes      | also "Invoice #", "Invoice No"            |
| Client Name       | yes      | also "Client", "Customer"                 |
| Client Email      | no       | reminders cannot be sent without it       |
| Amount            | yes      | numbers or strings like "$1,234.56"       |
| Currency          | no       | defaults to USD                           |
| Issue Date        | no       |                                           |
| Due Date          | yes      | date cells, serials or common text dates  |
| Status            | no       | defaults to pending                       |
| Description       | no       |                                           |
+-------------------+----------+-------------------------------------------+

Usage::

    from invoice_reminders.data_loader import load_invoices

    result = load_invoices("data/invoices.xlsx", user_id="user-1")
    print(f"Invoices: {len(result.invoices)}")
    result.print_summary()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .models import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Column header aliases -- mapped by *header text* so column order is free.
_INVOICE_HEADERS: dict[str, list[str]] = {
    "invoice_number": ["Invoice Number", "Invoice #", "Invoice No", "Invoice"],
    "client_name":    ["Client Name", "Client", "Customer", "Customer Name"],
    "client_email":   ["Client Email", "Email", "Customer Email"],
    "amount":         ["Amount", "Total", "Total Due", "Amount Due"],
    "currency":       ["Currency"],
    "issue_date":     ["Issue Date", "Invoice Date", "Issued"],
    "due_date":       ["Due Date", "Due"],
    "status":         ["Status"],
    "description":    ["Description", "Notes"],
}

_REQUIRED_COLUMNS = ("invoice_number", "client_name", "amount", "due_date")

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "#REF!", None}

_DATE_FORMATS = (
    "%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%d.%m.%Y",
    "%Y-%m-%dT%H:%M:%S", "%b %d, %Y", "%B %d, %Y",
)


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_invoices`."""

    invoices: list[Invoice] = field(default_factory=list)

    # Metadata
    source_file: str | None = None
    sheet_used: str | None = None
    total_rows_scanned: int = 0
    empty_rows_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def pending_invoices(self) -> list[Invoice]:
        return [i for i in self.invoices if i.is_pending]

    @property
    def missing_email(self) -> list[Invoice]:
        return [i for i in self.invoices if not i.client_email]

    @property
    def total_amount(self) -> float:
        return sum(i.amount for i in self.invoices)

    def print_summary(self) -> None:
        """Print a human-readable summary of what was loaded."""
        status_counts: dict[str, int] = {}
        for inv in self.invoices:
            status_counts[inv.status.value] = status_counts.get(inv.status.value, 0) + 1

        print("=" * 65)
        print("  Invoice Reminders -- Import Summary")
        print("=" * 65)
        print(f"  Source file       : {self.source_file or '(bytes buffer)'}")
        print(f"  Sheet             : {self.sheet_used}")
        print(f"  Rows scanned      : {self.total_rows_scanned}")
        print(f"  Empty rows skipped: {self.empty_rows_skipped}")
        print("-" * 65)
        print(f"  Total invoices    : {len(self.invoices)}")
        print(f"  Pending           : {len(self.pending_invoices)}")
        print(f"  Missing email     : {len(self.missing_email)}")
        print(f"  Total amount      : {self.total_amount:,.2f}")
        if status_counts:
            print("-" * 65)
            print("  Status distribution:")
            for status, count in sorted(status_counts.items()):
                print(f"    {status:<22s}: {count}")
        if self.warnings:
            print("-" * 65)
            print(f"  Warnings ({len(self.warnings)}):")
            for w in self.warnings[:20]:
                print(f"    - {w}")
            if len(self.warnings) > 20:
                print(f"    ... and {len(self.warnings) - 20} more")
        print("=" * 65)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_invoices(
    source: Union[str, Path, IO[bytes]],
    *,
    user_id: str,
    sheet: str | None = None,
) -> LoadResult:
    """Load client invoices for one user from an XLSX workbook.

    Parameters
    ----------
    source:
        File path (``str`` or ``Path``) or a readable bytes buffer.
    user_id:
        Owner assigned to every parsed invoice.
    sheet:
        Sheet name to read.  Defaults to the workbook's active sheet.

    Returns
    -------
    LoadResult
        Parsed invoices plus per-row warnings.

    Raises
    ------
    FileNotFoundError
        If ``source`` is a path that does not exist.
    ValueError
        If the sheet is missing or a required column is absent.
    """
    result = LoadResult()

    wb = _open_workbook(source)
    if isinstance(source, (str, Path)):
        result.source_file = str(source)

    try:
        if sheet:
            if sheet not in wb.sheetnames:
                raise ValueError(
                    f"Sheet '{sheet}' not found.  Available: {wb.sheetnames}"
                )
            ws = wb[sheet]
        else:
            ws = wb.active
        result.sheet_used = ws.title
        logger.info("Reading invoices from sheet: %s", ws.title)

        invoices, scan_meta = _parse_invoices(ws, user_id)
    finally:
        wb.close()

    result.invoices = invoices
    result.total_rows_scanned = scan_meta["rows_scanned"]
    result.empty_rows_skipped = scan_meta["empty_rows"]
    result.warnings.extend(scan_meta["warnings"])
    return result


# ---------------------------------------------------------------------------
# Workbook opening
# ---------------------------------------------------------------------------

def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True)


# ---------------------------------------------------------------------------
# Invoice parsing
# ---------------------------------------------------------------------------

def _parse_invoices(ws: Worksheet, user_id: str) -> tuple[list[Invoice], dict]:
    """Parse invoice rows.

    Returns ``(invoices, metadata_dict)`` where metadata contains
    ``rows_scanned``, ``empty_rows``, and ``warnings``.
    """
    warnings: list[str] = []
    invoices: list[Invoice] = []
    seen_numbers: set[str] = set()

    header_map = _build_header_map(ws, _INVOICE_HEADERS)

    missing_required = [key for key in _REQUIRED_COLUMNS if key not in header_map]
    if missing_required:
        raise ValueError(
            f"Required columns not found: {missing_required}.  "
            f"Header row: {[cell.value for cell in ws[1]]}"
        )

    rows_scanned = 0
    empty_rows = 0

    for row in ws.iter_rows(min_row=2, values_only=False):
        rows_scanned += 1
        row_no = row[0].row

        invoice_number = _clean_invoice_number(_cell_value(row, header_map, "invoice_number"))
        if not invoice_number:
            empty_rows += 1
            continue

        if invoice_number in seen_numbers:
            warnings.append(
                f"Row {row_no}: duplicate invoice number {invoice_number} -- skipping"
            )
            continue

        client_name = _clean_str(_cell_value(row, header_map, "client_name"))
        if not client_name:
            warnings.append(
                f"Row {row_no}: invoice {invoice_number} has no client name -- skipping"
            )
            continue

        due_date = _parse_date(
            _cell_value(row, header_map, "due_date"),
            f"Row {row_no} Due Date", warnings,
        )
        if due_date is None:
            warnings.append(
                f"Row {row_no}: invoice {invoice_number} has no usable due date -- skipping"
            )
            continue

        amount = _parse_currency(_cell_value(row, header_map, "amount"), default=None)
        if amount is None:
            warnings.append(
                f"Row {row_no}: invoice {invoice_number} has no usable amount -- skipping"
            )
            continue

        client_email = _clean_str(_cell_value(row, header_map, "client_email")).lower()
        if not client_email:
            warnings.append(
                f"Row {row_no}: invoice {invoice_number} has no client email; "
                "reminders will fail until one is added"
            )

        currency = _clean_str(_cell_value(row, header_map, "currency")).upper() or "USD"
        issue_date = _parse_date(
            _cell_value(row, header_map, "issue_date"),
            f"Row {row_no} Issue Date", warnings,
        )
        status = _parse_invoice_status(
            _clean_str_or_none(_cell_value(row, header_map, "status")),
            f"Row {row_no}", warnings,
        )
        description = _clean_str(_cell_value(row, header_map, "description"))

        invoices.append(Invoice(
            id="",
            user_id=user_id,
            invoice_number=invoice_number,
            client_name=client_name,
            client_email=client_email,
            amount=amount,
            currency=currency,
            issue_date=issue_date,
            due_date=due_date,
            status=status,
            description=description,
        ))
        seen_numbers.add(invoice_number)

    logger.info(
        "Parsed %d invoices (%d rows scanned, %d empty)",
        len(invoices), rows_scanned, empty_rows,
    )
    return invoices, {
        "rows_scanned": rows_scanned,
        "empty_rows": empty_rows,
        "warnings": warnings,
    }


# ---------------------------------------------------------------------------
# Header map builder
# ---------------------------------------------------------------------------

def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Reads row 1 of the worksheet and matches each header cell against
    the known aliases in *header_spec*.
    """
    header_map: dict[str, int] = {}

    row1_values: list[str | None] = []
    for cell in ws[1]:
        val = cell.value
        row1_values.append(str(val).strip().lower() if val is not None else None)

    for logical_name, aliases in header_spec.items():
        for alias in aliases:
            if alias.lower() in row1_values:
                header_map[logical_name] = row1_values.index(alias.lower())
                break

    logger.debug("Header map (%d/%d): %s",
                 len(header_map), len(header_spec), list(header_map))
    return header_map


# ---------------------------------------------------------------------------
# Cell reading helpers
# ---------------------------------------------------------------------------

def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Read a cell by logical field name; None if absent."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


# ---------------------------------------------------------------------------
# Data cleaning / type coercion helpers
# ---------------------------------------------------------------------------

def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _clean_str_or_none(val) -> str | None:
    """Convert a cell value to a stripped string, returning None for nullish."""
    s = _clean_str(val)
    return s or None


def _clean_invoice_number(val) -> str:
    # Numeric cells come back as floats: 1042.0 -> "1042"
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return _clean_str(val)


def _parse_currency(val, default: float | None = 0.0) -> float | None:
    """Parse an amount cell value.

    Handles:
    - Numeric floats from openpyxl (most common path).
    - Strings like ``"$1,234.56"``, ``"USD 1234.56"`` or ``"1234.56"``.
    - Parenthesized negatives: ``"($500.00)"``.
    """
    if val is None:
        return default

    if isinstance(val, bool):
        return default
    if isinstance(val, (int, float)):
        return float(val)

    s = str(val).strip()
    if not s or s in _NULL_SIGNALS:
        return default

    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = s.replace("$", "").replace(",", "").strip()
    s = s.lstrip("ABCDEFGHIJKLMNOPQRSTUVWXYZ").strip()

    try:
        amount = float(s)
        return -amount if negative else amount
    except ValueError:
        return default


def _parse_date(val, context: str, warnings: list[str]) -> date | None:
    """Parse a date cell value.

    openpyxl typically returns ``datetime`` objects for date-typed cells.
    Also handles Excel serial date numbers and common string formats.
    """
    if val is None:
        return None

    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val

    # Numeric -- might be an Excel serial date
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        serial = int(val)
        if 20000 < serial < 80000:
            return (datetime(1899, 12, 30) + timedelta(days=serial)).date()
        warnings.append(f"{context}: number {val} is not a date serial")
        return None

    s = str(val).strip()
    if s in _NULL_SIGNALS:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    warnings.append(f"{context}: could not parse date '{val}'")
    return None


def _parse_invoice_status(
    raw: str | None, context: str, warnings: list[str]
) -> InvoiceStatus:
    """Map a raw status string to ``InvoiceStatus``; blank means pending."""
    if raw is None:
        return InvoiceStatus.PENDING

    normalized = raw.strip().lower().replace(" ", "_").replace("-", "_")
    for member in InvoiceStatus:
        if member.value == normalized:
            return member

    warnings.append(f"{context}: unknown status '{raw}' -- treating as pending")
    return InvoiceStatus.PENDING
