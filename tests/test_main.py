"""End-to-end tests for the command line: import -> run -> history -> preview -> runs.

Every command goes through ``main([...])`` with ``--db`` pointing into
tmp_path, so nothing outside the test directory is touched.
"""

from datetime import datetime

import openpyxl
import pytest

from invoice_reminders.main import build_parser, main
from invoice_reminders.models import Invoice, InvoiceStatus
from invoice_reminders.store import ReminderStore

NOW = "2024-03-15T09:00:00Z"


@pytest.fixture
def db(tmp_path):
    return tmp_path / "reminders.db"


@pytest.fixture
def xlsx(tmp_path):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.append(["Invoice Number", "Client Name", "Client Email", "Amount", "Due Date"])
    ws.append(["INV-1", "Acme Corp", "ap@acme.example", 1250, datetime(2024, 3, 1)])
    ws.append(["INV-2", "Beta LLC", "billing@beta.example", 80, datetime(2024, 4, 1)])
    path = tmp_path / "invoices.xlsx"
    wb.save(path)
    return path


@pytest.fixture
def imported(db, xlsx, capsys):
    code = main(["--db", str(db), "import", str(xlsx),
                 "--user", "user-1", "--email", "owner@studio.example", "--name", "Olive"])
    assert code == 0
    capsys.readouterr()
    return db


def _invoice_id(db, number: str) -> str:
    return ReminderStore(db).find_invoice("user-1", number).id


# ============================================================================
# Parser
# ============================================================================

class TestParser:

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_run_flags(self):
        args = build_parser().parse_args(["--db", "x.db", "run", "--dry-run", "--now", NOW])
        assert args.db == "x.db"
        assert args.dry_run is True
        assert args.now == NOW
        assert args.eml_dir is None

    def test_import_requires_user(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["import", "file.xlsx"])


# ============================================================================
# import
# ============================================================================

class TestImport:

    def test_import_creates_user_settings_and_invoices(self, db, xlsx, capsys):
        assert main(["--db", str(db), "import", str(xlsx), "--user", "user-1",
                     "--email", "owner@studio.example"]) == 0
        out = capsys.readouterr().out
        assert "Imported 2 invoices for user-1 (0 already present)" in out

        store = ReminderStore(db)
        assert store.get_user("user-1").email == "owner@studio.example"
        assert store.get_opted_in_user_ids() == ["user-1"]
        assert len(store.list_invoices("user-1")) == 2

    def test_reimport_skips_existing(self, imported, xlsx, capsys):
        assert main(["--db", str(imported), "import", str(xlsx), "--user", "user-1"]) == 0
        assert "Imported 0 invoices for user-1 (2 already present)" in capsys.readouterr().out
        # Existing owner details are kept when not given again
        assert ReminderStore(imported).get_user("user-1").name == "Olive"

    def test_missing_file(self, db, tmp_path, capsys):
        assert main(["--db", str(db), "import", str(tmp_path / "nope.xlsx"),
                     "--user", "user-1"]) == 1
        assert "ERROR" in capsys.readouterr().out


# ============================================================================
# run
# ============================================================================

class TestRunCommand:

    def test_dry_run(self, imported, capsys):
        assert main(["--db", str(imported), "run", "--dry-run", "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "[DRY RUN]" in out
        assert "ap@acme.example" in out
        assert ReminderStore(imported).get_reminder_history(_invoice_id(imported, "INV-1")) == []

    def test_eml_run_sends_and_records(self, imported, tmp_path, capsys):
        eml_dir = tmp_path / "eml"
        assert main(["--db", str(imported), "run", "--eml-dir", str(eml_dir), "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "REMINDERS SENT      : 1" in out

        files = sorted(eml_dir.glob("*.eml"))
        assert len(files) == 1
        assert files[0].name.startswith("ap_acme.example_")
        content = files[0].read_text(encoding="utf-8")
        assert "Subject: Friendly reminder: Invoice #INV-1 payment" in content
        assert "From: owner@studio.example" in content

        history = ReminderStore(imported).get_reminder_history(_invoice_id(imported, "INV-1"))
        assert [r.sequence_number for r in history] == [1]

    def test_eml_runs_on_later_days_keep_earlier_files(self, imported, tmp_path, capsys):
        eml_dir = tmp_path / "eml"
        assert main(["--db", str(imported), "run", "--eml-dir", str(eml_dir), "--now", NOW]) == 0
        assert main(["--db", str(imported), "run", "--eml-dir", str(eml_dir),
                     "--now", "2024-03-22T09:00:00Z"]) == 0
        assert len(list(eml_dir.glob("*.eml"))) == 2

    def test_run_without_transport_fails(self, imported, monkeypatch, capsys):
        monkeypatch.delenv("SMTP_USERNAME", raising=False)
        monkeypatch.delenv("SMTP_PASSWORD", raising=False)
        assert main(["--db", str(imported), "run", "--now", NOW]) == 1
        assert "SMTP is not configured" in capsys.readouterr().out

    def test_run_with_errors_exits_nonzero(self, db, tmp_path, capsys):
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.append(["Invoice Number", "Client Name", "Amount", "Due Date"])
        ws.append(["INV-9", "No Email Co", 10, datetime(2024, 3, 1)])
        path = tmp_path / "noemail.xlsx"
        wb.save(path)
        main(["--db", str(db), "import", str(path), "--user", "user-1"])

        assert main(["--db", str(db), "run", "--eml-dir", str(tmp_path / "eml"),
                     "--now", NOW]) == 1
        assert "Errors (1)" in capsys.readouterr().out

    def test_eml_dir_from_config(self, imported, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(f"output:\n  eml_dir: {tmp_path / 'from-config'}\n", encoding="utf-8")
        assert main(["--config", str(cfg), "--db", str(imported),
                     "run", "--eml", "--now", NOW]) == 0
        assert len(list((tmp_path / "from-config").glob("*.eml"))) == 1

    def test_bad_now(self, imported, capsys):
        assert main(["--db", str(imported), "run", "--dry-run", "--now", "tomorrow"]) == 1


# ============================================================================
# history / preview / runs
# ============================================================================

class TestInspectCommands:

    def test_history_before_and_after(self, imported, tmp_path, capsys):
        invoice_id = _invoice_id(imported, "INV-1")
        assert main(["--db", str(imported), "history", invoice_id, "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "No reminders sent yet." in out
        assert "Next run sends : #1 (polite)" in out

        main(["--db", str(imported), "run", "--eml-dir", str(tmp_path / "eml"), "--now", NOW])
        capsys.readouterr()

        assert main(["--db", str(imported), "history", invoice_id, "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "#1  2024-03-15 09:00  polite" in out
        assert "State          : reminding" in out
        assert "Next reminder  : Mar 22, 2024" in out

    def test_history_unknown_invoice(self, imported, capsys):
        assert main(["--db", str(imported), "history", "missing"]) == 1
        assert "not found" in capsys.readouterr().out

    def test_preview_due_now(self, imported, capsys):
        invoice_id = _invoice_id(imported, "INV-1")
        assert main(["--db", str(imported), "preview", invoice_id, "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "Reminder #1 (polite, due now)" in out
        assert "To:      ap@acme.example" in out
        assert "Subject: Friendly reminder: Invoice #INV-1 payment" in out
        assert "Dear Acme Corp," in out

    def test_preview_next_after_send(self, imported, tmp_path, capsys):
        invoice_id = _invoice_id(imported, "INV-1")
        main(["--db", str(imported), "run", "--eml-dir", str(tmp_path / "eml"), "--now", NOW])
        capsys.readouterr()
        assert main(["--db", str(imported), "preview", invoice_id, "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "Reminder #2 (firm, not due yet)" in out
        assert "Subject: REMINDER: Invoice #INV-1 is 14 days overdue" in out

    def test_preview_html(self, imported, capsys):
        invoice_id = _invoice_id(imported, "INV-1")
        assert main(["--db", str(imported), "preview", invoice_id, "--html", "--now", NOW]) == 0
        assert "<!DOCTYPE html>" in capsys.readouterr().out

    def test_preview_capped(self, imported, capsys):
        store = ReminderStore(imported)
        store.update_settings("user-1", max_reminders=1)
        invoice_id = _invoice_id(imported, "INV-1")
        main(["--db", str(imported), "run", "--dry-run", "--now", NOW])
        main(["--db", str(imported), "run", "--eml-dir", str(imported.parent / "eml"), "--now", NOW])
        capsys.readouterr()
        assert main(["--db", str(imported), "preview", invoice_id, "--now", NOW]) == 0
        assert "reached its reminder limit" in capsys.readouterr().out

    def test_preview_rejects_paid_invoice(self, imported, capsys):
        store = ReminderStore(imported)
        invoice_id = _invoice_id(imported, "INV-1")
        store.set_invoice_status(invoice_id, InvoiceStatus.PAID)
        assert main(["--db", str(imported), "preview", invoice_id, "--now", NOW]) == 1
        assert "not eligible for reminders (status: paid)" in capsys.readouterr().out

    @pytest.fixture
    def undated_id(self, imported):
        return ReminderStore(imported).add_invoice(Invoice(
            id="", user_id="user-1", invoice_number="INV-ND",
            client_name="Undated Co", client_email="ap@undated.example", amount=40.0,
        ))

    def test_history_without_due_date(self, imported, undated_id, capsys):
        assert main(["--db", str(imported), "history", undated_id, "--now", NOW]) == 0
        out = capsys.readouterr().out
        assert "due -" in out
        assert "no due date; no reminder can be scheduled" in out
        assert "UNEXPECTED" not in out

    def test_preview_without_due_date(self, imported, undated_id, capsys):
        assert main(["--db", str(imported), "preview", undated_id, "--now", NOW]) == 1
        out = capsys.readouterr().out
        assert "invoice INV-ND has no due date" in out
        assert "UNEXPECTED" not in out

    def test_runs(self, imported, capsys):
        assert main(["--db", str(imported), "runs"]) == 0
        assert "No campaign runs recorded." in capsys.readouterr().out

        main(["--db", str(imported), "run", "--dry-run", "--now", NOW])
        capsys.readouterr()
        assert main(["--db", str(imported), "runs", "--limit", "5"]) == 0
        out = capsys.readouterr().out
        assert "2024-03-15T09:00:00" in out
        assert "dry" in out


class TestConfigOption:

    def test_missing_config_file(self, db, tmp_path, capsys):
        assert main(["--config", str(tmp_path / "nope.yaml"), "--db", str(db), "runs"]) == 1
        assert "Config file not found" in capsys.readouterr().out

    def test_config_defaults_apply_to_new_users(self, db, xlsx, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("defaults:\n  max_reminders: 5\n  first_tone: friendly\n", encoding="utf-8")
        assert main(["--config", str(cfg), "--db", str(db), "import", str(xlsx),
                     "--user", "user-1"]) == 0
        settings = ReminderStore(db).get_settings("user-1")
        assert settings.max_reminders == 5
        assert settings.first_tone.value == "friendly"
