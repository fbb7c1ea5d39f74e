"""Tests for ledgermatch.cli: CLI argument parsing and command handlers.

Handlers run through main(argv=[...]) against a throwaway SQLite file and
the fixture config, pointed at by the LEDGERMATCH_* environment variables.
"""

from __future__ import annotations

import json
import subprocess
import sys
from unittest.mock import MagicMock, patch

import pytest

from ledgermatch.cli import main
from tests.conftest import FIXTURE_CONFIG_DIR


# ── Helpers ──────────────────────────────────────────────


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("LEDGERMATCH_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("LEDGERMATCH_CONFIG_DIR", str(FIXTURE_CONFIG_DIR))
    monkeypatch.setenv("LEDGERMATCH_WATCH_DIR", str(tmp_path / "inbox"))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return tmp_path


def _run(argv) -> int:
    with patch("ledgermatch.cli._setup_logging"):
        with pytest.raises(SystemExit) as exc:
            main(argv)
    return exc.value.code


def _statement(path, opening, closing, txns):
    path.write_text(json.dumps({
        "account_info": {
            "opening_balance": opening,
            "closing_balance": closing,
            "currency": "CAD",
            "balance_type": "asset",
        },
        "transactions": txns,
    }))
    return path


def _transfer_out(tmp_path):
    return _statement(tmp_path / "chq-a__dec.json", "1000.00", "750.00", [
        {"date": "2024-12-05", "description": "TRANSFER TO SAVINGS",
         "amount": "250.00", "direction": "debit"},
    ])


def _transfer_in(tmp_path):
    return _statement(tmp_path / "sav-a__dec.json", "0.00", "250.00", [
        {"date": "2024-12-05", "description": "TRANSFER FROM CHEQUING",
         "amount": "250.00", "direction": "credit"},
    ])


# ── Argument parsing tests (subprocess) ──────────────────


class TestCliHelp:
    def test_help_exits_zero(self):
        result = subprocess.run(
            [sys.executable, "-m", "ledgermatch.cli", "--help"],
            capture_output=True, text=True,
        )
        assert result.returncode == 0
        assert "LedgerMatch statement reconciliation" in result.stdout

    def test_all_subcommands_listed_in_help(self):
        result = subprocess.run(
            [sys.executable, "-m", "ledgermatch.cli", "--help"],
            capture_output=True, text=True,
        )
        for cmd in ["import", "watch", "reconcile", "detect", "candidates",
                    "review", "unlink", "pending", "reanalyze", "batch", "status"]:
            assert cmd in result.stdout, f"Subcommand '{cmd}' not in help output"


# ── main() dispatch tests ────────────────────────────────


class TestMainDispatch:
    def test_main_dispatches_to_handler(self):
        with patch("ledgermatch.cli._COMMANDS", {"status": MagicMock(return_value=0)}):
            assert _run(["status"]) == 0

    def test_main_no_command_shows_help(self, capsys):
        assert _run([]) == 0
        assert "usage:" in capsys.readouterr().out.lower()

    def test_batch_needs_subcommand(self, env, capsys):
        assert _run(["batch"]) == 1
        assert "subcommand" in capsys.readouterr().out

    def test_domain_error_becomes_exit_code(self, env, capsys):
        assert _run(["review", "no-such-candidate", "confirm"]) == 1
        assert "Error:" in capsys.readouterr().out


# ── Command handlers ─────────────────────────────────────


class TestAccounts:
    def test_sync_then_list(self, env, capsys):
        assert _run(["accounts", "sync"]) == 0
        assert "Synced 5 account(s)." in capsys.readouterr().out
        assert _run(["accounts"]) == 0
        out = capsys.readouterr().out
        assert "card-a" in out and "liability" in out


class TestImport:
    def test_import_single_file(self, env, capsys):
        assert _run(["import", "--file", str(_transfer_out(env))]) == 0
        assert "chq-a__dec.json: success" in capsys.readouterr().out

    def test_import_mismatched_file(self, env, capsys):
        path = _statement(env / "chq-a__bad.json", "1000.00", "900.00", [
            {"date": "2024-12-05", "description": "FEE",
             "amount": "250.00", "direction": "debit"},
        ])
        assert _run(["import", "--file", str(path)]) == 0
        out = capsys.readouterr().out
        assert "mismatched" in out
        assert "does not balance" in out

    def test_import_file_not_found(self, env, capsys):
        assert _run(["import", "--file", str(env / "missing.json")]) == 1
        assert "not found" in capsys.readouterr().out.lower()

    def test_import_unsupported_extension(self, env, capsys):
        path = env / "chq-a__dec.pdf"
        path.write_text("%PDF")
        assert _run(["import", "--file", str(path)]) == 1
        assert "Unsupported" in capsys.readouterr().out

    def test_import_watch_dir(self, env, capsys):
        inbox = env / "inbox"
        inbox.mkdir()
        _transfer_out(inbox)
        _transfer_in(inbox)
        assert _run(["import"]) == 0
        assert "Processed 2 files, 0 errors" in capsys.readouterr().out

    def test_import_missing_watch_dir(self, env, capsys):
        assert _run(["import"]) == 1
        assert "Watch directory not found" in capsys.readouterr().out


class TestEndToEnd:
    def test_matching_statements_are_linked(self, env, capsys):
        assert _run(["import", "--file", str(_transfer_out(env))]) == 0
        assert _run(["import", "--file", str(_transfer_in(env))]) == 0
        capsys.readouterr()

        assert _run(["status"]) == 0
        out = capsys.readouterr().out
        assert "Total transactions:     2" in out
        assert "Linked as transfers:    2" in out

        assert _run(["reconcile"]) == 0
        assert "balanced" in capsys.readouterr().out

    def test_detect_dry_run(self, env, capsys):
        _run(["import", "--file", str(_transfer_out(env))])
        capsys.readouterr()
        assert _run(["detect", "--dry-run"]) == 0
        assert "(dry run)" in capsys.readouterr().out

    def test_status_on_empty_database(self, env, capsys):
        assert _run(["status"]) == 0
        out = capsys.readouterr().out
        assert "LedgerMatch Status" in out
        assert "Total transactions:     0" in out

    def test_candidates_empty(self, env, capsys):
        assert _run(["candidates"]) == 0
        assert "No transfer candidates." in capsys.readouterr().out


class TestPending:
    def test_register_and_list(self, env, capsys):
        _run(["accounts", "sync"])
        capsys.readouterr()
        assert _run(["pending", "register", "chq-a", "sav-a", "250.00", "2024-12-01"]) == 0
        assert "[pending]" in capsys.readouterr().out
        assert _run(["pending"]) == 0
        assert "chq-a -> sav-a" in capsys.readouterr().out

    def test_same_account_rejected(self, env, capsys):
        _run(["accounts", "sync"])
        capsys.readouterr()
        assert _run(["pending", "register", "chq-a", "chq-a", "10", "2024-12-01"]) == 1
        assert "must differ" in capsys.readouterr().out

    def test_list_empty(self, env, capsys):
        assert _run(["pending", "list"]) == 0
        assert "No pending transfers." in capsys.readouterr().out
