"""Tests for ledgermatch/watcher/observer.py: drop-folder watcher and import pipeline.

Covers:
- wait_for_stable() behavior
- load_payload() validation
- resolve_account_id() from payload or file name
- StatementImportPipeline.process_file() orchestration
- FileWatcher event handling
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ledgermatch.statements.importer import StatementImporter
from ledgermatch.watcher.observer import (
    FileStabilityError,
    FileWatcher,
    ImportResult,
    StatementImportPipeline,
    load_payload,
    resolve_account_id,
    wait_for_stable,
)


# ── Helpers ──────────────────────────────────────────────


def _write_payload(path: Path, closing="1500.00", **extra) -> Path:
    data = {
        "account_info": {
            "opening_balance": "1000.00",
            "closing_balance": closing,
            "currency": "CAD",
            "balance_type": "asset",
        },
        "transactions": [
            {"date": "2024-12-02", "description": "CLIENT PAYMENT",
             "amount": "500.00", "direction": "credit"},
        ],
    }
    data.update(extra)
    path.write_text(json.dumps(data))
    return path


@pytest.fixture
def pipeline(repo):
    return StatementImportPipeline(repo, StatementImporter(repo))


# ── wait_for_stable ──────────────────────────────────────


class TestWaitForStable:
    def test_stable_file_returns(self, tmp_path):
        f = tmp_path / "a.json"
        f.write_text("{}")
        wait_for_stable(f, stability_seconds=0, check_interval=0.01)

    def test_timeout(self, tmp_path):
        f = tmp_path / "a.json"
        f.write_text("{}")
        with pytest.raises(TimeoutError):
            wait_for_stable(f, stability_seconds=10, check_interval=0.01, max_wait=0.05)

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            wait_for_stable(tmp_path / "gone.json", stability_seconds=0, check_interval=0.01)


# ── load_payload / resolve_account_id ───────────────────


class TestLoadPayload:
    def test_valid(self, tmp_path):
        data = load_payload(_write_payload(tmp_path / "x.json"))
        assert data["account_info"]["currency"] == "CAD"

    def test_empty(self, tmp_path):
        f = tmp_path / "x.json"
        f.write_text("   ")
        with pytest.raises(FileStabilityError, match="Empty"):
            load_payload(f)

    def test_truncated(self, tmp_path):
        f = tmp_path / "x.json"
        f.write_text('{"account_info": {')
        with pytest.raises(FileStabilityError, match="invalid JSON"):
            load_payload(f)

    def test_not_an_object(self, tmp_path):
        f = tmp_path / "x.json"
        f.write_text("[1, 2]")
        with pytest.raises(FileStabilityError, match="JSON object"):
            load_payload(f)


class TestResolveAccountId:
    def test_from_payload(self):
        assert resolve_account_id(Path("whatever.json"), {"account_id": " sav-a "}) == "sav-a"

    def test_from_file_name(self):
        assert resolve_account_id(Path("chq-a__2024-12.json"), {}) == "chq-a"

    def test_payload_wins(self):
        assert resolve_account_id(Path("chq-a__x.json"), {"account_id": "sav-a"}) == "sav-a"

    def test_unresolvable(self):
        assert resolve_account_id(Path("statement.json"), {}) is None
        assert resolve_account_id(Path("__x.json"), {}) is None


# ── StatementImportPipeline ─────────────────────────────


class TestProcessFile:
    def test_success(self, repo, pipeline, tmp_path):
        result = pipeline.process_file(_write_payload(tmp_path / "chq-a__dec.json"))
        assert result.status == "success"
        assert result.account_id == "chq-a"
        assert result.transaction_count == 1
        assert repo.get_statement(result.statement_id).file_name == "chq-a__dec.json"

    def test_mismatched(self, pipeline, tmp_path):
        result = pipeline.process_file(
            _write_payload(tmp_path / "chq-a__dec.json", closing="1400.00")
        )
        assert result.status == "mismatched"
        assert "does not balance" in result.error_message

    def test_duplicate_file_name(self, pipeline, tmp_path):
        f = _write_payload(tmp_path / "chq-a__dec.json")
        pipeline.process_file(f)
        assert pipeline.process_file(f).status == "duplicate"

    def test_unknown_account(self, pipeline, tmp_path):
        result = pipeline.process_file(_write_payload(tmp_path / "ghost__dec.json"))
        assert result.status == "error"
        assert "ghost" in result.error_message

    def test_no_account(self, pipeline, tmp_path):
        result = pipeline.process_file(_write_payload(tmp_path / "dec.json"))
        assert result.status == "error"
        assert "account" in result.error_message

    def test_incomplete_payload(self, repo, pipeline, tmp_path):
        f = tmp_path / "chq-a__bad.json"
        f.write_text(json.dumps({"account_info": {"currency": "CAD"}, "transactions": []}))
        result = pipeline.process_file(f)
        assert result.status == "error"
        assert repo.list_statements() == []

    def test_unsupported_extension(self, pipeline, tmp_path):
        f = tmp_path / "chq-a__dec.csv"
        f.write_text("date,amount\n")
        result = pipeline.process_file(f)
        assert result.status == "error"
        assert "Unsupported" in result.error_message


# ── FileWatcher ──────────────────────────────────────────


class TestFileWatcher:
    def _event(self, path, is_directory=False):
        event = MagicMock()
        event.src_path = str(path)
        event.is_directory = is_directory
        return event

    def test_ignores_directories_and_other_files(self, tmp_path):
        pipeline = MagicMock()
        watcher = FileWatcher(tmp_path, pipeline, stability_seconds=0, check_interval=0.01)
        watcher.on_created(self._event(tmp_path / "sub", is_directory=True))
        watcher.on_created(self._event(tmp_path / "notes.txt"))
        pipeline.process_file.assert_not_called()

    def test_processes_json(self, tmp_path):
        f = _write_payload(tmp_path / "chq-a__dec.json")
        pipeline = MagicMock()
        pipeline.process_file.return_value = ImportResult(file_name=f.name, status="success")
        watcher = FileWatcher(tmp_path, pipeline, stability_seconds=0, check_interval=0.01)
        watcher.on_created(self._event(f))
        pipeline.process_file.assert_called_once_with(f)

    def test_renamed_in_file_processed(self, tmp_path):
        f = _write_payload(tmp_path / "chq-a__dec.json")
        pipeline = MagicMock()
        pipeline.process_file.return_value = ImportResult(file_name=f.name, status="success")
        watcher = FileWatcher(tmp_path, pipeline, stability_seconds=0, check_interval=0.01)
        event = self._event(tmp_path / "chq-a__dec.json.part")
        event.dest_path = str(f)
        watcher.on_moved(event)
        pipeline.process_file.assert_called_once_with(f)

    def test_stability_failure_reported(self, tmp_path):
        pipeline = MagicMock()
        watcher = FileWatcher(tmp_path, pipeline)
        with patch("ledgermatch.watcher.observer.wait_for_stable",
                   side_effect=TimeoutError("still growing")):
            result = watcher._process_file(tmp_path / "chq-a__dec.json")
        assert result.status == "error"
        assert "still growing" in result.error_message
        pipeline.process_file.assert_not_called()

    def test_start_creates_dir_and_stop(self, tmp_path):
        watch_dir = tmp_path / "inbox"
        watcher = FileWatcher(watch_dir, MagicMock())
        with patch("watchdog.observers.polling.PollingObserver") as observer_cls:
            watcher.start()
            assert watch_dir.is_dir()
            observer_cls.return_value.start.assert_called_once()
            watcher.stop()
            observer_cls.return_value.join.assert_called_once()
