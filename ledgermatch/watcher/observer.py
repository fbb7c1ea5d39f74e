"""Drop-folder intake for extraction results.

An upstream extractor writes one JSON document per statement into the
watch directory. Each file goes through:
  settle (size and mtime unchanged for a while) → parse JSON →
  work out the account → StatementImporter.import_statement

The account is the payload's "account_id" or, without one, the part of
the file name before the first "__", as in opco-chequing__2026-03.json.

watchdog's PollingObserver is used rather than the native observer;
bind-mounted and network folders often never raise inotify events.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from ledgermatch.reconcile.balance import IncompleteInput

if TYPE_CHECKING:
    from ledgermatch.database.repository import Repository
    from ledgermatch.statements.importer import StatementImporter

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".json"}
ACCOUNT_SEPARATOR = "__"

DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0
DEFAULT_MAX_WAIT = 300.0
POLL_TIMEOUT = 30


@dataclass
class ImportResult:
    file_name: str
    status: str  # success | mismatched | duplicate | error
    account_id: str | None = None
    statement_id: str | None = None
    transaction_count: int = 0
    auto_linked_count: int = 0
    pending_review_count: int = 0
    pending_matched_count: int = 0
    error_message: str | None = None

    @classmethod
    def failed(cls, file_name: str, message: str) -> ImportResult:
        return cls(file_name=file_name, status="error", error_message=message)


class FileStabilityError(Exception):
    """The file settled but its contents are not a usable payload."""


def _is_candidate(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


# ── Reading dropped files ───────────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: float = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> None:
    """Block until the file has stopped changing.

    Raises TimeoutError after max_wait seconds and OSError if the file
    disappears.
    """
    deadline = time.monotonic() + max_wait
    last = None
    unchanged_since = None

    while time.monotonic() <= deadline:
        st = filepath.stat()
        snapshot = (st.st_size, st.st_mtime_ns)
        now = time.monotonic()
        if snapshot != last:
            last, unchanged_since = snapshot, None
        elif unchanged_since is None:
            unchanged_since = now
        elif now - unchanged_since >= stability_seconds:
            return
        time.sleep(check_interval)

    raise TimeoutError(f"{filepath} still changing after {max_wait}s")


def load_payload(filepath: Path) -> dict:
    """Parse a settled file; FileStabilityError if it is not a JSON object."""
    raw = filepath.read_text(encoding="utf-8", errors="replace")
    if not raw.strip():
        raise FileStabilityError(f"Empty file: {filepath.name}")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FileStabilityError(f"Truncated or invalid JSON in {filepath.name}: {e}") from e
    if not isinstance(data, dict):
        raise FileStabilityError(
            f"{filepath.name} holds a JSON {type(data).__name__}, expected a JSON object"
        )
    return data


def resolve_account_id(filepath: Path, payload: dict) -> str | None:
    explicit = payload.get("account_id")
    if isinstance(explicit, str) and explicit.strip():
        return explicit.strip()
    prefix, sep, _ = filepath.stem.partition(ACCOUNT_SEPARATOR)
    return (prefix.strip() or None) if sep else None


# ── Import ──────────────────────────────────────────────


class StatementImportPipeline:
    """Turn one dropped file into an imported statement and report how it went."""

    def __init__(self, repo: Repository, importer: StatementImporter):
        self.repo = repo
        self.importer = importer

    def process_file(self, filepath: Path) -> ImportResult:
        name = filepath.name
        if not _is_candidate(filepath):
            return ImportResult.failed(name, f"Unsupported file extension: {filepath.suffix}")

        previous = self.repo.get_statement_by_file_name(name)
        if previous is not None:
            logger.info("%s was already imported as statement %s", name, previous.id)
            return ImportResult(
                file_name=name, status="duplicate",
                account_id=previous.account_id, statement_id=previous.id,
            )

        try:
            payload = load_payload(filepath)
            account_id = resolve_account_id(filepath, payload)
            if account_id is None:
                raise IncompleteInput(
                    f"No account for {name}: add an account_id key or name the"
                    f" file <account_id>{ACCOUNT_SEPARATOR}<label>.json"
                )
            outcome = self.importer.import_statement(account_id, payload, file_name=name)
        except Exception as e:
            logger.exception("Could not import %s", name)
            return ImportResult.failed(name, str(e))

        detection, pending = outcome.detection, outcome.pending_matches
        return ImportResult(
            file_name=name,
            status="success" if outcome.reconciliation.balanced else "mismatched",
            account_id=account_id,
            statement_id=outcome.statement.id,
            transaction_count=len(outcome.transactions),
            auto_linked_count=len(detection.auto_linked) if detection else 0,
            pending_review_count=len(detection.pending) if detection else 0,
            pending_matched_count=len(pending.matched) + len(pending.partial) if pending else 0,
            error_message="; ".join(outcome.warnings) or None,
        )


# ── Watching ────────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Feed new or renamed-in JSON files to the pipeline, one at a time."""

    def __init__(
        self,
        watch_dir: Path,
        pipeline: StatementImportPipeline,
        stability_seconds: float = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        self.watch_dir.mkdir(parents=True, exist_ok=True)
        observer = PollingObserver(timeout=POLL_TIMEOUT)
        observer.schedule(self, str(self.watch_dir), recursive=False)
        observer.start()
        self._observer = observer
        logger.info("Watching %s for extraction results", self.watch_dir)

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        observer.join()
        logger.info("Stopped watching %s", self.watch_dir)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._handle(Path(event.src_path))

    def on_moved(self, event) -> None:
        # extractors that write to a temp name and rename on completion
        if not event.is_directory:
            self._handle(Path(event.dest_path))

    def _handle(self, filepath: Path) -> None:
        if _is_candidate(filepath):
            logger.info("Picked up %s", filepath.name)
            self._process_file(filepath)

    def _process_file(self, filepath: Path) -> ImportResult:
        try:
            wait_for_stable(filepath, self.stability_seconds, self.check_interval)
        except (TimeoutError, OSError) as e:
            logger.error("Gave up waiting on %s: %s", filepath.name, e)
            return ImportResult.failed(filepath.name, str(e))

        result = self.pipeline.process_file(filepath)
        logger.info(
            "%s: %s, %d transactions, %d auto-linked, %d for review",
            filepath.name, result.status, result.transaction_count,
            result.auto_linked_count, result.pending_review_count,
        )
        return result
