"""Reanalysis batches: re-run transfer detection and categorization over a selection.

Stages, in order:
  1. detecting_transfers  detector seeded with the selected transactions (optional)
  2. matching_kb          knowledge-base keyword lookup
  3. processing_ai        categorization collaborator for anything still unresolved
  4. completed

failed and cancelled are reachable from any stage before completed.
Transactions that are manually or statement locked are dropped from the
selection up front. Every per-item write commits on its own, so
cancelling or failing a batch keeps the work already done, and a retry
simply runs the same selection again.

The batch id is the only handle: state lives on the batch row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from ledgermatch.categorize.claude_ai import ClaudeCategorizationResult
from ledgermatch.categorize.knowledge_base import KnowledgeBase
from ledgermatch.database.models import ReanalysisBatch, Transaction, _now
from ledgermatch.database.repository import Repository
from ledgermatch.transfers.detect import DetectionFilter, TransferCandidateDetector

logger = logging.getLogger(__name__)

PENDING = "pending"
DETECTING_TRANSFERS = "detecting_transfers"
MATCHING_KB = "matching_kb"
PROCESSING_AI = "processing_ai"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

ACTIVE_STATES = (PENDING, DETECTING_TRANSFERS, MATCHING_KB, PROCESSING_AI)
RUNNING_STATES = (DETECTING_TRANSFERS, MATCHING_KB, PROCESSING_AI)

# AI suggestions below this confidence are applied but left for review
AI_REVIEW_THRESHOLD = 0.8

COUNTER_FIELDS = (
    "transfers_detected", "transfers_auto_linked", "transfers_pending_review",
    "kb_matched", "ai_matched", "unmatched", "errors",
)


class BatchFailed(Exception):
    """A reanalysis batch stopped with an error. Recorded on the batch row."""

    def __init__(self, batch_id: str, message: str):
        self.batch_id = batch_id
        self.message = message
        super().__init__(message)


class BatchStalled(BatchFailed):
    """A batch made no progress for longer than the stall interval."""

    @classmethod
    def idle(cls, batch_id: str, stage: str, idle_seconds: float) -> BatchStalled:
        return cls(
            batch_id,
            f"Stalled in {stage}: no progress for {int(idle_seconds)} seconds",
        )


@dataclass
class BatchStatus:
    batch_id: str
    state: str
    progress_current: int
    progress_total: int
    progress_message: str | None = None
    counters: dict[str, int] = field(default_factory=dict)
    error_message: str | None = None
    completed_at: str | None = None

    @property
    def progress(self) -> tuple[int, int]:
        return self.progress_current, self.progress_total

    @classmethod
    def from_batch(cls, batch: ReanalysisBatch) -> BatchStatus:
        return cls(
            batch_id=batch.id,
            state=batch.status,
            progress_current=batch.progress_current,
            progress_total=batch.progress_total,
            progress_message=batch.progress_message,
            counters={name: getattr(batch, name) for name in COUNTER_FIELDS},
            error_message=batch.error_message,
            completed_at=batch.completed_at,
        )

    def raise_for_failure(self) -> None:
        if self.state != FAILED:
            return
        message = self.error_message or "Batch failed"
        if message.startswith("Stalled"):
            raise BatchStalled(self.batch_id, message)
        raise BatchFailed(self.batch_id, message)


AiCategorizer = Callable[[Transaction], "ClaudeCategorizationResult | None"]


class ReanalysisOrchestrator:
    def __init__(
        self,
        repo: Repository,
        detector: TransferCandidateDetector | None = None,
        knowledge_base: KnowledgeBase | None = None,
        ai_categorize: AiCategorizer | None = None,
        fallback_category: str = "uncategorized",
        stall_seconds: int = 600,
    ):
        self.repo = repo
        self.detector = detector
        self.knowledge_base = knowledge_base or KnowledgeBase([])
        self.ai_categorize = ai_categorize
        self.fallback_category = fallback_category
        self.stall_seconds = stall_seconds

    # ── Batch lifecycle ─────────────────────────────────────

    def create_batch(
        self, transaction_ids: Iterable[str], detect_transfers: bool = True,
    ) -> ReanalysisBatch:
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            raise ValueError("No transactions selected for reanalysis")
        batch = ReanalysisBatch(
            transaction_ids=ids,
            detect_transfers=detect_transfers,
            progress_total=len(ids),
        )
        self.repo.insert_batch(batch)
        logger.info("Created reanalysis batch %s with %d transactions", batch.id, len(ids))
        return batch

    def start_reanalysis(
        self, transaction_ids: Iterable[str], detect_transfers: bool = True,
    ) -> str:
        batch = self.create_batch(transaction_ids, detect_transfers)
        self.run_batch(batch.id)
        return batch.id

    def get_batch_status(self, batch_id: str) -> BatchStatus:
        return BatchStatus.from_batch(self.repo.require_batch(batch_id))

    def cancel_batch(self, batch_id: str) -> BatchStatus:
        batch = self.repo.require_batch(batch_id)
        if batch.status == CANCELLED:
            return BatchStatus.from_batch(batch)
        if not self.repo.transition_batch(
            batch_id, CANCELLED, ACTIVE_STATES,
            completed_at=_now(), progress_message="Cancelled",
        ):
            current = self.repo.require_batch(batch_id)
            if current.status != CANCELLED:
                raise ValueError(f"Batch {batch_id} is already {current.status}")
        logger.info("Cancelled reanalysis batch %s", batch_id)
        return self.get_batch_status(batch_id)

    def retry_batch(self, batch_id: str) -> BatchStatus:
        """Reset a failed batch to pending and run the same selection again."""
        batch = self.repo.require_batch(batch_id)
        if not self.repo.transition_batch(
            batch_id, PENDING, (FAILED,),
            error_message=None, errors=0, progress_current=0,
            progress_message=None, completed_at=None,
        ):
            raise ValueError(f"Only failed batches can be retried; {batch_id} is {batch.status}")
        logger.info("Retrying reanalysis batch %s", batch_id)
        return self.run_batch(batch_id)

    def fail_stalled_batches(
        self, stall_seconds: int | None = None, now: datetime | None = None,
    ) -> list[BatchStatus]:
        """Mark batches with no progress for stall_seconds as failed."""
        limit = self.stall_seconds if stall_seconds is None else stall_seconds
        now = now or datetime.now(timezone.utc)
        failed = []
        for batch in self.repo.list_batches(status=ACTIVE_STATES):
            last = datetime.fromisoformat(batch.updated_at)
            if last.tzinfo is None:
                last = last.replace(tzinfo=timezone.utc)
            idle = (now - last).total_seconds()
            if idle <= limit:
                continue
            stalled = BatchStalled.idle(batch.id, batch.status, idle)
            if self.repo.transition_batch(
                batch.id, FAILED, (batch.status,),
                error_message=stalled.message, completed_at=_now(),
            ):
                logger.warning("Reanalysis batch %s: %s", batch.id, stalled.message)
                failed.append(self.get_batch_status(batch.id))
        return failed

    # ── Running ─────────────────────────────────────────────

    def run_batch(self, batch_id: str) -> BatchStatus:
        """Run a pending batch to completion, cancellation or failure.

        Failures are recorded on the batch and never raised.
        """
        batch = self.repo.require_batch(batch_id)
        first = DETECTING_TRANSFERS if batch.detect_transfers else MATCHING_KB
        if not self.repo.transition_batch(
            batch_id, first, (PENDING,), progress_current=0,
            progress_message="Starting",
        ):
            logger.info("Batch %s is %s, not starting it", batch_id, batch.status)
            return self.get_batch_status(batch_id)

        try:
            self._run(batch)
        except Exception as e:
            message = e.message if isinstance(e, BatchFailed) else f"{type(e).__name__}: {e}"
            logger.exception("Reanalysis batch %s failed", batch_id)
            self.repo.transition_batch(
                batch_id, FAILED, RUNNING_STATES,
                error_message=message, completed_at=_now(),
            )
        return self.get_batch_status(batch_id)

    def _is_cancelled(self, batch_id: str) -> bool:
        current = self.repo.get_batch(batch_id)
        return current is None or current.status == CANCELLED

    def _eligible(self, batch: ReanalysisBatch) -> list[Transaction]:
        txns = self.repo.get_transactions(batch.transaction_ids)
        missing = len(batch.transaction_ids) - len(txns)
        if missing:
            logger.warning("Batch %s: %d selected transaction(s) not found", batch.id, missing)
        eligible = [t for t in txns if not t.is_locked]
        skipped = len(txns) - len(eligible)
        if skipped:
            logger.info("Batch %s: skipping %d locked transaction(s)", batch.id, skipped)
        return eligible

    def _run(self, batch: ReanalysisBatch) -> None:
        eligible = self._eligible(batch)
        eligible_ids = [t.id for t in eligible]
        total = len(eligible_ids)
        self.repo.update_batch(batch.id, progress_total=total)
        stage = DETECTING_TRANSFERS if batch.detect_transfers else MATCHING_KB

        if batch.detect_transfers:
            if self._is_cancelled(batch.id):
                return
            self.repo.update_batch(batch.id, progress_message="Detecting transfers")
            if self.detector is not None and eligible_ids:
                try:
                    result = self.detector.detect(
                        DetectionFilter(transaction_ids=eligible_ids), batch_id=batch.id,
                    )
                except Exception as e:
                    raise BatchFailed(batch.id, f"Transfer detection failed: {e}") from e
                self.repo.update_batch(
                    batch.id,
                    transfers_detected=result.candidates_created,
                    transfers_auto_linked=len(result.auto_linked),
                    transfers_pending_review=len(result.pending),
                )
            if not self.repo.transition_batch(batch.id, MATCHING_KB, (stage,)):
                return
            stage = MATCHING_KB

        unresolved = self._match_kb(batch.id, eligible_ids, total)
        if unresolved is None:
            return
        if not self.repo.transition_batch(
            batch.id, PROCESSING_AI, (stage,),
        ):
            return

        if not self._categorize_ai(batch.id, unresolved, done=total - len(unresolved)):
            return
        if self.repo.transition_batch(
            batch.id, COMPLETED, (PROCESSING_AI,),
            completed_at=_now(), progress_message="Done",
        ):
            done = self.get_batch_status(batch.id)
            logger.info("Reanalysis batch %s completed: %s", batch.id, done.counters)

    def _match_kb(
        self, batch_id: str, txn_ids: list[str], total: int,
    ) -> list[Transaction] | None:
        """Returns the transactions left for the AI stage, or None if cancelled.

        progress_current counts transactions that need no further stage.
        """
        unresolved: list[Transaction] = []
        kb_matched = errors = 0
        # Re-read: detection may have linked some of them
        txns = {t.id: t for t in self.repo.get_transactions(txn_ids)}

        for i, txn_id in enumerate(txn_ids, start=1):
            if self._is_cancelled(batch_id):
                return None
            txn = txns.get(txn_id)
            try:
                if txn is not None and txn.linked_to is None and txn.transfer_status == "unmatched":
                    match = self.knowledge_base.lookup(txn.description)
                    if match is not None:
                        self.repo.update_transaction_category(
                            txn.id, match.category_id, "knowledge_base",
                            match.confidence, needs_review=False,
                        )
                        kb_matched += 1
                    else:
                        unresolved.append(txn)
            except Exception:
                errors += 1
                logger.exception("Knowledge base lookup failed for txn %s", txn_id)
            self.repo.update_batch(
                batch_id, progress_current=i - len(unresolved),
                kb_matched=kb_matched, errors=errors,
                progress_message=f"Matching knowledge base ({i}/{total})",
            )
        return unresolved

    def _categorize_ai(
        self, batch_id: str, txns: list[Transaction], done: int = 0,
    ) -> bool:
        """Returns False if the batch was cancelled part way.

        done is the progress already made by earlier stages.
        """
        batch = self.repo.require_batch(batch_id)
        ai_matched = unmatched = 0
        errors = batch.errors
        total = len(txns)

        for i, txn in enumerate(txns, start=1):
            if self._is_cancelled(batch_id):
                return False
            try:
                result = self.ai_categorize(txn) if self.ai_categorize else None
                if result is not None:
                    self.repo.update_transaction_category(
                        txn.id, result.category_id, "claude_ai", result.confidence,
                        needs_review=result.confidence < AI_REVIEW_THRESHOLD,
                    )
                    ai_matched += 1
                else:
                    self.repo.update_transaction_category(
                        txn.id, self.fallback_category, "fallback", 0.0,
                        needs_review=True,
                    )
                    unmatched += 1
            except Exception:
                errors += 1
                logger.exception("AI categorization failed for txn %s", txn.id)
            self.repo.update_batch(
                batch_id, progress_current=done + i, ai_matched=ai_matched,
                unmatched=unmatched, errors=errors,
                progress_message=f"Categorizing with AI ({i}/{total})",
            )
        return True
