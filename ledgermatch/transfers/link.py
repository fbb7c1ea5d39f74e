"""TransferLinkManager: the one place that writes transfer links onto transactions.

Confirmed candidates, auto-linked candidates and fully matched pending
transfers all end up in Repository.link_pair, so both sides always get the
same treatment: mutual linked_to, transfer_out / transfer_in, matched
status, the transfer category and needs_review cleared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgermatch.database.models import (
    CANDIDATE_AUTO_LINKED,
    CANDIDATE_CONFIRMED,
    CANDIDATE_PENDING,
    CANDIDATE_REJECTED,
    PT_MATCHED,
    PT_OPEN,
    PT_PARTIAL,
    PendingTransfer,
    Transaction,
    TransferCandidate,
    _now,
)
from ledgermatch.database.repository import Repository
from ledgermatch.transfers.pending import PendingTransferStateError

logger = logging.getLogger(__name__)

SYSTEM_REVIEWER = "system"
DEFAULT_REJECTION_REASON = "Not a transfer"

# Both statuses mean the pair is linked; accepting either again is a no-op.
_ACCEPTED = (CANDIDATE_CONFIRMED, CANDIDATE_AUTO_LINKED)


class CandidateStateError(Exception):
    """Raised for a review decision the candidate's current status does not allow."""

    def __init__(self, candidate_id: str, status: str, requested: str):
        self.candidate_id = candidate_id
        self.status = status
        self.requested = requested
        super().__init__(
            f"Candidate '{candidate_id}' is {status}; cannot mark {requested}"
        )


@dataclass
class ReviewOutcome:
    candidate: TransferCandidate
    from_transaction: Transaction | None = None
    to_transaction: Transaction | None = None


@dataclass
class PendingLinkOutcome:
    pending_transfer: PendingTransfer
    from_transaction: Transaction | None = None
    to_transaction: Transaction | None = None


class TransferLinkManager:
    def __init__(self, repo: Repository, transfer_category: str | None = "bank_transfer"):
        self.repo = repo
        self.transfer_category = transfer_category

    def link(self, from_txn_id: str, to_txn_id: str) -> tuple[Transaction, Transaction]:
        """Link two transactions. Re-linking an existing pair is a no-op.

        Raises DoubleClaimConflict, leaving both unchanged, when either
        side is linked to some other transaction.
        """
        with self.repo.atomic():
            self.repo.require_transaction(from_txn_id)
            self.repo.require_transaction(to_txn_id)
            self.repo.link_pair(from_txn_id, to_txn_id, self.transfer_category)
        logger.info("Linked transfer %s -> %s", from_txn_id, to_txn_id)
        return (
            self.repo.require_transaction(from_txn_id),
            self.repo.require_transaction(to_txn_id),
        )

    def unlink(self, txn_id: str) -> tuple[Transaction, Transaction | None]:
        """Clear the link on a transaction and its peer.

        The accepted candidate for the pair keeps its status but is stamped
        unlinked_at, which frees both transactions for detection. The same
        pair is not proposed again.
        """
        with self.repo.atomic():
            txn = self.repo.require_transaction(txn_id)
            if txn.linked_to is None:
                return txn, None
            peer = self.repo.get_transaction(txn.linked_to)
            peer_id = peer.id if peer is not None and peer.linked_to == txn.id else None
            self.repo.unlink_pair(txn.id, peer_id)
            released = self.repo.release_candidate_claims([txn.id, txn.linked_to])
        logger.info(
            "Unlinked transfer %s <-> %s (%d candidate(s) released)",
            txn_id, txn.linked_to, released,
        )
        return (
            self.repo.require_transaction(txn_id),
            self.repo.get_transaction(peer_id) if peer_id else None,
        )

    # ── Candidates ──────────────────────────────────────────

    def _accept(
        self, candidate_id: str, new_status: str, reviewer: str | None,
    ) -> ReviewOutcome:
        with self.repo.atomic():
            cand = self.repo.require_candidate(candidate_id)
            if cand.status in _ACCEPTED:
                return self._outcome(cand)
            if cand.status != CANDIDATE_PENDING:
                raise CandidateStateError(cand.id, cand.status, new_status)
            self.repo.link_pair(
                cand.from_transaction_id, cand.to_transaction_id,
                self.transfer_category,
            )
            if not self.repo.transition_candidate(
                cand.id, new_status, reviewed_by=reviewer,
            ):
                current = self.repo.require_candidate(cand.id)
                raise CandidateStateError(cand.id, current.status, new_status)
        logger.info(
            "Candidate %s %s (%s -> %s, score %d)",
            cand.id, new_status, cand.from_transaction_id,
            cand.to_transaction_id, cand.confidence_score,
        )
        return self._outcome(self.repo.require_candidate(cand.id))

    def confirm_candidate(self, candidate_id: str, reviewer: str | None = None) -> ReviewOutcome:
        return self._accept(candidate_id, CANDIDATE_CONFIRMED, reviewer)

    def auto_link_candidate(self, candidate: TransferCandidate) -> ReviewOutcome:
        return self._accept(candidate.id, CANDIDATE_AUTO_LINKED, SYSTEM_REVIEWER)

    def reject_candidate(
        self, candidate_id: str,
        reviewer: str | None = None,
        reason: str | None = None,
    ) -> ReviewOutcome:
        """Reject a pending candidate. Transactions are not touched."""
        with self.repo.atomic():
            cand = self.repo.require_candidate(candidate_id)
            if cand.status == CANDIDATE_REJECTED:
                return ReviewOutcome(candidate=cand)
            if cand.status != CANDIDATE_PENDING:
                raise CandidateStateError(cand.id, cand.status, CANDIDATE_REJECTED)
            if not self.repo.transition_candidate(
                cand.id, CANDIDATE_REJECTED, reviewed_by=reviewer,
                rejection_reason=reason or DEFAULT_REJECTION_REASON,
            ):
                current = self.repo.require_candidate(cand.id)
                raise CandidateStateError(cand.id, current.status, CANDIDATE_REJECTED)
        logger.info("Candidate %s rejected: %s", cand.id, reason or DEFAULT_REJECTION_REASON)
        return ReviewOutcome(candidate=self.repo.require_candidate(cand.id))

    def review_candidate(
        self, candidate_id: str, decision: str,
        reviewer: str | None = None,
        reason: str | None = None,
    ) -> ReviewOutcome:
        if decision == "confirm":
            return self.confirm_candidate(candidate_id, reviewer)
        if decision == "reject":
            return self.reject_candidate(candidate_id, reviewer, reason)
        raise ValueError(f"Unknown review decision: {decision!r}")

    def _outcome(self, cand: TransferCandidate) -> ReviewOutcome:
        return ReviewOutcome(
            candidate=cand,
            from_transaction=self.repo.get_transaction(cand.from_transaction_id),
            to_transaction=self.repo.get_transaction(cand.to_transaction_id),
        )

    # ── Pending transfers ───────────────────────────────────

    def link_pending_transfer(
        self, pending_transfer_id: str, side: str, txn_id: str,
    ) -> PendingLinkOutcome:
        """Attach a transaction to one side of a declared transfer.

        The first side moves the transfer to partial and marks that
        transaction as a transfer awaiting its peer. The second side moves
        it to matched and links both transactions, in one atomic write.
        """
        with self.repo.atomic():
            pt = self.repo.require_pending_transfer(pending_transfer_id)
            if pt.status not in PT_OPEN:
                raise PendingTransferStateError(pt.id, pt.status, f"match {side} side")
            self.repo.require_transaction(txn_id)
            other_id = pt.to_transaction_id if side == "from" else pt.from_transaction_id

            if other_id is None:
                if not self.repo.assign_pending_side(pt.id, side, txn_id, PT_PARTIAL):
                    raise PendingTransferStateError(pt.id, pt.status, f"match {side} side")
                self.repo.mark_transfer_pending(txn_id, self.transfer_category)
            else:
                if not self.repo.assign_pending_side(
                    pt.id, side, txn_id, PT_MATCHED, matched_at=_now(),
                ):
                    raise PendingTransferStateError(pt.id, pt.status, f"match {side} side")
                from_id, to_id = (txn_id, other_id) if side == "from" else (other_id, txn_id)
                self.repo.link_pair(from_id, to_id, self.transfer_category)

        updated = self.repo.require_pending_transfer(pending_transfer_id)
        logger.info(
            "Pending transfer %s: %s side matched to %s, now %s",
            updated.id, side, txn_id, updated.status,
        )
        return PendingLinkOutcome(
            pending_transfer=updated,
            from_transaction=(
                self.repo.get_transaction(updated.from_transaction_id)
                if updated.from_transaction_id else None
            ),
            to_transaction=(
                self.repo.get_transaction(updated.to_transaction_id)
                if updated.to_transaction_id else None
            ),
        )
