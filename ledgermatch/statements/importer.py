"""StatementImporter: validate, reconcile, persist, then look for transfers.

Import flow:
  1. Parse the extraction payload into a typed draft (IncompleteInput on bad input)
  2. Reconcile the draft's arithmetic
  3. Persist the statement and its transactions in one write
  4. If the statement balances: match declared pending transfers, then
     run candidate detection seeded by the new transactions

A mismatched statement is stored for correction but not matched until it
balances, since a wrong direction would produce wrong pairs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from ledgermatch.database.models import StatementImport, Transaction
from ledgermatch.database.repository import Repository
from ledgermatch.reconcile.balance import (
    DEFAULT_EPSILON,
    BalanceMismatch,
    ReconciliationResult,
    apply_direction_overrides,
    reconcile_statement,
)
from ledgermatch.statements.payload import parse_extraction_payload
from ledgermatch.transfers.detect import (
    DetectionFilter,
    DetectionResult,
    TransferCandidateDetector,
)
from ledgermatch.transfers.pending import PendingMatchResult, PendingTransferMatcher

logger = logging.getLogger(__name__)


class StatementLocked(Exception):
    """Raised when changing a confirmed statement or a linked transaction."""


@dataclass
class ImportOutcome:
    statement: StatementImport
    transactions: list[Transaction]
    reconciliation: ReconciliationResult
    pending_matches: PendingMatchResult | None = None
    detection: DetectionResult | None = None
    warnings: list[str] = field(default_factory=list)


class StatementImporter:
    def __init__(
        self,
        repo: Repository,
        detector: TransferCandidateDetector | None = None,
        matcher: PendingTransferMatcher | None = None,
        epsilon: Decimal = DEFAULT_EPSILON,
    ):
        self.repo = repo
        self.detector = detector
        self.matcher = matcher
        self.epsilon = epsilon

    def _find_transfers(
        self, statement_id: str,
    ) -> tuple[PendingMatchResult | None, DetectionResult | None]:
        pending = detection = None
        if self.matcher is not None:
            pending = self.matcher.match_batch(
                self.repo.get_transactions_by_statement(statement_id)
            )
        if self.detector is not None:
            detection = self.detector.detect(
                DetectionFilter(statement_import_id=statement_id)
            )
        return pending, detection

    def import_statement(
        self, account_id: str, payload: dict, file_name: str | None = None,
    ) -> ImportOutcome:
        account = self.repo.require_account(account_id)
        draft = parse_extraction_payload(payload, account)
        result = reconcile_statement(
            draft.transactions, draft.opening_balance, draft.closing_balance,
            draft.balance_type, self.epsilon,
        )

        stmt = StatementImport(
            account_id=account.id,
            opening_balance=draft.opening_balance,
            closing_balance=draft.closing_balance,
            computed_closing=result.computed_closing,
            reconciliation_status="balanced" if result.balanced else "mismatched",
            period_start=draft.period_start,
            period_end=draft.period_end,
            file_name=file_name,
        )
        flagged = {t.id for t in (result.suspects or draft.transactions)}
        for txn, balance in zip(draft.transactions, result.running_balances):
            txn.statement_import_id = stmt.id
            txn.running_balance = balance
            txn.needs_review = not result.balanced and txn.id in flagged
        self.repo.insert_statement(stmt, draft.transactions)

        outcome = ImportOutcome(
            statement=stmt,
            transactions=draft.transactions,
            reconciliation=result,
        )
        if result.balanced:
            logger.info(
                "Imported %d transactions for %s (%s), balanced at %s",
                len(draft.transactions), account.id, file_name or "payload",
                result.computed_closing,
            )
            outcome.pending_matches, outcome.detection = self._find_transfers(stmt.id)
            outcome.transactions = self.repo.get_transactions_by_statement(stmt.id)
        else:
            msg = (
                f"Statement {stmt.id} does not balance: declared {draft.closing_balance},"
                f" computed {result.computed_closing} ({len(result.suspects)} suspect(s))"
            )
            outcome.warnings.append(msg)
            logger.warning(msg)
        return outcome

    def correct_statement(
        self, statement_id: str, direction_overrides: dict[str, str],
    ) -> StatementImport:
        """Re-run reconciliation with some directions flipped and store the result.

        A statement that balances after correction is marked 'corrected'
        and goes through transfer matching.
        """
        stmt = self.repo.require_statement(statement_id)
        if stmt.confirmed:
            raise StatementLocked(f"Statement {statement_id} is confirmed")
        account = self.repo.require_account(stmt.account_id)
        txns = self.repo.get_transactions_by_statement(statement_id)

        for txn in txns:
            if txn.id in direction_overrides and txn.linked_to:
                raise StatementLocked(
                    f"Transaction {txn.id} is linked to {txn.linked_to}; unlink it first"
                )

        corrected = apply_direction_overrides(txns, direction_overrides)
        result = reconcile_statement(
            corrected, stmt.opening_balance, stmt.closing_balance,
            account.balance_type, self.epsilon,
        )
        flagged = {t.id for t in result.suspects}
        status = "corrected" if result.balanced else "mismatched"

        with self.repo.atomic():
            for txn, balance in zip(corrected, result.running_balances):
                self.repo.update_transaction_direction(
                    txn.id, txn.direction, balance,
                    needs_review=not result.balanced and txn.id in flagged,
                )
            self.repo.update_statement_reconciliation(
                statement_id, result.computed_closing, status,
            )
        logger.info(
            "Corrected statement %s: %d direction(s) changed, now %s",
            statement_id, len(direction_overrides), status,
        )

        if result.balanced:
            self._find_transfers(statement_id)
        return self.repo.require_statement(statement_id)

    def confirm_statement(self, statement_id: str) -> StatementImport:
        """Confirm a balanced statement and lock its transactions.

        Raises BalanceMismatch, with the suspects, while it does not balance.
        """
        stmt = self.repo.require_statement(statement_id)
        if stmt.confirmed:
            return stmt
        account = self.repo.require_account(stmt.account_id)
        txns = self.repo.get_transactions_by_statement(statement_id)
        result = reconcile_statement(
            txns, stmt.opening_balance, stmt.closing_balance,
            account.balance_type, self.epsilon,
        )
        if not result.balanced:
            raise BalanceMismatch(result.difference, result.suspects)
        self.repo.confirm_statement(statement_id)
        logger.info("Confirmed statement %s; %d transactions locked", statement_id, len(txns))
        return self.repo.require_statement(statement_id)
