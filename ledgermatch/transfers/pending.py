"""User-declared transfers recorded before their statements are imported.

PendingTransferRegistry validates and stores declarations and handles
cancel/delete. PendingTransferMatcher checks each newly imported batch
against the open declarations and hands matches to TransferLinkManager.

Status only moves forward: pending -> partial -> matched, or any
unmatched state -> cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Iterable

from ledgermatch.database.models import (
    CREDIT,
    DEBIT,
    PT_CANCELLED,
    PT_MATCHED,
    PT_OPEN,
    PT_PARTIAL,
    PT_PENDING,
    PendingTransfer,
    Transaction,
)
from ledgermatch.database.repository import DoubleClaimConflict, Repository
from ledgermatch.transfers.scoring import ExchangeRateTable

if TYPE_CHECKING:
    from ledgermatch.transfers.link import PendingLinkOutcome, TransferLinkManager

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_DAYS = 5
DEFAULT_TOLERANCE_AMOUNT = Decimal("0.50")


class InvalidTransferDeclaration(ValueError):
    """Raised when a declared transfer fails validation. Nothing is stored."""


class PendingTransferStateError(Exception):
    """Raised when an action is not allowed in the transfer's current status."""

    def __init__(self, pending_transfer_id: str, status: str, action: str):
        self.pending_transfer_id = pending_transfer_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} pending transfer '{pending_transfer_id}' in status {status}"
        )


def _parse_amount(value, name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidTransferDeclaration(f"Invalid {name}: {value!r}") from e
    if not amount.is_finite():
        raise InvalidTransferDeclaration(f"Invalid {name}: {value!r}")
    return amount


def _parse_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise InvalidTransferDeclaration(f"Invalid transfer date: {value!r}") from e


class PendingTransferRegistry:
    def __init__(self, repo: Repository, defaults: dict | None = None):
        self.repo = repo
        defaults = defaults or {}
        self.default_tolerance_days = int(
            defaults.get("tolerance_days", DEFAULT_TOLERANCE_DAYS)
        )
        self.default_tolerance_amount = Decimal(
            str(defaults.get("tolerance_amount", DEFAULT_TOLERANCE_AMOUNT))
        )

    def register(
        self,
        from_account_id: str,
        to_account_id: str,
        amount,
        transfer_date,
        currency: str | None = None,
        description: str | None = None,
        notes: str | None = None,
        tolerance_days: int | None = None,
        tolerance_amount=None,
        today: date | None = None,
    ) -> PendingTransfer:
        """Validate and record a declared transfer in status pending.

        Raises InvalidTransferDeclaration for a same-account transfer, an
        unknown account, a non-positive amount, a future date, a currency
        neither account holds, or negative tolerances.
        """
        if from_account_id == to_account_id:
            raise InvalidTransferDeclaration("From and to accounts must differ")

        amount_dec = _parse_amount(amount, "amount")
        if amount_dec <= 0:
            raise InvalidTransferDeclaration(f"Amount must be positive, got {amount_dec}")

        when = _parse_date(transfer_date)
        today = today or date.today()
        if when > today:
            raise InvalidTransferDeclaration(f"Transfer date {when} is in the future")

        from_acct = self.repo.get_account(from_account_id)
        to_acct = self.repo.get_account(to_account_id)
        if from_acct is None:
            raise InvalidTransferDeclaration(f"Unknown account: {from_account_id}")
        if to_acct is None:
            raise InvalidTransferDeclaration(f"Unknown account: {to_account_id}")

        currency = (currency or from_acct.currency).upper()
        if currency not in (from_acct.currency, to_acct.currency):
            raise InvalidTransferDeclaration(
                f"Currency {currency} matches neither {from_acct.id} ({from_acct.currency})"
                f" nor {to_acct.id} ({to_acct.currency})"
            )

        tol_days = self.default_tolerance_days if tolerance_days is None else int(tolerance_days)
        tol_amount = (
            self.default_tolerance_amount if tolerance_amount is None
            else _parse_amount(tolerance_amount, "tolerance amount")
        )
        if tol_days < 0 or tol_amount < 0:
            raise InvalidTransferDeclaration("Match tolerances must not be negative")

        pt = PendingTransfer(
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount_dec,
            currency=currency,
            transfer_date=when.isoformat(),
            description=description,
            notes=notes,
            match_tolerance_days=tol_days,
            match_tolerance_amount=tol_amount,
        )
        self.repo.insert_pending_transfer(pt)
        logger.info(
            "Registered pending transfer %s: %s %s %s -> %s on %s",
            pt.id, pt.amount, pt.currency, from_account_id, to_account_id,
            pt.transfer_date,
        )
        return pt

    def get(self, pending_transfer_id: str) -> PendingTransfer:
        return self.repo.require_pending_transfer(pending_transfer_id)

    def list(
        self, status: str | Iterable[str] | None = None,
        account_id: str | None = None,
    ) -> list[PendingTransfer]:
        return self.repo.list_pending_transfers(status=status, account_id=account_id)

    def cancel(self, pending_transfer_id: str) -> PendingTransfer:
        """Cancel an unmatched declaration.

        A side already filled keeps its state. Once the declaration is
        cancelled, detection treats that transaction as unclaimed.
        """
        pt = self.repo.require_pending_transfer(pending_transfer_id)
        if pt.status == PT_CANCELLED:
            return pt
        if pt.status == PT_MATCHED:
            raise PendingTransferStateError(pt.id, pt.status, "cancel")
        if not self.repo.transition_pending_transfer(pt.id, PT_CANCELLED, PT_OPEN):
            current = self.repo.require_pending_transfer(pt.id)
            if current.status != PT_CANCELLED:
                raise PendingTransferStateError(pt.id, current.status, "cancel")
        logger.info("Cancelled pending transfer %s (was %s)", pt.id, pt.status)
        return self.repo.require_pending_transfer(pt.id)

    def delete(self, pending_transfer_id: str) -> None:
        """Delete a declaration that has no matched side yet."""
        pt = self.repo.require_pending_transfer(pending_transfer_id)
        if pt.status != PT_PENDING:
            raise PendingTransferStateError(pt.id, pt.status, "delete")
        if not self.repo.delete_pending_transfer(pt.id, PT_PENDING):
            current = self.repo.require_pending_transfer(pt.id)
            raise PendingTransferStateError(pt.id, current.status, "delete")
        logger.info("Deleted pending transfer %s", pt.id)


@dataclass
class PendingMatchResult:
    matched: list[PendingTransfer] = field(default_factory=list)
    partial: list[PendingTransfer] = field(default_factory=list)
    outcomes: list[PendingLinkOutcome] = field(default_factory=list)


class PendingTransferMatcher:
    """Fill declared transfers from imported transactions.

    A side booked in a currency other than the declaration's is converted
    with the rate table and may differ by up to cross_currency_tolerance_pct
    percent of the converted amount, or by match_tolerance_amount if that
    is larger. Without a rate for the pair the side does not match.
    """

    def __init__(
        self,
        repo: Repository,
        link_manager: TransferLinkManager,
        rates: ExchangeRateTable | None = None,
        cross_currency_tolerance_pct: Decimal = Decimal("2.0"),
    ):
        self.repo = repo
        self.link_manager = link_manager
        self.rates = rates or ExchangeRateTable()
        self.cross_currency_tolerance_pct = Decimal(str(cross_currency_tolerance_pct))

    @staticmethod
    def _side_for(pt: PendingTransfer, txn: Transaction) -> str | None:
        if (txn.direction == DEBIT and txn.account_id == pt.from_account_id
                and pt.from_transaction_id is None):
            return "from"
        if (txn.direction == CREDIT and txn.account_id == pt.to_account_id
                and pt.to_transaction_id is None):
            return "to"
        return None

    def _expected_amount(
        self, pt: PendingTransfer, currency: str,
    ) -> tuple[Decimal, Decimal] | None:
        """The declared amount in currency, and how far a side may be off."""
        if currency == pt.currency:
            return pt.amount, pt.match_tolerance_amount
        rate = self.rates.lookup(pt.currency, currency)
        if rate is None:
            logger.debug("No %s->%s rate for pending transfer %s", pt.currency, currency, pt.id)
            return None
        expected = pt.amount * rate.rate
        allowed = max(pt.match_tolerance_amount,
                      expected * self.cross_currency_tolerance_pct / 100)
        return expected, allowed

    def _fits(self, pt: PendingTransfer, txn: Transaction) -> tuple[int, Decimal] | None:
        expected = self._expected_amount(pt, txn.currency)
        if expected is None:
            return None
        amount, allowed = expected
        amount_diff = abs(txn.amount - amount)
        if amount_diff > allowed:
            return None
        day_diff = abs((date.fromisoformat(txn.date[:10])
                        - date.fromisoformat(pt.transfer_date[:10])).days)
        if day_diff > pt.match_tolerance_days:
            return None
        return day_diff, amount_diff

    def match_batch(self, transactions: Iterable[Transaction]) -> PendingMatchResult:
        """Match a freshly imported batch against open declarations.

        Each transaction fills at most one side of one declaration. When
        several declarations fit, the closest date wins, then the closest
        amount, then the earliest declaration.
        """
        result = PendingMatchResult()
        open_pts = {pt.id: pt for pt in self.repo.list_pending_transfers(status=PT_OPEN)}
        if not open_pts:
            return result

        taken = self.repo.get_pending_transfer_transaction_ids()
        eligible = sorted(
            (t for t in transactions
             if t.linked_to is None and t.transfer_status == "unmatched"
             and t.id not in taken),
            key=lambda t: (t.date, t.id),
        )

        for txn in eligible:
            best = None
            for pt in open_pts.values():
                side = self._side_for(pt, txn)
                if side is None:
                    continue
                fit = self._fits(pt, txn)
                if fit is None:
                    continue
                key = (fit[0], fit[1], pt.transfer_date, pt.created_at, pt.id)
                if best is None or key < best[0]:
                    best = (key, pt, side)
            if best is None:
                continue

            _, pt, side = best
            try:
                outcome = self.link_manager.link_pending_transfer(pt.id, side, txn.id)
            except (DoubleClaimConflict, PendingTransferStateError) as e:
                logger.warning("Pending transfer %s not matched to %s: %s", pt.id, txn.id, e)
                open_pts.pop(pt.id, None)
                continue

            updated = outcome.pending_transfer
            result.outcomes.append(outcome)
            if updated.status == PT_MATCHED:
                open_pts.pop(updated.id, None)
                result.partial = [p for p in result.partial if p.id != updated.id]
                result.matched.append(updated)
            elif updated.status == PT_PARTIAL:
                open_pts[updated.id] = updated
                result.partial.append(updated)
        return result
