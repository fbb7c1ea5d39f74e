"""Statement arithmetic: opening balance + signed activity = closing balance.

Pure functions over a statement's ordered transaction list. Asset accounts
move up on credits and down on debits; liability accounts are the other
way round (a debit increases the amount owed).

A statement with no activity closes at its opening balance. It never
defaults to zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Iterable, Sequence

from ledgermatch.database.models import BALANCE_TYPES, CREDIT, DEBIT, DIRECTIONS, LIABILITY

DEFAULT_EPSILON = Decimal("0.01")


class IncompleteInput(ValueError):
    """Raised when balances, balance type, amounts or directions are missing or malformed."""


class BalanceMismatch(Exception):
    """Raised when the computed closing balance differs from the declared one."""

    def __init__(self, delta: Decimal, suspects: list | None = None):
        self.delta = delta
        self.suspects = suspects or []
        super().__init__(
            f"Statement does not balance: off by {delta}"
            f" ({len(self.suspects)} suspect transaction(s))"
        )


@dataclass
class ReconciliationResult:
    opening_balance: Decimal
    declared_closing: Decimal
    computed_closing: Decimal
    balanced: bool
    difference: Decimal
    running_balances: list[Decimal] = field(default_factory=list)
    suspects: list = field(default_factory=list)

    def raise_for_mismatch(self) -> None:
        if not self.balanced:
            raise BalanceMismatch(self.difference, self.suspects)


def to_decimal(value, field_name: str) -> Decimal:
    """Convert a loosely typed amount into a Decimal or raise IncompleteInput."""
    if value is None or isinstance(value, bool):
        raise IncompleteInput(f"Missing {field_name}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip().replace(",", ""))
        except (InvalidOperation, ValueError) as e:
            raise IncompleteInput(f"Malformed {field_name}: {value!r}") from e
    if not result.is_finite():
        raise IncompleteInput(f"Malformed {field_name}: {value!r}")
    return result


def _check_balance_type(balance_type: str) -> None:
    if balance_type not in BALANCE_TYPES:
        raise IncompleteInput(f"Unknown balance_type: {balance_type!r}")


def signed_delta(amount: Decimal, direction: str, balance_type: str) -> Decimal:
    """Effect of one transaction on the running balance."""
    _check_balance_type(balance_type)
    if direction not in DIRECTIONS:
        raise IncompleteInput(f"Unknown direction: {direction!r}")
    amount = to_decimal(amount, "amount")
    if balance_type == LIABILITY:
        return amount if direction == DEBIT else -amount
    return amount if direction == CREDIT else -amount


def compute_running_balances(
    opening: Decimal, transactions: Iterable, balance_type: str,
) -> list[Decimal]:
    """Balance after each transaction, in statement order."""
    balance = to_decimal(opening, "opening balance")
    _check_balance_type(balance_type)
    balances = []
    for txn in transactions:
        balance += signed_delta(txn.amount, txn.direction, balance_type)
        balances.append(balance)
    return balances


def compute_closing(
    opening: Decimal, transactions: Sequence, balance_type: str,
) -> Decimal:
    balances = compute_running_balances(opening, transactions, balance_type)
    if not balances:
        return to_decimal(opening, "opening balance")
    return balances[-1]


def find_suspects(
    transactions: Sequence, difference: Decimal, balance_type: str,
) -> list:
    """Transactions whose direction, if flipped, would shrink the discrepancy.

    ``difference`` is declared minus computed. Flipping a transaction moves
    the computed balance by twice its delta in the opposite direction.
    Ordered by the discrepancy left after the flip, then statement order.
    """
    scored = []
    for idx, txn in enumerate(transactions):
        delta = signed_delta(txn.amount, txn.direction, balance_type)
        remaining = abs(difference + 2 * delta)
        if remaining < abs(difference):
            scored.append((remaining, idx, txn))
    scored.sort(key=lambda s: (s[0], s[1]))
    return [txn for _, _, txn in scored]


def reconcile_statement(
    transactions: Sequence,
    opening,
    closing,
    balance_type: str,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> ReconciliationResult:
    """Check a statement's arithmetic.

    Args:
        transactions: ordered objects exposing ``amount`` and ``direction``.
        opening: declared opening balance.
        closing: declared closing balance.
        balance_type: 'asset' or 'liability'.
        epsilon: rounding tolerance; differences strictly below it balance.

    Raises:
        IncompleteInput: a balance, amount, direction or the balance type
            is missing or malformed.
    """
    opening_dec = to_decimal(opening, "opening balance")
    closing_dec = to_decimal(closing, "closing balance")
    _check_balance_type(balance_type)
    epsilon = to_decimal(epsilon, "epsilon")

    running = compute_running_balances(opening_dec, transactions, balance_type)
    computed = running[-1] if running else opening_dec
    difference = closing_dec - computed
    balanced = abs(difference) < epsilon

    suspects = [] if balanced else find_suspects(transactions, difference, balance_type)
    return ReconciliationResult(
        opening_balance=opening_dec,
        declared_closing=closing_dec,
        computed_closing=computed,
        balanced=balanced,
        difference=difference,
        running_balances=running,
        suspects=suspects,
    )


def apply_direction_overrides(transactions: Sequence, overrides: dict[str, str]) -> list:
    """Copies of the transactions with directions replaced by id.

    Unknown ids or directions raise IncompleteInput; the originals are left
    untouched.
    """
    known = {txn.id for txn in transactions}
    unknown = set(overrides) - known
    if unknown:
        raise IncompleteInput(f"Unknown transaction id(s) in overrides: {sorted(unknown)}")
    for txn_id, direction in overrides.items():
        if direction not in DIRECTIONS:
            raise IncompleteInput(f"Unknown direction for {txn_id}: {direction!r}")
    return [
        replace(txn, direction=overrides[txn.id]) if txn.id in overrides else txn
        for txn in transactions
    ]
