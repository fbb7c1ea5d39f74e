"""Extraction-service payloads: untyped dicts in, typed drafts out.

Expected shape:

    {"account_info": {"opening_balance", "closing_balance", "currency",
                      "balance_type", "period_start"?, "period_end"?},
     "transactions": [{"date", "description", "amount", "direction"}]}

Amounts become positive magnitudes; the direction carries the sign.
Anything missing or malformed raises IncompleteInput rather than being
defaulted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from ledgermatch.database.models import BALANCE_TYPES, DIRECTIONS, Account, Transaction
from ledgermatch.reconcile.balance import IncompleteInput, to_decimal


@dataclass
class StatementDraft:
    account_id: str
    opening_balance: Decimal
    closing_balance: Decimal
    currency: str
    balance_type: str
    transactions: list[Transaction] = field(default_factory=list)
    period_start: str | None = None
    period_end: str | None = None


def _require(mapping: dict, key: str, where: str):
    value = mapping.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise IncompleteInput(f"Missing {key} in {where}")
    return value


def _parse_date(value, where: str) -> str:
    try:
        return date.fromisoformat(str(value).strip()[:10]).isoformat()
    except ValueError as e:
        raise IncompleteInput(f"Bad date {value!r} in {where}") from e


def parse_transaction(raw: dict, idx: int, account: Account) -> Transaction:
    where = f"transaction #{idx}"
    if not isinstance(raw, dict):
        raise IncompleteInput(f"{where} is not an object")
    direction = str(_require(raw, "direction", where)).strip().lower()
    if direction not in DIRECTIONS:
        raise IncompleteInput(f"Bad direction {direction!r} in {where}")
    amount = to_decimal(raw.get("amount"), f"amount in {where}")
    return Transaction(
        account_id=account.id,
        company_id=account.company_id,
        date=_parse_date(_require(raw, "date", where), where),
        amount=abs(amount),
        currency=account.currency,
        direction=direction,
        description=str(raw.get("description") or "").strip(),
        position=idx,
    )


def parse_extraction_payload(data: dict, account: Account) -> StatementDraft:
    if not isinstance(data, dict):
        raise IncompleteInput("Extraction payload must be an object")
    info = data.get("account_info")
    if not isinstance(info, dict):
        raise IncompleteInput("Missing account_info in extraction payload")
    raw_txns = data.get("transactions")
    if not isinstance(raw_txns, list):
        raise IncompleteInput("Missing transactions list in extraction payload")

    opening = to_decimal(info.get("opening_balance"), "opening balance")
    closing = to_decimal(info.get("closing_balance"), "closing balance")

    currency = str(_require(info, "currency", "account_info")).strip().upper()
    if currency != account.currency:
        raise IncompleteInput(
            f"Statement currency {currency} does not match account"
            f" {account.id} ({account.currency})"
        )

    balance_type = str(_require(info, "balance_type", "account_info")).strip().lower()
    if balance_type not in BALANCE_TYPES:
        raise IncompleteInput(f"Unknown balance_type: {balance_type!r}")
    if balance_type != account.balance_type:
        raise IncompleteInput(
            f"Statement balance_type {balance_type} does not match account"
            f" {account.id} ({account.balance_type})"
        )

    txns = [parse_transaction(raw, idx, account) for idx, raw in enumerate(raw_txns)]

    period_start = info.get("period_start")
    period_end = info.get("period_end")
    period_start = _parse_date(period_start, "account_info") if period_start else (
        min(t.date for t in txns) if txns else None
    )
    period_end = _parse_date(period_end, "account_info") if period_end else (
        max(t.date for t in txns) if txns else None
    )

    return StatementDraft(
        account_id=account.id,
        opening_balance=opening,
        closing_balance=closing,
        currency=currency,
        balance_type=balance_type,
        transactions=txns,
        period_start=period_start,
        period_end=period_end,
    )
