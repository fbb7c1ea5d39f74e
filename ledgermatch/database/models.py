"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()). Money
columns are stored as TEXT and surface here as Decimal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

DEBIT = "debit"
CREDIT = "credit"
DIRECTIONS = (DEBIT, CREDIT)

ASSET = "asset"
LIABILITY = "liability"
BALANCE_TYPES = (ASSET, LIABILITY)

TRANSFER_OUT = "transfer_out"
TRANSFER_IN = "transfer_in"

# Candidate statuses
CANDIDATE_PENDING = "pending"
CANDIDATE_CONFIRMED = "confirmed"
CANDIDATE_REJECTED = "rejected"
CANDIDATE_AUTO_LINKED = "auto_linked"

# Pending transfer statuses
PT_PENDING = "pending"
PT_PARTIAL = "partial"
PT_MATCHED = "matched"
PT_CANCELLED = "cancelled"
PT_OPEN = (PT_PENDING, PT_PARTIAL)


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Account:
    id: str
    name: str
    currency: str
    balance_type: str = ASSET
    company_id: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class StatementImport:
    account_id: str
    opening_balance: Decimal
    closing_balance: Decimal
    computed_closing: Decimal
    id: str = field(default_factory=_new_id)
    reconciliation_status: str = "mismatched"
    confirmed: bool = False
    period_start: str | None = None
    period_end: str | None = None
    file_name: str | None = None
    created_at: str = field(default_factory=_now)
    confirmed_at: str | None = None


@dataclass
class Transaction:
    account_id: str
    date: str
    amount: Decimal
    currency: str
    direction: str
    description: str = ""
    id: str = field(default_factory=_new_id)
    company_id: str | None = None
    statement_import_id: str | None = None
    position: int = 0
    category_id: str | None = None
    categorization_method: str | None = None
    confidence: float | None = None
    linked_to: str | None = None
    link_type: str | None = None
    transfer_status: str = "unmatched"
    needs_review: bool = False
    manually_locked: bool = False
    statement_locked: bool = False
    running_balance: Decimal | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def is_locked(self) -> bool:
        return self.manually_locked or self.statement_locked


@dataclass
class TransferCandidate:
    from_transaction_id: str
    to_transaction_id: str
    from_account_id: str
    to_account_id: str
    amount_from: Decimal
    amount_to: Decimal
    currency_from: str
    currency_to: str
    date_diff_days: int
    confidence_score: int
    id: str = field(default_factory=_new_id)
    from_company_id: str | None = None
    to_company_id: str | None = None
    exchange_rate_used: Decimal | None = None
    exchange_rate_source: str | None = None
    confidence_factors: dict = field(default_factory=dict)
    is_cross_company: bool = False
    status: str = CANDIDATE_PENDING
    reviewed_by: str | None = None
    reviewed_at: str | None = None
    rejection_reason: str | None = None
    batch_id: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    unlinked_at: str | None = None


@dataclass
class PendingTransfer:
    from_account_id: str
    to_account_id: str
    amount: Decimal
    currency: str
    transfer_date: str
    id: str = field(default_factory=_new_id)
    description: str | None = None
    notes: str | None = None
    status: str = PT_PENDING
    from_transaction_id: str | None = None
    to_transaction_id: str | None = None
    match_tolerance_days: int = 5
    match_tolerance_amount: Decimal = Decimal("0.50")
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    matched_at: str | None = None


@dataclass
class ReanalysisBatch:
    id: str = field(default_factory=_new_id)
    status: str = "pending"
    transaction_ids: list[str] = field(default_factory=list)
    detect_transfers: bool = True
    progress_current: int = 0
    progress_total: int = 0
    progress_message: str | None = None
    transfers_detected: int = 0
    transfers_auto_linked: int = 0
    transfers_pending_review: int = 0
    kb_matched: int = 0
    ai_matched: int = 0
    unmatched: int = 0
    errors: int = 0
    error_message: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    completed_at: str | None = None


@dataclass
class ApiUsage:
    month: str
    service: str
    id: str = field(default_factory=_new_id)
    request_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_cents: int = 0
    updated_at: str = field(default_factory=_now)
