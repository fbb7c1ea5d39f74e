"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.

Multi-row writes that must succeed or fail together run inside
``atomic()``: a ``BEGIN IMMEDIATE`` transaction, serialised by a
per-repository lock. The linking and claiming primitives are
compare-and-set updates and raise DoubleClaimConflict when the row has
already moved on.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator

from .models import (
    CANDIDATE_AUTO_LINKED,
    CANDIDATE_CONFIRMED,
    CANDIDATE_PENDING,
    CANDIDATE_REJECTED,
    PT_MATCHED,
    PT_OPEN,
    PT_PARTIAL,
    TRANSFER_IN,
    TRANSFER_OUT,
    Account,
    PendingTransfer,
    ReanalysisBatch,
    StatementImport,
    Transaction,
    TransferCandidate,
    _now,
)


class NotFoundError(LookupError):
    """Raised when a record looked up by id does not exist."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} '{record_id}' not found")


class DoubleClaimConflict(Exception):
    """Raised when a transaction is already linked to or claimed by another peer.

    The write that detected the conflict is rolled back; callers should
    re-run detection since the stored state has changed underneath them.
    """

    def __init__(self, transaction_id: str, peer_id: str | None = None):
        self.transaction_id = transaction_id
        self.peer_id = peer_id
        msg = f"Transaction '{transaction_id}' is already linked or claimed"
        if peer_id:
            msg += f" (attempted peer '{peer_id}')"
        super().__init__(msg)


def _dec(value) -> Decimal | None:
    return Decimal(str(value)) if value is not None else None


def _str(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=30,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes as one transaction.

        Nested calls join the outermost transaction. Any exception rolls
        the whole transaction back and propagates.
        """
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return

            if self.conn.in_transaction:
                self.conn.commit()
            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                self._depth = 0

    def _commit(self) -> None:
        if not self._depth:
            self.conn.commit()

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    sql_text = sql_file.read_text()
                    for statement in sql_text.split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Accounts ────────────────────────────────────────────

    def upsert_account(self, acct: Account) -> Account:
        self.conn.execute(
            "INSERT INTO accounts (id, name, company_id, currency, balance_type, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET"
            "  name = excluded.name, company_id = excluded.company_id,"
            "  currency = excluded.currency, balance_type = excluded.balance_type",
            (acct.id, acct.name, acct.company_id, acct.currency,
             acct.balance_type, acct.created_at),
        )
        self._commit()
        return acct

    def get_account(self, account_id: str) -> Account | None:
        row = self.conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ).fetchone()
        return self._row_to_account(row) if row else None

    def require_account(self, account_id: str) -> Account:
        acct = self.get_account(account_id)
        if acct is None:
            raise NotFoundError("Account", account_id)
        return acct

    def list_accounts(self) -> list[Account]:
        rows = self.conn.execute("SELECT * FROM accounts ORDER BY id").fetchall()
        return [self._row_to_account(r) for r in rows]

    # ── Statement imports ───────────────────────────────────

    def insert_statement(
        self, stmt: StatementImport, txns: list[Transaction],
    ) -> StatementImport:
        """Insert a statement and its transactions atomically."""
        with self.atomic():
            self.conn.execute(
                "INSERT INTO statement_imports"
                " (id, account_id, opening_balance, closing_balance,"
                "  computed_closing, reconciliation_status, confirmed,"
                "  period_start, period_end, file_name, created_at, confirmed_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (stmt.id, stmt.account_id, _str(stmt.opening_balance),
                 _str(stmt.closing_balance), _str(stmt.computed_closing),
                 stmt.reconciliation_status, int(stmt.confirmed),
                 stmt.period_start, stmt.period_end, stmt.file_name,
                 stmt.created_at, stmt.confirmed_at),
            )
            self.insert_transactions_batch(txns)
        return stmt

    def get_statement(self, statement_id: str) -> StatementImport | None:
        row = self.conn.execute(
            "SELECT * FROM statement_imports WHERE id = ?", (statement_id,)
        ).fetchone()
        return self._row_to_statement(row) if row else None

    def require_statement(self, statement_id: str) -> StatementImport:
        stmt = self.get_statement(statement_id)
        if stmt is None:
            raise NotFoundError("Statement", statement_id)
        return stmt

    def get_statement_by_file_name(self, file_name: str) -> StatementImport | None:
        row = self.conn.execute(
            "SELECT * FROM statement_imports WHERE file_name = ?"
            " ORDER BY created_at LIMIT 1",
            (file_name,),
        ).fetchone()
        return self._row_to_statement(row) if row else None

    def list_statements(self, account_id: str | None = None) -> list[StatementImport]:
        sql = "SELECT * FROM statement_imports"
        params: list = []
        if account_id:
            sql += " WHERE account_id = ?"
            params.append(account_id)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_statement(r) for r in rows]

    def update_statement_reconciliation(
        self, statement_id: str, computed_closing: Decimal, status: str,
    ) -> None:
        self.conn.execute(
            "UPDATE statement_imports SET computed_closing = ?,"
            " reconciliation_status = ? WHERE id = ? AND confirmed = 0",
            (_str(computed_closing), status, statement_id),
        )
        self._commit()

    def confirm_statement(self, statement_id: str) -> None:
        """Mark a statement confirmed and lock its transactions."""
        with self.atomic():
            self.conn.execute(
                "UPDATE statement_imports SET confirmed = 1, confirmed_at = ?"
                " WHERE id = ?",
                (_now(), statement_id),
            )
            self.conn.execute(
                "UPDATE transactions SET statement_locked = 1,"
                " updated_at = CURRENT_TIMESTAMP WHERE statement_import_id = ?",
                (statement_id,),
            )

    # ── Transactions ────────────────────────────────────────

    _TXN_COLUMNS = (
        "id, account_id, date, amount, currency, direction, description,"
        " company_id, statement_import_id, position, category_id,"
        " categorization_method, confidence, linked_to, link_type,"
        " transfer_status, needs_review, manually_locked, statement_locked,"
        " running_balance, created_at, updated_at"
    )

    @staticmethod
    def _txn_params(t: Transaction) -> tuple:
        return (
            t.id, t.account_id, t.date, _str(t.amount), t.currency,
            t.direction, t.description, t.company_id, t.statement_import_id,
            t.position, t.category_id, t.categorization_method, t.confidence,
            t.linked_to, t.link_type, t.transfer_status, int(t.needs_review),
            int(t.manually_locked), int(t.statement_locked),
            _str(t.running_balance), t.created_at, t.updated_at,
        )

    def insert_transaction(self, txn: Transaction) -> Transaction:
        self.conn.execute(
            f"INSERT INTO transactions ({self._TXN_COLUMNS})"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            self._txn_params(txn),
        )
        self._commit()
        return txn

    def insert_transactions_batch(self, txns: list[Transaction]):
        """Insert multiple transactions atomically."""
        with self.atomic():
            self.conn.executemany(
                f"INSERT INTO transactions ({self._TXN_COLUMNS})"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                [self._txn_params(t) for t in txns],
            )

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def require_transaction(self, txn_id: str) -> Transaction:
        txn = self.get_transaction(txn_id)
        if txn is None:
            raise NotFoundError("Transaction", txn_id)
        return txn

    def get_transactions(self, txn_ids: Iterable[str]) -> list[Transaction]:
        """Fetch transactions by id, ordered by id.

        Chunked to stay within SQLite's variable limit.
        """
        ids = sorted(set(txn_ids))
        result: list[Transaction] = []
        chunk_size = 500
        for i in range(0, len(ids), chunk_size):
            chunk = ids[i : i + chunk_size]
            ph = ",".join("?" * len(chunk))
            rows = self.conn.execute(
                f"SELECT * FROM transactions WHERE id IN ({ph}) ORDER BY id",
                chunk,
            ).fetchall()
            result.extend(self._row_to_transaction(r) for r in rows)
        return result

    def get_transactions_by_statement(self, statement_id: str) -> list[Transaction]:
        rows = self.conn.execute(
            "SELECT * FROM transactions WHERE statement_import_id = ?"
            " ORDER BY position, rowid",
            (statement_id,),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def find_transactions(
        self,
        date_from: str | None = None,
        date_to: str | None = None,
        account_ids: Iterable[str] | None = None,
        statement_import_id: str | None = None,
        unlinked_only: bool = False,
        reconciled_only: bool = False,
    ) -> list[Transaction]:
        """reconciled_only leaves out rows from statements still mismatched."""
        sql = "SELECT * FROM transactions WHERE 1 = 1"
        params: list = []
        if date_from:
            sql += " AND date >= ?"
            params.append(date_from)
        if date_to:
            sql += " AND date <= ?"
            params.append(date_to)
        if account_ids is not None:
            accts = list(account_ids)
            if not accts:
                return []
            sql += f" AND account_id IN ({','.join('?' * len(accts))})"
            params.extend(accts)
        if statement_import_id:
            sql += " AND statement_import_id = ?"
            params.append(statement_import_id)
        if unlinked_only:
            sql += " AND linked_to IS NULL"
        if reconciled_only:
            sql += (
                " AND (statement_import_id IS NULL OR statement_import_id NOT IN"
                " (SELECT id FROM statement_imports WHERE reconciliation_status = 'mismatched'))"
            )
        sql += " ORDER BY id"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_latest_transaction_date(self) -> str | None:
        row = self.conn.execute("SELECT MAX(date) FROM transactions").fetchone()
        return row[0]

    def update_transaction_direction(
        self, txn_id: str, direction: str, running_balance: Decimal | None,
        needs_review: bool = False,
    ) -> None:
        self.conn.execute(
            "UPDATE transactions SET direction = ?, running_balance = ?,"
            " needs_review = ?, updated_at = CURRENT_TIMESTAMP"
            " WHERE id = ? AND statement_locked = 0",
            (direction, _str(running_balance), int(needs_review), txn_id),
        )
        self._commit()

    def update_transaction_category(
        self, txn_id: str, category_id: str | None,
        method: str | None = None,
        confidence: float | None = None,
        needs_review: bool = False,
    ) -> None:
        self.conn.execute(
            "UPDATE transactions SET category_id = ?, categorization_method = ?,"
            " confidence = ?, needs_review = ?, updated_at = CURRENT_TIMESTAMP"
            " WHERE id = ?",
            (category_id, method, confidence, int(needs_review), txn_id),
        )
        self._commit()

    def set_manual_lock(self, txn_id: str, locked: bool) -> None:
        self.conn.execute(
            "UPDATE transactions SET manually_locked = ?,"
            " updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (int(locked), txn_id),
        )
        self._commit()

    # ── Linking (compare-and-set) ───────────────────────────

    def link_pair(
        self, from_txn_id: str, to_txn_id: str, category_id: str | None,
    ) -> None:
        """Mutually link two transactions as a matched transfer.

        Each side is only updated if it is unlinked or already linked to
        the same peer, so re-applying an existing link is a no-op. Raises
        DoubleClaimConflict (and rolls back both sides) otherwise.
        """
        if from_txn_id == to_txn_id:
            raise ValueError("Cannot link a transaction to itself")
        with self.atomic():
            for txn_id, peer_id, link_type in (
                (from_txn_id, to_txn_id, TRANSFER_OUT),
                (to_txn_id, from_txn_id, TRANSFER_IN),
            ):
                cur = self.conn.execute(
                    "UPDATE transactions SET linked_to = ?, link_type = ?,"
                    " transfer_status = 'matched',"
                    " category_id = COALESCE(?, category_id),"
                    " categorization_method = 'transfer', needs_review = 0,"
                    " updated_at = CURRENT_TIMESTAMP"
                    " WHERE id = ? AND (linked_to IS NULL OR linked_to = ?)",
                    (peer_id, link_type, category_id, txn_id, peer_id),
                )
                if cur.rowcount != 1:
                    raise DoubleClaimConflict(txn_id, peer_id)

    def mark_transfer_pending(self, txn_id: str, category_id: str | None) -> None:
        """Flag one side of a half-matched declared transfer."""
        cur = self.conn.execute(
            "UPDATE transactions SET transfer_status = 'pending',"
            " category_id = COALESCE(?, category_id),"
            " categorization_method = 'transfer', needs_review = 0,"
            " updated_at = CURRENT_TIMESTAMP"
            " WHERE id = ? AND linked_to IS NULL",
            (category_id, txn_id),
        )
        if cur.rowcount != 1:
            raise DoubleClaimConflict(txn_id)
        self._commit()

    def unlink_pair(self, txn_id: str, peer_id: str | None) -> None:
        """Clear link fields on a transaction and its peer."""
        with self.atomic():
            ids = [txn_id] + ([peer_id] if peer_id else [])
            for tid in ids:
                self.conn.execute(
                    "UPDATE transactions SET linked_to = NULL, link_type = NULL,"
                    " transfer_status = 'unmatched',"
                    " updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (tid,),
                )

    # ── Transfer candidates ─────────────────────────────────

    def insert_candidate(self, cand: TransferCandidate) -> TransferCandidate:
        """Insert a candidate, claiming both of its transactions.

        The partial unique indexes on non-rejected candidates make the
        claim and the write a single step.
        """
        try:
            self.conn.execute(
                "INSERT INTO transfer_candidates"
                " (id, from_transaction_id, to_transaction_id, from_account_id,"
                "  to_account_id, from_company_id, to_company_id, amount_from,"
                "  amount_to, currency_from, currency_to, exchange_rate_used,"
                "  exchange_rate_source, date_diff_days, confidence_score,"
                "  confidence_factors, is_cross_company, status, reviewed_by,"
                "  reviewed_at, rejection_reason, batch_id, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (cand.id, cand.from_transaction_id, cand.to_transaction_id,
                 cand.from_account_id, cand.to_account_id,
                 cand.from_company_id, cand.to_company_id,
                 _str(cand.amount_from), _str(cand.amount_to),
                 cand.currency_from, cand.currency_to,
                 _str(cand.exchange_rate_used), cand.exchange_rate_source,
                 cand.date_diff_days, cand.confidence_score,
                 json.dumps(cand.confidence_factors, sort_keys=True),
                 int(cand.is_cross_company), cand.status, cand.reviewed_by,
                 cand.reviewed_at, cand.rejection_reason, cand.batch_id,
                 cand.created_at, cand.updated_at),
            )
            self._commit()
        except sqlite3.IntegrityError as e:
            if not self._depth:
                self.conn.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise DoubleClaimConflict(
                    cand.from_transaction_id, cand.to_transaction_id,
                ) from e
            raise
        return cand

    def get_candidate(self, candidate_id: str) -> TransferCandidate | None:
        row = self.conn.execute(
            "SELECT * FROM transfer_candidates WHERE id = ?", (candidate_id,)
        ).fetchone()
        return self._row_to_candidate(row) if row else None

    def require_candidate(self, candidate_id: str) -> TransferCandidate:
        cand = self.get_candidate(candidate_id)
        if cand is None:
            raise NotFoundError("Transfer candidate", candidate_id)
        return cand

    def list_candidates(
        self, status: str | Iterable[str] | None = None,
    ) -> list[TransferCandidate]:
        sql = "SELECT * FROM transfer_candidates"
        params: list = []
        if status is not None:
            statuses = [status] if isinstance(status, str) else list(status)
            sql += f" WHERE status IN ({','.join('?' * len(statuses))})"
            params.extend(statuses)
        sql += " ORDER BY from_transaction_id, to_transaction_id, created_at"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_candidate(r) for r in rows]

    def get_claimed_transaction_ids(self) -> set[str]:
        """Transaction ids held by a non-rejected candidate that is still linked."""
        rows = self.conn.execute(
            "SELECT from_transaction_id FROM transfer_candidates"
            " WHERE status != ? AND unlinked_at IS NULL"
            " UNION"
            " SELECT to_transaction_id FROM transfer_candidates"
            " WHERE status != ? AND unlinked_at IS NULL",
            (CANDIDATE_REJECTED, CANDIDATE_REJECTED),
        ).fetchall()
        return {r[0] for r in rows}

    def get_rejected_pairs(self) -> set[tuple[str, str]]:
        """Pairs never to propose again: rejected, or linked and then undone."""
        rows = self.conn.execute(
            "SELECT from_transaction_id, to_transaction_id"
            " FROM transfer_candidates WHERE status = ? OR unlinked_at IS NOT NULL",
            (CANDIDATE_REJECTED,),
        ).fetchall()
        return {(r[0], r[1]) for r in rows}

    def release_candidate_claims(self, txn_ids: Iterable[str]) -> int:
        """Stamp unlinked_at on accepted candidates touching txn_ids.

        Their status is kept for the audit trail. Returns the rows released.
        """
        ids = list(txn_ids)
        if not ids:
            return 0
        ph = ",".join("?" * len(ids))
        cur = self.conn.execute(
            "UPDATE transfer_candidates SET unlinked_at = ?, updated_at = ?"
            " WHERE status IN (?, ?) AND unlinked_at IS NULL"
            f" AND (from_transaction_id IN ({ph}) OR to_transaction_id IN ({ph}))",
            (_now(), _now(), CANDIDATE_CONFIRMED, CANDIDATE_AUTO_LINKED, *ids, *ids),
        )
        self._commit()
        return cur.rowcount

    def update_candidate_score(
        self, candidate_id: str, score: int, factors: dict,
        exchange_rate: Decimal | None, exchange_rate_source: str | None,
        is_cross_company: bool,
    ) -> bool:
        """Re-score a candidate. Only pending candidates are touched."""
        cur = self.conn.execute(
            "UPDATE transfer_candidates SET confidence_score = ?,"
            " confidence_factors = ?, exchange_rate_used = ?,"
            " exchange_rate_source = ?, is_cross_company = ?, updated_at = ?"
            " WHERE id = ? AND status = ?",
            (score, json.dumps(factors, sort_keys=True), _str(exchange_rate),
             exchange_rate_source, int(is_cross_company), _now(),
             candidate_id, CANDIDATE_PENDING),
        )
        self._commit()
        return cur.rowcount == 1

    def transition_candidate(
        self, candidate_id: str, new_status: str,
        reviewed_by: str | None = None,
        rejection_reason: str | None = None,
        expected_status: str = CANDIDATE_PENDING,
    ) -> bool:
        """Move a candidate out of expected_status. Returns False if it had already moved."""
        now = _now()
        cur = self.conn.execute(
            "UPDATE transfer_candidates SET status = ?, reviewed_by = ?,"
            " reviewed_at = ?, rejection_reason = ?, updated_at = ?"
            " WHERE id = ? AND status = ?",
            (new_status, reviewed_by, now, rejection_reason, now,
             candidate_id, expected_status),
        )
        self._commit()
        return cur.rowcount == 1

    # ── Pending transfers ───────────────────────────────────

    def insert_pending_transfer(self, pt: PendingTransfer) -> PendingTransfer:
        self.conn.execute(
            "INSERT INTO pending_transfers"
            " (id, from_account_id, to_account_id, amount, currency,"
            "  transfer_date, description, notes, status, from_transaction_id,"
            "  to_transaction_id, match_tolerance_days, match_tolerance_amount,"
            "  created_at, updated_at, matched_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (pt.id, pt.from_account_id, pt.to_account_id, _str(pt.amount),
             pt.currency, pt.transfer_date, pt.description, pt.notes,
             pt.status, pt.from_transaction_id, pt.to_transaction_id,
             pt.match_tolerance_days, _str(pt.match_tolerance_amount),
             pt.created_at, pt.updated_at, pt.matched_at),
        )
        self._commit()
        return pt

    def get_pending_transfer(self, pt_id: str) -> PendingTransfer | None:
        row = self.conn.execute(
            "SELECT * FROM pending_transfers WHERE id = ?", (pt_id,)
        ).fetchone()
        return self._row_to_pending(row) if row else None

    def require_pending_transfer(self, pt_id: str) -> PendingTransfer:
        pt = self.get_pending_transfer(pt_id)
        if pt is None:
            raise NotFoundError("Pending transfer", pt_id)
        return pt

    def list_pending_transfers(
        self,
        status: str | Iterable[str] | None = None,
        account_id: str | None = None,
    ) -> list[PendingTransfer]:
        sql = "SELECT * FROM pending_transfers WHERE 1 = 1"
        params: list = []
        if status is not None:
            statuses = [status] if isinstance(status, str) else list(status)
            sql += f" AND status IN ({','.join('?' * len(statuses))})"
            params.extend(statuses)
        if account_id:
            sql += " AND (from_account_id = ? OR to_account_id = ?)"
            params.extend([account_id, account_id])
        sql += " ORDER BY transfer_date, created_at, id"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_pending(r) for r in rows]

    def get_pending_transfer_transaction_ids(self) -> set[str]:
        """Transaction ids already assigned to a live or matched pending transfer."""
        rows = self.conn.execute(
            "SELECT from_transaction_id FROM pending_transfers"
            " WHERE from_transaction_id IS NOT NULL AND status IN (?, ?)"
            " UNION"
            " SELECT to_transaction_id FROM pending_transfers"
            " WHERE to_transaction_id IS NOT NULL AND status IN (?, ?)",
            (PT_PARTIAL, PT_MATCHED, PT_PARTIAL, PT_MATCHED),
        ).fetchall()
        return {r[0] for r in rows}

    def assign_pending_side(
        self, pt_id: str, side: str, txn_id: str,
        new_status: str, matched_at: str | None = None,
    ) -> bool:
        """Record one matched side. Guarded so status only moves forward."""
        if side not in ("from", "to"):
            raise ValueError(f"Unknown pending transfer side: {side}")
        col = f"{side}_transaction_id"
        ph = ",".join("?" * len(PT_OPEN))
        cur = self.conn.execute(
            f"UPDATE pending_transfers SET {col} = ?, status = ?,"
            f" matched_at = ?, updated_at = ?"
            f" WHERE id = ? AND {col} IS NULL AND status IN ({ph})",
            (txn_id, new_status, matched_at, _now(), pt_id, *PT_OPEN),
        )
        self._commit()
        return cur.rowcount == 1

    def transition_pending_transfer(
        self, pt_id: str, new_status: str, allowed_from: Iterable[str],
    ) -> bool:
        allowed = list(allowed_from)
        cur = self.conn.execute(
            "UPDATE pending_transfers SET status = ?, updated_at = ?"
            f" WHERE id = ? AND status IN ({','.join('?' * len(allowed))})",
            (new_status, _now(), pt_id, *allowed),
        )
        self._commit()
        return cur.rowcount == 1

    def delete_pending_transfer(self, pt_id: str, allowed_status: str) -> bool:
        cur = self.conn.execute(
            "DELETE FROM pending_transfers WHERE id = ? AND status = ?",
            (pt_id, allowed_status),
        )
        self._commit()
        return cur.rowcount == 1

    # ── Reanalysis batches ──────────────────────────────────

    def insert_batch(self, batch: ReanalysisBatch) -> ReanalysisBatch:
        self.conn.execute(
            "INSERT INTO reanalysis_batches"
            " (id, status, transaction_ids, detect_transfers, progress_total,"
            "  created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?)",
            (batch.id, batch.status, json.dumps(batch.transaction_ids),
             int(batch.detect_transfers), batch.progress_total,
             batch.created_at, batch.updated_at),
        )
        self._commit()
        return batch

    def get_batch(self, batch_id: str) -> ReanalysisBatch | None:
        row = self.conn.execute(
            "SELECT * FROM reanalysis_batches WHERE id = ?", (batch_id,)
        ).fetchone()
        return self._row_to_batch(row) if row else None

    def require_batch(self, batch_id: str) -> ReanalysisBatch:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Reanalysis batch", batch_id)
        return batch

    def list_batches(
        self, status: str | Iterable[str] | None = None,
    ) -> list[ReanalysisBatch]:
        sql = "SELECT * FROM reanalysis_batches"
        params: list = []
        if status is not None:
            statuses = [status] if isinstance(status, str) else list(status)
            sql += f" WHERE status IN ({','.join('?' * len(statuses))})"
            params.extend(statuses)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_batch(r) for r in rows]

    _BATCH_UPDATE_COLS = frozenset({
        "progress_current", "progress_total", "progress_message",
        "transfers_detected", "transfers_auto_linked",
        "transfers_pending_review", "kb_matched", "ai_matched",
        "unmatched", "errors", "error_message", "completed_at",
    })

    def update_batch(self, batch_id: str, **kwargs) -> None:
        unknown = set(kwargs.keys()) - self._BATCH_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_batch: {unknown}")

        sets = ["updated_at = ?"]
        vals: list = [_now()]
        for col, val in kwargs.items():
            sets.append(f"{col} = ?")
            vals.append(val)
        vals.append(batch_id)
        self.conn.execute(
            f"UPDATE reanalysis_batches SET {', '.join(sets)} WHERE id = ?", vals
        )
        self._commit()

    def transition_batch(
        self, batch_id: str, new_status: str, allowed_from: Iterable[str],
        **kwargs,
    ) -> bool:
        """Change batch status if it is currently in one of allowed_from."""
        unknown = set(kwargs.keys()) - self._BATCH_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for transition_batch: {unknown}")
        allowed = list(allowed_from)
        sets = ["status = ?", "updated_at = ?"]
        vals: list = [new_status, _now()]
        for col, val in kwargs.items():
            sets.append(f"{col} = ?")
            vals.append(val)
        cur = self.conn.execute(
            f"UPDATE reanalysis_batches SET {', '.join(sets)}"
            f" WHERE id = ? AND status IN ({','.join('?' * len(allowed))})",
            (*vals, batch_id, *allowed),
        )
        self._commit()
        return cur.rowcount == 1

    # ── API Usage ───────────────────────────────────────────

    def increment_api_usage(
        self, month: str, service: str,
        requests: int = 1,
        tokens_in: int = 0, tokens_out: int = 0,
        cost_cents: int = 0,
    ):
        """Upsert api_usage row: increment counters for month+service."""
        self.conn.execute(
            "INSERT INTO api_usage"
            " (id, month, service, request_count, input_tokens,"
            "  output_tokens, estimated_cost_cents, updated_at)"
            " VALUES (hex(randomblob(16)), ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)"
            " ON CONFLICT(month, service) DO UPDATE SET"
            "  request_count = request_count + excluded.request_count,"
            "  input_tokens = input_tokens + excluded.input_tokens,"
            "  output_tokens = output_tokens + excluded.output_tokens,"
            "  estimated_cost_cents = estimated_cost_cents + excluded.estimated_cost_cents,"
            "  updated_at = CURRENT_TIMESTAMP",
            (month, service, requests, tokens_in, tokens_out, cost_cents),
        )
        self._commit()

    def get_monthly_cost(self, month: str) -> int:
        """Total estimated cost in cents for a given month."""
        row = self.conn.execute(
            "SELECT COALESCE(SUM(estimated_cost_cents), 0) FROM api_usage"
            " WHERE month = ?",
            (month,),
        ).fetchone()
        return row[0]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"], name=row["name"], company_id=row["company_id"],
            currency=row["currency"], balance_type=row["balance_type"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_statement(row: sqlite3.Row) -> StatementImport:
        return StatementImport(
            id=row["id"], account_id=row["account_id"],
            opening_balance=_dec(row["opening_balance"]),
            closing_balance=_dec(row["closing_balance"]),
            computed_closing=_dec(row["computed_closing"]),
            reconciliation_status=row["reconciliation_status"],
            confirmed=bool(row["confirmed"]),
            period_start=row["period_start"], period_end=row["period_end"],
            file_name=row["file_name"], created_at=row["created_at"],
            confirmed_at=row["confirmed_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], account_id=row["account_id"],
            date=row["date"], amount=_dec(row["amount"]),
            currency=row["currency"], direction=row["direction"],
            description=row["description"], company_id=row["company_id"],
            statement_import_id=row["statement_import_id"],
            position=row["position"], category_id=row["category_id"],
            categorization_method=row["categorization_method"],
            confidence=row["confidence"], linked_to=row["linked_to"],
            link_type=row["link_type"],
            transfer_status=row["transfer_status"],
            needs_review=bool(row["needs_review"]),
            manually_locked=bool(row["manually_locked"]),
            statement_locked=bool(row["statement_locked"]),
            running_balance=_dec(row["running_balance"]),
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_candidate(row: sqlite3.Row) -> TransferCandidate:
        return TransferCandidate(
            id=row["id"],
            from_transaction_id=row["from_transaction_id"],
            to_transaction_id=row["to_transaction_id"],
            from_account_id=row["from_account_id"],
            to_account_id=row["to_account_id"],
            from_company_id=row["from_company_id"],
            to_company_id=row["to_company_id"],
            amount_from=_dec(row["amount_from"]),
            amount_to=_dec(row["amount_to"]),
            currency_from=row["currency_from"],
            currency_to=row["currency_to"],
            exchange_rate_used=_dec(row["exchange_rate_used"]),
            exchange_rate_source=row["exchange_rate_source"],
            date_diff_days=row["date_diff_days"],
            confidence_score=row["confidence_score"],
            confidence_factors=json.loads(row["confidence_factors"] or "{}"),
            is_cross_company=bool(row["is_cross_company"]),
            status=row["status"], reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            rejection_reason=row["rejection_reason"],
            batch_id=row["batch_id"],
            created_at=row["created_at"], updated_at=row["updated_at"],
            unlinked_at=row["unlinked_at"],
        )

    @staticmethod
    def _row_to_pending(row: sqlite3.Row) -> PendingTransfer:
        return PendingTransfer(
            id=row["id"], from_account_id=row["from_account_id"],
            to_account_id=row["to_account_id"], amount=_dec(row["amount"]),
            currency=row["currency"], transfer_date=row["transfer_date"],
            description=row["description"], notes=row["notes"],
            status=row["status"],
            from_transaction_id=row["from_transaction_id"],
            to_transaction_id=row["to_transaction_id"],
            match_tolerance_days=row["match_tolerance_days"],
            match_tolerance_amount=_dec(row["match_tolerance_amount"]),
            created_at=row["created_at"], updated_at=row["updated_at"],
            matched_at=row["matched_at"],
        )

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> ReanalysisBatch:
        return ReanalysisBatch(
            id=row["id"], status=row["status"],
            transaction_ids=json.loads(row["transaction_ids"] or "[]"),
            detect_transfers=bool(row["detect_transfers"]),
            progress_current=row["progress_current"],
            progress_total=row["progress_total"],
            progress_message=row["progress_message"],
            transfers_detected=row["transfers_detected"],
            transfers_auto_linked=row["transfers_auto_linked"],
            transfers_pending_review=row["transfers_pending_review"],
            kb_matched=row["kb_matched"], ai_matched=row["ai_matched"],
            unmatched=row["unmatched"], errors=row["errors"],
            error_message=row["error_message"],
            created_at=row["created_at"], updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )
