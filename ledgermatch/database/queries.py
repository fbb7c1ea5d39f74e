"""Queries that span multiple tables.

These go beyond single-table CRUD and implement aggregations and audit
checks used by the CLI.
"""

from __future__ import annotations

import sqlite3


def get_status_counts(conn: sqlite3.Connection) -> dict:
    """Counts for the `ledgermatch status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions) AS total_txns,"
        "  (SELECT COUNT(*) FROM transactions WHERE transfer_status = 'matched') AS linked,"
        "  (SELECT COUNT(*) FROM transactions WHERE needs_review = 1) AS needs_review,"
        "  (SELECT COUNT(*) FROM statement_imports) AS total_statements,"
        "  (SELECT COUNT(*) FROM statement_imports"
        "     WHERE reconciliation_status = 'mismatched') AS mismatched_statements,"
        "  (SELECT COUNT(*) FROM transfer_candidates WHERE status = 'pending') AS candidates_pending,"
        "  (SELECT COUNT(*) FROM pending_transfers"
        "     WHERE status IN ('pending', 'partial')) AS pending_transfers_open,"
        "  (SELECT COUNT(*) FROM reanalysis_batches"
        "     WHERE status NOT IN ('completed', 'failed', 'cancelled')) AS batches_running"
    ).fetchone()
    return dict(row)


def get_candidate_summary(conn: sqlite3.Connection) -> dict[str, int]:
    """Candidate counts keyed by status."""
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM transfer_candidates"
        " GROUP BY status ORDER BY status"
    ).fetchall()
    return {r["status"]: r["n"] for r in rows}


def find_link_asymmetries(conn: sqlite3.Connection) -> list[dict]:
    """Linked transactions whose peer does not point back, or is not matched.

    An empty result means every link is mutual and both sides carry
    transfer_status = 'matched'.
    """
    rows = conn.execute(
        "SELECT a.id AS transaction_id, a.linked_to AS peer_id,"
        "  b.linked_to AS peer_linked_to,"
        "  a.transfer_status AS status, b.transfer_status AS peer_status"
        " FROM transactions a"
        " LEFT JOIN transactions b ON b.id = a.linked_to"
        " WHERE a.linked_to IS NOT NULL"
        "   AND (b.id IS NULL OR b.linked_to IS NOT a.id"
        "        OR a.transfer_status != 'matched'"
        "        OR b.transfer_status != 'matched')"
        " ORDER BY a.id"
    ).fetchall()
    return [dict(r) for r in rows]
