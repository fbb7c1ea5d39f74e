"""Tests for complex queries in queries.py."""

from decimal import Decimal

from ledgermatch.database.models import (
    PendingTransfer,
    ReanalysisBatch,
    StatementImport,
    TransferCandidate,
)
from ledgermatch.database.queries import (
    find_link_asymmetries,
    get_candidate_summary,
    get_status_counts,
)
from ledgermatch.transfers.link import TransferLinkManager
from tests.conftest import make_txn


def _candidate(from_id, to_id, to_account="sav-a"):
    return TransferCandidate(
        from_transaction_id=from_id, to_transaction_id=to_id,
        from_account_id="chq-a", to_account_id=to_account,
        amount_from=Decimal("10"), amount_to=Decimal("10"),
        currency_from="CAD", currency_to="CAD",
        date_diff_days=0, confidence_score=70,
    )


class TestStatusCounts:
    def test_empty(self, repo):
        counts = get_status_counts(repo.conn)
        assert counts["total_txns"] == 0
        assert counts["batches_running"] == 0

    def test_counts(self, repo):
        stmt = StatementImport(
            account_id="chq-a", opening_balance=Decimal("0"),
            closing_balance=Decimal("1"), computed_closing=Decimal("0"),
        )
        repo.insert_statement(stmt, [make_txn(statement_import_id=stmt.id, needs_review=True)])
        make_txn(repo, id="a")
        make_txn(repo, id="b", account_id="sav-a", direction="credit")
        TransferLinkManager(repo).link("a", "b")
        repo.insert_pending_transfer(PendingTransfer(
            from_account_id="chq-a", to_account_id="sav-a", amount=Decimal("5"),
            currency="CAD", transfer_date="2026-03-01",
        ))
        repo.insert_batch(ReanalysisBatch(transaction_ids=["a"]))

        counts = get_status_counts(repo.conn)
        assert counts["total_txns"] == 3
        assert counts["linked"] == 2
        assert counts["needs_review"] == 1
        assert counts["total_statements"] == 1
        assert counts["mismatched_statements"] == 1
        assert counts["pending_transfers_open"] == 1
        assert counts["batches_running"] == 1


class TestCandidateSummary:
    def test_groups_by_status(self, repo):
        make_txn(repo, id="a")
        make_txn(repo, id="b", account_id="sav-a", direction="credit")
        make_txn(repo, id="c", account_id="chq-b", direction="credit")
        first = repo.insert_candidate(_candidate("a", "b"))
        repo.transition_candidate(first.id, "rejected")
        repo.insert_candidate(_candidate("a", "c"))
        assert get_candidate_summary(repo.conn) == {"pending": 1, "rejected": 1}


class TestLinkAsymmetries:
    def test_mutual_links_are_clean(self, repo):
        make_txn(repo, id="a")
        make_txn(repo, id="b", account_id="sav-a", direction="credit")
        TransferLinkManager(repo).link("a", "b")
        assert find_link_asymmetries(repo.conn) == []

    def test_one_sided_link_reported(self, repo):
        make_txn(repo, id="a")
        make_txn(repo, id="b", account_id="sav-a", direction="credit")
        repo.conn.execute(
            "UPDATE transactions SET linked_to = 'b', transfer_status = 'matched'"
            " WHERE id = 'a'"
        )
        [row] = find_link_asymmetries(repo.conn)
        assert row["transaction_id"] == "a"
        assert row["peer_id"] == "b"
        assert row["peer_linked_to"] is None
