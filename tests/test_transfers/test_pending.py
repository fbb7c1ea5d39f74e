"""Tests for ledgermatch.transfers.pending: declared transfers and their matching."""

from datetime import date
from decimal import Decimal

import pytest

from ledgermatch.transfers.detect import TransferCandidateDetector
from ledgermatch.transfers.link import TransferLinkManager
from ledgermatch.transfers.pending import (
    InvalidTransferDeclaration,
    PendingTransferMatcher,
    PendingTransferRegistry,
    PendingTransferStateError,
)
from ledgermatch.transfers.scoring import ExchangeRate, ExchangeRateTable
from tests.conftest import make_txn

TODAY = date(2024, 12, 31)


@pytest.fixture
def registry(repo):
    return PendingTransferRegistry(repo)


@pytest.fixture
def matcher(repo):
    return PendingTransferMatcher(repo, TransferLinkManager(repo))


def _declare(registry, **kw):
    args = dict(
        from_account_id="chq-a", to_account_id="sav-a",
        amount="1200.00", transfer_date="2024-12-20", today=TODAY,
    )
    args.update(kw)
    return registry.register(**args)


class TestRegister:
    def test_defaults(self, registry):
        pt = _declare(registry, description="Move to savings")
        assert pt.status == "pending"
        assert pt.amount == Decimal("1200.00")
        assert pt.currency == "CAD"
        assert pt.match_tolerance_days == 5
        assert pt.match_tolerance_amount == Decimal("0.50")
        assert registry.get(pt.id).description == "Move to savings"

    def test_config_defaults_apply(self, repo):
        registry = PendingTransferRegistry(
            repo, {"tolerance_days": 2, "tolerance_amount": Decimal("1.00")},
        )
        pt = _declare(registry)
        assert pt.match_tolerance_days == 2
        assert pt.match_tolerance_amount == Decimal("1.00")

    def test_same_account_rejected(self, registry):
        with pytest.raises(InvalidTransferDeclaration, match="must differ"):
            _declare(registry, to_account_id="chq-a")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_bad_amount_rejected(self, registry, amount):
        with pytest.raises(InvalidTransferDeclaration):
            _declare(registry, amount=amount)

    def test_future_date_rejected(self, registry):
        with pytest.raises(InvalidTransferDeclaration, match="future"):
            _declare(registry, transfer_date="2025-01-02")

    def test_unknown_account_rejected(self, registry):
        with pytest.raises(InvalidTransferDeclaration, match="Unknown account"):
            _declare(registry, to_account_id="nope")

    def test_currency_must_belong_to_an_account(self, registry):
        with pytest.raises(InvalidTransferDeclaration, match="EUR"):
            _declare(registry, currency="EUR")

    def test_cross_currency_declaration_uses_either_side(self, registry):
        pt = _declare(registry, to_account_id="usd-a", currency="usd")
        assert pt.currency == "USD"

    def test_negative_tolerance_rejected(self, registry):
        with pytest.raises(InvalidTransferDeclaration, match="tolerances"):
            _declare(registry, tolerance_days=-1)

    def test_nothing_stored_on_failure(self, registry):
        with pytest.raises(InvalidTransferDeclaration):
            _declare(registry, amount="0")
        assert registry.list() == []


class TestCancelDelete:
    def test_cancel_pending(self, registry):
        pt = _declare(registry)
        assert registry.cancel(pt.id).status == "cancelled"
        # Cancelling again is a no-op
        assert registry.cancel(pt.id).status == "cancelled"

    def test_delete_pending(self, registry):
        pt = _declare(registry)
        registry.delete(pt.id)
        assert registry.list() == []

    def test_delete_partial_refused(self, repo, registry, matcher):
        pt = _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        matcher.match_batch([repo.get_transaction("out")])
        with pytest.raises(PendingTransferStateError):
            registry.delete(pt.id)
        assert registry.cancel(pt.id).status == "cancelled"

    def test_cancel_matched_refused(self, repo, registry, matcher):
        pt = _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        make_txn(repo, id="in", account_id="sav-a", date="2024-12-21",
                 amount="1200.00", direction="credit")
        matcher.match_batch(repo.get_transactions(["out", "in"]))
        with pytest.raises(PendingTransferStateError, match="matched"):
            registry.cancel(pt.id)


class TestMatchBatch:
    def test_two_imports_complete_the_transfer(self, repo, registry, matcher):
        pt = _declare(registry)

        make_txn(repo, id="cibc-out", date="2024-12-20", amount="1200.00",
                 description="WWW TFR TO SCOTIA")
        first = matcher.match_batch([repo.get_transaction("cibc-out")])
        assert [p.id for p in first.partial] == [pt.id]
        partial = registry.get(pt.id)
        assert partial.status == "partial"
        assert partial.from_transaction_id == "cibc-out"
        assert repo.get_transaction("cibc-out").transfer_status == "pending"

        make_txn(repo, id="scotia-in", account_id="sav-a", date="2024-12-22",
                 amount="1200.00", direction="credit")
        second = matcher.match_batch([repo.get_transaction("scotia-in")])
        assert [p.id for p in second.matched] == [pt.id]

        done = registry.get(pt.id)
        assert done.status == "matched"
        assert done.matched_at is not None
        out = repo.get_transaction("cibc-out")
        inn = repo.get_transaction("scotia-in")
        assert out.linked_to == "scotia-in" and inn.linked_to == "cibc-out"
        assert out.transfer_status == inn.transfer_status == "matched"
        assert out.category_id == inn.category_id == "bank_transfer"

    def test_both_sides_in_one_batch(self, repo, registry, matcher):
        pt = _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        make_txn(repo, id="in", account_id="sav-a", date="2024-12-20",
                 amount="1200.00", direction="credit")
        result = matcher.match_batch(repo.get_transactions(["out", "in"]))
        assert [p.id for p in result.matched] == [pt.id]
        assert result.partial == []

    def test_outside_tolerances_not_matched(self, repo, registry, matcher):
        _declare(registry)
        make_txn(repo, id="late", date="2024-12-27", amount="1200.00")
        make_txn(repo, id="off", date="2024-12-20", amount="1201.00")
        result = matcher.match_batch(repo.get_transactions(["late", "off"]))
        assert result.matched == [] and result.partial == []

    def test_wrong_direction_not_matched(self, repo, registry, matcher):
        _declare(registry)
        make_txn(repo, id="in-on-from", date="2024-12-20", amount="1200.00",
                 direction="credit")
        assert matcher.match_batch([repo.get_transaction("in-on-from")]).partial == []

    def test_closest_declaration_wins(self, repo, registry, matcher):
        far = _declare(registry, transfer_date="2024-12-17")
        near = _declare(registry, transfer_date="2024-12-19")
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        result = matcher.match_batch([repo.get_transaction("out")])
        assert [p.id for p in result.partial] == [near.id]
        assert registry.get(far.id).status == "pending"

    def test_cancelled_declaration_ignored(self, repo, registry, matcher):
        pt = _declare(registry)
        registry.cancel(pt.id)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        assert matcher.match_batch([repo.get_transaction("out")]).partial == []

    def test_linked_transaction_skipped(self, repo, registry, matcher):
        _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        make_txn(repo, id="elsewhere", account_id="chq-b", company_id="co-b",
                 date="2024-12-20", amount="1200.00", direction="credit")
        TransferLinkManager(repo).link("out", "elsewhere")
        assert matcher.match_batch([repo.get_transaction("out")]).partial == []


class TestCrossCurrency:
    @pytest.fixture
    def fx_matcher(self, repo):
        rates = ExchangeRateTable([ExchangeRate("USD", "CAD", Decimal("1.35"), "test")])
        return PendingTransferMatcher(
            repo, TransferLinkManager(repo), rates=rates,
            cross_currency_tolerance_pct=Decimal("2.0"),
        )

    def _usd_transfer(self, repo, registry, debit_amount="1350.00"):
        pt = _declare(registry, to_account_id="usd-a", amount="1000.00", currency="USD")
        make_txn(repo, id="cad-out", date="2024-12-20", amount=debit_amount)
        make_txn(repo, id="usd-in", account_id="usd-a", date="2024-12-21",
                 amount="1000.00", currency="USD", direction="credit")
        return pt

    def test_converted_side_completes_the_transfer(self, repo, registry, fx_matcher):
        pt = self._usd_transfer(repo, registry)
        result = fx_matcher.match_batch(repo.get_transactions(["cad-out", "usd-in"]))
        assert [p.id for p in result.matched] == [pt.id]
        done = registry.get(pt.id)
        assert (done.from_transaction_id, done.to_transaction_id) == ("cad-out", "usd-in")
        assert repo.get_transaction("cad-out").linked_to == "usd-in"

    def test_spread_within_percentage_tolerance(self, repo, registry, fx_matcher):
        pt = self._usd_transfer(repo, registry, debit_amount="1370.00")
        fx_matcher.match_batch(repo.get_transactions(["cad-out", "usd-in"]))
        assert registry.get(pt.id).status == "matched"

    def test_spread_beyond_tolerance_leaves_side_open(self, repo, registry, fx_matcher):
        pt = self._usd_transfer(repo, registry, debit_amount="1400.00")
        result = fx_matcher.match_batch(repo.get_transactions(["cad-out", "usd-in"]))
        assert [p.id for p in result.partial] == [pt.id]
        assert registry.get(pt.id).from_transaction_id is None

    def test_no_rate_leaves_side_open(self, repo, registry, matcher):
        pt = self._usd_transfer(repo, registry)
        result = matcher.match_batch(repo.get_transactions(["cad-out", "usd-in"]))
        assert [p.id for p in result.partial] == [pt.id]
        assert registry.get(pt.id).to_transaction_id == "usd-in"


class TestCancelledPartial:
    def test_filled_side_is_left_untouched(self, repo, registry, matcher):
        pt = _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        matcher.match_batch([repo.get_transaction("out")])
        registry.cancel(pt.id)
        out = repo.get_transaction("out")
        assert out.transfer_status == "pending"
        assert out.linked_to is None

    def test_filled_side_is_detectable_again(self, repo, registry, matcher):
        pt = _declare(registry)
        make_txn(repo, id="out", date="2024-12-20", amount="1200.00")
        matcher.match_batch([repo.get_transaction("out")])
        registry.cancel(pt.id)

        make_txn(repo, id="in", account_id="sav-a", date="2024-12-20",
                 amount="1200.00", direction="credit")
        detector = TransferCandidateDetector(repo, TransferLinkManager(repo))
        [cand] = detector.detect().auto_linked
        assert (cand.from_transaction_id, cand.to_transaction_id) == ("out", "in")
        assert repo.get_transaction("out").transfer_status == "matched"
