"""Tests for ledgermatch.transfers.scoring: amount matching and confidence."""

from decimal import Decimal

import pytest

from ledgermatch.transfers.scoring import (
    AmountMatch,
    ExchangeRate,
    ExchangeRateTable,
    date_diff_days,
    date_points,
    description_similarity,
    find_transfer_keyword,
    match_amounts,
    score_candidate,
)


@pytest.fixture
def rates():
    return ExchangeRateTable([ExchangeRate("USD", "CAD", Decimal("1.35"), "test")])


class TestExchangeRateTable:
    def test_same_currency_is_unity(self, rates):
        rate = rates.lookup("CAD", "CAD")
        assert rate.rate == Decimal(1)
        assert rate.source == "same_currency"

    def test_direct_lookup(self, rates):
        assert rates.lookup("USD", "CAD").rate == Decimal("1.35")

    def test_inverse_lookup(self, rates):
        rate = rates.lookup("CAD", "USD")
        assert rate.rate == Decimal(1) / Decimal("1.35")
        assert rate.source == "test (inverse)"

    def test_missing_pair(self, rates):
        assert rates.lookup("EUR", "CAD") is None

    def test_from_config(self):
        table = ExchangeRateTable.from_config([{"from": "eur", "to": "cad", "rate": "1.5"}])
        assert table.lookup("EUR", "CAD").source == "config"
        assert len(table) == 1

    def test_from_config_rejects_bad_entry(self):
        with pytest.raises(ValueError, match="Invalid exchange rate"):
            ExchangeRateTable.from_config([{"from": "EUR", "rate": "1.5"}])

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            ExchangeRateTable([ExchangeRate("USD", "CAD", Decimal("0"), "x")])


class TestMatchAmounts:
    def test_exact_same_currency(self, rates):
        m = match_amounts(Decimal("700.00"), "CAD", Decimal("700.00"), "CAD", rates)
        assert m.kind == "exact"
        assert m.difference == Decimal("0")
        assert m.rate is None

    def test_same_currency_within_tolerance(self, rates):
        m = match_amounts(Decimal("700.00"), "CAD", Decimal("700.01"), "CAD", rates)
        assert m is not None and m.kind == "exact"

    def test_same_currency_outside_tolerance(self, rates):
        assert match_amounts(Decimal("700.00"), "CAD", Decimal("700.02"), "CAD", rates) is None

    def test_forex_within_one_percent(self, rates):
        # 100 USD -> 135.00 CAD; 134.00 is 0.75% off
        m = match_amounts(Decimal("100"), "USD", Decimal("134.00"), "CAD", rates)
        assert m.kind == "forex_1pct"
        assert m.converted == Decimal("135.00")
        assert m.rate.source == "test"

    def test_forex_within_configured_width(self, rates):
        # 1.5% off
        m = match_amounts(Decimal("100"), "USD", Decimal("133.00"), "CAD", rates)
        assert m.kind == "forex_2pct"

    def test_forex_outside_width(self, rates):
        assert match_amounts(Decimal("100"), "USD", Decimal("125.00"), "CAD", rates) is None

    def test_forex_without_rate(self):
        empty = ExchangeRateTable()
        assert match_amounts(Decimal("100"), "USD", Decimal("135"), "CAD", empty) is None


class TestDateAndText:
    @pytest.mark.parametrize("diff,points", [
        (0, 35), (1, 25), (2, 15), (3, 8), (4, 6), (5, 4), (6, 2), (7, 0), (30, 0),
    ])
    def test_date_points(self, diff, points):
        assert date_points(diff) == points

    def test_date_diff_is_absolute(self):
        assert date_diff_days("2026-03-10", "2026-03-07") == 3
        assert date_diff_days("2026-03-07", "2026-03-10T12:00:00") == 3

    def test_keyword_found(self):
        assert find_transfer_keyword("Online Banking transfer to 1234") == "TRANSFER"

    def test_keyword_needs_word_boundary(self):
        # LOC inside BLOCK and FX inside AFX are not keywords
        assert find_transfer_keyword("BLOCK AFX STORE") is None

    def test_similarity_identical(self):
        assert description_similarity("Acme Payroll", "ACME payroll!") == 1.0

    def test_similarity_empty(self):
        assert description_similarity("", "anything") == 0.0
        assert description_similarity(None, "anything") == 0.0


class TestScoreCandidate:
    def _exact(self):
        return AmountMatch("exact", Decimal("700"), Decimal("0"))

    def test_exact_same_day_same_company_scores_95(self):
        scored = score_candidate(self._exact(), 0, "co-a", "co-a", "", "")
        assert scored.score == 95
        assert scored.factors["amount"]["points"] == 40
        assert scored.factors["date"]["points"] == 35
        assert scored.factors["company"]["points"] == 20
        assert scored.factors["description"]["points"] == 0

    def test_keyword_adds_full_description_points(self):
        scored = score_candidate(self._exact(), 0, "co-a", "co-a", "TRANSFER TO SAVINGS", "")
        assert scored.score == 100
        assert scored.factors["description"]["keyword"] == "TRANSFER"

    def test_cross_company_loses_company_points(self):
        scored = score_candidate(self._exact(), 0, "co-a", "co-b", "", "")
        assert scored.score == 75
        assert scored.factors["company"]["same_company"] is False

    def test_missing_companies_count_as_same(self):
        assert score_candidate(self._exact(), 0, None, None, "", "").score == 95

    def test_forex_and_late(self):
        m = AmountMatch("forex_2pct", Decimal("133"), Decimal("2"))
        scored = score_candidate(m, 3, "co-a", "co-a", "", "")
        assert scored.score == 25 + 8 + 20

    def test_similar_descriptions_score_partially(self):
        scored = score_candidate(
            self._exact(), 7, "co-a", "co-a", "ACME HOLDINGS 4411", "ACME HOLDINGS 4411",
        )
        assert scored.factors["description"]["similarity"] == 1.0
        assert scored.score == 40 + 0 + 20 + 5

    def test_score_never_exceeds_100(self):
        scored = score_candidate(self._exact(), 0, "co-a", "co-a", "WIRE", "WIRE")
        assert scored.score == 100
