"""Tests for ledgermatch.statements.payload: extraction payload validation."""

from decimal import Decimal

import pytest

from ledgermatch.database.models import Account
from ledgermatch.reconcile.balance import IncompleteInput
from ledgermatch.statements.payload import parse_extraction_payload, parse_transaction

CARD = Account(id="card-a", name="Card", currency="CAD", balance_type="liability",
               company_id="co-a")


def _payload(**info_overrides):
    info = {
        "opening_balance": "-131.73",
        "closing_balance": "99.23",
        "currency": "CAD",
        "balance_type": "liability",
    }
    info.update(info_overrides)
    return {
        "account_info": info,
        "transactions": [
            {"date": "2024-12-03", "description": "OFFICE DEPOT", "amount": "230.96",
             "direction": "debit"},
        ],
    }


class TestParseExtractionPayload:
    def test_typed_draft(self):
        draft = parse_extraction_payload(_payload(), CARD)
        assert draft.opening_balance == Decimal("-131.73")
        assert draft.closing_balance == Decimal("99.23")
        assert draft.balance_type == "liability"
        [txn] = draft.transactions
        assert txn.amount == Decimal("230.96")
        assert txn.account_id == "card-a"
        assert txn.company_id == "co-a"
        assert txn.currency == "CAD"
        assert txn.position == 0

    def test_period_defaults_to_transaction_dates(self):
        draft = parse_extraction_payload(_payload(), CARD)
        assert draft.period_start == draft.period_end == "2024-12-03"

    def test_explicit_period(self):
        draft = parse_extraction_payload(
            _payload(period_start="2024-12-01", period_end="2024-12-31"), CARD,
        )
        assert (draft.period_start, draft.period_end) == ("2024-12-01", "2024-12-31")

    def test_empty_statement(self):
        data = _payload(opening_balance="-376.95", closing_balance="-376.95")
        data["transactions"] = []
        draft = parse_extraction_payload(data, CARD)
        assert draft.transactions == []
        assert draft.period_start is None

    @pytest.mark.parametrize("key", ["opening_balance", "closing_balance",
                                     "currency", "balance_type"])
    def test_missing_account_info_field(self, key):
        data = _payload()
        del data["account_info"][key]
        with pytest.raises(IncompleteInput):
            parse_extraction_payload(data, CARD)

    def test_balance_type_must_match_account(self):
        with pytest.raises(IncompleteInput, match="does not match"):
            parse_extraction_payload(_payload(balance_type="asset"), CARD)

    def test_currency_must_match_account(self):
        with pytest.raises(IncompleteInput, match="currency"):
            parse_extraction_payload(_payload(currency="USD"), CARD)

    def test_missing_transactions_list(self):
        with pytest.raises(IncompleteInput, match="transactions"):
            parse_extraction_payload({"account_info": _payload()["account_info"]}, CARD)

    def test_not_an_object(self):
        with pytest.raises(IncompleteInput):
            parse_extraction_payload(["nope"], CARD)


class TestParseTransaction:
    def test_negative_amount_becomes_magnitude(self):
        txn = parse_transaction(
            {"date": "2024-12-03", "amount": "-45.10", "direction": "credit"}, 3, CARD,
        )
        assert txn.amount == Decimal("45.10")
        assert txn.direction == "credit"
        assert txn.position == 3
        assert txn.description == ""

    def test_direction_required(self):
        with pytest.raises(IncompleteInput, match="direction"):
            parse_transaction({"date": "2024-12-03", "amount": "1"}, 0, CARD)

    def test_bad_direction(self):
        with pytest.raises(IncompleteInput, match="direction"):
            parse_transaction({"date": "2024-12-03", "amount": "1",
                               "direction": "out"}, 0, CARD)

    def test_bad_date(self):
        with pytest.raises(IncompleteInput, match="date"):
            parse_transaction({"date": "03/12/2024", "amount": "1",
                               "direction": "debit"}, 0, CARD)

    def test_missing_amount(self):
        with pytest.raises(IncompleteInput, match="amount"):
            parse_transaction({"date": "2024-12-03", "direction": "debit"}, 0, CARD)

    def test_not_a_dict(self):
        with pytest.raises(IncompleteInput, match="not an object"):
            parse_transaction("2024-12-03,1.00", 0, CARD)
