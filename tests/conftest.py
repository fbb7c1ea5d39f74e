"""Shared test fixtures."""

from decimal import Decimal
from pathlib import Path

import pytest

from ledgermatch.database.models import Account, Transaction
from ledgermatch.database.repository import Repository

# Test fixture config directory with synthetic data
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

MIGRATIONS_DIR = Path(__file__).parent.parent / "ledgermatch" / "database" / "migrations"

# Mirrors fixtures/config/accounts.yaml
ACCOUNTS = [
    Account(id="chq-a", name="Company A Chequing", company_id="co-a", currency="CAD"),
    Account(id="sav-a", name="Company A Savings", company_id="co-a", currency="CAD"),
    Account(id="usd-a", name="Company A USD", company_id="co-a", currency="USD"),
    Account(id="card-a", name="Company A Card", company_id="co-a", currency="CAD",
            balance_type="liability"),
    Account(id="chq-b", name="Company B Chequing", company_id="co-b", currency="CAD"),
]


def seed_accounts(repo: Repository) -> None:
    for acct in ACCOUNTS:
        repo.upsert_account(acct)


def make_txn(repo: Repository | None = None, **overrides) -> Transaction:
    """Build (and insert, when repo is given) a transaction on chq-a."""
    defaults = dict(
        account_id="chq-a",
        company_id="co-a",
        date="2026-03-10",
        amount=Decimal("100.00"),
        currency="CAD",
        direction="debit",
        description="",
    )
    defaults.update(overrides)
    if not isinstance(defaults["amount"], Decimal):
        defaults["amount"] = Decimal(str(defaults["amount"]))
    txn = Transaction(**defaults)
    if repo is not None:
        repo.insert_transaction(txn)
    return txn


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    seed_accounts(r)
    yield r
    r.close()
