"""YAML configuration loader for LedgerMatch.

Loads the config files from the config/ directory:
  accounts.yaml, categories.yaml, knowledge_base.yaml, rules.yaml

Only rules.yaml sections are optional; anything missing there falls back
to the defaults below.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import yaml

TRANSFER_DEFAULTS = {
    "lookback_days": 60,
    "date_tolerance_days": 3,
    "auto_link_threshold": 95,
    "same_currency_tolerance": "0.01",
    "cross_currency_tolerance_pct": "2.0",
    "auto_link_cross_company": False,
}

PENDING_DEFAULTS = {
    "tolerance_days": 5,
    "tolerance_amount": "0.50",
}

DEFAULT_EPSILON = "0.01"
DEFAULT_STALL_SECONDS = 600


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._accounts: list[dict] | None = None
        self._categories: list[dict] | None = None
        self._knowledge_base: list[dict] | None = None
        self._rules: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def accounts(self) -> list[dict]:
        if self._accounts is None:
            data = self._load("accounts.yaml")
            self._accounts = data.get("accounts", data) if isinstance(data, dict) else data
        return self._accounts

    @property
    def categories(self) -> list[dict]:
        if self._categories is None:
            data = self._load("categories.yaml")
            if isinstance(data, dict):
                self._categories = data.get("tree", data.get("categories", data))
            else:
                self._categories = data
        return self._categories

    @property
    def knowledge_base(self) -> list[dict]:
        """Keyword entries: [{keyword, category_id, match_type?, confidence?}]."""
        if self._knowledge_base is None:
            data = self._load("knowledge_base.yaml")
            if isinstance(data, dict):
                data = data.get("entries", [])
            self._knowledge_base = data
        return self._knowledge_base

    @property
    def rules(self) -> dict:
        if self._rules is None:
            self._rules = self._load("rules.yaml")
        return self._rules

    def account_by_id(self, account_id: str) -> dict | None:
        for acct in self.accounts:
            if acct.get("id") == account_id:
                return acct
        return None

    @property
    def transfer_category(self) -> str:
        """Category assigned to both sides of a linked transfer."""
        return self.rules.get("transfer_category", "bank_transfer")

    @property
    def fallback_category(self) -> str:
        """Category assigned when no rule matches. Default: 'uncategorized'."""
        return self.rules.get("fallback_category", "uncategorized")

    @property
    def transfer_settings(self) -> dict:
        """Detection settings with defaults filled in.

        Tolerances come back as Decimal.
        """
        merged = dict(TRANSFER_DEFAULTS)
        merged.update(self.rules.get("transfers") or {})
        merged["same_currency_tolerance"] = Decimal(str(merged["same_currency_tolerance"]))
        merged["cross_currency_tolerance_pct"] = Decimal(
            str(merged["cross_currency_tolerance_pct"])
        )
        merged["lookback_days"] = int(merged["lookback_days"])
        merged["date_tolerance_days"] = int(merged["date_tolerance_days"])
        merged["auto_link_threshold"] = int(merged["auto_link_threshold"])
        merged["auto_link_cross_company"] = bool(merged["auto_link_cross_company"])
        return merged

    @property
    def exchange_rates(self) -> list[dict]:
        """Externally supplied rates: [{from, to, rate, source}]."""
        return self.rules.get("exchange_rates") or []

    @property
    def pending_transfer_defaults(self) -> dict:
        merged = dict(PENDING_DEFAULTS)
        merged.update(self.rules.get("pending_transfers") or {})
        return {
            "tolerance_days": int(merged["tolerance_days"]),
            "tolerance_amount": Decimal(str(merged["tolerance_amount"])),
        }

    @property
    def reconciliation_epsilon(self) -> Decimal:
        section = self.rules.get("reconciliation") or {}
        return Decimal(str(section.get("epsilon", DEFAULT_EPSILON)))

    @property
    def stall_seconds(self) -> int:
        section = self.rules.get("reanalysis") or {}
        return int(section.get("stall_seconds", DEFAULT_STALL_SECONDS))

    def flatten_category_tree(self) -> dict[str, dict]:
        """Walk categories tree and return flat lookup: category_id → metadata.

        Each entry has keys: category_id, name, level, parent_id,
        is_leaf, is_transfer.
        """
        result: dict[str, dict] = {}

        def _walk(nodes: list[dict], depth: int, parent_id: str | None,
                  inherit_transfer: bool) -> None:
            for node in nodes:
                cat_id = node.get("id", "")
                children = node.get("children", [])
                is_transfer = node.get("is_transfer", inherit_transfer)

                if cat_id:
                    result[cat_id] = {
                        "category_id": cat_id,
                        "name": node.get("name", ""),
                        "level": depth,
                        "parent_id": parent_id,
                        "is_leaf": not children,
                        "is_transfer": bool(is_transfer),
                    }

                if children:
                    _walk(children, depth + (1 if cat_id else 0),
                          cat_id or parent_id, is_transfer)

        _walk(self.categories, 0, None, False)
        return result
