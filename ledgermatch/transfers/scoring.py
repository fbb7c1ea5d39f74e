"""Confidence scoring for transfer candidates.

A candidate's score is the sum of four factors, capped at 100:

  amount       exact (same currency, within tolerance)   40
               converted, within 1%                      35
               converted, within the configured width    25
  date         0 days 35, 1 day 25, 2 days 15, 3 days 8,
               4 days 6, 5 days 4, 6 days 2, later 0
  company      same company 20, cross company 0
  description  5 when either side carries a transfer keyword,
               otherwise round(5 * similarity)

An exact same-day same-company pair scores 95 before the description
factor. Cross-company pairs top out at 80.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Iterable

logger = logging.getLogger(__name__)

TRANSFER_KEYWORDS = (
    "TRANSFER", "TFR", "BR TO BR", "ONLINE BANKING", "E-TRANSFER",
    "ETRANSFER", "INTERAC", "PAYMENT", "WIRE", "FX", "FOREX",
    "CONVERSION", "LOAN", "LOC", "WITHDRAWAL", "DEPOSIT",
    "LINE OF CREDIT", "WWW TFR", "VIN0",
)

_KEYWORD_RES = [
    (kw, re.compile(r"(?<![A-Z0-9])" + re.escape(kw) + r"(?![A-Z0-9])"))
    for kw in TRANSFER_KEYWORDS
]

AMOUNT_POINTS = {"exact": 40, "forex_1pct": 35, "forex_2pct": 25}
DATE_POINTS = (35, 25, 15, 8, 6, 4, 2)
SAME_COMPANY_POINTS = 20
DESCRIPTION_POINTS = 5
MAX_SCORE = 100


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str


class ExchangeRateTable:
    """Externally supplied exchange rates, keyed by currency pair.

    Rates are never fetched here. A pair missing in one direction is
    served from the inverse of the other.
    """

    def __init__(self, rates: Iterable[ExchangeRate] = ()):
        self._rates: dict[tuple[str, str], ExchangeRate] = {}
        for r in rates:
            self.add(r)

    @classmethod
    def from_config(cls, entries: list[dict]) -> ExchangeRateTable:
        table = cls()
        for entry in entries:
            try:
                rate = Decimal(str(entry["rate"]))
                table.add(ExchangeRate(
                    from_currency=entry["from"].upper(),
                    to_currency=entry["to"].upper(),
                    rate=rate,
                    source=entry.get("source", "config"),
                ))
            except (KeyError, ArithmeticError, AttributeError) as e:
                raise ValueError(f"Invalid exchange rate entry {entry!r}: {e}") from e
        return table

    def add(self, rate: ExchangeRate) -> None:
        if rate.rate <= 0:
            raise ValueError(f"Exchange rate must be positive: {rate}")
        self._rates[(rate.from_currency, rate.to_currency)] = rate

    def lookup(self, from_currency: str, to_currency: str) -> ExchangeRate | None:
        if from_currency == to_currency:
            return ExchangeRate(from_currency, to_currency, Decimal(1), "same_currency")
        direct = self._rates.get((from_currency, to_currency))
        if direct is not None:
            return direct
        inverse = self._rates.get((to_currency, from_currency))
        if inverse is not None:
            return ExchangeRate(
                from_currency, to_currency, Decimal(1) / inverse.rate,
                f"{inverse.source} (inverse)",
            )
        return None

    def __len__(self) -> int:
        return len(self._rates)


@dataclass
class AmountMatch:
    kind: str  # exact, forex_1pct, forex_2pct
    converted: Decimal
    difference: Decimal
    rate: ExchangeRate | None = None


@dataclass
class CandidateScore:
    score: int
    factors: dict = field(default_factory=dict)


def match_amounts(
    debit_amount: Decimal,
    debit_currency: str,
    credit_amount: Decimal,
    credit_currency: str,
    rates: ExchangeRateTable,
    same_currency_tolerance: Decimal = Decimal("0.01"),
    cross_currency_tolerance_pct: Decimal = Decimal("2.0"),
) -> AmountMatch | None:
    """Compare the debit (converted into the credit's currency) to the credit.

    Returns None when the amounts are too far apart, or when the pair is
    cross-currency and no rate was supplied.
    """
    if debit_currency == credit_currency:
        diff = abs(debit_amount - credit_amount)
        if diff <= same_currency_tolerance:
            return AmountMatch("exact", debit_amount, diff)
        return None

    rate = rates.lookup(debit_currency, credit_currency)
    if rate is None:
        return None
    converted = debit_amount * rate.rate
    diff = abs(converted - credit_amount)
    if credit_amount == 0:
        return None
    pct = diff / credit_amount * 100
    if pct <= min(Decimal(1), cross_currency_tolerance_pct):
        return AmountMatch("forex_1pct", converted, diff, rate)
    if pct <= cross_currency_tolerance_pct:
        return AmountMatch("forex_2pct", converted, diff, rate)
    return None


def date_diff_days(a: str, b: str) -> int:
    return abs((date.fromisoformat(a[:10]) - date.fromisoformat(b[:10])).days)


def date_points(diff_days: int) -> int:
    if diff_days < len(DATE_POINTS):
        return DATE_POINTS[diff_days]
    return 0


def find_transfer_keyword(description: str | None) -> str | None:
    if not description:
        return None
    upper = description.upper()
    for kw, pattern in _KEYWORD_RES:
        if pattern.search(upper):
            return kw
    return None


def normalize_text(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", " ", value.lower()).strip()
    return re.sub(r"\s+", " ", cleaned)


def description_similarity(a: str | None, b: str | None) -> float:
    """Blend of character ratio and token overlap, 0.0 to 1.0."""
    if not a or not b:
        return 0.0
    norm_a = normalize_text(a)
    norm_b = normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    return round(0.6 * ratio + 0.4 * token_score, 4)


def score_candidate(
    amount_match: AmountMatch,
    diff_days: int,
    from_company_id: str | None,
    to_company_id: str | None,
    from_description: str | None,
    to_description: str | None,
) -> CandidateScore:
    amount_pts = AMOUNT_POINTS[amount_match.kind]
    date_pts = date_points(diff_days)
    same_company = from_company_id == to_company_id
    company_pts = SAME_COMPANY_POINTS if same_company else 0

    keyword = find_transfer_keyword(from_description) or find_transfer_keyword(to_description)
    if keyword:
        similarity = None
        desc_pts = DESCRIPTION_POINTS
    else:
        similarity = description_similarity(from_description, to_description)
        desc_pts = round(DESCRIPTION_POINTS * similarity)

    total = min(MAX_SCORE, amount_pts + date_pts + company_pts + desc_pts)
    factors = {
        "amount": {
            "kind": amount_match.kind,
            "difference": str(amount_match.difference),
            "points": amount_pts,
        },
        "date": {"diff_days": diff_days, "points": date_pts},
        "company": {"same_company": same_company, "points": company_pts},
        "description": {
            "keyword": keyword,
            "similarity": similarity,
            "points": desc_pts,
        },
    }
    return CandidateScore(score=int(total), factors=factors)
