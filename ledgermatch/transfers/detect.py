"""TransferCandidateDetector: pairs debits and credits across accounts.

A run works on a window of transactions (the filter's seeds plus every
counterpart within the date tolerance of them). For each unclaimed debit,
in id order, it picks the best credit on a different account, stores a
candidate, and auto-links it when the score reaches the threshold.

Storing a candidate is also what claims its two transactions: the
partial unique indexes on non-rejected candidates turn a concurrent
second claim into DoubleClaimConflict, and the detector moves on to the
debit's next-best credit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from ledgermatch.database.models import (
    CANDIDATE_PENDING,
    CANDIDATE_REJECTED,
    CREDIT,
    DEBIT,
    Transaction,
    TransferCandidate,
)
from ledgermatch.database.repository import DoubleClaimConflict, Repository
from ledgermatch.transfers.link import (
    SYSTEM_REVIEWER,
    CandidateStateError,
    TransferLinkManager,
)
from ledgermatch.transfers.scoring import (
    AmountMatch,
    ExchangeRateTable,
    date_diff_days,
    match_amounts,
    score_candidate,
)

logger = logging.getLogger(__name__)


@dataclass
class DetectionFilter:
    """Which transactions seed a detection run. Empty means the lookback window."""
    date_from: str | None = None
    date_to: str | None = None
    account_ids: list[str] | None = None
    statement_import_id: str | None = None
    transaction_ids: list[str] | None = None

    @property
    def is_open(self) -> bool:
        return (
            self.date_from is None and self.account_ids is None
            and self.statement_import_id is None and self.transaction_ids is None
        )


@dataclass
class DetectionResult:
    analyzed: int = 0
    candidates_created: int = 0
    auto_linked: list[TransferCandidate] = field(default_factory=list)
    pending: list[TransferCandidate] = field(default_factory=list)
    rescored: int = 0
    superseded: int = 0
    conflicts: int = 0
    dry_run: bool = False


class TransferCandidateDetector:
    def __init__(
        self,
        repo: Repository,
        link_manager: TransferLinkManager,
        rates: ExchangeRateTable | None = None,
        settings: dict | None = None,
    ):
        self.repo = repo
        self.link_manager = link_manager
        self.rates = rates or ExchangeRateTable()
        settings = settings or {}
        self.lookback_days = int(settings.get("lookback_days", 60))
        self.date_tolerance = int(settings.get("date_tolerance_days", 3))
        self.auto_link_threshold = int(settings.get("auto_link_threshold", 95))
        self.same_currency_tolerance = settings.get("same_currency_tolerance")
        self.cross_currency_tolerance_pct = settings.get("cross_currency_tolerance_pct")
        self.auto_link_cross_company = bool(settings.get("auto_link_cross_company", False))
        self._missing_rates: set[tuple[str, str]] = set()

    # ── Pool ────────────────────────────────────────────────

    def _seeds(self, flt: DetectionFilter) -> list[Transaction]:
        if flt.transaction_ids is not None:
            seeds = self.repo.get_transactions(flt.transaction_ids)
            if flt.date_from:
                seeds = [t for t in seeds if t.date >= flt.date_from]
            if flt.date_to:
                seeds = [t for t in seeds if t.date <= flt.date_to]
            if flt.account_ids is not None:
                seeds = [t for t in seeds if t.account_id in flt.account_ids]
            return seeds

        date_from = flt.date_from
        if flt.is_open:
            latest = self.repo.get_latest_transaction_date()
            if latest is None:
                return []
            start = date.fromisoformat(latest[:10]) - timedelta(days=self.lookback_days)
            date_from = start.isoformat()
        return self.repo.find_transactions(
            date_from=date_from,
            date_to=flt.date_to,
            account_ids=flt.account_ids,
            statement_import_id=flt.statement_import_id,
        )

    def _pool(self, seeds: list[Transaction], tolerance: int) -> list[Transaction]:
        """Unlinked, unclaimed transactions within reach of the seeds.

        Rows from mismatched statements stay out until the statement is
        corrected.
        """
        if not seeds:
            return []
        dates = [date.fromisoformat(t.date[:10]) for t in seeds]
        window = self.repo.find_transactions(
            date_from=(min(dates) - timedelta(days=tolerance)).isoformat(),
            date_to=(max(dates) + timedelta(days=tolerance)).isoformat(),
            unlinked_only=True,
            reconciled_only=True,
        )
        excluded = (
            self.repo.get_claimed_transaction_ids()
            | self.repo.get_pending_transfer_transaction_ids()
        )
        # a "pending" side whose declaration was cancelled is free again
        return [
            t for t in window
            if t.id not in excluded and t.transfer_status != "matched"
        ]

    # ── Matching ────────────────────────────────────────────

    def _match(self, debit: Transaction, credit: Transaction) -> AmountMatch | None:
        kwargs = {}
        if self.same_currency_tolerance is not None:
            kwargs["same_currency_tolerance"] = self.same_currency_tolerance
        if self.cross_currency_tolerance_pct is not None:
            kwargs["cross_currency_tolerance_pct"] = self.cross_currency_tolerance_pct
        match = match_amounts(
            debit.amount, debit.currency, credit.amount, credit.currency,
            self.rates, **kwargs,
        )
        if match is None and debit.currency != credit.currency:
            pair = (debit.currency, credit.currency)
            if self.rates.lookup(*pair) is None and pair not in self._missing_rates:
                self._missing_rates.add(pair)
                logger.warning("No exchange rate supplied for %s -> %s", *pair)
        return match

    def _build_candidate(
        self, debit: Transaction, credit: Transaction,
        match: AmountMatch, diff_days: int, batch_id: str | None,
    ) -> TransferCandidate:
        scored = score_candidate(
            match, diff_days, debit.company_id, credit.company_id,
            debit.description, credit.description,
        )
        return TransferCandidate(
            from_transaction_id=debit.id,
            to_transaction_id=credit.id,
            from_account_id=debit.account_id,
            to_account_id=credit.account_id,
            from_company_id=debit.company_id,
            to_company_id=credit.company_id,
            amount_from=debit.amount,
            amount_to=credit.amount,
            currency_from=debit.currency,
            currency_to=credit.currency,
            exchange_rate_used=match.rate.rate if match.rate else None,
            exchange_rate_source=match.rate.source if match.rate else None,
            date_diff_days=diff_days,
            confidence_score=scored.score,
            confidence_factors=scored.factors,
            is_cross_company=debit.company_id != credit.company_id,
            batch_id=batch_id,
        )

    def _can_auto_link(self, cand: TransferCandidate, threshold: int) -> bool:
        if cand.confidence_score < threshold:
            return False
        return not cand.is_cross_company or self.auto_link_cross_company

    def _store(
        self, cand: TransferCandidate, result: DetectionResult, used_credits: set[str],
    ) -> bool:
        """Insert the candidate. False if another claim got to either side first."""
        used_credits.add(cand.to_transaction_id)
        try:
            self.repo.insert_candidate(cand)
        except DoubleClaimConflict as e:
            result.conflicts += 1
            logger.warning(
                "Candidate %s -> %s not stored: %s",
                cand.from_transaction_id, cand.to_transaction_id, e,
            )
            return False
        result.candidates_created += 1
        return True

    def _auto_link(self, cand: TransferCandidate, result: DetectionResult) -> None:
        try:
            outcome = self.link_manager.auto_link_candidate(cand)
        except (DoubleClaimConflict, CandidateStateError) as e:
            result.conflicts += 1
            logger.warning("Auto-link of candidate %s skipped: %s", cand.id, e)
            result.pending.append(cand)
            return
        result.auto_linked.append(outcome.candidate)
        logger.info(
            "Auto-linked %s -> %s (score %d)",
            cand.from_transaction_id, cand.to_transaction_id, cand.confidence_score,
        )

    # ── Existing candidates ─────────────────────────────────

    def _revisit_pending(
        self, seed_ids: set[str], threshold: int, dry_run: bool,
        result: DetectionResult,
    ) -> None:
        """Re-score pending candidates touching the seeds; retire stale ones."""
        for cand in self.repo.list_candidates(status=CANDIDATE_PENDING):
            if (cand.from_transaction_id not in seed_ids
                    and cand.to_transaction_id not in seed_ids):
                continue
            debit = self.repo.get_transaction(cand.from_transaction_id)
            credit = self.repo.get_transaction(cand.to_transaction_id)
            if debit is None or credit is None:
                continue

            if debit.linked_to or credit.linked_to:
                if not dry_run:
                    self.repo.transition_candidate(
                        cand.id, CANDIDATE_REJECTED, reviewed_by=SYSTEM_REVIEWER,
                        rejection_reason="Superseded: transaction linked elsewhere",
                    )
                    logger.warning(
                        "Candidate %s superseded: a side is already linked", cand.id,
                    )
                result.superseded += 1
                continue

            match = self._match(debit, credit) if (
                debit.direction == DEBIT and credit.direction == CREDIT
            ) else None
            if match is None:
                if not dry_run:
                    self.repo.transition_candidate(
                        cand.id, CANDIDATE_REJECTED, reviewed_by=SYSTEM_REVIEWER,
                        rejection_reason="Superseded: amounts or directions no longer match",
                    )
                    logger.warning("Candidate %s no longer matches; rejected", cand.id)
                result.superseded += 1
                continue

            fresh = self._build_candidate(
                debit, credit, match, date_diff_days(debit.date, credit.date), cand.batch_id,
            )
            if (fresh.confidence_score != cand.confidence_score
                    or fresh.confidence_factors != cand.confidence_factors):
                result.rescored += 1
                if not dry_run:
                    self.repo.update_candidate_score(
                        cand.id, fresh.confidence_score, fresh.confidence_factors,
                        fresh.exchange_rate_used, fresh.exchange_rate_source,
                        fresh.is_cross_company,
                    )
                cand.confidence_score = fresh.confidence_score
                cand.confidence_factors = fresh.confidence_factors
                cand.is_cross_company = fresh.is_cross_company

            if not dry_run and self._can_auto_link(cand, threshold):
                self._auto_link(cand, result)
            else:
                result.pending.append(cand)

    # ── Entry point ─────────────────────────────────────────

    def detect(
        self,
        flt: DetectionFilter | None = None,
        auto_link_threshold: int | None = None,
        date_tolerance: int | None = None,
        dry_run: bool = False,
        batch_id: str | None = None,
    ) -> DetectionResult:
        """Find, store and (where confident) auto-link transfer candidates.

        With dry_run the run scores and reports but writes nothing.
        """
        flt = flt or DetectionFilter()
        threshold = self.auto_link_threshold if auto_link_threshold is None else auto_link_threshold
        tolerance = self.date_tolerance if date_tolerance is None else date_tolerance
        result = DetectionResult(dry_run=dry_run)

        seeds = self._seeds(flt)
        seed_ids = {t.id for t in seeds}
        self._revisit_pending(seed_ids, threshold, dry_run, result)

        pool = self._pool(seeds, tolerance)
        result.analyzed = sum(1 for t in pool if t.id in seed_ids)
        rejected = self.repo.get_rejected_pairs()

        debits = sorted((t for t in pool if t.direction == DEBIT), key=lambda t: t.id)
        credits = sorted((t for t in pool if t.direction == CREDIT), key=lambda t: t.id)
        used_credits: set[str] = set()

        for debit in debits:
            ranked = []
            for credit in credits:
                if credit.id in used_credits or credit.account_id == debit.account_id:
                    continue
                if debit.id not in seed_ids and credit.id not in seed_ids:
                    continue
                if (debit.id, credit.id) in rejected:
                    continue
                diff_days = date_diff_days(debit.date, credit.date)
                if diff_days > tolerance:
                    continue
                match = self._match(debit, credit)
                if match is None:
                    continue
                ranked.append(((diff_days, match.difference, credit.id), credit, match))
            ranked.sort(key=lambda r: r[0])

            for (diff_days, _, _), credit, match in ranked:
                cand = self._build_candidate(debit, credit, match, diff_days, batch_id)
                if dry_run:
                    used_credits.add(credit.id)
                    result.candidates_created += 1
                    result.pending.append(cand)
                    break
                if self._store(cand, result, used_credits):
                    if self._can_auto_link(cand, threshold):
                        self._auto_link(cand, result)
                    else:
                        result.pending.append(cand)
                    break
                if debit.id in self.repo.get_claimed_transaction_ids():
                    break

        logger.info(
            "Transfer detection: %d analyzed, %d new, %d auto-linked, %d pending,"
            " %d rescored, %d superseded%s",
            result.analyzed, result.candidates_created, len(result.auto_linked),
            len(result.pending), result.rescored, result.superseded,
            " (dry run)" if dry_run else "",
        )
        return result
