"""CLI entry point for LedgerMatch.

Commands:
    ledgermatch accounts sync|list             Sync accounts.yaml into the DB / list them
    ledgermatch import [--file PATH] [--account ID]
                                               Import extraction result(s)
    ledgermatch watch                          Start drop-folder watcher daemon
    ledgermatch reconcile [--account ID]       Statement list with balance status
    ledgermatch correct STATEMENT --flip TXN.. Flip transaction directions and re-check
    ledgermatch confirm STATEMENT              Confirm a balanced statement (locks it)
    ledgermatch detect [filters] [--dry-run]   Run transfer candidate detection
    ledgermatch candidates [--status S]        List transfer candidates
    ledgermatch review CANDIDATE confirm|reject
    ledgermatch unlink TXN                     Remove a transfer link
    ledgermatch pending register|list|cancel|delete
    ledgermatch reanalyze TXN [TXN ...]        Start a reanalysis batch
    ledgermatch batch status|cancel|retry ID / batch fail-stalled
    ledgermatch status                         Counts and link audit
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on LEDGERMATCH_LOG_LEVEL env var."""
    level = os.environ.get("LEDGERMATCH_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from ledgermatch.config import Config

    config_dir = os.environ.get("LEDGERMATCH_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a Repository connected to the configured database, migrated."""
    from ledgermatch.database.repository import Repository

    db_path = os.environ.get("LEDGERMATCH_DB_PATH", "ledgermatch.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(_get_migrations_dir())
    return repo


def _make_claude_fn():
    """Create a Claude API callback for AI categorization.

    Returns a callable (system: str, prompt: str) -> str, or None if
    ANTHROPIC_API_KEY is not set.
    """
    api_key = os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        return None

    try:
        import anthropic

        client = anthropic.Anthropic(api_key=api_key)

        def claude_fn(system: str, prompt: str) -> str:
            response = client.messages.create(
                model="claude-sonnet-4-20250514",
                max_tokens=1024,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
            return response.content[0].text

        return claude_fn
    except Exception as e:
        logging.getLogger(__name__).warning("Claude API not available: %s", e)
        return None


def _get_watch_dir() -> Path:
    """Get the watch directory from env or default."""
    return Path(os.environ.get("LEDGERMATCH_WATCH_DIR", "import"))


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    default = Path(__file__).parent / "database" / "migrations"
    return Path(os.environ.get("LEDGERMATCH_MIGRATIONS_DIR", default))


@dataclass
class _Engine:
    links: object
    detector: object
    registry: object
    matcher: object
    importer: object
    orchestrator: object


def _build_engine(repo, config, claude_fn=None) -> _Engine:
    """Wire the matching components together from config."""
    from ledgermatch.categorize.claude_ai import categorize_single
    from ledgermatch.categorize.knowledge_base import KnowledgeBase
    from ledgermatch.reanalysis.orchestrator import ReanalysisOrchestrator
    from ledgermatch.statements.importer import StatementImporter
    from ledgermatch.transfers.detect import TransferCandidateDetector
    from ledgermatch.transfers.link import TransferLinkManager
    from ledgermatch.transfers.pending import PendingTransferMatcher, PendingTransferRegistry
    from ledgermatch.transfers.scoring import ExchangeRateTable

    links = TransferLinkManager(repo, transfer_category=config.transfer_category)
    rates = ExchangeRateTable.from_config(config.exchange_rates)
    detector = TransferCandidateDetector(
        repo, links, rates=rates, settings=config.transfer_settings,
    )
    matcher = PendingTransferMatcher(
        repo, links, rates=rates,
        cross_currency_tolerance_pct=config.transfer_settings["cross_currency_tolerance_pct"],
    )

    ai_categorize = None
    if claude_fn is not None:
        def ai_categorize(txn):
            return categorize_single(txn, config, claude_fn, repo)

    return _Engine(
        links=links,
        detector=detector,
        registry=PendingTransferRegistry(repo, config.pending_transfer_defaults),
        matcher=matcher,
        importer=StatementImporter(
            repo, detector=detector, matcher=matcher,
            epsilon=config.reconciliation_epsilon,
        ),
        orchestrator=ReanalysisOrchestrator(
            repo, detector=detector,
            knowledge_base=KnowledgeBase.from_config(config),
            ai_categorize=ai_categorize,
            fallback_category=config.fallback_category,
            stall_seconds=config.stall_seconds,
        ),
    )


def _sync_accounts(repo, config) -> int:
    from ledgermatch.database.models import Account

    count = 0
    for entry in config.accounts:
        repo.upsert_account(Account(
            id=entry["id"],
            name=entry.get("name", entry["id"]),
            currency=str(entry.get("currency", "USD")).upper(),
            balance_type=entry.get("balance_type", "asset"),
            company_id=entry.get("company_id"),
        ))
        count += 1
    return count


def _fmt_txn(txn) -> str:
    return (
        f"{txn.id}  {txn.date}  {txn.direction:<6} {txn.amount:>12} {txn.currency}"
        f"  {txn.account_id:<16}  {txn.description[:30]}"
    )


def _fmt_candidate(c) -> str:
    flag = " cross-company" if c.is_cross_company else ""
    if c.unlinked_at:
        flag += " unlinked"
    return (
        f"{c.id}  [{c.status}] score={c.confidence_score:>3}"
        f"  {c.from_transaction_id} -> {c.to_transaction_id}"
        f"  {c.amount_from} {c.currency_from} / {c.amount_to} {c.currency_to}"
        f"  +{c.date_diff_days}d{flag}"
    )


def _fmt_pending(pt) -> str:
    return (
        f"{pt.id}  [{pt.status}] {pt.transfer_date}  {pt.amount} {pt.currency}"
        f"  {pt.from_account_id} -> {pt.to_account_id}"
        f"  from={pt.from_transaction_id or '-'} to={pt.to_transaction_id or '-'}"
    )


def _print_batch(status) -> None:
    current, total = status.progress
    print(f"Batch {status.batch_id}: {status.state} ({current}/{total})")
    if status.progress_message:
        print(f"  {status.progress_message}")
    for name, value in status.counters.items():
        print(f"  {name:<26} {value}")
    if status.error_message:
        print(f"  error: {status.error_message}")


# ── Command handlers ─────────────────────────────────────


def cmd_accounts(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        if args.accounts_command == "sync":
            count = _sync_accounts(repo, _get_config())
            print(f"Synced {count} account(s).")
            return 0
        for acct in repo.list_accounts():
            print(
                f"{acct.id:<18} {acct.currency}  {acct.balance_type:<9}"
                f"  {acct.company_id or '-':<12} {acct.name}"
            )
        return 0
    finally:
        repo.close()


def cmd_import(args: argparse.Namespace) -> int:
    """Import extraction result file(s)."""
    from ledgermatch.watcher.observer import (
        SUPPORTED_EXTENSIONS,
        StatementImportPipeline,
        load_payload,
    )

    config = _get_config()
    repo = _get_repo()
    try:
        _sync_accounts(repo, config)
        engine = _build_engine(repo, config)
        pipeline = StatementImportPipeline(repo, engine.importer)

        if args.file:
            filepath = args.file.resolve()
            if not filepath.exists():
                print(f"Error: File not found: {filepath}")
                return 1
            if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
                print(f"Error: Unsupported file type: {filepath.suffix}")
                return 1

            if args.account:
                outcome = engine.importer.import_statement(
                    args.account, load_payload(filepath), file_name=filepath.name,
                )
                rec = outcome.reconciliation
                print(
                    f"{filepath.name}: {'balanced' if rec.balanced else 'mismatched'}"
                    f" (statement={outcome.statement.id}, txns={len(outcome.transactions)},"
                    f" computed={rec.computed_closing})"
                )
                for suspect in rec.suspects:
                    print(f"  suspect: {_fmt_txn(suspect)}")
                return 0

            result = pipeline.process_file(filepath)
            print(
                f"{result.file_name}: {result.status}"
                f" (txns={result.transaction_count}, auto-linked={result.auto_linked_count},"
                f" review={result.pending_review_count})"
            )
            if result.error_message:
                print(f"  {result.error_message}")
            return 0 if result.status != "error" else 1

        watch_dir = _get_watch_dir()
        if not watch_dir.exists():
            print(f"Watch directory not found: {watch_dir}")
            return 1

        files = [
            f for f in sorted(watch_dir.iterdir())
            if f.is_file() and f.suffix.lower() in SUPPORTED_EXTENSIONS
        ]
        if not files:
            print("No pending files found.")
            return 0

        errors = 0
        for filepath in files:
            result = pipeline.process_file(filepath)
            print(f"  {result.file_name}: {result.status} (txns={result.transaction_count})")
            if result.status == "error":
                errors += 1

        print(f"\nProcessed {len(files)} files, {errors} errors")
        return 1 if errors else 0
    finally:
        repo.close()


def cmd_watch(args: argparse.Namespace) -> int:
    """Start the drop-folder watcher daemon."""
    from ledgermatch.watcher.observer import FileWatcher, StatementImportPipeline

    config = _get_config()
    repo = _get_repo()
    _sync_accounts(repo, config)
    engine = _build_engine(repo, config)

    watcher = FileWatcher(
        watch_dir=_get_watch_dir(),
        pipeline=StatementImportPipeline(repo, engine.importer),
    )

    print(f"Watching {watcher.watch_dir} for extraction results... (Ctrl+C to stop)")
    watcher.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping watcher...")
    finally:
        watcher.stop()
        repo.close()

    return 0


def cmd_reconcile(args: argparse.Namespace) -> int:
    """List statements with their reconciliation state and suspects."""
    from ledgermatch.reconcile.balance import reconcile_statement

    repo = _get_repo()
    try:
        statements = repo.list_statements(account_id=args.account)
        if not statements:
            print("No statements imported.")
            return 0
        for stmt in statements:
            confirmed = "confirmed" if stmt.confirmed else "unconfirmed"
            print(
                f"{stmt.id}  {stmt.account_id:<16} {stmt.period_start or '?'}..{stmt.period_end or '?'}"
                f"  opening={stmt.opening_balance} closing={stmt.closing_balance}"
                f" computed={stmt.computed_closing}  [{stmt.reconciliation_status}, {confirmed}]"
            )
            if stmt.reconciliation_status == "mismatched":
                acct = repo.require_account(stmt.account_id)
                result = reconcile_statement(
                    repo.get_transactions_by_statement(stmt.id),
                    stmt.opening_balance, stmt.closing_balance, acct.balance_type,
                )
                print(f"    off by {result.difference}")
                for suspect in result.suspects:
                    print(f"    suspect: {_fmt_txn(suspect)}")
        return 0
    finally:
        repo.close()


def cmd_correct(args: argparse.Namespace) -> int:
    from ledgermatch.database.models import CREDIT, DEBIT

    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        txns = {t.id: t for t in repo.get_transactions_by_statement(args.statement)}
        overrides = {}
        for txn_id in args.flip:
            txn = txns.get(txn_id)
            if txn is None:
                print(f"Error: {txn_id} is not on statement {args.statement}")
                return 1
            overrides[txn_id] = CREDIT if txn.direction == DEBIT else DEBIT
        stmt = engine.importer.correct_statement(args.statement, overrides)
        print(
            f"Statement {stmt.id}: {stmt.reconciliation_status}"
            f" (computed={stmt.computed_closing}, declared={stmt.closing_balance})"
        )
        return 0 if stmt.reconciliation_status != "mismatched" else 1
    finally:
        repo.close()


def cmd_confirm(args: argparse.Namespace) -> int:
    from ledgermatch.reconcile.balance import BalanceMismatch

    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        try:
            stmt = engine.importer.confirm_statement(args.statement)
        except BalanceMismatch as e:
            print(f"Error: {e}")
            for suspect in e.suspects:
                print(f"  suspect: {_fmt_txn(suspect)}")
            return 1
        print(f"Statement {stmt.id} confirmed at {stmt.confirmed_at}")
        return 0
    finally:
        repo.close()


def cmd_detect(args: argparse.Namespace) -> int:
    from ledgermatch.transfers.detect import DetectionFilter

    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        flt = DetectionFilter(
            date_from=args.date_from,
            date_to=args.date_to,
            account_ids=args.account or None,
            statement_import_id=args.statement,
        )
        result = engine.detector.detect(
            flt,
            auto_link_threshold=args.threshold,
            date_tolerance=args.tolerance,
            dry_run=args.dry_run,
        )
        label = " (dry run)" if result.dry_run else ""
        print(
            f"Analyzed {result.analyzed}, new candidates {result.candidates_created},"
            f" auto-linked {len(result.auto_linked)}, pending {len(result.pending)}{label}"
        )
        for cand in result.auto_linked:
            print(f"  linked   {_fmt_candidate(cand)}")
        for cand in result.pending:
            print(f"  pending  {_fmt_candidate(cand)}")
        return 0
    finally:
        repo.close()


def cmd_candidates(args: argparse.Namespace) -> int:
    repo = _get_repo()
    try:
        cands = repo.list_candidates(status=args.status)
        if not cands:
            print("No transfer candidates.")
            return 0
        for cand in cands:
            print(_fmt_candidate(cand))
            if args.verbose:
                for name, factor in sorted(cand.confidence_factors.items()):
                    print(f"      {name}: {factor}")
        return 0
    finally:
        repo.close()


def cmd_review(args: argparse.Namespace) -> int:
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        outcome = engine.links.review_candidate(
            args.candidate, args.decision, reviewer=args.reviewer, reason=args.reason,
        )
        print(_fmt_candidate(outcome.candidate))
        for txn in (outcome.from_transaction, outcome.to_transaction):
            if txn is not None:
                print(f"  {_fmt_txn(txn)}  linked_to={txn.linked_to}")
        return 0
    finally:
        repo.close()


def cmd_unlink(args: argparse.Namespace) -> int:
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        txn, peer = engine.links.unlink(args.transaction)
        print(f"Unlinked {txn.id}" + (f" and {peer.id}" if peer else ""))
        return 0
    finally:
        repo.close()


def cmd_pending(args: argparse.Namespace) -> int:
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config)
        registry = engine.registry
        if args.pending_command == "register":
            pt = registry.register(
                args.from_account, args.to_account, args.amount, args.date,
                currency=args.currency, description=args.description,
                notes=args.notes, tolerance_days=args.tolerance_days,
                tolerance_amount=args.tolerance_amount,
            )
            print(_fmt_pending(pt))
        elif args.pending_command == "cancel":
            print(_fmt_pending(registry.cancel(args.id)))
        elif args.pending_command == "delete":
            registry.delete(args.id)
            print(f"Deleted pending transfer {args.id}")
        else:
            pts = registry.list(status=args.status)
            if not pts:
                print("No pending transfers.")
            for pt in pts:
                print(_fmt_pending(pt))
        return 0
    finally:
        repo.close()


def cmd_reanalyze(args: argparse.Namespace) -> int:
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config, claude_fn=_make_claude_fn())
        batch_id = engine.orchestrator.start_reanalysis(
            args.transactions, detect_transfers=not args.no_transfers,
        )
        status = engine.orchestrator.get_batch_status(batch_id)
        _print_batch(status)
        return 0 if status.state == "completed" else 1
    finally:
        repo.close()


def cmd_batch(args: argparse.Namespace) -> int:
    config = _get_config()
    repo = _get_repo()
    try:
        engine = _build_engine(repo, config, claude_fn=_make_claude_fn())
        orch = engine.orchestrator
        if args.batch_command == "fail-stalled":
            stalled = orch.fail_stalled_batches()
            print(f"Marked {len(stalled)} stalled batch(es) as failed.")
            for status in stalled:
                _print_batch(status)
            return 0
        if args.batch_command == "cancel":
            status = orch.cancel_batch(args.id)
        elif args.batch_command == "retry":
            status = orch.retry_batch(args.id)
        else:
            status = orch.get_batch_status(args.id)
        _print_batch(status)
        return 0
    finally:
        repo.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts and the link audit."""
    from ledgermatch.categorize.claude_ai import MONTHLY_BUDGET_CENTS
    from ledgermatch.database.queries import (
        find_link_asymmetries,
        get_candidate_summary,
        get_status_counts,
    )

    repo = _get_repo()
    try:
        counts = get_status_counts(repo.conn)

        print("LedgerMatch Status")
        print("=" * 40)
        print(f"  Total transactions:     {counts['total_txns']:,}")
        print(f"  Linked as transfers:    {counts['linked']:,}")
        print(f"  Needs review:           {counts['needs_review']:,}")
        print(f"  Statements:             {counts['total_statements']:,}")
        print(f"  Mismatched statements:  {counts['mismatched_statements']:,}")
        print(f"  Candidates to review:   {counts['candidates_pending']:,}")
        print(f"  Open pending transfers: {counts['pending_transfers_open']:,}")
        print(f"  Running batches:        {counts['batches_running']:,}")

        summary = get_candidate_summary(repo.conn)
        if summary:
            print("\n  Candidates by status: " + ", ".join(
                f"{k}={v}" for k, v in summary.items()
            ))

        from datetime import datetime
        month = datetime.now().strftime("%Y-%m")
        cost_cents = repo.get_monthly_cost(month)
        print(f"\n  API cost ({month}):     ${cost_cents / 100:.2f}"
              f" of ${MONTHLY_BUDGET_CENTS / 100:.2f}")

        broken = find_link_asymmetries(repo.conn)
        if broken:
            print(f"\n  WARNING: {len(broken)} asymmetric link(s)")
            for row in broken:
                print(f"    {row['transaction_id']} -> {row['peer_id']}")
            return 1
        return 0
    finally:
        repo.close()


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "accounts": cmd_accounts,
    "import": cmd_import,
    "watch": cmd_watch,
    "reconcile": cmd_reconcile,
    "correct": cmd_correct,
    "confirm": cmd_confirm,
    "detect": cmd_detect,
    "candidates": cmd_candidates,
    "review": cmd_review,
    "unlink": cmd_unlink,
    "pending": cmd_pending,
    "reanalyze": cmd_reanalyze,
    "batch": cmd_batch,
    "status": cmd_status,
}


def _user_errors() -> tuple[type[BaseException], ...]:
    """Exceptions reported as a one-line error with exit code 1."""
    from ledgermatch.database.repository import DoubleClaimConflict, NotFoundError
    from ledgermatch.reconcile.balance import BalanceMismatch, IncompleteInput
    from ledgermatch.statements.importer import StatementLocked
    from ledgermatch.transfers.link import CandidateStateError
    from ledgermatch.transfers.pending import (
        InvalidTransferDeclaration,
        PendingTransferStateError,
    )

    return (
        NotFoundError, DoubleClaimConflict, IncompleteInput, BalanceMismatch,
        StatementLocked, CandidateStateError, InvalidTransferDeclaration,
        PendingTransferStateError, FileNotFoundError, ValueError,
    )


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="ledgermatch",
        description="LedgerMatch statement reconciliation and transfer matching",
    )
    subparsers = parser.add_subparsers(dest="command")

    # accounts
    acct_p = subparsers.add_parser("accounts", help="Manage accounts")
    acct_sub = acct_p.add_subparsers(dest="accounts_command")
    acct_sub.add_parser("sync", help="Load accounts.yaml into the database")
    acct_sub.add_parser("list", help="List accounts")

    # import
    import_p = subparsers.add_parser("import", help="Import extraction result(s)")
    import_p.add_argument("--file", type=Path, help="Specific file to import")
    import_p.add_argument("--account", help="Account ID (overrides file naming)")

    # watch
    subparsers.add_parser("watch", help="Start drop-folder watcher daemon")

    # reconcile
    recon_p = subparsers.add_parser("reconcile", help="Statement balance status")
    recon_p.add_argument("--account", help="Only this account")

    # correct
    correct_p = subparsers.add_parser("correct", help="Flip directions on a statement")
    correct_p.add_argument("statement", help="Statement import ID")
    correct_p.add_argument("--flip", nargs="+", required=True, metavar="TXN",
                           help="Transaction IDs whose direction is wrong")

    # confirm
    confirm_p = subparsers.add_parser("confirm", help="Confirm and lock a balanced statement")
    confirm_p.add_argument("statement", help="Statement import ID")

    # detect
    detect_p = subparsers.add_parser("detect", help="Detect transfer candidates")
    detect_p.add_argument("--from", dest="date_from", help="Start date (YYYY-MM-DD)")
    detect_p.add_argument("--to", dest="date_to", help="End date (YYYY-MM-DD)")
    detect_p.add_argument("--account", action="append", help="Account ID (repeatable)")
    detect_p.add_argument("--statement", help="Statement import ID")
    detect_p.add_argument("--threshold", type=int, help="Auto-link threshold")
    detect_p.add_argument("--tolerance", type=int, help="Date tolerance in days")
    detect_p.add_argument("--dry-run", action="store_true", help="Score only, write nothing")

    # candidates
    cand_p = subparsers.add_parser("candidates", help="List transfer candidates")
    cand_p.add_argument("--status", help="pending, confirmed, rejected, auto_linked")
    cand_p.add_argument("-v", "--verbose", action="store_true", help="Show score factors")

    # review
    review_p = subparsers.add_parser("review", help="Confirm or reject a candidate")
    review_p.add_argument("candidate", help="Candidate ID")
    review_p.add_argument("decision", choices=["confirm", "reject"])
    review_p.add_argument("--reason", help="Rejection reason")
    review_p.add_argument("--reviewer", default=os.environ.get("USER"), help="Reviewer name")

    # unlink
    unlink_p = subparsers.add_parser("unlink", help="Remove a transfer link")
    unlink_p.add_argument("transaction", help="Transaction ID (either side)")

    # pending
    pending_p = subparsers.add_parser("pending", help="Declared transfers")
    pending_sub = pending_p.add_subparsers(dest="pending_command")
    pending_p.set_defaults(status=None)
    reg_p = pending_sub.add_parser("register", help="Declare a transfer")
    reg_p.add_argument("from_account")
    reg_p.add_argument("to_account")
    reg_p.add_argument("amount")
    reg_p.add_argument("date", help="Transfer date (YYYY-MM-DD)")
    reg_p.add_argument("--currency")
    reg_p.add_argument("--description")
    reg_p.add_argument("--notes")
    reg_p.add_argument("--tolerance-days", type=int)
    reg_p.add_argument("--tolerance-amount")
    list_p = pending_sub.add_parser("list", help="List declared transfers")
    list_p.add_argument("--status", help="pending, partial, matched, cancelled")
    cancel_p = pending_sub.add_parser("cancel", help="Cancel an unmatched declaration")
    cancel_p.add_argument("id")
    delete_p = pending_sub.add_parser("delete", help="Delete a declaration still pending")
    delete_p.add_argument("id")

    # reanalyze
    reanalyze_p = subparsers.add_parser("reanalyze", help="Start a reanalysis batch")
    reanalyze_p.add_argument("transactions", nargs="+", help="Transaction IDs")
    reanalyze_p.add_argument("--no-transfers", action="store_true",
                             help="Skip the transfer detection stage")

    # batch
    batch_p = subparsers.add_parser("batch", help="Reanalysis batch control")
    batch_sub = batch_p.add_subparsers(dest="batch_command")
    for name, help_text in (("status", "Show progress"), ("cancel", "Cancel a batch"),
                            ("retry", "Retry a failed batch")):
        sp = batch_sub.add_parser(name, help=help_text)
        sp.add_argument("id", help="Batch ID")
    batch_sub.add_parser("fail-stalled", help="Fail batches with no recent progress")

    # status
    subparsers.add_parser("status", help="Counts and link audit")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    for attr in ("accounts_command", "pending_command", "batch_command"):
        if hasattr(args, attr) and getattr(args, attr) is None:
            if attr == "batch_command":
                print("Error: batch needs a subcommand (status, cancel, retry, fail-stalled)")
                sys.exit(1)
            setattr(args, attr, "list")

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    try:
        code = handler(args)
    except _user_errors() as e:
        print(f"Error: {e}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
