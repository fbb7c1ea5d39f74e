"""Claude fallback for transactions the knowledge base left uncategorized.

The processing_ai stage of a reanalysis batch hands each remaining
transaction to categorize_single(). The model sits behind a
claude_fn(system, prompt) -> str callback built in cli.py, so nothing
here imports the SDK and tests pass a plain function.

Spend is recorded per month in api_usage under SERVICE_NAME and the call
is skipped once MONTHLY_BUDGET_CENTS is reached.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from ledgermatch.config import Config
from ledgermatch.database.models import CREDIT, Transaction
from ledgermatch.database.repository import Repository

logger = logging.getLogger(__name__)

MONTHLY_BUDGET_CENTS = 500
COST_PER_CALL_CENTS = 2
SERVICE_NAME = "claude_categorize"

# Used when the reply carries a confidence that is not a number
UNPARSEABLE_CONFIDENCE = 0.5

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

SYSTEM_PROMPT = """\
You categorize business bank and credit card transactions for a bookkeeper.
Money moving between the company's own accounts is matched elsewhere, so
never answer with a transfer category.

Reply with one JSON object and nothing else:
{"category_id": "<id from the list>", "confidence": <0.0-1.0>, "reasoning": "<one sentence>"}

Use "uncategorized" with confidence 0.0 when no listed category fits."""


@dataclass
class ClaudeCategorizationResult:
    category_id: str
    confidence: float
    reasoning: str


def _get_valid_category_ids(config: Config) -> set[str]:
    """Every category id except the transfer subtree."""
    return {
        cat_id for cat_id, meta in config.flatten_category_tree().items()
        if not meta["is_transfer"]
    }


def _describe_categories(config: Config, valid_ids: set[str]) -> str:
    flat = config.flatten_category_tree()
    lines = []
    for cat_id in sorted(valid_ids):
        name = flat[cat_id]["name"]
        lines.append(f"- {cat_id}" + (f" ({name})" if name and name != cat_id else ""))
    return "\n".join(lines)


def _build_prompt(txn: Transaction, repo: Repository, categories: str) -> str:
    account = repo.get_account(txn.account_id)
    flow = "money in" if txn.direction == CREDIT else "money out"
    where = txn.account_id
    if account is not None:
        where = f"{account.name} [{account.balance_type}]"
        if account.company_id:
            where += f", company {account.company_id}"
    return (
        f"Description: {txn.description or '(none)'}\n"
        f"Amount: {txn.amount} {txn.currency}, {flow}\n"
        f"Posted: {txn.date}\n"
        f"Account: {where}\n\n"
        f"Categories:\n{categories}"
    )


def _month_budget_spent(repo: Repository, month: str) -> bool:
    spent = repo.get_monthly_cost(month)
    if spent < MONTHLY_BUDGET_CENTS:
        return False
    logger.warning(
        "Claude budget for %s used up (%d of %d cents); leaving transactions for review",
        month, spent, MONTHLY_BUDGET_CENTS,
    )
    return True


def categorize_single(
    txn: Transaction,
    config: Config,
    claude_fn,
    repo: Repository,
) -> ClaudeCategorizationResult | None:
    """Suggest a category for one transaction.

    Returns None when the month's budget is spent, the call fails, or the
    reply names no usable category. Each completed call is billed to the
    transaction's posting month.
    """
    month = (txn.date or "")[:7]
    if not month or _month_budget_spent(repo, month):
        return None

    valid_ids = _get_valid_category_ids(config)
    prompt = _build_prompt(txn, repo, _describe_categories(config, valid_ids))

    try:
        reply = claude_fn(SYSTEM_PROMPT, prompt)
    except Exception:
        logger.exception("Claude call failed for transaction %s", txn.id)
        return None

    repo.increment_api_usage(month, SERVICE_NAME, requests=1, cost_cents=COST_PER_CALL_CENTS)
    result = _parse_response(reply, valid_ids, fallback=config.fallback_category)
    if result is not None:
        logger.debug(
            "Claude suggests %s (%.2f) for %s: %s",
            result.category_id, result.confidence, txn.id, result.reasoning,
        )
    return result


def _parse_response(
    response: str, valid_ids: set[str], fallback: str = "uncategorized",
) -> ClaudeCategorizationResult | None:
    """Pull the first JSON object out of a reply and check its category."""
    found = _JSON_OBJECT_RE.search(response or "")
    if found is None:
        logger.error("No JSON object in Claude reply: %.200s", response)
        return None
    try:
        data = json.loads(found.group(0))
    except json.JSONDecodeError:
        logger.error("Unreadable JSON in Claude reply: %.200s", response)
        return None
    if not isinstance(data, dict):
        return None

    category_id = str(data.get("category_id") or "").strip()
    if not category_id or category_id == fallback:
        return None
    if category_id not in valid_ids:
        logger.warning("Claude picked %r, which is not an allowed category", category_id)
        return None

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = UNPARSEABLE_CONFIDENCE

    return ClaudeCategorizationResult(
        category_id=category_id,
        confidence=min(max(confidence, 0.0), 1.0),
        reasoning=str(data.get("reasoning") or ""),
    )
