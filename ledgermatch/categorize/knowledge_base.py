"""Knowledge-base lookup: maps transaction descriptions to categories by keyword.

Entries come from knowledge_base.yaml:

    entries:
      - keyword: NETFLIX
        category_id: subscriptions
        match: contains      # or exact
        confidence: 0.95     # optional, defaults to 1.0

First matching entry wins, in file order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ledgermatch.config import Config

logger = logging.getLogger(__name__)


@dataclass
class KnowledgeBaseMatch:
    """Result of a knowledge-base match."""
    category_id: str
    confidence: float
    keyword: str


class KnowledgeBase:
    def __init__(self, entries: list[dict]):
        self.entries = entries

    @classmethod
    def from_config(cls, config: Config) -> KnowledgeBase:
        return cls(config.knowledge_base)

    def lookup(self, description: str | None) -> KnowledgeBaseMatch | None:
        """Match a description against the entries.

        Match types:
          - contains: case-insensitive substring
          - exact: case-insensitive full string match
        """
        if not description:
            return None
        desc_upper = description.strip().upper()

        for entry in self.entries:
            keyword = entry.get("keyword", "")
            # An empty keyword would match everything
            if not keyword:
                continue
            match_type = entry.get("match", "contains")
            kw_upper = keyword.upper()

            if match_type == "exact":
                matched = desc_upper == kw_upper
            elif match_type == "contains":
                matched = kw_upper in desc_upper
            else:
                logger.warning("Unknown match type '%s' for keyword '%s'", match_type, keyword)
                continue

            if matched:
                category_id = entry.get("category_id")
                if not category_id:
                    logger.warning(
                        "Knowledge base entry missing category_id for keyword '%s'", keyword
                    )
                    continue
                return KnowledgeBaseMatch(
                    category_id=category_id,
                    confidence=float(entry.get("confidence", 1.0)),
                    keyword=keyword,
                )
        return None
