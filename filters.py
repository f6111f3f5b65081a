"""Pre-filter for arXiv feed entries (no network, no LLM calls)."""

from __future__ import annotations

from models import FeedPaper

ALLOWED_CATEGORIES: frozenset[str] = frozenset({
    "cs.AI",
    "cs.CL",
    "cs.CV",
    "cs.CY",
    "cs.DC",
    "cs.ET",
    "cs.HC",
    "cs.IR",
    "cs.LG",
    "cs.MA",
    "cs.MM",
    "cs.NE",
    "cs.RO",
    "cs.SD",
    "cs.NI",
    "eess.AS",
    "eess.IV",
    "stat.ML",
})

# Cross-lists count: a math paper cross-listed to cs.LG is still in scope.
ALLOWED_ANNOUNCE_TYPES: frozenset[str] = frozenset({"new", "replace", "replace-cross"})


def is_relevant_paper(paper: FeedPaper) -> bool:
    """Return True when the entry was freshly announced in at least one tracked category."""
    if paper.announce_type not in ALLOWED_ANNOUNCE_TYPES:
        return False
    return any(category in ALLOWED_CATEGORIES for category in paper.categories)
