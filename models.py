"""Shared typed models for the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

UNVERIFIED = "UNVERIFIED"
FROM_CROSSREF = "FROM_CROSSREF"
ORCID_MATCH_CONFIRMED = "ORCID_MATCH_CONFIRMED"
ORCID_MATCH_POTENTIAL = "ORCID_MATCH_POTENTIAL"


@dataclass(frozen=True, slots=True)
class FeedPaper:
    """Paper parsed from the arXiv RSS feed, before it is stored."""

    arxiv_id: str
    title: str
    abstract: str
    authors: list[str]
    categories: list[str]
    paper_url: str
    pdf_url: str
    published_at: datetime
    announce_type: str = "new"
    doi: str | None = None


@dataclass(frozen=True, slots=True)
class Section:
    title: str
    content: str


@dataclass(frozen=True, slots=True)
class OrcidSearchResult:
    orcid_id: str
    is_high_confidence: bool
    num_found: int


@dataclass(frozen=True, slots=True)
class AuthorResolution:
    """Outcome of matching one author name string to an `authors` row."""

    author_id: int
    verification_status: str
    orcid_id: str | None = None


@dataclass(frozen=True, slots=True)
class BatchOutcome:
    """Result of applying one vendor batch's results to the papers table."""

    succeeded: int
    failed: int
    status: str
    error_message: str | None = None


@dataclass(slots=True)
class PreparedPaper:
    """Everything a generation prompt needs for one paper."""

    paper_id: int
    title: str
    abstract: str
    sections: list[Section]
    thumbnail: str | None = None
    figures: list[dict] = field(default_factory=list)
    tables: list[dict] = field(default_factory=list)
    related_links: list[str] = field(default_factory=list)
