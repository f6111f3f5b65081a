"""arXiv RSS ingestion: parse announcements and store new papers."""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from datetime import UTC, datetime
from typing import Any

import feedparser
import requests

import store
from filters import ALLOWED_CATEGORIES, is_relevant_paper
from models import FeedPaper

LOGGER = logging.getLogger(__name__)

ARXIV_RSS_URL = "https://rss.arxiv.org/rss/{feed}"
ARXIV_FEEDS = ("cs", "eess")
ARXIV_API_URL = "http://export.arxiv.org/api/query"
REQUEST_TIMEOUT_SECONDS = 30

SLUG_MAX_WORDS = 7
SLUG_STOPWORDS: frozenset[str] = frozenset({
    "a", "an", "the", "of", "for", "in", "on", "at", "and", "with", "to", "from",
})

_VERSION_SUFFIX = re.compile(r"v\d+$")
# "Smith, Jr." and "Henry, III" are one author, not two.
_AUTHOR_SPLIT = re.compile(r",(?!\s*(?:[jJ]r\.|[IVXLCDM]+(?=\s*(?:,|$))))\s*")
_ABSTRACT_PREFIX = re.compile(r"^.*?Abstract:\s*", re.DOTALL)


def fetch_feed_papers() -> list[FeedPaper]:
    """Fetch every tracked feed and return relevant, de-duplicated entries."""
    papers_by_id: dict[str, FeedPaper] = {}

    for feed in ARXIV_FEEDS:
        url = ARXIV_RSS_URL.format(feed=feed)
        try:
            response = requests.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOGGER.warning("arXiv RSS fetch failed for feed=%s, skipping: %s", feed, exc)
            continue

        parsed = feedparser.parse(response.content)
        entries = [_parse_entry(entry) for entry in parsed.entries]
        relevant = [paper for paper in entries if paper is not None and is_relevant_paper(paper)]
        for paper in relevant:
            papers_by_id.setdefault(paper.arxiv_id, paper)

        LOGGER.info(
            "arXiv RSS: feed=%s entries=%s relevant=%s",
            feed,
            len(parsed.entries),
            len(relevant),
        )

    return list(papers_by_id.values())


def _parse_entry(entry: Any) -> FeedPaper | None:
    link = entry.get("link") or ""
    arxiv_id = extract_arxiv_id(link)
    title = (entry.get("title") or "").strip()
    if not arxiv_id or not title:
        return None

    categories = [tag.get("term") for tag in entry.get("tags", []) if tag.get("term")]
    announce_type = (entry.get("arxiv_announce_type") or "").strip()
    if not announce_type:
        return None

    published = entry.get("published_parsed")
    published_at = datetime(*published[:6], tzinfo=UTC) if published else datetime.now(UTC)

    return FeedPaper(
        arxiv_id=arxiv_id,
        title=" ".join(title.split()),
        abstract=clean_abstract(entry.get("summary") or ""),
        authors=split_author_names(entry.get("author") or ""),
        categories=categories,
        paper_url=link,
        pdf_url=f"https://arxiv.org/pdf/{arxiv_id}.pdf",
        published_at=published_at,
        announce_type=announce_type,
        doi=(entry.get("arxiv_doi") or None),
    )


def extract_arxiv_id(url: str) -> str | None:
    """'https://arxiv.org/abs/2501.01234v2' -> '2501.01234'."""
    match = re.search(r"/abs/(.+)$", url.strip())
    if not match:
        return None
    return _VERSION_SUFFIX.sub("", match.group(1))


def clean_abstract(description: str) -> str:
    """Drop the 'arXiv:… Announce Type: … Abstract:' preamble of RSS descriptions."""
    return _ABSTRACT_PREFIX.sub("", description, count=1).strip()


def split_author_names(raw: str) -> list[str]:
    return [name.strip() for name in _AUTHOR_SPLIT.split(raw) if name.strip()]


def generate_slug(title: str, arxiv_id: str | None = None) -> str:
    ascii_title = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode()
    words = re.sub(r"[^a-z0-9]+", "-", ascii_title.lower()).strip("-").split("-")
    kept = [word for word in words if word and word not in SLUG_STOPWORDS][:SLUG_MAX_WORDS]
    slug = "-".join(kept)
    if len(slug) <= 3:
        return f"paper-{arxiv_id or int(time.time() * 1000)}"
    return slug


def fetch_arxiv_doi(arxiv_id: str) -> str | None:
    """Look up the journal DOI the arXiv API reports for a paper, if any."""
    try:
        response = requests.get(
            ARXIV_API_URL,
            params={"id_list": arxiv_id},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        LOGGER.warning("arXiv API lookup failed for %s: %s", arxiv_id, exc)
        return None

    parsed = feedparser.parse(response.content)
    if not parsed.entries:
        return None

    entry = parsed.entries[0]
    if entry.get("arxiv_doi"):
        return entry["arxiv_doi"].strip()
    for link in entry.get("links", []):
        if link.get("title") == "doi" and link.get("href"):
            return re.sub(r"^https?://(dx\.)?doi\.org/", "", link["href"])
    return None


def build_paper_row(paper: FeedPaper) -> dict[str, Any]:
    now = store.iso_now()
    return {
        "title": paper.title,
        "arxivCategories": [category for category in paper.categories if category in ALLOWED_CATEGORIES],
        "abstract": paper.abstract,
        "authors": paper.authors,
        "paperUrl": paper.paper_url,
        "pdfUrl": paper.pdf_url,
        "publishedDate": paper.published_at.isoformat(),
        "lastUpdated": now,
        "indexedDate": now,
        "arxivId": paper.arxiv_id,
        "slug": generate_slug(paper.title, paper.arxiv_id),
        "platform": "arxiv",
        "doi": paper.doi,
    }


def ingest_new_papers(limit: int | None = None, dry_run: bool = False) -> None:
    """Store unseen feed papers and link their authors."""
    from authors import enrich_paper_authors, refresh_authors_view  # noqa: PLC0415

    papers = fetch_feed_papers()
    if limit is not None:
        papers = papers[:limit]
    LOGGER.info("Fetched %s relevant papers from arXiv RSS", len(papers))

    inserted = 0
    skipped = 0
    failed = 0

    for paper in papers:
        if store.exists(store.PAPERS_TABLE, {"arxivId": f"eq.{paper.arxiv_id}"}):
            skipped += 1
            continue

        if dry_run:
            inserted += 1
            LOGGER.info("[dry-run] Would insert: %s", paper.title)
            continue

        try:
            rows = store.insert(store.PAPERS_TABLE, build_paper_row(paper))
            paper_id = rows[0]["id"]
            enrich_paper_authors(
                paper_id=paper_id,
                author_names=paper.authors,
                arxiv_id=paper.arxiv_id,
                doi=paper.doi,
                loose_crossref_match=True,
            )
            inserted += 1
            LOGGER.info("Inserted arXiv paper %s as id=%s", paper.arxiv_id, paper_id)
        except Exception as exc:
            failed += 1
            LOGGER.exception("Failed inserting arXiv paper %s: %s", paper.arxiv_id, exc)

    if inserted and not dry_run:
        refresh_authors_view()

    LOGGER.info("arXiv ingest complete. inserted=%s skipped=%s failed=%s", inserted, skipped, failed)
