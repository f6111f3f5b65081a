"""Hugging Face popularity score for recently indexed papers."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests

import store

LOGGER = logging.getLogger(__name__)

# Official public endpoints behind the Daily Papers page and the paper repo listings.
HF_DAILY_PAPERS_API_URL = "https://huggingface.co/api/daily_papers"
HF_ARXIV_REPOS_URL = "https://huggingface.co/api/arxiv/{arxiv_id}/repos"
REQUEST_TIMEOUT_SECONDS = 20
LOOKBACK_DAYS = 7
MAX_TO_PROCESS = 500
PAGE_SIZE = 1000


def fetch_daily_papers() -> dict[str, dict[str, Any]]:
    """Today's daily-papers entries keyed by arXiv id. Empty when the feed is unavailable."""
    try:
        response = requests.get(HF_DAILY_PAPERS_API_URL, timeout=REQUEST_TIMEOUT_SECONDS)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("HF daily papers fetch failed: %s", exc)
        return {}

    if not isinstance(payload, list):
        LOGGER.warning("Unexpected daily papers payload shape: expected a list")
        return {}

    entries: dict[str, dict[str, Any]] = {}
    for item in payload:
        if not isinstance(item, dict):
            continue
        paper_block = item.get("paper") if isinstance(item.get("paper"), dict) else {}
        arxiv_id = _as_str(paper_block.get("id"))
        if arxiv_id:
            entries[arxiv_id] = item
    return entries


def daily_score(entry: dict[str, Any] | None) -> int:
    if not entry:
        return 0
    paper_block = entry.get("paper") if isinstance(entry.get("paper"), dict) else {}
    return _as_int(paper_block.get("upvotes")) + _as_int(entry.get("numComments"))


def fetch_repos_score(arxiv_id: str | None) -> int:
    """Number of models, datasets and spaces that cite the paper."""
    if not arxiv_id:
        return 0
    url = HF_ARXIV_REPOS_URL.format(arxiv_id=quote(arxiv_id, safe=""))
    try:
        response = requests.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("HF repos fetch failed for %s: %s", arxiv_id, exc)
        return 0

    if not isinstance(data, dict):
        return 0
    return sum(len(data[kind]) for kind in ("models", "datasets", "spaces") if isinstance(data.get(kind), list))


def prioritize(papers: list[dict[str, Any]], daily: dict[str, dict[str, Any]], limit: int) -> list[dict[str, Any]]:
    """Daily papers first, then the rest, capped at `limit`."""
    featured = [paper for paper in papers if paper.get("arxivId") in daily]
    others = [paper for paper in papers if paper.get("arxivId") not in daily]
    return (featured + others)[:limit]


def run_hf_scores(limit: int | None = None) -> None:
    daily = fetch_daily_papers()
    LOGGER.info("HF daily papers: %s entries", len(daily))

    papers = store.select_all(
        store.PAPERS_TABLE,
        columns="id,arxivId,paperUrl",
        filters={"indexedDate": f"gte.{store.iso_ago(days=LOOKBACK_DAYS)}"},
        order="id.asc",
        page_size=PAGE_SIZE,
    )
    papers = prioritize(papers, daily, limit or MAX_TO_PROCESS)
    LOGGER.info("Scoring %s papers (daily papers first)", len(papers))

    processed = 0
    failed = 0
    for paper in papers:
        score = fetch_repos_score(paper.get("arxivId")) + daily_score(daily.get(paper.get("arxivId")))
        try:
            store.update(
                store.PAPERS_TABLE,
                {"huggingFaceScore": score, "lastUpdated": store.iso_now()},
                {"id": f"eq.{paper['id']}"},
            )
            processed += 1
        except store.StoreError as exc:
            failed += 1
            LOGGER.error("Failed to update HF score for paper %s: %s", paper.get("id"), exc)

    LOGGER.info("HF scores complete. processed=%s failed=%s", processed, failed)


def _as_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0
