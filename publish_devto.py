"""Cross-post generated summaries to DEV."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests

import store
from paper_content import paper_link

LOGGER = logging.getLogger(__name__)

DEVTO_ARTICLES_URL = "https://dev.to/api/articles"
DEVTO_TAGS = ["machinelearning", "ai", "beginners", "datascience"]
MIN_TOTAL_SCORE = 0.5
# DEV allows one article per 30 seconds.
POST_PAUSE_SECONDS = 33
REQUEST_TIMEOUT_SECONDS = 30
NEWSLETTER_URL = os.getenv("NEWSLETTER_URL", "https://aimodels.substack.com")


def build_article(paper: dict[str, Any]) -> dict[str, Any]:
    url = paper_link(paper.get("platform"), paper["slug"])
    intro = (
        f"*This is a Plain English Papers summary of a research paper called [{paper['title']}]({url}). "
        f"If you like these kinds of analysis, subscribe to the [AImodels.fyi newsletter]({NEWSLETTER_URL}).*\n\n"
    )
    outro = (
        f"\n\n**If you enjoyed this summary, consider subscribing to the "
        f"[AImodels.fyi newsletter]({NEWSLETTER_URL}) for more AI and machine learning content.**"
    )
    return {
        "article": {
            "title": paper["title"],
            "body_markdown": intro + paper["generatedSummary"] + outro,
            "published": True,
            "main_image": paper.get("thumbnail"),
            "canonical_url": url,
            "description": paper["title"],
            "tags": DEVTO_TAGS,
        }
    }


def publish_article(paper: dict[str, Any], api_key: str) -> str:
    """POST one article and return its DEV url."""
    response = requests.post(
        DEVTO_ARTICLES_URL,
        headers={"api-key": api_key, "Content-Type": "application/json"},
        json=build_article(paper),
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json().get("url", "")


def run_publish_devto(limit: int | None = None, dry_run: bool = False) -> None:
    api_key = os.getenv("DEVTO_API_KEY")
    if not api_key and not dry_run:
        raise RuntimeError("DEVTO_API_KEY environment variable is required")

    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,title,slug,platform,generatedSummary,thumbnail",
        filters={
            "generatedSummary": "not.is.null",
            "devToPublishedDate": "is.null",
            "totalScore": f"gt.{MIN_TOTAL_SCORE}",
        },
        order="totalScore.desc",
        limit=limit,
    )
    LOGGER.info("Found %s papers to publish on DEV", len(papers))

    processed = 0
    failed = 0
    for position, paper in enumerate(papers):
        if dry_run:
            LOGGER.info("[dry-run] Would publish to DEV: %s", paper["title"])
            continue
        if position:
            time.sleep(POST_PAUSE_SECONDS)
        try:
            article_url = publish_article(paper, api_key)
            store.update(
                store.PAPERS_TABLE,
                {"devToPublishedDate": store.iso_now()},
                {"id": f"eq.{paper['id']}"},
            )
            processed += 1
            LOGGER.info("Published paper %s to DEV: %s", paper["id"], article_url)
        except Exception as exc:
            failed += 1
            LOGGER.exception("DEV publish failed for paper %s: %s", paper.get("id"), exc)

    LOGGER.info("DEV publishing complete. processed=%s failed=%s", processed, failed)
