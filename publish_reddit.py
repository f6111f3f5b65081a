"""Post discussion threads about top papers to ML subreddits."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests

import store
from anthropic_client import claude_complete
from paper_content import paper_link

LOGGER = logging.getLogger(__name__)

REDDIT_TOKEN_URL = "https://www.reddit.com/api/v1/access_token"
REDDIT_SUBMIT_URL = "https://oauth.reddit.com/api/submit"
SUBREDDITS = ("machinelearning", "machinelearningnews")
USER_AGENT = os.getenv("REDDIT_USER_AGENT", "aimodels-pipeline/1.0")
REQUEST_TIMEOUT_SECONDS = 30
SUBREDDIT_PAUSE_SECONDS = 60
PAPER_PAUSE_SECONDS = 600
LOOKBACK_DAYS = 3
MAX_PAPERS = 5
MIN_TOTAL_SCORE = 0.5
MAX_TITLE_LENGTH = 300

_TITLE_PROMPT = """Create a clear, professional title for an r/machinelearning post about this paper.
- Start with "[R]" to indicate it's research
- Be concise but descriptive and focus on the key technical contribution
- Use proper ML terminology; no clickbait or hype
- Don't exceed 300 characters

Original title: {title}
Abstract: {abstract}

Respond with just the title."""

_POST_PROMPT = """Summarize this paper for r/machinelearning, technical but accessible, written in the first person as someone discussing the paper (not as its author).
Use only bullet points, bold, italics and links.

Title: {title}
Summary/Abstract: {summary}
Paper URL: {paper_url}
Summary URL: {summary_url}

Structure:
1. The key technical contribution or methodology
2. Main technical points and results as bullet points
3. Theoretical or practical implications
4. A **TLDR:** line, then "[Full summary is here]({summary_url}). Paper [here]({paper_url})."

Only report results the paper reports. Be matter-of-fact: no superlatives. Respond with just the post."""


def get_access_token() -> str:
    """Password-grant OAuth token for a script app."""
    client_id = os.getenv("REDDIT_CLIENT_ID")
    client_secret = os.getenv("REDDIT_CLIENT_SECRET")
    username = os.getenv("REDDIT_USERNAME")
    password = os.getenv("REDDIT_PASSWORD")
    if not (client_id and client_secret and username and password):
        raise RuntimeError(
            "REDDIT_CLIENT_ID, REDDIT_CLIENT_SECRET, REDDIT_USERNAME and REDDIT_PASSWORD environment variables are required"
        )

    response = requests.post(
        REDDIT_TOKEN_URL,
        auth=(client_id, client_secret),
        data={"grant_type": "password", "username": username, "password": password},
        headers={"User-Agent": USER_AGENT},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    token = response.json().get("access_token")
    if not token:
        raise RuntimeError("Reddit token response did not include an access_token")
    return token


def generate_title(paper: dict[str, Any]) -> str:
    title = claude_complete(
        _TITLE_PROMPT.format(title=paper["title"], abstract=paper.get("abstract") or ""),
        max_tokens=150,
    )
    if not title.startswith("[R]"):
        title = f"[R] {title}"
    return title[:MAX_TITLE_LENGTH]


def generate_post(paper: dict[str, Any]) -> str:
    prompt = _POST_PROMPT.format(
        title=paper["title"],
        summary=paper.get("generatedSummary") or paper.get("abstract") or "",
        paper_url=paper.get("paperUrl") or "",
        summary_url=paper_link(paper.get("platform"), paper["slug"]),
    )
    return claude_complete(prompt, max_tokens=1000)


def submit_post(subreddit: str, title: str, text: str, token: str) -> bool:
    try:
        response = requests.post(
            REDDIT_SUBMIT_URL,
            headers={"Authorization": f"Bearer {token}", "User-Agent": USER_AGENT},
            data={"sr": subreddit, "kind": "self", "title": title, "text": text, "resubmit": "false", "api_type": "json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        LOGGER.error("Posting to r/%s failed: %s", subreddit, exc)
        return False

    errors = (response.json().get("json") or {}).get("errors") or []
    if errors:
        LOGGER.error("r/%s rejected the post: %s", subreddit, errors)
        return False
    return True


def run_publish_reddit(limit: int | None = None, dry_run: bool = False) -> None:
    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,title,abstract,slug,platform,paperUrl,generatedSummary",
        filters={
            "redditPublishedDate": "is.null",
            "generatedSummary": "not.is.null",
            "totalScore": f"gt.{MIN_TOTAL_SCORE}",
            "publishedDate": f"gte.{store.iso_ago(days=LOOKBACK_DAYS)}",
        },
        order="totalScore.desc",
        limit=limit or MAX_PAPERS,
    )
    LOGGER.info("Found %s papers to post on Reddit", len(papers))
    if not papers:
        return

    token = None if dry_run else get_access_token()
    processed = 0
    failed = 0

    for position, paper in enumerate(papers):
        if position and not dry_run:
            time.sleep(PAPER_PAUSE_SECONDS)
        try:
            title = generate_title(paper)
            text = generate_post(paper)
        except Exception as exc:
            failed += 1
            LOGGER.exception("Generating Reddit post failed for paper %s: %s", paper.get("id"), exc)
            continue

        if dry_run:
            LOGGER.info("[dry-run] Would post %r to %s", title, ", ".join(SUBREDDITS))
            continue

        posted = False
        for index, subreddit in enumerate(SUBREDDITS):
            if index:
                time.sleep(SUBREDDIT_PAUSE_SECONDS)
            if submit_post(subreddit, title, text, token):
                posted = True
                LOGGER.info("Posted paper %s to r/%s", paper["id"], subreddit)

        if posted:
            store.update(
                store.PAPERS_TABLE,
                {"redditPublishedDate": store.iso_now()},
                {"id": f"eq.{paper['id']}"},
            )
            processed += 1
        else:
            failed += 1

    LOGGER.info("Reddit publishing complete. processed=%s failed=%s", processed, failed)
