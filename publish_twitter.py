"""Tweet the top unpublished paper of the last three days."""

from __future__ import annotations

import logging
import os
from typing import Any

from requests_oauthlib import OAuth1Session

import store
from anthropic_client import claude_complete
from paper_content import paper_link

LOGGER = logging.getLogger(__name__)

TWITTER_TWEETS_URL = "https://api.twitter.com/2/tweets"
TWEET_LIMIT = 280
TWEET_PREFIX = "🔥 Trending paper: "
PROMPT_INPUT_LIMIT = 800
LOOKBACK_HOURS = 72
REQUEST_TIMEOUT_SECONDS = 30


def fit_tweet(text: str, link: str) -> str:
    """Prefix + text + link, trimming the text so the whole tweet fits."""
    suffix = f"\n\nMore info: {link}"
    room = TWEET_LIMIT - len(TWEET_PREFIX) - len(suffix)
    return f"{TWEET_PREFIX}{text.strip()[:room]}{suffix}"


def generate_tweet(paper: dict[str, Any]) -> str:
    source = (paper.get("generatedSummary") or paper.get("abstract") or "")[:PROMPT_INPUT_LIMIT]
    phrase = claude_complete(
        f"Summarize the following research paper in one clear, concise tweet-length phrase:\n\n{source}",
        max_tokens=1000,
    )
    return fit_tweet(phrase, paper_link(paper.get("platform"), paper["slug"]))


def _oauth_session() -> OAuth1Session:
    keys = {
        name: os.getenv(name)
        for name in (
            "TWITTER_CONSUMER_KEY",
            "TWITTER_CONSUMER_SECRET",
            "TWITTER_ACCESS_TOKEN",
            "TWITTER_ACCESS_TOKEN_SECRET",
        )
    }
    missing = [name for name, value in keys.items() if not value]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} environment variable is required")
    return OAuth1Session(
        keys["TWITTER_CONSUMER_KEY"],
        client_secret=keys["TWITTER_CONSUMER_SECRET"],
        resource_owner_key=keys["TWITTER_ACCESS_TOKEN"],
        resource_owner_secret=keys["TWITTER_ACCESS_TOKEN_SECRET"],
    )


def post_tweet(text: str) -> str:
    """Post via the v2 API and return the tweet id."""
    response = _oauth_session().post(TWITTER_TWEETS_URL, json={"text": text}, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()
    return response.json()["data"]["id"]


def run_publish_twitter(limit: int | None = None, dry_run: bool = False) -> None:
    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,title,abstract,slug,platform,generatedSummary",
        filters={
            "publishedDate": f"gte.{store.iso_ago(hours=LOOKBACK_HOURS)}",
            "twitterPublishedDate": "is.null",
        },
        order="totalScore.desc",
        limit=limit or 1,
    )
    if not papers:
        LOGGER.info("No paper to tweet")
        return

    processed = 0
    failed = 0
    for paper in papers:
        try:
            text = generate_tweet(paper)
            if dry_run:
                LOGGER.info("[dry-run] Would tweet: %s", text)
                continue
            tweet_id = post_tweet(text)
            store.update(
                store.PAPERS_TABLE,
                {"twitterPublishedDate": store.iso_now()},
                {"id": f"eq.{paper['id']}"},
            )
            processed += 1
            LOGGER.info("Tweeted paper %s as %s", paper["id"], tweet_id)
        except Exception as exc:
            failed += 1
            LOGGER.exception("Tweet failed for paper %s: %s", paper.get("id"), exc)

    LOGGER.info("Twitter publishing complete. processed=%s failed=%s", processed, failed)
