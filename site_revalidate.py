"""Ask the site to rebuild pages for papers updated in the last day."""

from __future__ import annotations

import logging
import os

import requests

import store

LOGGER = logging.getLogger(__name__)

LOOKBACK_HOURS = 24
REQUEST_TIMEOUT_SECONDS = 20


def revalidate_path(site_url: str, secret: str, path: str) -> bool:
    try:
        response = requests.get(
            f"{site_url.rstrip('/')}/api/revalidate",
            params={"secret": secret, "path": path},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return True
    except requests.RequestException as exc:
        LOGGER.warning("Failed revalidating %s: %s", path, exc)
        return False


def run_site_revalidate(limit: int | None = None) -> None:
    site_url = os.getenv("SITE_URL")
    secret = os.getenv("REVALIDATE_SECRET")
    if not site_url:
        raise RuntimeError("SITE_URL environment variable is required")
    if not secret:
        raise RuntimeError("REVALIDATE_SECRET environment variable is required")

    rows = store.select(
        store.PAPERS_TABLE,
        columns="slug,platform",
        filters={"lastUpdated": f"gte.{store.iso_ago(hours=LOOKBACK_HOURS)}"},
        limit=limit,
    )
    LOGGER.info("Revalidating %s recently updated papers", len(rows))

    revalidated = 0
    for row in rows:
        if not row.get("slug"):
            continue
        path = f"/papers/{row.get('platform') or 'arxiv'}/{row['slug']}"
        revalidated += int(revalidate_path(site_url, secret, path))

    LOGGER.info("Revalidation complete. revalidated=%s total=%s", revalidated, len(rows))
