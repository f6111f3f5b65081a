"""Daily and weekly research digests for subscribers, sent through Resend."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

import store
from paper_content import paper_link

LOGGER = logging.getLogger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"
DIGEST_FROM = os.getenv("DIGEST_FROM", "AImodels.fyi <digest@mail.aimodels.fyi>")
REQUEST_TIMEOUT_SECONDS = 30

TASK_PAPERS_VIEW = "live_user_tasks_with_top_papers"
SUBSCRIPTIONS_TABLE = "digest_subscriptions"
ELIGIBLE_SUBSCRIPTION_STATUSES = ("active", "trialing", "substack")
ABSTRACT_WORDS = 30
TOP_PAPER_COLUMNS = ("top_paper_1", "top_paper_2", "top_paper_3")

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"

_env: Environment | None = None


@dataclass(frozen=True, slots=True)
class DigestPeriod:
    frequency: str
    days: int


DAILY = DigestPeriod(frequency="daily", days=1)
WEEKLY = DigestPeriod(frequency="weekly", days=7)


def format_date_range(start: datetime, end: datetime) -> str:
    return f"{start:%b} {start.day} - {end:%b} {end.day}"


def short_abstract(abstract: str | None) -> str:
    if not abstract:
        return "No abstract available"
    return " ".join(abstract.split(" ")[:ABSTRACT_WORDS]) + "..."


def _get_env() -> Environment:
    global _env
    if _env is None:
        _env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=select_autoescape(["html"]),
        )
        _env.filters["short_abstract"] = short_abstract
    return _env


def _paper_context(paper: dict[str, Any]) -> dict[str, Any]:
    authors = paper.get("authors")
    return {
        "url": paper_link("arxiv", paper["slug"]) if paper.get("slug") else None,
        "title": paper.get("title") or "Untitled Paper",
        "authors": ", ".join(authors) if isinstance(authors, list) else "Unknown author",
        "abstract": paper.get("abstract"),
    }


def build_digest_html(
    tasks: list[dict[str, Any]],
    papers_by_id: dict[Any, dict[str, Any]],
    papers_reviewed: int,
    date_range: str,
) -> str:
    """Render the digest: counts, followed tasks, then each task's top papers."""
    task_contexts = []
    included: set[Any] = set()
    for task in tasks:
        papers = [papers_by_id[task[column]] for column in TOP_PAPER_COLUMNS if task.get(column) in papers_by_id]
        included.update(paper["id"] for paper in papers)
        task_contexts.append(
            {
                "name": task.get("task_name") or "Unknown Task",
                "papers": [_paper_context(paper) for paper in papers],
            }
        )

    template = _get_env().get_template("digest.html")
    return template.render(
        tasks=task_contexts,
        papers_reviewed=papers_reviewed,
        summary_count=len(included),
        date_range=date_range,
    )


def send_email(to: str, subject: str, body_html: str) -> str:
    """Send one message through Resend and return its id."""
    api_key = os.getenv("RESEND_API_KEY")
    if not api_key:
        raise RuntimeError("RESEND_API_KEY environment variable is required")
    response = requests.post(
        RESEND_EMAILS_URL,
        headers={"Authorization": f"Bearer {api_key}"},
        json={"from": DIGEST_FROM, "to": [to], "subject": subject, "html": body_html},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json().get("id", "")


def _eligible_subscribers(period: DigestPeriod, user_ids: list[Any], cutoff: str) -> list[dict[str, Any]]:
    return store.select(
        SUBSCRIPTIONS_TABLE,
        columns="user_id,papers_frequency,last_papers_sent_at,profiles!inner(email,stripe_subscription_status)",
        filters={
            "papers_frequency": f"eq.{period.frequency}",
            "user_id": f"in.({','.join(str(user_id) for user_id in user_ids)})",
            "profiles.stripe_subscription_status": f"in.({','.join(ELIGIBLE_SUBSCRIPTION_STATUSES)})",
            "or": f"(last_papers_sent_at.is.null,last_papers_sent_at.lt.{cutoff})",
        },
    )


def _fetch_papers(paper_ids: set[Any]) -> dict[Any, dict[str, Any]]:
    if not paper_ids:
        return {}
    rows = store.select(
        store.PAPERS_TABLE,
        columns="id,title,authors,abstract,slug",
        filters={"id": f"in.({','.join(str(paper_id) for paper_id in paper_ids)})"},
    )
    return {row["id"]: row for row in rows}


def _period_start(period: DigestPeriod, subscriber: dict[str, Any], now: datetime) -> datetime:
    """Daily digests count papers since the last send; weekly ones cover the last 7 days."""
    last_sent = subscriber.get("last_papers_sent_at")
    if period is DAILY and last_sent:
        return datetime.fromisoformat(last_sent.replace("Z", "+00:00"))
    return now - timedelta(days=period.days)


def eligibility_cutoff(period: DigestPeriod, now: datetime) -> datetime:
    """Subscribers last mailed before this instant are due.

    Aligned to midnight UTC: a send at any time on the day one cycle ago qualifies.
    """
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=period.days - 1)


def send_digests(period: DigestPeriod, limit: int | None = None, dry_run: bool = False) -> None:
    now = datetime.now(UTC)
    cutoff = eligibility_cutoff(period, now).isoformat()

    task_rows = store.select(TASK_PAPERS_VIEW)
    user_ids = sorted({row["user_id"] for row in task_rows if row.get("user_id") is not None}, key=str)
    if not user_ids:
        LOGGER.info("No users follow any tasks; nothing to send")
        return

    subscribers = _eligible_subscribers(period, user_ids, cutoff)
    if limit is not None:
        subscribers = subscribers[:limit]
    LOGGER.info("Sending %s digest to %s subscribers", period.frequency, len(subscribers))

    processed = 0
    skipped = 0
    failed = 0
    for subscriber in subscribers:
        email = (subscriber.get("profiles") or {}).get("email")
        if not email:
            skipped += 1
            continue

        try:
            tasks = [row for row in task_rows if row["user_id"] == subscriber["user_id"]]
            paper_ids = {task[column] for task in tasks for column in TOP_PAPER_COLUMNS if task.get(column)}
            papers = _fetch_papers(paper_ids)
            start = _period_start(period, subscriber, now)
            reviewed = store.count(
                store.PAPERS_TABLE,
                {"indexedDate": f"gte.{start.isoformat()}", "and": f"(indexedDate.lte.{now.isoformat()})"},
            )
            date_range = format_date_range(now - timedelta(days=period.days), now)
            body = build_digest_html(tasks, papers, reviewed, date_range)

            if dry_run:
                LOGGER.info("[dry-run] Would send %s digest to user %s", period.frequency, subscriber["user_id"])
                continue

            send_email(email, f"Your AI Research Update ({date_range})", body)
            store.update(
                SUBSCRIPTIONS_TABLE,
                {"last_papers_sent_at": now.isoformat()},
                {"user_id": f"eq.{subscriber['user_id']}"},
            )
            processed += 1
        except Exception as exc:
            failed += 1
            LOGGER.exception("Digest failed for user %s: %s", subscriber.get("user_id"), exc)

    LOGGER.info(
        "%s digest complete. processed=%s skipped=%s failed=%s",
        period.frequency.capitalize(),
        processed,
        skipped,
        failed,
    )


def run_daily_digest(limit: int | None = None, dry_run: bool = False) -> None:
    send_digests(DAILY, limit=limit, dry_run=dry_run)


def run_weekly_digest(limit: int | None = None, dry_run: bool = False) -> None:
    send_digests(WEEKLY, limit=limit, dry_run=dry_run)
