"""CLI entrypoint: run one pipeline job by name."""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable
from typing import Any

from dotenv import load_dotenv

import arxiv_feed
import authors
import batch_jobs
import digest_email
import embeddings
import hf_models
import hf_scores
import paper_graphics
import paper_tables
import paper_tasks
import publish_devto
import publish_reddit
import publish_twitter
import replicate_models
import site_revalidate
import summaries
import topic_modeling

JOBS: dict[str, Callable[..., Any]] = {
    "ingest": arxiv_feed.ingest_new_papers,
    "enrich_authors": authors.run_enrich_authors,
    "paper_embeddings": embeddings.run_paper_embeddings,
    "model_embeddings": embeddings.run_model_embeddings,
    "hf_scores": hf_scores.run_hf_scores,
    "paper_graphics": paper_graphics.run_paper_graphics,
    "paper_tables": paper_tables.run_paper_tables,
    "paper_tasks": paper_tasks.run_paper_tasks,
    "topic_modeling": topic_modeling.run_topic_modeling,
    "simple_summaries": summaries.generate_simple_summaries,
    "submit_outlines": summaries.submit_outlines,
    "submit_summaries": summaries.submit_summaries,
    "enhanced_summaries": summaries.run_enhanced_summary_batch,
    "poll_batches": batch_jobs.poll_and_process_batches,
    "site_revalidate": site_revalidate.run_site_revalidate,
    "hf_models": hf_models.run_hf_models,
    "replicate_models": replicate_models.run_replicate_models,
    "publish_devto": publish_devto.run_publish_devto,
    "publish_reddit": publish_reddit.run_publish_reddit,
    "publish_twitter": publish_twitter.run_publish_twitter,
    "daily_digest": digest_email.run_daily_digest,
    "weekly_digest": digest_email.run_weekly_digest,
}

# Jobs that accept dry_run; the rest refuse the flag.
DRY_RUN_JOBS = frozenset(
    {
        "ingest",
        "submit_outlines",
        "submit_summaries",
        "publish_devto",
        "publish_reddit",
        "publish_twitter",
        "daily_digest",
        "weekly_digest",
    }
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Run one aimodels.fyi content pipeline job")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of rows to process")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log what would be written or published, without side effects (supported jobs only)",
    )
    return parser.parse_args(argv)


def run(job: str, limit: int | None, dry_run: bool) -> None:
    kwargs: dict[str, Any] = {"limit": limit}
    if job in DRY_RUN_JOBS:
        kwargs["dry_run"] = dry_run
    elif dry_run:
        raise ValueError(f"Job {job} has no dry-run mode")
    JOBS[job](**kwargs)


def main(argv: list[str] | None = None) -> int:
    """Initialize config and execute the job. Returns the process exit code."""
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)

    try:
        run(args.job, limit=args.limit, dry_run=args.dry_run)
    except Exception as exc:
        logging.exception("Job %s failed: %s", args.job, exc)
        return 1
    logging.info("Job %s complete", args.job)
    return 0


if __name__ == "__main__":
    sys.exit(main())
