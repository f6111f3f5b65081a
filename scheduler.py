"""Cron-style runner: each step is `python main.py <job>` in its own process."""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from pathlib import Path

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

MAIN_SCRIPT = Path(__file__).resolve().parent / "main.py"
SUMMARY_DELAY_SECONDS = 30 * 60

BATCH_PHASE_ONE = (
    "ingest",
    "enrich_authors",
    "paper_embeddings",
    "hf_scores",
    "simple_summaries",
    "site_revalidate",
    "submit_outlines",
    "paper_tasks",
)
BATCH_PHASE_TWO = ("paper_graphics", "paper_tables")
MODELS_AND_DISTRIBUTION = (
    "replicate_models",
    "hf_models",
    "model_embeddings",
    "topic_modeling",
    "publish_devto",
    "publish_twitter",
    "site_revalidate",
)
DIGESTS = ("daily_digest", "weekly_digest")


class JobFailed(RuntimeError):
    pass


def run_job(job: str) -> None:
    """Run one job to completion; a non-zero exit raises JobFailed."""
    LOGGER.info("Starting job %s", job)
    started = time.monotonic()
    result = subprocess.run([sys.executable, str(MAIN_SCRIPT), job], check=False)
    elapsed = time.monotonic() - started
    if result.returncode != 0:
        raise JobFailed(f"Job {job} exited with code {result.returncode}")
    LOGGER.info("Finished job %s in %.1fs", job, elapsed)


class Sequence:
    """Named list of steps guarded by a lock so a slow run is never overlapped."""

    def __init__(self, name: str, steps: list[str | float]) -> None:
        self.name = name
        self.steps = steps
        self._lock = threading.Lock()

    def __call__(self) -> bool:
        """Returns False when skipped or stopped by a failing step."""
        if not self._lock.acquire(blocking=False):
            LOGGER.warning("Sequence %s is already running; skipping", self.name)
            return False
        try:
            LOGGER.info("Running sequence %s", self.name)
            for step in self.steps:
                if isinstance(step, (int, float)):
                    LOGGER.info("Sequence %s waiting %ss", self.name, step)
                    time.sleep(step)
                else:
                    run_job(step)
            LOGGER.info("Sequence %s completed", self.name)
            return True
        except JobFailed as exc:
            LOGGER.error("Sequence %s stopped: %s", self.name, exc)
            return False
        finally:
            self._lock.release()


def build_scheduler() -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    batch_pipeline = Sequence(
        "batch-summary",
        [*BATCH_PHASE_ONE, *BATCH_PHASE_TWO, SUMMARY_DELAY_SECONDS, "submit_summaries"],
    )
    scheduler.add_job(
        batch_pipeline,
        CronTrigger(hour=6, minute=5),
        id="batch_pipeline",
        name="Ingest, enrich and submit summary batches",
        replace_existing=True,
    )
    scheduler.add_job(
        Sequence("batch-poll", ["poll_batches"]),
        CronTrigger(minute=20),
        id="batch_poll",
        name="Apply finished batch results",
        replace_existing=True,
    )
    scheduler.add_job(
        Sequence("models-and-distribution", list(MODELS_AND_DISTRIBUTION)),
        CronTrigger(hour=9, minute=30),
        id="models_and_distribution",
        name="Model catalogs, topics and publishing",
        replace_existing=True,
    )
    scheduler.add_job(
        Sequence("digests", list(DIGESTS)),
        CronTrigger(hour=13, minute=45),
        id="digests",
        name="Daily and weekly digests",
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    scheduler = build_scheduler()
    for job in scheduler.get_jobs():
        LOGGER.info("Scheduled %s (%s)", job.name, job.trigger)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        LOGGER.info("Scheduler stopped")


if __name__ == "__main__":
    main()
