"""Anthropic Message Batches: submit, record, poll and apply results.

Every submitted batch is recorded in `batch_jobs` so that a later
`poll_and_process_batches` run can re-attach to it even if the submitting
process died while waiting.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import anthropic

import store
from anthropic_client import create_batch, get_client
from embeddings import refresh_paper_embedding
from models import BatchOutcome

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 20
MAX_POLL_ATTEMPTS = 240
POLL_LOG_EVERY = 15
TERMINAL_STATUSES: frozenset[str] = frozenset({"ended", "completed", "failed", "canceled"})

POLL_LOOKBACK_HOURS = 25
POLL_JOB_LIMIT = 50
POLL_PAUSE_SECONDS = 0.5
RESULT_PAUSE_SECONDS = 0.1
EMBEDDING_PAUSE_SECONDS = 0.3
ERROR_MESSAGE_LIMIT = 1000

OPEN_JOB_STATUSES = ("submitted", "polling", "completed")
FINAL_JOB_STATUSES: frozenset[str] = frozenset(
    {"processed", "processed_with_errors", "failed", "expired", "canceled"}
)


def failed_count(request_counts: Any) -> int:
    if request_counts is None:
        return 0
    return (
        (getattr(request_counts, "errored", 0) or 0)
        + (getattr(request_counts, "expired", 0) or 0)
        + (getattr(request_counts, "canceled", 0) or 0)
    )


def submit_batch_and_record(
    client: anthropic.Anthropic,
    requests: list[dict[str, Any]],
    batch_type: str,
) -> str | None:
    """Submit `requests` as one batch and record it in `batch_jobs`.

    Returns the batch id, or None if nothing was submitted or the API call
    failed. A failure to record an accepted batch raises StoreError.
    """
    if not requests:
        LOGGER.info("No %s requests to submit", batch_type)
        return None

    LOGGER.info("Submitting %s batch with %s requests", batch_type, len(requests))
    try:
        batch = create_batch(client, requests)
    except anthropic.APIError as exc:
        LOGGER.error("Batch submission failed for %s: %s", batch_type, exc)
        return None

    counts = getattr(batch, "request_counts", None)
    store.insert(
        store.BATCH_JOBS_TABLE,
        {
            "batch_id": batch.id,
            "status": "submitted",
            "batch_type": batch_type,
            "submitted_at": store.iso_now(),
            "total_requests": len(requests),
            "succeeded_count": getattr(counts, "succeeded", 0) or 0,
            "failed_count": failed_count(counts),
            "metadata": {"paper_ids": [request["custom_id"] for request in requests]},
        },
    )
    LOGGER.info("Recorded %s batch %s (status=%s)", batch_type, batch.id, batch.processing_status)
    return batch.id


def wait_for_batch(
    client: anthropic.Anthropic,
    batch_id: str,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    max_attempts: int = MAX_POLL_ATTEMPTS,
) -> Any | None:
    """Poll until the batch reaches a terminal status.

    Transient errors are tolerated. Returns None if the batch is unknown to
    the API. On timeout the last status is fetched once more and returned.
    """
    for attempt in range(1, max_attempts + 1):
        if attempt > 1:
            time.sleep(poll_interval)

        try:
            batch = client.messages.batches.retrieve(batch_id)
        except anthropic.NotFoundError:
            LOGGER.error("Batch %s not found; aborting poll", batch_id)
            return None
        except anthropic.APIError as exc:
            LOGGER.warning("Poll %s/%s for batch %s failed: %s", attempt, max_attempts, batch_id, exc)
            continue

        status = batch.processing_status
        is_terminal = status in TERMINAL_STATUSES
        if attempt % POLL_LOG_EVERY == 1 or attempt == max_attempts or is_terminal:
            LOGGER.info(
                "Batch %s status=%s attempt=%s/%s succeeded=%s",
                batch_id,
                status,
                attempt,
                max_attempts,
                getattr(batch.request_counts, "succeeded", None),
            )
        if is_terminal:
            return batch

    LOGGER.warning("Batch %s still running after %s polls", batch_id, max_attempts)
    try:
        return client.messages.batches.retrieve(batch_id)
    except anthropic.APIError as exc:
        LOGGER.error("Final retrieve for batch %s failed: %s", batch_id, exc)
        return None


def _apply_result(batch_type: str, paper_id: int, text: str, thumbnail: str | None) -> bool:
    """Store one generated text. Returns False if the follow-up embedding failed."""
    now = store.iso_now()
    paper_filter = {"id": f"eq.{paper_id}"}

    if batch_type == "outline":
        store.update(
            store.PAPERS_TABLE,
            {"generatedOutline": text, "outlineGeneratedAt": now, "lastUpdated": now},
            paper_filter,
        )
        return True

    if batch_type == "summary":
        values: dict[str, Any] = {
            "generatedSummary": text,
            "embedding": None,
            "lastUpdated": now,
            "enhancedSummaryCreatedAt": now,
        }
        if thumbnail:
            values["thumbnail"] = thumbnail
        store.update(store.PAPERS_TABLE, values, paper_filter)
        time.sleep(EMBEDDING_PAUSE_SECONDS)
        return refresh_paper_embedding(paper_id)

    raise ValueError(f"Unknown batch_type {batch_type!r}")


def process_batch_results(
    client: anthropic.Anthropic,
    batch_id: str,
    batch_type: str,
    thumbnails: dict[int, str] | None = None,
    total_requests: int | None = None,
) -> BatchOutcome:
    """Write every succeeded result back to its paper (custom_id is the paper id)."""
    thumbnails = thumbnails or {}
    succeeded = 0
    failed = 0
    status = "processed"

    try:
        for entry in client.messages.batches.results(batch_id):
            result = entry.result
            if result.type != "succeeded":
                failed += 1
                status = "processed_with_errors"
                LOGGER.warning(
                    "Batch %s paper %s result type=%s error=%s",
                    batch_id,
                    entry.custom_id,
                    result.type,
                    getattr(result, "error", None),
                )
                continue

            try:
                paper_id = int(entry.custom_id)
                text = result.message.content[0].text.strip() if result.message.content else ""
                if not text:
                    raise RuntimeError("empty content")
                if _apply_result(batch_type, paper_id, text, thumbnails.get(paper_id)):
                    succeeded += 1
                else:
                    failed += 1
                    status = "processed_with_errors"
            except Exception as exc:
                failed += 1
                status = "processed_with_errors"
                LOGGER.exception("Failed applying batch %s result for %s: %s", batch_id, entry.custom_id, exc)
            time.sleep(RESULT_PAUSE_SECONDS)
    except anthropic.APIError as exc:
        LOGGER.error("Reading results of batch %s failed: %s", batch_id, exc)
        if total_requests:
            failed = max(total_requests - succeeded, 1)
        return BatchOutcome(
            succeeded=succeeded,
            failed=max(failed, 1),
            status="failed",
            error_message=f"Result processing error: {exc}"[:ERROR_MESSAGE_LIMIT],
        )

    LOGGER.info("Batch %s results applied. succeeded=%s failed=%s status=%s", batch_id, succeeded, failed, status)
    return BatchOutcome(succeeded=succeeded, failed=failed, status=status)


def map_job_status(vendor_status: str, current_status: str) -> tuple[str, str | None]:
    """Translate a vendor processing status into a `batch_jobs.status` plus optional error."""
    if vendor_status in ("ended", "completed"):
        if current_status in FINAL_JOB_STATUSES:
            return current_status, None
        return "completed", None
    if vendor_status in ("failed", "expired", "canceled"):
        return vendor_status, f"Batch {vendor_status} at provider"
    if vendor_status == "canceling":
        return "canceling", None
    return "polling", None


def _update_job(batch_id: str, values: dict[str, Any]) -> None:
    store.update(store.BATCH_JOBS_TABLE, values, {"batch_id": f"eq.{batch_id}"})


def _poll_job(client: anthropic.Anthropic, job: dict[str, Any]) -> bool:
    """Advance one recorded job. Returns True when its results were processed."""
    batch_id = job["batch_id"]
    _update_job(batch_id, {"status": "polling", "last_polled_at": store.iso_now()})

    batch = client.messages.batches.retrieve(batch_id)
    status, error_message = map_job_status(batch.processing_status, job.get("status") or "")
    counts = batch.request_counts
    values: dict[str, Any] = {
        "status": status,
        "last_polled_at": store.iso_now(),
        "succeeded_count": getattr(counts, "succeeded", 0) or 0,
        "failed_count": failed_count(counts),
        "results_url": getattr(batch, "results_url", None),
    }
    if getattr(batch, "ended_at", None):
        values["completed_at"] = batch.ended_at.isoformat()
    if error_message:
        values["error_message"] = error_message
    _update_job(batch_id, values)

    if status != "completed":
        LOGGER.info("Batch %s is %s", batch_id, status)
        return False

    _update_job(batch_id, {"status": "processing_results"})
    outcome = process_batch_results(
        client,
        batch_id,
        job.get("batch_type") or "",
        total_requests=job.get("total_requests"),
    )
    _update_job(
        batch_id,
        {
            "status": outcome.status,
            "processed_at": store.iso_now(),
            "succeeded_count": outcome.succeeded,
            "failed_count": outcome.failed,
            "error_message": outcome.error_message,
        },
    )
    return True


def poll_and_process_batches(limit: int | None = None) -> None:
    """Re-attach to recent unfinished batch jobs and process any that have ended."""
    jobs = store.select(
        store.BATCH_JOBS_TABLE,
        filters={
            "status": f"in.({','.join(OPEN_JOB_STATUSES)})",
            "submitted_at": f"gte.{store.iso_ago(hours=POLL_LOOKBACK_HOURS)}",
        },
        order="submitted_at.asc",
        limit=limit or POLL_JOB_LIMIT,
    )
    LOGGER.info("Found %s open batch jobs", len(jobs))
    if not jobs:
        return

    client = get_client()
    processed = 0
    failed = 0

    for job in jobs:
        try:
            was_processed = _poll_job(client, job)
            processed += int(was_processed)
        except Exception as exc:
            was_processed = False
            failed += 1
            LOGGER.exception("Polling batch %s failed: %s", job.get("batch_id"), exc)
            try:
                _update_job(job["batch_id"], {"status": "failed", "error_message": str(exc)[:ERROR_MESSAGE_LIMIT]})
            except store.StoreError as store_exc:
                LOGGER.error("Could not mark batch %s failed: %s", job.get("batch_id"), store_exc)
        if not was_processed:
            time.sleep(POLL_PAUSE_SECONDS)

    LOGGER.info("Batch polling complete. jobs=%s processed=%s failed=%s", len(jobs), processed, failed)
