"""Two-phase blog-post generation: outline first, then the full post."""

from __future__ import annotations

import logging
import time
from typing import Any

import store
from anthropic_client import batch_request, get_client
from batch_jobs import process_batch_results, submit_batch_and_record, wait_for_batch
from gemini_client import gemini_generate
from models import PreparedPaper
from paper_content import prepare_paper_content, sanitize_string

LOGGER = logging.getLogger(__name__)

SUBMIT_BATCH_SIZE_LIMIT = 200
OUTLINE_LOOKBACK_HOURS = 96
OUTLINE_MAX_TOKENS = 4000
POST_MAX_TOKENS = 8000
PHASE_PAUSE_SECONDS = 5
SIMPLE_SUMMARY_LIMIT = 5
SIMPLE_SUMMARY_PAUSE_SECONDS = 1.0

PAPER_COLUMNS = (
    "id,title,abstract,authors,arxivId,arxivCategories,paperGraphics,paperTables,"
    "thumbnail,pdfUrl,embedding,generatedOutline"
)

_OUTLINE_SYSTEM_PROMPT = (
    "You are an expert at creating outlines for technical blog posts. You analyze research "
    "papers and create detailed outlines that follow the paper's structure while making the "
    "content accessible to a semi-technical audience."
)

_OUTLINE_INSTRUCTIONS = """Create a detailed outline for a blog post based on this research paper. The outline must follow the paper's structure and be strictly factual.
Format the outline with these sections:
- STRUCTURE: the section headings in order, retitled to describe their content
- KEY IDEAS: 5-7 key takeaways, supported by exact quotations from the paper
- DETAILED OUTLINE: for each section, what to cover, which figures/tables to include (with captions), and where to link related papers inline"""

_POST_SYSTEM_PROMPT = """Explain the provided research paper as a plain English summary for a semi-technical audience.
Use clear, direct language in the active voice. Avoid adverbs, buzzwords and salesy enthusiasm.
Write correct markdown only, never HTML. Never write in the first person, never mention being an AI, and never restate these instructions."""

_POST_INSTRUCTIONS = """Write the blog post following the outline exactly.
1. Do not include the title.
2. Embed figures with markdown image syntax ![caption](URL) followed by an italic caption.
3. Reproduce tables exactly from the provided markdown, followed by an italic caption.
4. Link related papers inline within paragraphs, like wikipedia links.
5. Section headings must be h2 (##); no h1 or h3."""


def _join(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value or "")


def _paper_context(paper: dict[str, Any], prepared: PreparedPaper) -> str:
    sections = "\n\n---\n\n".join(f"Section: {s.title}\n\nContent: {s.content}" for s in prepared.sections)
    figures = "\n\n".join(
        f"Figure ID: {f.get('identifier')}\nCaption: {f.get('caption')}\n"
        f"Original Caption: {f.get('originalCaption')}\nURL: {f.get('content')}"
        for f in prepared.figures
    )
    tables = "\n\n".join(
        f"Table ID: {t['tableId']}\nCaption: {t['caption']}\nMarkdown:\n{t['markdown']}" for t in prepared.tables
    )
    authors = ", ".join(sanitize_string(a) for a in paper.get("authors") or [])
    return (
        f"Title: {prepared.title or 'N/A'}\n"
        f"ArXiv ID: {paper.get('arxivId') or 'N/A'}\n"
        f"Authors: {authors or 'N/A'}\n"
        f"Categories: {_join(paper.get('arxivCategories')) or 'N/A'}\n"
        f"Abstract:\n{prepared.abstract or 'N/A'}\n"
        f"Paper Sections:\n{sections or 'N/A'}\n"
        f"Related Links:\n{', '.join(prepared.related_links) or 'None'}\n"
        f"Available Figures:\n{figures or 'None'}\n"
        f"Available Tables:\n{tables or 'None'}\n"
    )


def build_outline_prompt(paper: dict[str, Any], prepared: PreparedPaper) -> str:
    return f"{_OUTLINE_INSTRUCTIONS}\n\n{_paper_context(paper, prepared)}"


def build_post_prompt(paper: dict[str, Any], prepared: PreparedPaper, outline: str) -> str:
    return f"{_POST_INSTRUCTIONS}\n\n{_paper_context(paper, prepared)}\nOUTLINE TO FOLLOW:\n{outline}\n"


def outline_request(paper: dict[str, Any], prepared: PreparedPaper) -> dict[str, Any]:
    return batch_request(
        custom_id=str(paper["id"]),
        system=_OUTLINE_SYSTEM_PROMPT,
        user=build_outline_prompt(paper, prepared),
        max_tokens=OUTLINE_MAX_TOKENS,
    )


def post_request(paper: dict[str, Any], prepared: PreparedPaper) -> dict[str, Any]:
    return batch_request(
        custom_id=str(paper["id"]),
        system=_POST_SYSTEM_PROMPT,
        user=build_post_prompt(paper, prepared, paper["generatedOutline"]),
        max_tokens=POST_MAX_TOKENS,
    )


def _prepare_requests(papers: list[dict[str, Any]], phase: str) -> tuple[list[dict[str, Any]], dict[int, str]]:
    requests: list[dict[str, Any]] = []
    thumbnails: dict[int, str] = {}
    for paper in papers:
        try:
            prepared = prepare_paper_content(paper)
        except Exception as exc:
            LOGGER.exception("Preparing paper %s failed: %s", paper.get("id"), exc)
            continue
        if prepared is None:
            LOGGER.warning("Skipping %s for paper %s: no content", phase, paper.get("id"))
            continue
        build = outline_request if phase == "outline" else post_request
        requests.append(build(paper, prepared))
        if prepared.thumbnail:
            thumbnails[prepared.paper_id] = prepared.thumbnail
    return requests, thumbnails


def _outline_candidates(limit: int) -> list[dict[str, Any]]:
    return store.select(
        store.PAPERS_TABLE,
        columns=PAPER_COLUMNS,
        filters={
            "outlineGeneratedAt": "is.null",
            "indexedDate": f"gte.{store.iso_ago(hours=OUTLINE_LOOKBACK_HOURS)}",
        },
        order="totalScore.desc.nullslast,indexedDate.desc",
        limit=limit,
    )


def _summary_candidates(limit: int) -> list[dict[str, Any]]:
    return store.select(
        store.PAPERS_TABLE,
        columns=PAPER_COLUMNS,
        filters={
            "enhancedSummaryCreatedAt": "is.null",
            "outlineGeneratedAt": "not.is.null",
            "generatedOutline": "not.is.null",
        },
        order="outlineGeneratedAt.asc",
        limit=limit,
    )


def submit_outlines(limit: int | None = None, dry_run: bool = False) -> str | None:
    """Submit an outline batch for recently indexed papers; results are applied by the poller."""
    papers = _outline_candidates(limit or SUBMIT_BATCH_SIZE_LIMIT)
    LOGGER.info("Found %s papers needing outlines", len(papers))
    requests, _ = _prepare_requests(papers, "outline")
    LOGGER.info("Prepared %s outline requests (skipped=%s)", len(requests), len(papers) - len(requests))
    if dry_run:
        LOGGER.info("[dry-run] Would submit %s outline requests", len(requests))
        return None
    return submit_batch_and_record(get_client(), requests, "outline")


def submit_summaries(limit: int | None = None, dry_run: bool = False) -> str | None:
    """Submit a full-post batch for papers whose outline is ready."""
    papers = _summary_candidates(limit or SUBMIT_BATCH_SIZE_LIMIT)
    LOGGER.info("Found %s papers with outlines awaiting posts", len(papers))
    requests, _ = _prepare_requests(papers, "summary")
    LOGGER.info("Prepared %s summary requests (skipped=%s)", len(requests), len(papers) - len(requests))
    if dry_run:
        LOGGER.info("[dry-run] Would submit %s summary requests", len(requests))
        return None
    return submit_batch_and_record(get_client(), requests, "summary")


def _run_phase(papers: list[dict[str, Any]], phase: str) -> None:
    client = get_client()
    requests, thumbnails = _prepare_requests(papers, phase)
    batch_id = submit_batch_and_record(client, requests, phase)
    if not batch_id:
        return

    batch = wait_for_batch(client, batch_id)
    if batch is None or batch.processing_status != "ended":
        LOGGER.warning("Batch %s did not finish; the poller will pick it up", batch_id)
        return

    outcome = process_batch_results(client, batch_id, phase, thumbnails=thumbnails)
    store.update(
        store.BATCH_JOBS_TABLE,
        {
            "status": outcome.status,
            "processed_at": store.iso_now(),
            "succeeded_count": outcome.succeeded,
            "failed_count": outcome.failed,
            "error_message": outcome.error_message,
        },
        {"batch_id": f"eq.{batch_id}"},
    )


def run_enhanced_summary_batch(limit: int | None = None) -> None:
    """Outline batch, wait, apply; then full-post batch, wait, apply."""
    outline_papers = store.select(
        store.PAPERS_TABLE,
        columns=PAPER_COLUMNS,
        filters={
            "enhancedSummaryCreatedAt": "is.null",
            "outlineGeneratedAt": "is.null",
            "embedding": "not.is.null",
            "paperGraphics": "not.is.null",
            "paperTables": "not.is.null",
        },
        order="indexedDate.desc",
        limit=limit or SUBMIT_BATCH_SIZE_LIMIT,
    )
    LOGGER.info("Outline phase: %s papers", len(outline_papers))
    if outline_papers:
        _run_phase(outline_papers, "outline")

    time.sleep(PHASE_PAUSE_SECONDS)

    post_papers = _summary_candidates(limit or SUBMIT_BATCH_SIZE_LIMIT)
    LOGGER.info("Full-post phase: %s papers", len(post_papers))
    if post_papers:
        _run_phase(post_papers, "summary")


def generate_simple_summaries(limit: int | None = None) -> None:
    """Synchronous Gemini outline + post for papers that have figures but no summary yet."""
    papers = store.select(
        store.PAPERS_TABLE,
        columns=PAPER_COLUMNS,
        filters={
            "generatedSummary": "is.null",
            "paperGraphics": "not.is.null",
            "totalScore": "gte.0",
        },
        order="totalScore.desc",
        limit=limit or SIMPLE_SUMMARY_LIMIT,
    )
    LOGGER.info("Found %s papers for simple summaries", len(papers))

    processed = 0
    failed = 0
    for paper in papers:
        try:
            prepared = prepare_paper_content(paper)
            if prepared is None:
                failed += 1
                continue
            outline = gemini_generate(
                f"{_OUTLINE_SYSTEM_PROMPT}\n\n{build_outline_prompt(paper, prepared)}",
                max_output_tokens=OUTLINE_MAX_TOKENS,
            )
            post = gemini_generate(
                f"{_POST_SYSTEM_PROMPT}\n\n{build_post_prompt(paper, prepared, outline)}",
                max_output_tokens=POST_MAX_TOKENS,
            )
            if not post:
                raise RuntimeError("Gemini returned an empty post")
            store.update(
                store.PAPERS_TABLE,
                {"generatedSummary": post, "lastUpdated": store.iso_now()},
                {"id": f"eq.{paper['id']}"},
            )
            processed += 1
        except Exception as exc:
            failed += 1
            LOGGER.exception("Simple summary failed for paper %s: %s", paper.get("id"), exc)
        time.sleep(SIMPLE_SUMMARY_PAUSE_SECONDS)

    LOGGER.info("Simple summaries complete. processed=%s failed=%s", processed, failed)
