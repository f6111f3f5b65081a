"""OpenAI embeddings for papers and Hugging Face models."""

from __future__ import annotations

import logging
import time
from typing import Any

import store
from llm_client import create_embedding, get_client

LOGGER = logging.getLogger(__name__)

PAPER_INPUT_LIMIT = 8190
PAPER_PAGE_SIZE = 5000
MODEL_PAGE_SIZE = 1000
HF_MODELS_TABLE = "huggingFaceModelsData"

# Roughly 3 characters per token; model inputs stay well under the 8k token window.
MODEL_INPUT_LIMIT = 6000 * 3
MODEL_FIELD_LIMITS = {
    "creator": 100,
    "modelName": 200,
    "generatedSummary": 1000,
    "description": 2000,
    "tags": 200,
}
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 30.0
MAX_CONSECUTIVE_FAILURES = 5

PAPER_EMBEDDING_COLUMNS = "id,title,abstract,generatedSummary,arxivCategories,authors,arxivId"


def _join(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return str(value) if value else ""


def build_paper_embedding_input(paper: dict[str, Any]) -> str:
    text = "\n\n".join(
        [
            f"Title: {paper.get('title') or ''}",
            f"Abstract: {paper.get('abstract') or ''}",
            f"Summary: {paper.get('generatedSummary') or ''}",
            f"Categories: {_join(paper.get('arxivCategories'))}",
            f"Authors: {_join(paper.get('authors'))}",
            f"ArXiv ID: {paper.get('arxivId') or ''}",
        ]
    )
    return text[:PAPER_INPUT_LIMIT]


def build_model_embedding_input(model: dict[str, Any]) -> str:
    parts = [_join(model.get(field))[:limit] for field, limit in MODEL_FIELD_LIMITS.items()]
    return " ".join(part for part in parts if part)[:MODEL_INPUT_LIMIT]


def refresh_paper_embedding(paper_id: int) -> bool:
    """Recompute one paper's embedding from its stored fields. Returns False on failure."""
    try:
        rows = store.select(
            store.PAPERS_TABLE,
            columns=PAPER_EMBEDDING_COLUMNS,
            filters={"id": f"eq.{paper_id}"},
            limit=1,
        )
        if not rows:
            raise RuntimeError(f"Paper {paper_id} not found")
        embedding = create_embedding(build_paper_embedding_input(rows[0]))
        store.update(store.PAPERS_TABLE, {"embedding": embedding}, {"id": f"eq.{paper_id}"})
        return True
    except Exception as exc:
        LOGGER.error("Failed to create embedding for paper %s: %s", paper_id, exc)
        return False


def run_paper_embeddings(limit: int | None = None) -> None:
    """Embed every paper whose embedding is still null."""
    rows = store.select_all(
        store.PAPERS_TABLE,
        columns=PAPER_EMBEDDING_COLUMNS,
        filters={"embedding": "is.null"},
        order="id.asc",
        page_size=PAPER_PAGE_SIZE,
    )
    if limit is not None:
        rows = rows[:limit]
    LOGGER.info("Found %s papers without embeddings", len(rows))

    client = get_client()
    processed = 0
    failed = 0
    for row in rows:
        try:
            embedding = create_embedding(build_paper_embedding_input(row), client=client)
            store.update(store.PAPERS_TABLE, {"embedding": embedding}, {"id": f"eq.{row['id']}"})
            processed += 1
        except Exception as exc:
            failed += 1
            LOGGER.error("Failed to embed paper %s: %s", row.get("id"), exc)

    LOGGER.info("Paper embeddings complete. processed=%s failed=%s", processed, failed)


def run_model_embeddings(limit: int | None = None) -> None:
    """Embed Hugging Face models, backing off on errors and giving up after repeated failures."""
    rows = store.select_all(
        HF_MODELS_TABLE,
        columns="id," + ",".join(MODEL_FIELD_LIMITS),
        filters={"embedding": "is.null"},
        order="id.asc",
        page_size=MODEL_PAGE_SIZE,
    )
    if limit is not None:
        rows = rows[:limit]
    LOGGER.info("Found %s models without embeddings", len(rows))

    client = get_client()
    processed = 0
    failed = 0
    consecutive_failures = 0

    for row in rows:
        try:
            embedding = create_embedding(build_model_embedding_input(row), client=client)
            store.update(HF_MODELS_TABLE, {"embedding": embedding}, {"id": f"eq.{row['id']}"})
            processed += 1
            consecutive_failures = 0
        except Exception as exc:
            failed += 1
            consecutive_failures += 1
            LOGGER.error("Failed to embed model %s: %s", row.get("id"), exc)
            if consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                LOGGER.error("Stopping after %s consecutive failures", consecutive_failures)
                break
            time.sleep(min(BACKOFF_BASE_SECONDS * 2**consecutive_failures, BACKOFF_MAX_SECONDS))

    LOGGER.info("Model embeddings complete. processed=%s failed=%s", processed, failed)
