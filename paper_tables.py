"""OCR each recent paper's PDF and store the tables it contains in `paperTables`."""

from __future__ import annotations

import logging
import re
import time
from typing import Any

import requests

import store
from ocr_client import ocr_document

LOGGER = logging.getLogger(__name__)

BATCH_SIZE = 40
MAX_TABLES = 10
LOOKBACK_DAYS = 4
PDF_CHECK_TIMEOUT_SECONDS = 30
PDF_CHECK_RETRIES = 1
PDF_CHECK_BACKOFF_SECONDS = 1.5
DELAY_AFTER_PDF_CHECK_SECONDS = 0.3
DELAY_AFTER_OCR_SECONDS = 1.1
OCR_TIMEOUT_SECONDS = 90
MIN_TABLE_LINES = 3
USER_AGENT = "aimodels-pipeline/1.0 (+https://aimodels.fyi)"

_CAPTION_PATTERN = re.compile(r"Table\s+\d+\s*[:.]", re.IGNORECASE)


def export_url(pdf_url: str) -> str:
    """arXiv asks automated clients to use the export mirror."""
    return pdf_url.replace("://arxiv.org/", "://export.arxiv.org/")


def pdf_is_accessible(pdf_url: str, arxiv_id: str) -> bool:
    url = export_url(pdf_url)
    headers = {"User-Agent": USER_AGENT, "Referer": f"https://arxiv.org/abs/{arxiv_id}"}

    for attempt in range(PDF_CHECK_RETRIES + 1):
        try:
            response = requests.head(url, headers=headers, timeout=PDF_CHECK_TIMEOUT_SECONDS, allow_redirects=True)
            if response.status_code in (403, 404):
                LOGGER.warning("PDF for %s not accessible (HTTP %s)", arxiv_id, response.status_code)
                return False
            response.raise_for_status()
            return True
        except requests.RequestException as exc:
            LOGGER.warning("PDF check failed for %s: %s", arxiv_id, exc)
            if attempt < PDF_CHECK_RETRIES:
                time.sleep(PDF_CHECK_BACKOFF_SECONDS * (attempt + 1))
    return False


def _is_table_line(line: str) -> bool:
    if line.count("|") >= 3:
        return True
    return (line.count("-") > 10 and line.count("+") >= 2) or ("+--" in line and "--+" in line)


def detect_tables_from_markdown(pages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Find runs of pipe or ASCII-art table lines in page markdown."""
    detected: list[dict[str, Any]] = []

    for page in pages:
        markdown = page.get("markdown")
        if not markdown:
            continue
        page_number = page.get("index")
        run: list[str] = []
        caption = ""

        def flush() -> None:
            if len(run) >= MIN_TABLE_LINES:
                text = caption or f"Table on page {page_number}"
                detected.append(
                    {
                        "pageNumber": page_number,
                        "index": len(detected),
                        "tableMarkdown": "\n".join(run),
                        "caption": text,
                        "originalCaption": text,
                        "identifier": f"Table-{page_number}-{len(detected)}",
                    }
                )

        for raw in markdown.split("\n"):
            line = raw.strip()
            if not run and _CAPTION_PATTERN.search(line):
                caption = line
            if _is_table_line(line):
                run.append(line)
            elif run:
                flush()
                run = []
                caption = ""
        flush()

    return detected


def extract_tables(pages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Tables reported by OCR, falling back to markdown detection when there are none."""
    tables: list[dict[str, Any]] = []
    for page in pages:
        for position, table in enumerate(page.get("tables") or []):
            if not isinstance(table, dict) or not table.get("markdown"):
                LOGGER.warning("Skipping table on page %s without markdown", page.get("index"))
                continue
            caption = table.get("caption") or f"Table {len(tables) + 1}"
            tables.append(
                {
                    "index": len(tables),
                    "caption": caption,
                    "originalCaption": caption,
                    "tableMarkdown": table["markdown"],
                    "identifier": f"Table-{page.get('index')}-{position}",
                    "pageNumber": page.get("index"),
                }
            )

    if tables:
        return tables
    return detect_tables_from_markdown(pages)


def _save_tables(paper_id: int, tables: list[dict[str, Any]]) -> None:
    store.update(
        store.PAPERS_TABLE,
        {"paperTables": tables, "lastUpdated": store.iso_now()},
        {"id": f"eq.{paper_id}"},
    )


def process_paper_tables(paper: dict[str, Any]) -> str:
    """Returns one of success, skipped, failed_ocr or failed_error."""
    paper_id = paper["id"]
    arxiv_id = paper["arxivId"]
    pdf_url = paper.get("pdfUrl") or f"https://arxiv.org/pdf/{arxiv_id}.pdf"

    try:
        accessible = pdf_is_accessible(pdf_url, arxiv_id)
        time.sleep(DELAY_AFTER_PDF_CHECK_SECONDS)
        if not accessible:
            _save_tables(paper_id, [])
            return "skipped"

        try:
            pages = ocr_document(export_url(pdf_url), timeout=OCR_TIMEOUT_SECONDS)
        except RuntimeError as exc:
            LOGGER.error("OCR failed for paper %s: %s", paper_id, exc)
            _save_tables(paper_id, [])
            return "failed_ocr"
        finally:
            time.sleep(DELAY_AFTER_OCR_SECONDS)

        tables = extract_tables(pages)[:MAX_TABLES]
        _save_tables(paper_id, tables)
        LOGGER.info("Stored %s tables for paper %s", len(tables), paper_id)
        return "success"
    except Exception as exc:
        LOGGER.exception("Table extraction failed for paper %s: %s", paper_id, exc)
        try:
            _save_tables(paper_id, [])
        except store.StoreError as store_exc:
            LOGGER.error("Could not clear tables for paper %s: %s", paper_id, store_exc)
        return "failed_error"


def run_paper_tables(limit: int | None = None) -> None:
    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,arxivId,pdfUrl",
        filters={
            "paperTables": "is.null",
            "indexedDate": f"gte.{store.iso_ago(days=LOOKBACK_DAYS)}",
        },
        order="totalScore.desc.nullslast",
        limit=limit or BATCH_SIZE,
    )
    LOGGER.info("Found %s papers needing tables", len(papers))

    counts: dict[str, int] = {}
    for paper in papers:
        status = process_paper_tables(paper)
        counts[status] = counts.get(status, 0) + 1

    LOGGER.info(
        "Paper tables complete. success=%s skipped=%s failed_ocr=%s failed_error=%s",
        counts.get("success", 0),
        counts.get("skipped", 0),
        counts.get("failed_ocr", 0),
        counts.get("failed_error", 0),
    )
