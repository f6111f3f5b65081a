"""Extract figures from the arXiv HTML rendering into `paperGraphics`."""

from __future__ import annotations

import logging
import re
import time
from typing import Any

import requests
from bs4 import BeautifulSoup

import store
from gemini_client import gemini_generate
from llm_client import parse_json_value

LOGGER = logging.getLogger(__name__)

ARXIV_HTML_URL = "https://arxiv.org/html/{arxiv_id}"
REQUEST_TIMEOUT_SECONDS = 30
MAX_FETCH_ATTEMPTS = 3
FETCH_BACKOFF_SECONDS = 5.0
MAX_FIGURES = 10
GEMINI_HTML_LIMIT = 100_000
LOOKBACK_DAYS = 4
BATCH_SIZE = 200
PAPER_PAUSE_SECONDS = 5.0
USER_AGENT = "aimodels-pipeline/1.0 (+https://aimodels.fyi)"

_FIGURE_REF = re.compile(r"^(figure|fig\.?)\s+\d+", re.IGNORECASE)
_FIGURE_NUMBER = re.compile(r"figure\s+(\d+)|fig\.?\s*(\d+)", re.IGNORECASE)
_SRC_NUMBER = re.compile(r"fig(\d+)|figure(\d+)", re.IGNORECASE)
_CAPTION_PREFIX = re.compile(r"^(?:figure|fig\.?)\s+\d+[:.]\s*(.*)", re.IGNORECASE | re.DOTALL)
_LOOSE_PREFIX = re.compile(r"^(figure|fig\.?)(\s|\.|:)+\d+(\s|\.|:)+", re.IGNORECASE)
_TABLE_CAPTION = re.compile(r"^table\s+\d+|^tab(\.|le)?\s*\d+|table\s+\d+:", re.IGNORECASE)

_GEMINI_PROMPT = """Extract only figures (not tables) from this scientific paper HTML. For each figure (up to 10) return a JSON array of objects with exactly these keys:
"type" ("figure"), "index" (integer figure number), "caption" (caption without the "Figure X:" prefix),
"content" (full image URL, never base64), "identifier" ("Figure-{index}"), "originalCaption" (complete original caption).
Return only valid JSON."""


def is_table_caption(caption: str) -> bool:
    if not caption:
        return False
    lowered = caption.lower()
    return (
        _TABLE_CAPTION.search(caption) is not None
        or "table of " in lowered
        or "tabular" in lowered
        or "statistical table" in lowered
    )


def create_short_caption(caption: str) -> str:
    """Drop the leading "Figure N:" label."""
    if not caption:
        return ""
    match = _CAPTION_PREFIX.match(caption)
    if match:
        return match.group(1).strip()
    short = _LOOSE_PREFIX.sub("", caption).strip()
    short = re.sub(r"^[^a-zA-Z0-9]+", "", short).strip()
    return short or caption


def process_image_url(src: str | None, arxiv_id: str) -> str | None:
    """Absolute image URL, or None for missing and inline base64 images."""
    if not src or "data:image/" in src or "base64" in src:
        return None
    if src.startswith("http"):
        return src
    if src.startswith("/"):
        return f"https://arxiv.org{src}"
    relative = src[2:] if src.startswith("./") else src
    return f"https://arxiv.org/html/{arxiv_id}/{relative}"


def _figure_number(*candidates: tuple[re.Pattern[str], str]) -> int | None:
    for pattern, text in candidates:
        match = pattern.search(text or "")
        if match:
            return int(match.group(1) or match.group(2))
    return None


def _find_caption(img: Any, container: Any) -> str:
    figcaption = container.find("figcaption")
    if figcaption is not None:
        caption = figcaption.get_text(" ", strip=True)
        if caption:
            return caption

    caption_el = container.select_one(".caption, [class*='caption']")
    if caption_el is not None:
        caption = caption_el.get_text(" ", strip=True)
        if caption:
            return caption

    next_p = img.find_next_sibling("p")
    if next_p is not None and _FIGURE_REF.match(next_p.get_text(strip=True)):
        return next_p.get_text(" ", strip=True)

    for paragraph in container.find_all("p"):
        text = paragraph.get_text(" ", strip=True)
        if _FIGURE_REF.match(text):
            return text

    alt = img.get("alt") or ""
    if re.search(r"figure|fig\.?\s*\d+", alt, re.IGNORECASE):
        return alt
    return ""


def _add_figure(figures: list[dict[str, Any]], figure: dict[str, Any]) -> None:
    for existing in figures:
        if existing["index"] == figure["index"]:
            if figure["caption"] and len(figure["caption"]) > len(existing["caption"] or ""):
                existing["caption"] = figure["caption"]
                existing["originalCaption"] = figure["originalCaption"]
            return
    figures.append(figure)


def extract_figures_from_html(html: str, arxiv_id: str) -> list[dict[str, Any]]:
    """Parse figures out of arXiv HTML, numbered 1..n in document order of their figure numbers."""
    soup = BeautifulSoup(html, "html.parser")
    figures: list[dict[str, Any]] = []
    seen_sources: set[str] = set()

    for img in soup.find_all("img"):
        src = img.get("src")
        if not src or src in seen_sources:
            continue

        container = img.find_parent(
            lambda tag: tag.name == "figure"
            or any("figure" in cls or "image" in cls for cls in tag.get("class") or [])
        ) or img.parent
        caption = _find_caption(img, container)
        if is_table_caption(caption):
            continue

        number = _figure_number(
            (_FIGURE_NUMBER, caption), (_FIGURE_NUMBER, img.get("alt") or ""), (_SRC_NUMBER, src)
        ) or len(figures) + 1
        seen_sources.add(src)

        content = process_image_url(src, arxiv_id)
        if content is None:
            continue
        _add_figure(
            figures,
            {
                "type": "figure",
                "index": number,
                "caption": create_short_caption(caption) or f"Figure {number}",
                "content": content,
                "identifier": f"Figure-{number}",
                "originalCaption": caption or f"Figure {number}",
            },
        )

    figures.sort(key=lambda figure: figure["index"])
    for position, figure in enumerate(figures, start=1):
        figure["index"] = position
        figure["identifier"] = f"Figure-{position}"
    return figures


def extract_figures_with_gemini(html: str) -> list[dict[str, Any]]:
    """Ask Gemini for figures when the HTML parser finds none. Returns [] on any failure."""
    try:
        response = gemini_generate(
            f"{_GEMINI_PROMPT}\n\nHTML:\n{html[:GEMINI_HTML_LIMIT]}", temperature=0.2
        )
        figures = parse_json_value(response, expected=list)
    except Exception as exc:
        LOGGER.warning("Gemini figure extraction failed: %s", exc)
        return []

    valid = []
    for figure in figures:
        content = figure.get("content") if isinstance(figure, dict) else None
        if content and "data:image/" not in content and "base64" not in content:
            valid.append(figure)
    return valid


def format_graphics(figures: list[dict[str, Any]]) -> list[dict[str, Any]]:
    formatted = []
    for position, figure in enumerate(figures[:MAX_FIGURES], start=1):
        index = figure.get("index") or position
        formatted.append(
            {
                "type": "figure",
                "index": index,
                "caption": figure.get("caption") or f"Figure {index}",
                "content": figure.get("content") or "",
                "identifier": figure.get("identifier") or f"Figure-{index}",
                "originalCaption": figure.get("originalCaption") or figure.get("caption") or f"Figure {index}",
            }
        )
    return formatted


def fetch_paper_html(arxiv_id: str) -> str | None:
    url = ARXIV_HTML_URL.format(arxiv_id=arxiv_id)
    delay_seconds = FETCH_BACKOFF_SECONDS
    for attempt in range(1, MAX_FETCH_ATTEMPTS + 1):
        try:
            response = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=REQUEST_TIMEOUT_SECONDS)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.text
        except requests.RequestException as exc:
            LOGGER.warning("HTML fetch %s/%s failed for %s: %s", attempt, MAX_FETCH_ATTEMPTS, arxiv_id, exc)
            if attempt < MAX_FETCH_ATTEMPTS:
                time.sleep(delay_seconds)
                delay_seconds *= 2
    return None


def _save_graphics(paper_id: int, graphics: list[dict[str, Any]]) -> None:
    store.update(
        store.PAPERS_TABLE,
        {"paperGraphics": graphics, "lastUpdated": store.iso_now()},
        {"id": f"eq.{paper_id}"},
    )


def process_paper_graphics(paper: dict[str, Any]) -> int:
    """Extract and store one paper's figures. An empty list is stored when nothing is found."""
    try:
        html = fetch_paper_html(paper["arxivId"])
        if not html:
            LOGGER.info("No HTML for paper %s; storing empty graphics", paper["id"])
            _save_graphics(paper["id"], [])
            return 0

        figures = extract_figures_from_html(html, paper["arxivId"])
        if not figures:
            LOGGER.info("No figures parsed for %s; asking Gemini", paper["arxivId"])
            figures = extract_figures_with_gemini(html)

        graphics = format_graphics(figures)
        _save_graphics(paper["id"], graphics)
        LOGGER.info("Stored %s figures for paper %s", len(graphics), paper["id"])
        return len(graphics)
    except Exception as exc:
        LOGGER.exception("Figure extraction failed for paper %s: %s", paper.get("id"), exc)
        _save_graphics(paper["id"], [])
        return 0


def run_paper_graphics(limit: int | None = None) -> None:
    papers = store.select(
        store.PAPERS_TABLE,
        columns="id,arxivId,title",
        filters={
            "paperGraphics": "is.null",
            "indexedDate": f"gte.{store.iso_ago(days=LOOKBACK_DAYS)}",
            "totalScore": "gte.0",
        },
        order="totalScore.desc",
        limit=limit or BATCH_SIZE,
    )
    LOGGER.info("Found %s papers needing figures", len(papers))

    processed = 0
    failed = 0
    for position, paper in enumerate(papers):
        if position:
            time.sleep(PAPER_PAUSE_SECONDS)
        try:
            process_paper_graphics(paper)
            processed += 1
        except store.StoreError as exc:
            failed += 1
            LOGGER.error("Could not store graphics for paper %s: %s", paper.get("id"), exc)

    LOGGER.info("Paper graphics complete. processed=%s failed=%s", processed, failed)
