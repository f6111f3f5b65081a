"""Gather the text, figures, tables and related links a summary prompt needs."""

from __future__ import annotations

import logging
import re
from typing import Any
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup, Tag

import store
from models import PreparedPaper, Section
from ocr_client import ocr_document

LOGGER = logging.getLogger(__name__)

ARXIV_HTML_URL = "https://arxiv.org/html/{arxiv_id}"
HTML_TIMEOUT_SECONDS = 15
SECTION_CONTENT_LIMIT = 5000
MAX_TITLE_LENGTH = 100
RELATED_SIMILARITY_THRESHOLD = 0.5
RELATED_MATCH_COUNT = 6
SITE_URL = "https://aimodels.fyi"

HEADER_SELECTOR = "h1, h2, h3, .ltx_title_section, .section, .ltx_section"
_HEADER_TAGS = {"h1", "h2", "h3"}
_HEADER_CLASSES = {"ltx_title_section", "section", "ltx_section"}
_SKIPPED_TITLES = {"references", "bibliography"}
_STOP_PREFIXES = ("references", "bibliography", "acknowledgements", "acknowledgments")

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E\n\r\t]")
_NUMBER_PREFIX = r"^(?:[IVXLCDM\d.]+\s+)?"
_OCR_SECTION_PATTERNS = [
    re.compile(_NUMBER_PREFIX + pattern, re.IGNORECASE)
    for pattern in (
        r"introduction",
        r"background",
        r"related\s+work",
        r"(?:methodology|methods?|approach)",
        r"(?:experiments?|experimental\s+setup|evaluation)",
        r"(?:results?|findings)",
        r"discussion",
        r"analysis",
        r"(?:conclusion|summary)",
        r"(?:future\s+work|limitations)",
        r"abstract",
    )
]
_OCR_STOP_PATTERNS = [
    re.compile(_NUMBER_PREFIX + pattern, re.IGNORECASE)
    for pattern in (
        r"(?:references?|bibliography)",
        r"acknowledge?ments?",
        r"(?:appendix|supplementary\s+(?:material|information))",
    )
]
PREAMBLE_TITLE = "Preamble / Abstract"


def sanitize_string(text: Any) -> str:
    """Replace anything outside printable ASCII (plus newlines and tabs) with '[?]'."""
    if not isinstance(text, str):
        return ""
    return _NON_PRINTABLE.sub("[?]", text)


def truncate_content(text: str, limit: int = SECTION_CONTENT_LIMIT) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def _collapse(text: str) -> str:
    return " ".join(text.split())


# ---------------------------------------------------------------------------
# arXiv HTML
# ---------------------------------------------------------------------------

def fetch_arxiv_html(arxiv_id: str) -> tuple[str, str] | None:
    """Return (html, url) for the arXiv HTML rendering, or None when there is none."""
    url = ARXIV_HTML_URL.format(arxiv_id=arxiv_id)
    try:
        response = requests.get(url, timeout=HTML_TIMEOUT_SECONDS)
        if response.status_code == 404:
            return None
        response.raise_for_status()
    except requests.RequestException as exc:
        LOGGER.warning("arXiv HTML fetch failed for %s: %s", arxiv_id, exc)
        return None
    return response.text, response.url or url


def extract_first_image(html: str, html_url: str) -> str | None:
    """Pick a thumbnail: the first figure image, else the first non-icon image."""
    soup = BeautifulSoup(html, "html.parser")
    candidates = soup.select("figure img") + soup.select(
        "img:not([width='1'], [height='1'], [src*='icon'])"
    )
    for img in candidates:
        if not img.get("src"):
            continue
        absolute = urljoin(html_url, img["src"])
        path = urlparse(absolute).path
        # Spinners and site logos are never thumbnails.
        if path.endswith(".gif") or "logo" in path:
            continue
        return absolute
    return None


def _is_header(tag: Tag) -> bool:
    if tag.name in _HEADER_TAGS:
        return True
    return bool(_HEADER_CLASSES.intersection(tag.get("class") or []))


def extract_sections_from_html(html: str) -> list[Section]:
    soup = BeautifulSoup(html, "html.parser")
    sections: list[Section] = []

    for header in soup.select(HEADER_SELECTOR):
        title = _collapse(header.get_text(" "))
        if not title or len(title) > MAX_TITLE_LENGTH or title.lower() in _SKIPPED_TITLES:
            continue

        parts: list[str] = []
        for sibling in header.find_next_siblings():
            if _is_header(sibling):
                break
            text = _collapse(sibling.get_text(" "))
            if text.lower().startswith(_STOP_PREFIXES):
                break
            if text:
                parts.append(text)

        content = " ".join(parts)
        if content:
            sections.append(Section(title=sanitize_string(title), content=truncate_content(sanitize_string(content))))

    if sections:
        return sections

    for index, block in enumerate(soup.select("div.ltx_section, div.section"), start=1):
        heading = block.find(["h1", "h2", "h3", "h4", "h5", "h6"])
        title = _collapse(heading.get_text(" ")) if heading else f"Section {index}"
        content = _collapse(block.get_text(" "))
        if content:
            sections.append(Section(title=sanitize_string(title), content=truncate_content(sanitize_string(content))))

    if sections:
        return sections

    abstract = soup.select_one(".abstract, .ltx_abstract, #abstract")
    if abstract is not None:
        content = _collapse(abstract.get_text(" "))
        content = re.sub(r"^Abstract[:.\s]*", "", content, flags=re.IGNORECASE)
        if content:
            sections.append(Section(title="Abstract", content=truncate_content(sanitize_string(content))))
    return sections


# ---------------------------------------------------------------------------
# OCR markdown
# ---------------------------------------------------------------------------

def _is_caps_heading(line: str) -> bool:
    return (
        5 < len(line) < 100
        and not re.search(r"[a-z]", line)
        and re.search(r"[A-Z]", line) is not None
        and len(line.split(" ")) < 7
    )


def extract_sections_from_ocr(pages: list[dict[str, Any]]) -> list[Section]:
    """Split OCR markdown into sections, stopping at references/appendix."""
    sections: list[Section] = []
    title: str | None = None
    lines: list[str] = []

    def flush() -> None:
        content = re.sub(r"\s{2,}", " ", "\n".join(lines).strip())
        if content:
            sections.append(
                Section(
                    title=sanitize_string(title or PREAMBLE_TITLE),
                    content=truncate_content(sanitize_string(content)),
                )
            )

    for page in pages:
        for raw_line in (page.get("markdown") or "").split("\n"):
            line = raw_line.strip().lstrip("#").strip()
            if not line:
                continue

            if 2 < len(line) < MAX_TITLE_LENGTH:
                if any(pattern.match(line) for pattern in _OCR_STOP_PATTERNS):
                    flush()
                    return sections
                if any(pattern.match(line) for pattern in _OCR_SECTION_PATTERNS) or _is_caps_heading(line):
                    flush()
                    title = line
                    lines = []
                    continue

            lines.append(line)

    flush()
    return sections


# ---------------------------------------------------------------------------
# Figures, tables, related papers
# ---------------------------------------------------------------------------

def sanitize_figures(figures: Any) -> list[dict[str, Any]]:
    if not isinstance(figures, list):
        return []
    return [
        {
            **figure,
            "caption": sanitize_string(figure.get("caption")),
            "originalCaption": sanitize_string(figure.get("originalCaption")),
        }
        for figure in figures
        if isinstance(figure, dict)
    ]


def format_tables(paper_tables: Any) -> list[dict[str, Any]]:
    """Normalize stored `paperTables` entries for prompts; entries without markdown are dropped."""
    if not isinstance(paper_tables, list):
        return []

    formatted: list[dict[str, Any]] = []
    for index, table in enumerate(paper_tables, start=1):
        if not isinstance(table, dict):
            continue
        markdown = (table.get("tableMarkdown") or table.get("markdown") or "").strip()
        if not markdown:
            continue
        formatted.append(
            {
                "tableId": table.get("identifier") or f"Table-{index}",
                "caption": sanitize_string(table.get("caption") or f"Table {index}"),
                "markdown": markdown,
                "pageNumber": table.get("pageNumber"),
            }
        )
    return formatted


def paper_link(platform: str | None, slug: str) -> str:
    return f"{SITE_URL}/papers/{platform or 'arxiv'}/{slug}"


def find_related_papers(paper_id: int, embedding: Any) -> list[dict[str, Any]]:
    """Nearest papers by embedding, excluding the paper itself."""
    if not embedding:
        return []
    try:
        matches = store.rpc(
            "search_papers",
            {
                "query_embedding": embedding,
                "similarity_threshold": RELATED_SIMILARITY_THRESHOLD,
                "match_count": RELATED_MATCH_COUNT,
            },
        )
    except store.StoreError as exc:
        LOGGER.warning("Related paper search failed for %s: %s", paper_id, exc)
        return []

    return [
        {
            "id": match.get("id"),
            "slug": match["slug"],
            "title": sanitize_string(match.get("title")),
            "platform": match.get("platform") or "arxiv",
        }
        for match in matches or []
        if match.get("slug") and match.get("id") != paper_id
    ]


def prepare_paper_content(paper: dict[str, Any]) -> PreparedPaper | None:
    """Collect sections (HTML, then OCR, then abstract) plus figures, tables and links.

    Returns None when no section text could be found at all.
    """
    paper_id = paper.get("id")
    arxiv_id = paper.get("arxivId")
    if not paper_id or not arxiv_id:
        LOGGER.error("Cannot prepare paper without id and arxivId: %r", paper_id)
        return None

    sections: list[Section] = []
    thumbnail = paper.get("thumbnail")

    fetched = fetch_arxiv_html(arxiv_id)
    if fetched:
        html, html_url = fetched
        if not thumbnail:
            thumbnail = extract_first_image(html, html_url)
        sections = extract_sections_from_html(html)

    if not sections and paper.get("pdfUrl"):
        try:
            sections = extract_sections_from_ocr(ocr_document(paper["pdfUrl"]))
        except RuntimeError as exc:
            LOGGER.warning("OCR fallback failed for paper %s: %s", paper_id, exc)

    if not sections and paper.get("abstract"):
        abstract = sanitize_string(re.sub(r"^Abstract[:.\s]*", "", paper["abstract"], flags=re.IGNORECASE).strip())
        if abstract:
            sections = [Section(title="Abstract", content=abstract)]

    if not sections:
        LOGGER.error("No content sections could be prepared for paper %s", paper_id)
        return None

    related = find_related_papers(paper_id, paper.get("embedding"))
    return PreparedPaper(
        paper_id=paper_id,
        title=sanitize_string(paper.get("title")),
        abstract=sanitize_string(paper.get("abstract")),
        sections=sections,
        thumbnail=thumbnail,
        figures=sanitize_figures(paper.get("paperGraphics")),
        tables=format_tables(paper.get("paperTables")),
        related_links=[paper_link(r["platform"], r["slug"]) for r in related],
    )
