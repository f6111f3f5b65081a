from unittest.mock import patch

from models import Section
from paper_content import (
    PREAMBLE_TITLE,
    extract_first_image,
    extract_sections_from_html,
    extract_sections_from_ocr,
    find_related_papers,
    format_tables,
    prepare_paper_content,
    sanitize_string,
    truncate_content,
)

_SAMPLE_HTML = """
<html><body>
<figure><img src="x1.png"></figure>
<h2>1 Introduction</h2>
<p>We study   experts.</p>
<p>Second paragraph.</p>
<h2>2 Method</h2>
<p>Gating.</p>
<h2>References</h2>
<p>[1] Someone, 2020.</p>
</body></html>
"""

_SAMPLE_OCR_PAGES = [
    {"markdown": "Tiny Experts\nWe present a model.\n# 1 Introduction\nWe compress experts."},
    {"markdown": "## 2 Methods\nGating is learned.\n# References\n[1] cite"},
]


def test_sanitize_string_marks_non_ascii() -> None:
    assert sanitize_string("café\tok") == "caf[?]\tok"
    assert sanitize_string(None) == ""


def test_truncate_content_appends_ellipsis() -> None:
    assert truncate_content("abcdef", limit=3) == "abc..."
    assert truncate_content("abc", limit=3) == "abc"


def test_extract_sections_from_html_stops_at_references() -> None:
    sections = extract_sections_from_html(_SAMPLE_HTML)
    assert sections == [
        Section(title="1 Introduction", content="We study experts. Second paragraph."),
        Section(title="2 Method", content="Gating."),
    ]


def test_extract_sections_from_html_falls_back_to_abstract() -> None:
    html = '<div class="ltx_abstract">Abstract We compress experts.</div>'
    assert extract_sections_from_html(html) == [Section(title="Abstract", content="We compress experts.")]


def test_extract_sections_from_ocr() -> None:
    sections = extract_sections_from_ocr(_SAMPLE_OCR_PAGES)

    assert [section.title for section in sections] == [PREAMBLE_TITLE, "1 Introduction", "2 Methods"]
    assert sections[1].content == "We compress experts."
    assert sections[2].content == "Gating is learned."


def test_extract_first_image_resolves_relative_src() -> None:
    url = "https://arxiv.org/html/2501.01234v1/"
    assert extract_first_image(_SAMPLE_HTML, url) == "https://arxiv.org/html/2501.01234v1/x1.png"


def test_extract_first_image_skips_logos() -> None:
    html = '<img src="/static/logo.png">'
    assert extract_first_image(html, "https://arxiv.org/html/2501.01234v1/") is None


def test_extract_first_image_falls_through_to_next_candidate() -> None:
    html = '<figure><img src="spinner.gif"></figure><p><img src="/static/logo.png"><img src="x1.png"></p>'
    url = "https://arxiv.org/html/2501.01234v1/"
    assert extract_first_image(html, url) == "https://arxiv.org/html/2501.01234v1/x1.png"


def test_format_tables_drops_empty_markdown() -> None:
    tables = [
        {"identifier": "Table-3-1", "caption": "Results", "tableMarkdown": "| a |\n|---|", "pageNumber": 3},
        {"caption": "Empty", "tableMarkdown": "  "},
        "garbage",
    ]
    assert format_tables(tables) == [
        {"tableId": "Table-3-1", "caption": "Results", "markdown": "| a |\n|---|", "pageNumber": 3}
    ]


def test_find_related_papers_excludes_self() -> None:
    matches = [
        {"id": 1, "slug": "self", "title": "Self"},
        {"id": 2, "slug": "other-paper", "title": "Other", "platform": None},
        {"id": 3, "slug": None},
    ]
    with patch("paper_content.store.rpc", return_value=matches):
        related = find_related_papers(1, [0.1, 0.2])

    assert related == [{"id": 2, "slug": "other-paper", "title": "Other", "platform": "arxiv"}]


def test_prepare_paper_content_falls_back_to_abstract() -> None:
    paper = {
        "id": 9,
        "arxivId": "2501.01234",
        "title": "Tiny Experts",
        "abstract": "Abstract: We compress experts.",
        "pdfUrl": "https://arxiv.org/pdf/2501.01234.pdf",
    }
    with patch("paper_content.fetch_arxiv_html", return_value=None), \
         patch("paper_content.ocr_document", side_effect=RuntimeError("ocr down")):
        prepared = prepare_paper_content(paper)

    assert prepared is not None
    assert prepared.sections == [Section(title="Abstract", content="We compress experts.")]
    assert prepared.related_links == []


def test_prepare_paper_content_requires_arxiv_id() -> None:
    assert prepare_paper_content({"id": 9}) is None
