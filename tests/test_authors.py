from unittest.mock import MagicMock, patch

import pytest

import authors
import store
from models import (
    FROM_CROSSREF,
    ORCID_MATCH_CONFIRMED,
    ORCID_MATCH_POTENTIAL,
    UNVERIFIED,
    AuthorResolution,
    OrcidSearchResult,
)

_CROSSREF_AUTHORS = [
    {"given": "Ada", "family": "Lovelace", "ORCID": "https://orcid.org/0000-0002-1825-0097"},
    {"given": "Alan", "family": "Turing"},
]

_SAMPLE_PERSON = {
    "name": {
        "given-names": {"value": "Ada"},
        "family-name": {"value": "Lovelace"},
    },
    "biography": {"content": "Analyst."},
    "keywords": {"keyword": [{"content": "computing"}, {"content": ""}]},
    "addresses": {"address": [{"country": {"value": "GB"}}]},
    "researcher-urls": {"researcher-url": [{"url-name": "Home", "url": {"value": "https://ada.example"}}]},
    "emails": {"email": [{"email": "ada@example.org", "primary": True}]},
}


@pytest.fixture(autouse=True)
def _reset_token_cache():
    authors._token_cache.update({"token": None, "expires_at": 0.0})
    yield
    authors._token_cache.update({"token": None, "expires_at": 0.0})


def _json_resp(payload) -> MagicMock:
    mock = MagicMock()
    mock.json.return_value = payload
    return mock


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_normalize_arxiv_id() -> None:
    assert authors.normalize_arxiv_id("arXiv:2501.01234v3") == "2501.01234"
    assert authors.normalize_arxiv_id(None) == ""


def test_extract_orcid_id_from_url() -> None:
    assert authors.extract_orcid_id("https://orcid.org/0000-0002-1825-009X") == "0000-0002-1825-009X"
    assert authors.extract_orcid_id("not an orcid") is None


def test_sanitize_value_strips_control_characters() -> None:
    assert authors.sanitize_value(' Ada\x00 "Lovelace" ') == "Ada Lovelace"
    assert authors.sanitize_value(None) == ""


@pytest.mark.parametrize(
    ("name", "loose", "expected"),
    [
        ("Ada Lovelace", False, "0000-0002-1825-0097"),
        ("A. Lovelace", False, "0000-0002-1825-0097"),
        ("Alan Turing", False, None),
        ("Grace Hopper", True, None),
    ],
)
def test_match_crossref_orcid(name: str, loose: bool, expected: str | None) -> None:
    assert authors.match_crossref_orcid(name, _CROSSREF_AUTHORS, loose=loose) == expected


def test_build_enrichment_update_omits_emails_outside_production(monkeypatch) -> None:
    monkeypatch.setattr(authors, "PIPELINE_ENV", "development")
    values = authors.build_enrichment_update(_SAMPLE_PERSON, "0000-0002-1825-0097")

    assert values["canonical_name"] == "Ada Lovelace"
    assert values["biography"] == "Analyst."
    assert values["keywords"] == ["computing"]
    assert values["country"] == "GB"
    assert values["researcher_urls"] == [{"name": "Home", "url": "https://ada.example"}]
    assert "emails" not in values


def test_build_enrichment_update_keeps_emails_in_production(monkeypatch) -> None:
    monkeypatch.setattr(authors, "PIPELINE_ENV", "production")
    values = authors.build_enrichment_update(_SAMPLE_PERSON, "0000-0002-1825-0097")
    assert values["emails"][0]["email"] == "ada@example.org"


# ---------------------------------------------------------------------------
# ORCID API (mocked)
# ---------------------------------------------------------------------------

def test_get_orcid_token_without_credentials_returns_none() -> None:
    with patch.dict("os.environ", {}, clear=True), patch("authors.requests.post") as mock_post:
        assert authors.get_orcid_token() is None
    mock_post.assert_not_called()


def test_get_orcid_token_is_cached() -> None:
    env = {"ORCID_CLIENT_ID": "id", "ORCID_CLIENT_SECRET": "secret"}
    response = _json_resp({"access_token": "tok", "expires_in": 3600})
    with patch.dict("os.environ", env, clear=True), \
         patch("authors.requests.post", return_value=response) as mock_post:
        assert authors.get_orcid_token() == "tok"
        assert authors.get_orcid_token() == "tok"
    assert mock_post.call_count == 1


def test_search_orcid_by_name_unique_hit_is_high_confidence() -> None:
    body = {"num-found": 1, "result": [{"orcid-identifier": {"path": "0000-0001-2345-6789"}}]}
    with patch("authors.requests.get", return_value=_json_resp(body)) as mock_get:
        result = authors.search_orcid_by_name("Ada Lovelace", "tok")

    assert result == OrcidSearchResult(orcid_id="0000-0001-2345-6789", is_high_confidence=True, num_found=1)
    query = mock_get.call_args.kwargs["params"]["q"]
    assert query == 'family-name:"Lovelace" AND given-names:"Ada"'


def test_search_orcid_by_name_ambiguous_hit() -> None:
    body = {"num-found": 3, "result": [{"orcid-identifier": {"path": "0000-0001-2345-6789"}}]}
    with patch("authors.requests.get", return_value=_json_resp(body)):
        result = authors.search_orcid_by_name("Ada Lovelace", "tok")
    assert result is not None and result.is_high_confidence is False


def test_check_orcid_works_matches_arxiv_id() -> None:
    body = {
        "total-size": 1,
        "group": [
            {
                "work-summary": [
                    {
                        "external-ids": {
                            "external-id": [
                                {"external-id-type": "arxiv", "external-id-value": "arXiv:2501.01234v1"}
                            ]
                        }
                    }
                ]
            }
        ],
    }
    with patch("authors.requests.get", return_value=_json_resp(body)):
        assert authors.check_orcid_works_for_paper("0000-0001-2345-6789", "2501.01234", None, "tok") is True


def test_check_orcid_works_without_identifiers_is_false() -> None:
    with patch("authors.requests.get") as mock_get:
        assert authors.check_orcid_works_for_paper("0000-0001-2345-6789", None, None, "tok") is False
    mock_get.assert_not_called()


def _works_page(total_size: int, doi: str = "10.1/other") -> MagicMock:
    group = {
        "work-summary": [
            {"external-ids": {"external-id": [{"external-id-type": "doi", "external-id-value": doi}]}}
        ]
    }
    return _json_resp({"total-size": total_size, "group": [group] * authors.WORKS_PAGE_SIZE})


def test_check_orcid_works_pages_until_match() -> None:
    pages = [_works_page(250), _works_page(250, doi="10.1000/XYZ123")]
    with patch("authors._orcid_get", side_effect=pages) as mock_get, patch("authors.time.sleep"):
        assert authors.check_orcid_works_for_paper("0000-0001-2345-6789", None, "10.1000/xyz123", "tok") is True

    offsets = [call.kwargs["params"]["offset"] for call in mock_get.call_args_list]
    assert offsets == [0, authors.WORKS_PAGE_SIZE]


def test_check_orcid_works_stops_at_page_cap() -> None:
    with patch("authors._orcid_get", side_effect=lambda *_a, **_k: _works_page(100_000)) as mock_get, \
         patch("authors.time.sleep"):
        assert authors.check_orcid_works_for_paper("0000-0001-2345-6789", "2501.01234", None, "tok") is False

    assert mock_get.call_count == authors.WORKS_MAX_PAGES


# ---------------------------------------------------------------------------
# resolve_author
# ---------------------------------------------------------------------------

def test_resolve_author_trusts_crossref_orcid() -> None:
    with patch("authors.store.select", return_value=[{"id": 5}]), \
         patch("authors.get_orcid_token") as mock_token:
        result = authors.resolve_author("Ada Lovelace", crossref_orcid="0000-0002-1825-0097")

    assert result == AuthorResolution(author_id=5, verification_status=FROM_CROSSREF, orcid_id="0000-0002-1825-0097")
    mock_token.assert_not_called()


@pytest.mark.parametrize(("confirmed", "status"), [(True, ORCID_MATCH_CONFIRMED), (False, ORCID_MATCH_POTENTIAL)])
def test_resolve_author_unique_orcid_hit(confirmed: bool, status: str) -> None:
    hit = OrcidSearchResult(orcid_id="0000-0001-2345-6789", is_high_confidence=True, num_found=1)
    with patch("authors.get_orcid_token", return_value="tok"), \
         patch("authors.search_orcid_by_name", return_value=hit), \
         patch("authors.check_orcid_works_for_paper", return_value=confirmed), \
         patch("authors.store.select", return_value=[]), \
         patch("authors.store.insert", return_value=[{"id": 11}]) as mock_insert:
        result = authors.resolve_author("Ada Lovelace", arxiv_id="2501.01234")

    assert result == AuthorResolution(author_id=11, verification_status=status, orcid_id="0000-0001-2345-6789")
    assert mock_insert.call_args.args[1] == {"orcid_id": "0000-0001-2345-6789", "canonical_name": "Ada Lovelace"}


def test_resolve_author_reuses_placeholder_when_ambiguous() -> None:
    hit = OrcidSearchResult(orcid_id="0000-0001-2345-6789", is_high_confidence=False, num_found=4)
    with patch("authors.get_orcid_token", return_value="tok"), \
         patch("authors.search_orcid_by_name", return_value=hit), \
         patch("authors.store.select", return_value=[{"id": 3}]) as mock_select, \
         patch("authors.store.insert") as mock_insert:
        result = authors.resolve_author("Ada Lovelace")

    assert result == AuthorResolution(author_id=3, verification_status=UNVERIFIED)
    assert mock_select.call_args.kwargs["filters"] == {"orcid_id": "is.null", "canonical_name": "eq.Ada Lovelace"}
    mock_insert.assert_not_called()


def test_resolve_author_returns_none_on_store_failure() -> None:
    with patch("authors.get_orcid_token", return_value=None), \
         patch("authors.store.select", side_effect=store.StoreError("boom")):
        assert authors.resolve_author("Ada Lovelace") is None


# ---------------------------------------------------------------------------
# Linking
# ---------------------------------------------------------------------------

def test_link_author_duplicate_is_not_an_error() -> None:
    duplicate = store.StoreError("dup", code=store.UNIQUE_VIOLATION, status_code=409)
    with patch("authors.store.insert", side_effect=duplicate):
        assert authors.link_author_to_paper(1, 2, 1, "Ada Lovelace", UNVERIFIED) is True


def test_link_author_other_errors_fail() -> None:
    with patch("authors.store.insert", side_effect=store.StoreError("nope", code="42501")):
        assert authors.link_author_to_paper(1, 2, 1, "Ada Lovelace", UNVERIFIED) is False


def test_enrich_paper_authors_links_in_order() -> None:
    resolutions = [
        AuthorResolution(author_id=10, verification_status=FROM_CROSSREF, orcid_id="0000-0002-1825-0097"),
        AuthorResolution(author_id=20, verification_status=UNVERIFIED),
    ]
    with patch("authors.fetch_crossref_authors", return_value=_CROSSREF_AUTHORS), \
         patch("authors.resolve_author", side_effect=resolutions), \
         patch("authors.link_author_to_paper", return_value=True) as mock_link, \
         patch("authors.trigger_orcid_enrichment") as mock_enrich, \
         patch("authors.time.sleep"):
        linked = authors.enrich_paper_authors(7, ["Ada Lovelace", "Alan Turing"], doi="10.1/x")

    assert linked == 2
    assert [call.args[2] for call in mock_link.call_args_list] == [1, 2]
    mock_enrich.assert_called_once_with(10, "0000-0002-1825-0097")


def test_enrich_paper_authors_looks_up_missing_doi() -> None:
    with patch("arxiv_feed.fetch_arxiv_doi", return_value="10.1/x") as mock_doi, \
         patch("authors.store.update") as mock_update, \
         patch("authors.fetch_crossref_authors", return_value=[]), \
         patch("authors.resolve_author", return_value=None), \
         patch("authors.time.sleep"):
        linked = authors.enrich_paper_authors(7, ["Ada Lovelace"], arxiv_id="2501.01234")

    assert linked == 0
    mock_doi.assert_called_once_with("2501.01234")
    mock_update.assert_called_once_with(store.PAPERS_TABLE, {"doi": "10.1/x"}, {"id": "eq.7"})


def test_refresh_authors_view_falls_back_to_blocking_refresh() -> None:
    with patch("authors.store.rpc", side_effect=[store.StoreError("locked"), None]) as mock_rpc:
        authors.refresh_authors_view()

    assert mock_rpc.call_count == 2
    assert "CONCURRENTLY" not in mock_rpc.call_args.args[1]["sql"]


def test_run_enrich_authors_steps_past_unlinked_papers() -> None:
    pages = [
        [{"id": 1, "authors": ["Ada Lovelace"]}, {"id": 2, "authors": ["Alan Turing"]}],
        [],
    ]
    with patch("authors.store.select", side_effect=pages) as mock_select, \
         patch("authors.enrich_paper_authors", side_effect=[1, 0]), \
         patch("authors.refresh_authors_view") as mock_refresh, \
         patch("authors.time.sleep"):
        authors.run_enrich_authors()

    assert mock_select.call_args_list[1].kwargs["offset"] == 1
    mock_refresh.assert_called_once()
