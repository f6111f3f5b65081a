"""Author disambiguation against ORCID and Crossref.

Every author name string on a paper is resolved to a row in `authors` and
linked through `paperAuthors`:

1. If Crossref lists an ORCID for a name-matching author on the paper's DOI,
   that ORCID is trusted (FROM_CROSSREF).
2. Otherwise ORCID is searched by family + given names. Only a unique hit is
   accepted; it is CONFIRMED when the paper appears among the profile's works
   and POTENTIAL otherwise.
3. Anything else reuses or creates a placeholder author without an ORCID
   (UNVERIFIED).
"""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any
from urllib.parse import quote

import requests

import store
from models import (
    FROM_CROSSREF,
    ORCID_MATCH_CONFIRMED,
    ORCID_MATCH_POTENTIAL,
    UNVERIFIED,
    AuthorResolution,
    OrcidSearchResult,
)

LOGGER = logging.getLogger(__name__)

ORCID_API_URL = "https://pub.orcid.org/v3.0"
ORCID_TOKEN_URL = "https://orcid.org/oauth/token"
CROSSREF_API_URL = "https://api.crossref.org/works"
REQUEST_TIMEOUT_SECONDS = 15
TOKEN_MAX_ATTEMPTS = 3
TOKEN_EXPIRY_MARGIN_SECONDS = 300

WORKS_PAGE_SIZE = 100
WORKS_MAX_PAGES = 10
WORKS_PAGE_DELAY_SECONDS = 0.15
AUTHOR_DELAY_SECONDS = 1.1
BATCH_DELAY_SECONDS = 3.0
BATCH_SIZE = 25

AUTHORS_VIEW = "unique_authors_data_view"
PIPELINE_ENV = os.getenv("PIPELINE_ENV", "development")

_ORCID_ID_PATTERN = re.compile(r"(\d{4}-\d{4}-\d{4}-\d{3}[0-9X])$")
_UNSAFE_CHARS = re.compile(r'[\x00-\x1F\x7F-\x9F\\"]')

_token_cache: dict[str, Any] = {"token": None, "expires_at": 0.0}


def sanitize_value(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return _UNSAFE_CHARS.sub("", value).strip()


def normalize_arxiv_id(value: str | None) -> str:
    """'arXiv:2501.01234v3' -> '2501.01234'."""
    if not value:
        return ""
    normalized = value.strip().lower()
    normalized = re.sub(r"^arxiv:", "", normalized)
    return re.sub(r"v\d+$", "", normalized)


def extract_orcid_id(value: str | None) -> str | None:
    """Pull the bare ORCID iD out of a URL like 'https://orcid.org/0000-0002-1825-0097'."""
    if not value:
        return None
    match = _ORCID_ID_PATTERN.search(value.strip())
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# ORCID API
# ---------------------------------------------------------------------------

def get_orcid_token() -> str | None:
    """Return a cached client-credentials token, fetching a new one when expired."""
    if _token_cache["token"] and time.time() < _token_cache["expires_at"]:
        return _token_cache["token"]

    client_id = os.getenv("ORCID_CLIENT_ID")
    client_secret = os.getenv("ORCID_CLIENT_SECRET")
    if not client_id or not client_secret:
        LOGGER.warning("ORCID_CLIENT_ID/ORCID_CLIENT_SECRET not set; ORCID search disabled")
        return None

    delay_seconds = 1.0
    for attempt in range(1, TOKEN_MAX_ATTEMPTS + 1):
        try:
            response = requests.post(
                ORCID_TOKEN_URL,
                data={
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "client_credentials",
                    "scope": "/read-public",
                },
                headers={"Accept": "application/json"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            body = response.json()
            _token_cache["token"] = body["access_token"]
            expires_in = int(body.get("expires_in", 0))
            _token_cache["expires_at"] = time.time() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            return _token_cache["token"]
        except (requests.RequestException, KeyError, ValueError) as exc:
            LOGGER.warning("ORCID token fetch failed on attempt %s/%s: %s", attempt, TOKEN_MAX_ATTEMPTS, exc)
            if attempt < TOKEN_MAX_ATTEMPTS:
                time.sleep(delay_seconds)
                delay_seconds *= 2

    return None


def _orcid_get(path: str, token: str, params: dict[str, Any] | None = None) -> requests.Response:
    response = requests.get(
        f"{ORCID_API_URL}{path}",
        headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        params=params,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response


def search_orcid_by_name(name: str, token: str) -> OrcidSearchResult | None:
    """Strict family/given-name search; only the top result is considered."""
    parts = name.split()
    if not parts:
        return None
    family_name = parts[-1]
    given_names = " ".join(parts[:-1])

    query = f'family-name:"{family_name}"'
    if given_names:
        query += f' AND given-names:"{given_names}"'

    try:
        body = _orcid_get("/search", token, params={"q": query}).json()
    except requests.HTTPError as exc:
        if exc.response is not None and exc.response.status_code == 404:
            return None
        LOGGER.warning("ORCID search failed for %r: %s", name, exc)
        return None
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("ORCID search failed for %r: %s", name, exc)
        return None

    results = body.get("result") or []
    num_found = int(body.get("num-found") or 0)
    if num_found == 0 or not results:
        return None

    orcid_id = (results[0].get("orcid-identifier") or {}).get("path")
    if not orcid_id:
        return None
    return OrcidSearchResult(orcid_id=orcid_id, is_high_confidence=num_found == 1, num_found=num_found)


def check_orcid_works_for_paper(orcid_id: str, arxiv_id: str | None, doi: str | None, token: str) -> bool:
    """Return True if the paper's DOI or arXiv ID is listed among the profile's works."""
    target_doi = (doi or "").strip().lower()
    target_arxiv = normalize_arxiv_id(arxiv_id)
    if not target_doi and not target_arxiv:
        return False

    offset = 0
    for page in range(WORKS_MAX_PAGES):
        if page:
            time.sleep(WORKS_PAGE_DELAY_SECONDS)
        try:
            body = _orcid_get(
                f"/{orcid_id}/works",
                token,
                params={"offset": offset, "rows": WORKS_PAGE_SIZE},
            ).json()
        except (requests.RequestException, ValueError) as exc:
            LOGGER.warning("ORCID works fetch failed for %s: %s", orcid_id, exc)
            return False

        total_size = int(body.get("total-size") or 0)
        groups = body.get("group") or []
        if total_size == 0:
            return False

        for group in groups:
            for summary in group.get("work-summary") or []:
                external_ids = (summary.get("external-ids") or {}).get("external-id") or []
                if _matches_paper(external_ids, target_doi, target_arxiv):
                    return True

        offset += WORKS_PAGE_SIZE
        if offset >= total_size or len(groups) < WORKS_PAGE_SIZE:
            break

    return False


def _matches_paper(external_ids: list[dict[str, Any]], target_doi: str, target_arxiv: str) -> bool:
    for external_id in external_ids:
        id_type = (external_id.get("external-id-type") or "").lower()
        value = external_id.get("external-id-value") or ""
        if id_type == "doi" and target_doi and value.strip().lower() == target_doi:
            return True
        if id_type == "arxiv" and target_arxiv and normalize_arxiv_id(value) == target_arxiv:
            return True
    return False


def trigger_orcid_enrichment(author_id: int, orcid_id: str) -> None:
    """Copy public profile details from ORCID onto the author row."""
    token = get_orcid_token()
    if not token:
        LOGGER.warning("Skipping enrichment for author %s: no ORCID token", author_id)
        return

    try:
        person = _orcid_get(f"/{orcid_id}/person", token).json()
    except requests.HTTPError as exc:
        if exc.response is not None and exc.response.status_code == 404:
            LOGGER.warning("ORCID %s (author %s) returned 404; cannot enrich", orcid_id, author_id)
            return
        LOGGER.error("ORCID enrichment failed for author %s: %s", author_id, exc)
        return
    except (requests.RequestException, ValueError) as exc:
        LOGGER.error("ORCID enrichment failed for author %s: %s", author_id, exc)
        return

    values = build_enrichment_update(person, orcid_id)
    try:
        store.update(store.AUTHORS_TABLE, values, {"id": f"eq.{author_id}"})
        LOGGER.info("Enriched author %s from ORCID %s", author_id, orcid_id)
    except store.StoreError as exc:
        LOGGER.error("Failed to store enrichment for author %s: %s", author_id, exc)


def build_enrichment_update(person: dict[str, Any], orcid_id: str) -> dict[str, Any]:
    values: dict[str, Any] = {"last_orcid_sync": store.iso_now(), "orcid_id": orcid_id}

    name = person.get("name") or {}
    family = (name.get("family-name") or {}).get("value")
    given = (name.get("given-names") or {}).get("value") or ""
    credit = (name.get("credit-name") or {}).get("value")
    if family:
        values["canonical_name"] = f"{given} {family}".strip()
    elif credit:
        values["canonical_name"] = credit

    biography = (person.get("biography") or {}).get("content")
    if biography:
        values["biography"] = biography

    keywords = [k.get("content") for k in (person.get("keywords") or {}).get("keyword") or [] if k.get("content")]
    if keywords:
        values["keywords"] = keywords

    addresses = (person.get("addresses") or {}).get("address") or []
    country = ((addresses[0].get("country") or {}).get("value")) if addresses else None
    if country:
        values["country"] = country

    aliases = [n.get("content") for n in (person.get("other-names") or {}).get("other-name") or [] if n.get("content")]
    if aliases:
        values["aliases"] = aliases

    urls = [
        {"name": item.get("url-name"), "url": (item.get("url") or {}).get("value")}
        for item in (person.get("researcher-urls") or {}).get("researcher-url") or []
    ]
    urls = [u for u in urls if u["name"] and u["url"]]
    if urls:
        values["researcher_urls"] = urls

    # Contact details are only persisted by the production deployment.
    emails = (person.get("emails") or {}).get("email") or []
    if emails and PIPELINE_ENV == "production":
        values["emails"] = [
            {
                "email": e.get("email"),
                "primary": e.get("primary"),
                "verified": e.get("verified"),
                "visibility": e.get("visibility"),
            }
            for e in emails
            if e.get("email")
        ]

    return values


# ---------------------------------------------------------------------------
# Crossref
# ---------------------------------------------------------------------------

def fetch_crossref_authors(doi: str | None) -> list[dict[str, Any]]:
    if not doi:
        return []
    try:
        response = requests.get(
            f"{CROSSREF_API_URL}/{quote(doi, safe='')}",
            headers={"Accept": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        message = response.json().get("message") or {}
    except requests.HTTPError as exc:
        if exc.response is None or exc.response.status_code != 404:
            LOGGER.warning("Crossref lookup failed for DOI %s: %s", doi, exc)
        return []
    except (requests.RequestException, ValueError) as exc:
        LOGGER.warning("Crossref lookup failed for DOI %s: %s", doi, exc)
        return []
    return [a for a in message.get("author") or [] if isinstance(a, dict)]


def match_crossref_orcid(name: str, crossref_authors: list[dict[str, Any]], loose: bool = False) -> str | None:
    """Find the ORCID Crossref lists for `name`, if any.

    Strict matching accepts a family-name match carrying an ORCID, the exact
    "given family" string, or family name plus given-name initial. Loose
    matching (used at ingestion time) only needs the family name.
    """
    parts = name.split()
    if not parts:
        return None
    family = parts[-1].lower()
    initial = parts[0][0].lower() if len(parts) > 1 else ""
    full_name = name.lower()

    for author in crossref_authors:
        candidate_family = (author.get("family") or "").lower()
        candidate_given = (author.get("given") or "").lower()
        candidate_full = f"{candidate_given} {candidate_family}".strip()

        if candidate_family == family and (loose or author.get("ORCID")):
            matched = True
        else:
            matched = candidate_full == full_name or (
                candidate_family == family and candidate_given.startswith(initial)
            )
        if matched:
            return extract_orcid_id(author.get("ORCID"))
    return None


# ---------------------------------------------------------------------------
# Store operations
# ---------------------------------------------------------------------------

def _find_author_id(filters: dict[str, str]) -> int | None:
    rows = store.select(store.AUTHORS_TABLE, columns="id", filters=filters, limit=1)
    return rows[0]["id"] if rows else None


def _insert_author(orcid_id: str | None, canonical_name: str) -> int:
    rows = store.insert(store.AUTHORS_TABLE, {"orcid_id": orcid_id, "canonical_name": canonical_name})
    return rows[0]["id"]


def _find_or_create_by_orcid(orcid_id: str, name: str) -> int:
    return _find_author_id({"orcid_id": f"eq.{orcid_id}"}) or _insert_author(orcid_id, name)


def resolve_author(
    name: str,
    crossref_orcid: str | None = None,
    arxiv_id: str | None = None,
    doi: str | None = None,
) -> AuthorResolution | None:
    """Map one author name string to an author row. Returns None on any failure."""
    sanitized = sanitize_value(name)
    if not sanitized:
        LOGGER.error("Cannot resolve author with empty name %r", name)
        return None

    try:
        if crossref_orcid:
            author_id = _find_or_create_by_orcid(crossref_orcid, sanitized)
            return AuthorResolution(author_id=author_id, verification_status=FROM_CROSSREF, orcid_id=crossref_orcid)

        token = get_orcid_token()
        hit = search_orcid_by_name(sanitized, token) if token else None
        if hit and hit.is_high_confidence:
            confirmed = check_orcid_works_for_paper(hit.orcid_id, arxiv_id, doi, token)
            status = ORCID_MATCH_CONFIRMED if confirmed else ORCID_MATCH_POTENTIAL
            author_id = _find_or_create_by_orcid(hit.orcid_id, sanitized)
            return AuthorResolution(author_id=author_id, verification_status=status, orcid_id=hit.orcid_id)

        if hit:
            LOGGER.info("ORCID search for %r returned %s hits; using placeholder", sanitized, hit.num_found)

        author_id = _find_author_id({"orcid_id": "is.null", "canonical_name": f"eq.{sanitized}"})
        if author_id is None:
            author_id = _insert_author(None, sanitized)
        return AuthorResolution(author_id=author_id, verification_status=UNVERIFIED)
    except Exception as exc:
        LOGGER.error("Failed to resolve author %r: %s", sanitized, exc)
        return None


def link_author_to_paper(
    paper_id: int,
    author_id: int,
    author_order: int,
    original_name: str,
    verification_status: str,
) -> bool:
    """Insert the paper/author link. An existing link is reported but not an error."""
    try:
        store.insert(
            store.PAPER_AUTHORS_TABLE,
            {
                "paper_id": paper_id,
                "author_id": author_id,
                "author_order": author_order,
                "original_name_string": sanitize_value(original_name),
                "verification_status": verification_status,
            },
        )
        return True
    except store.StoreError as exc:
        if exc.code == store.UNIQUE_VIOLATION:
            LOGGER.warning("Author %s already linked to paper %s", author_id, paper_id)
            return True
        LOGGER.error("Failed to link author %s to paper %s: %s", author_id, paper_id, exc)
        return False


def enrich_paper_authors(
    paper_id: int,
    author_names: list[str] | None,
    arxiv_id: str | None = None,
    doi: str | None = None,
    loose_crossref_match: bool = False,
) -> int:
    """Resolve and link every author of one paper. Returns the number of links made."""
    if not author_names:
        LOGGER.info("Paper %s lists no authors; skipping", paper_id)
        return 0

    if not doi and arxiv_id:
        from arxiv_feed import fetch_arxiv_doi  # noqa: PLC0415

        doi = fetch_arxiv_doi(arxiv_id)
        if doi:
            try:
                store.update(store.PAPERS_TABLE, {"doi": doi}, {"id": f"eq.{paper_id}"})
            except store.StoreError as exc:
                LOGGER.error("Failed to store DOI for paper %s: %s", paper_id, exc)

    crossref_authors = fetch_crossref_authors(doi)
    linked = 0

    for order, raw_name in enumerate(author_names, start=1):
        name = sanitize_value(raw_name)
        if not name:
            LOGGER.warning("Skipping unusable author name %r on paper %s", raw_name, paper_id)
            continue

        crossref_orcid = match_crossref_orcid(name, crossref_authors, loose=loose_crossref_match)
        resolution = resolve_author(name, crossref_orcid=crossref_orcid, arxiv_id=arxiv_id, doi=doi)
        if resolution is None:
            LOGGER.error("Could not resolve author %r on paper %s", name, paper_id)
        elif link_author_to_paper(paper_id, resolution.author_id, order, name, resolution.verification_status):
            linked += 1
            if resolution.orcid_id:
                trigger_orcid_enrichment(resolution.author_id, resolution.orcid_id)

        time.sleep(AUTHOR_DELAY_SECONDS)

    return linked


def refresh_authors_view() -> None:
    """Refresh the deduplicated authors view, falling back to a blocking refresh."""
    try:
        store.rpc("execute_sql", {"sql": f"REFRESH MATERIALIZED VIEW CONCURRENTLY public.{AUTHORS_VIEW};"})
        LOGGER.info("Refreshed %s", AUTHORS_VIEW)
        return
    except store.StoreError as exc:
        LOGGER.error("Concurrent refresh of %s failed: %s", AUTHORS_VIEW, exc)

    try:
        store.rpc("execute_sql", {"sql": f"REFRESH MATERIALIZED VIEW public.{AUTHORS_VIEW};"})
        LOGGER.info("Refreshed %s without CONCURRENTLY", AUTHORS_VIEW)
    except store.StoreError as exc:
        LOGGER.error("Fallback refresh of %s failed: %s", AUTHORS_VIEW, exc)


def run_enrich_authors(limit: int | None = None) -> None:
    """Backfill authors for papers that have no `paperAuthors` rows yet."""
    offset = 0
    processed = 0
    failed = 0

    while limit is None or processed + failed < limit:
        batch_size = BATCH_SIZE if limit is None else min(BATCH_SIZE, limit - processed - failed)
        # Embedding paperAuthors and filtering it to null gives an anti-join.
        papers = store.select(
            store.PAPERS_TABLE,
            columns="id,authors,arxivId,doi,paperAuthors(paper_id)",
            filters={"paperAuthors": "is.null", "authors": "not.is.null"},
            order="publishedDate.desc",
            limit=batch_size,
            offset=offset,
        )
        if not papers:
            break

        for paper in papers:
            try:
                linked = enrich_paper_authors(
                    paper_id=paper["id"],
                    author_names=paper.get("authors"),
                    arxiv_id=paper.get("arxivId"),
                    doi=paper.get("doi"),
                )
            except Exception as exc:
                linked = 0
                LOGGER.exception("Failed processing authors for paper %s: %s", paper.get("id"), exc)

            if linked:
                processed += 1
            else:
                # Still unlinked, so it stays in the result set; step past it.
                failed += 1
                offset += 1

        LOGGER.info("Author batch done. processed=%s failed=%s", processed, failed)
        time.sleep(BATCH_DELAY_SECONDS)

    refresh_authors_view()
    LOGGER.info("Author enrichment complete. processed=%s failed=%s", processed, failed)
