"""Supabase (PostgREST) access for the pipeline tables."""

from __future__ import annotations

import logging
import os
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import requests

LOGGER = logging.getLogger(__name__)

SUPABASE_REST_PATH = "/rest/v1"
REQUEST_TIMEOUT_SECONDS = 30
MAX_RETRIES = 3
DEFAULT_PAGE_SIZE = 1000

PAPERS_TABLE = "arxivPapersData"
AUTHORS_TABLE = "authors"
PAPER_AUTHORS_TABLE = "paperAuthors"
BATCH_JOBS_TABLE = "batch_jobs"

UNIQUE_VIOLATION = "23505"


class StoreError(RuntimeError):
    """A PostgREST request failed. `code` holds the Postgres error code when known."""

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


def iso_now() -> str:
    return datetime.now(UTC).isoformat()


def iso_ago(*, hours: float = 0, days: float = 0) -> str:
    return (datetime.now(UTC) - timedelta(hours=hours, days=days)).isoformat()


def select(
    table: str,
    *,
    columns: str = "*",
    filters: dict[str, str] | None = None,
    order: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
) -> list[dict[str, Any]]:
    """Return rows of `table` matching PostgREST `filters` (e.g. {"embedding": "is.null"}).

    `order` uses PostgREST syntax: "totalScore.desc,indexedDate.desc".
    """
    params: dict[str, str] = {"select": columns, **(filters or {})}
    if order:
        params["order"] = order
    if limit is not None:
        params["limit"] = str(limit)
    if offset:
        params["offset"] = str(offset)

    response = _request_with_backoff(method="GET", url=_table_url(table), params=params)
    return _rows(response)


def select_all(
    table: str,
    *,
    columns: str = "*",
    filters: dict[str, str] | None = None,
    order: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> list[dict[str, Any]]:
    """Page through `table` until a short page comes back."""
    rows: list[dict[str, Any]] = []
    offset = 0
    while True:
        page = select(table, columns=columns, filters=filters, order=order, limit=page_size, offset=offset)
        rows.extend(page)
        if len(page) < page_size:
            return rows
        offset += page_size


def exists(table: str, filters: dict[str, str]) -> bool:
    return bool(select(table, columns="id", filters=filters, limit=1))


def count(table: str, filters: dict[str, str] | None = None) -> int:
    """Exact row count, read from the Content-Range header ("0-0/123")."""
    response = _request_with_backoff(
        method="GET",
        url=_table_url(table),
        params={"select": "id", "limit": "1", **(filters or {})},
        prefer="count=exact",
    )
    total = response.headers.get("Content-Range", "").rpartition("/")[2]
    return int(total) if total.isdigit() else 0


def insert(table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
    response = _request_with_backoff(method="POST", url=_table_url(table), json_payload=rows)
    return _rows(response)


def update(table: str, values: dict[str, Any], filters: dict[str, str]) -> list[dict[str, Any]]:
    if not filters:
        raise ValueError("update() requires at least one filter")
    response = _request_with_backoff(
        method="PATCH",
        url=_table_url(table),
        params=filters,
        json_payload=values,
    )
    return _rows(response)


def upsert(
    table: str,
    rows: dict[str, Any] | list[dict[str, Any]],
    on_conflict: str,
) -> list[dict[str, Any]]:
    response = _request_with_backoff(
        method="POST",
        url=_table_url(table),
        params={"on_conflict": on_conflict},
        json_payload=rows,
        prefer="return=representation,resolution=merge-duplicates",
    )
    return _rows(response)


def rpc(function: str, params: dict[str, Any] | None = None) -> Any:
    """Call a Postgres function exposed through PostgREST."""
    base_url, _ = _supabase_context()
    response = _request_with_backoff(
        method="POST",
        url=f"{base_url}{SUPABASE_REST_PATH}/rpc/{function}",
        json_payload=params or {},
    )
    if response.status_code == 204 or not response.content:
        return None
    return response.json()


def _rows(response: requests.Response) -> list[dict[str, Any]]:
    if response.status_code == 204 or not response.content:
        return []
    body = response.json()
    if isinstance(body, dict):
        return [body]
    return body if isinstance(body, list) else []


def _table_url(table: str) -> str:
    base_url, _ = _supabase_context()
    return f"{base_url}{SUPABASE_REST_PATH}/{table}"


def _supabase_context() -> tuple[str, dict[str, str]]:
    base_url = os.getenv("SUPABASE_URL")
    service_key = os.getenv("SUPABASE_SERVICE_KEY")
    if not base_url:
        raise RuntimeError("SUPABASE_URL environment variable is required")
    if not service_key:
        raise RuntimeError("SUPABASE_SERVICE_KEY environment variable is required")

    headers = {
        "apikey": service_key,
        "Authorization": f"Bearer {service_key}",
        "Content-Type": "application/json",
    }
    return base_url.rstrip("/"), headers


def _request_with_backoff(
    *,
    method: str,
    url: str,
    params: dict[str, str] | None = None,
    json_payload: Any = None,
    prefer: str = "return=representation",
) -> requests.Response:
    """Send a PostgREST request, backing off on rate limits and server errors.

    Client errors other than 429 are raised immediately as StoreError.
    """
    _, headers = _supabase_context()
    headers = {**headers, "Prefer": prefer}
    delay_seconds = 1.0
    last_error: Exception | None = None

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            response = requests.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_payload,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            last_error = exc
        else:
            if response.status_code < 400:
                return response
            if response.status_code != 429 and response.status_code < 500:
                raise _store_error(response)
            last_error = _store_error(response)

        if attempt >= MAX_RETRIES:
            break
        LOGGER.warning(
            "Supabase %s %s failed on attempt %s/%s: %s",
            method,
            url,
            attempt,
            MAX_RETRIES,
            last_error,
        )
        time.sleep(delay_seconds)
        delay_seconds *= 2

    if isinstance(last_error, StoreError):
        raise StoreError(
            f"Supabase request failed after retries: {last_error}",
            code=last_error.code,
            status_code=last_error.status_code,
        )
    raise StoreError(f"Supabase request failed after retries: {last_error}")


def _store_error(response: requests.Response) -> StoreError:
    code: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        code = body.get("code")
        message = body.get("message") or response.text
    else:
        message = response.text

    return StoreError(
        f"HTTP {response.status_code}: {message}",
        code=code,
        status_code=response.status_code,
    )
