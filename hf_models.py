"""Index new Hugging Face models into `huggingFaceModelsData`."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import requests

import store

LOGGER = logging.getLogger(__name__)

HF_MODELS_API_URL = "https://huggingface.co/api/models"
HF_MODELS_TABLE = "huggingFaceModelsData"
REQUEST_TIMEOUT_SECONDS = 20
DEFAULT_CREATOR = "huggingface"


def split_model_id(model_id: str) -> tuple[str, str]:
    """'org/name' -> ('org', 'name'); a bare 'name' belongs to the huggingface namespace."""
    creator, _, name = model_id.partition("/")
    if not name:
        return DEFAULT_CREATOR, creator
    return creator, name


def model_url(creator: str, name: str) -> str:
    if creator == DEFAULT_CREATOR:
        return f"{HF_MODELS_API_URL}/{name}"
    return f"{HF_MODELS_API_URL}/{creator}/{name}"


def fetch_model_page(url: str) -> tuple[list[dict[str, Any]], str | None]:
    """One page of models plus the `Link: rel=next` URL, if any."""
    response = requests.get(url, timeout=REQUEST_TIMEOUT_SECONDS)
    response.raise_for_status()
    payload = response.json()
    next_url = response.links.get("next", {}).get("url")
    return (payload if isinstance(payload, list) else []), next_url


def build_model_row(model: dict[str, Any], today: str) -> dict[str, Any]:
    creator, name = split_model_id(model["id"])
    return {
        "creator": creator,
        "modelName": name,
        "tags": "",
        "runs": model.get("downloads") or 0,
        "lastUpdated": today,
        "platform": "huggingFace",
        "description": "",
        "demoSources": [],
        "modelUrl": model_url(creator, name),
        "indexedDate": today,
    }


def run_hf_models(limit: int | None = None) -> None:
    """Walk the model listing and insert models not yet indexed. `limit` caps insertions."""
    url: str | None = HF_MODELS_API_URL
    today = datetime.now(UTC).date().isoformat()
    inserted = 0
    skipped = 0
    failed = 0

    while url:
        try:
            models, url = fetch_model_page(url)
        except requests.RequestException as exc:
            LOGGER.error("Failed to fetch Hugging Face models page: %s", exc)
            break

        for model in models:
            if not model.get("id"):
                continue
            row = build_model_row(model, today)
            try:
                if store.exists(
                    HF_MODELS_TABLE,
                    {"creator": f"eq.{row['creator']}", "modelName": f"eq.{row['modelName']}"},
                ):
                    skipped += 1
                    continue
                store.insert(HF_MODELS_TABLE, row)
                inserted += 1
            except store.StoreError as exc:
                failed += 1
                LOGGER.error("Failed to insert model %s: %s", model["id"], exc)

            if limit is not None and inserted >= limit:
                url = None
                break

    LOGGER.info("HF models complete. inserted=%s skipped=%s failed=%s", inserted, skipped, failed)
