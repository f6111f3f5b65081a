"""Sync the Replicate public model catalog into `replicateModelsData`."""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Any

import requests

import store

LOGGER = logging.getLogger(__name__)

REPLICATE_MODELS_URL = "https://api.replicate.com/v1/models"
REPLICATE_MODELS_TABLE = "replicateModelsData"
REQUEST_TIMEOUT_SECONDS = 30


def model_values(model: dict[str, Any], today: str) -> dict[str, Any]:
    """Columns refreshed on every sync."""
    return {
        "tags": "",
        "runs": model.get("run_count") or 0,
        "lastUpdated": today,
        "description": model.get("description"),
        "demoSources": [],
        "modelUrl": model.get("url"),
        "githubUrl": model.get("github_url"),
        "paperUrl": model.get("paper_url"),
        "licenseUrl": model.get("license_url"),
        "indexedDate": today,
    }


def upsert_model(model: dict[str, Any], today: str) -> str:
    """Update the existing row for owner/name or insert a new one. Returns "updated" or "inserted"."""
    key = {"creator": f"eq.{model['owner']}", "modelName": f"eq.{model['name']}"}
    existing = store.select(REPLICATE_MODELS_TABLE, columns="id", filters=key, limit=1)
    values = model_values(model, today)

    if existing:
        store.update(REPLICATE_MODELS_TABLE, values, {"id": f"eq.{existing[0]['id']}"})
        return "updated"

    store.insert(
        REPLICATE_MODELS_TABLE,
        {
            **values,
            "creator": model["owner"],
            "modelName": model["name"],
            "platform": "replicate",
            "example": model.get("cover_image_url"),
        },
    )
    return "inserted"


def run_replicate_models(limit: int | None = None) -> None:
    api_token = os.getenv("REPLICATE_API_TOKEN")
    if not api_token:
        raise RuntimeError("REPLICATE_API_TOKEN environment variable is required")

    headers = {"Authorization": f"Token {api_token}"}
    url: str | None = REPLICATE_MODELS_URL
    today = datetime.now(UTC).date().isoformat()
    counts = {"inserted": 0, "updated": 0, "failed": 0}
    seen = 0

    while url:
        try:
            response = requests.get(url, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            LOGGER.error("Failed to fetch Replicate models: %s", exc)
            break

        for model in payload.get("results") or []:
            if limit is not None and seen >= limit:
                break
            seen += 1
            try:
                counts[upsert_model(model, today)] += 1
            except (KeyError, store.StoreError) as exc:
                counts["failed"] += 1
                LOGGER.error("Failed to sync model %s/%s: %s", model.get("owner"), model.get("name"), exc)

        url = payload.get("next")
        if limit is not None and seen >= limit:
            break

    LOGGER.info(
        "Replicate models complete. inserted=%s updated=%s failed=%s",
        counts["inserted"],
        counts["updated"],
        counts["failed"],
    )
