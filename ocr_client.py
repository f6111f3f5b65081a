"""Mistral OCR over the REST API."""

from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests

LOGGER = logging.getLogger(__name__)

MISTRAL_OCR_URL = "https://api.mistral.ai/v1/ocr"
MISTRAL_OCR_MODEL = os.getenv("MISTRAL_OCR_MODEL", "mistral-ocr-latest")
DEFAULT_TIMEOUT_SECONDS = 90
MAX_RETRIES = 2


def ocr_document(
    document_url: str,
    *,
    include_images: bool = False,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[dict[str, Any]]:
    """OCR a remote PDF and return its pages (`index`, `markdown`, optional `tables`).

    Raises RuntimeError if the request keeps failing.
    """
    api_key = os.getenv("MISTRAL_API_KEY")
    if not api_key:
        raise RuntimeError("MISTRAL_API_KEY environment variable is required")

    payload = {
        "model": MISTRAL_OCR_MODEL,
        "document": {"type": "document_url", "document_url": document_url},
        "include_image_base64": include_images,
    }
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    delay_seconds = 2.0
    last_error: Exception | None = None

    for attempt in range(1, MAX_RETRIES + 1):
        try:
            response = requests.post(MISTRAL_OCR_URL, headers=headers, json=payload, timeout=timeout)
            response.raise_for_status()
            pages = response.json().get("pages") or []
            LOGGER.info("OCR complete for %s: %s pages", document_url, len(pages))
            return [page for page in pages if isinstance(page, dict)]
        except requests.RequestException as exc:
            last_error = exc
            LOGGER.warning("OCR attempt %s/%s failed for %s: %s", attempt, MAX_RETRIES, document_url, exc)
            if attempt < MAX_RETRIES:
                time.sleep(delay_seconds)
                delay_seconds *= 2

    raise RuntimeError(f"Mistral OCR failed for {document_url}: {last_error}")
