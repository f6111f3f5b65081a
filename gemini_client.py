"""Google Gemini text generation."""

from __future__ import annotations

import logging
import os

from google import genai
from google.genai import types

LOGGER = logging.getLogger(__name__)

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")


def gemini_generate(prompt: str, max_output_tokens: int = 4000, temperature: float | None = None) -> str:
    """Generate text for a single user prompt and return it stripped."""
    api_key = os.getenv("GEMINI_API_KEY")
    if not api_key:
        raise RuntimeError("GEMINI_API_KEY environment variable is required")

    client = genai.Client(api_key=api_key)
    config = types.GenerateContentConfig(max_output_tokens=max_output_tokens, temperature=temperature)

    LOGGER.debug("Calling Gemini model=%s max_output_tokens=%s", GEMINI_MODEL, max_output_tokens)
    response = client.models.generate_content(model=GEMINI_MODEL, contents=prompt, config=config)
    return (response.text or "").strip()
