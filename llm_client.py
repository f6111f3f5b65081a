"""OpenAI client helpers: embeddings, short chat completions, JSON parsing."""

from __future__ import annotations

import json
import logging
import os
from json import JSONDecodeError
from typing import Any

from openai import OpenAI

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.3"))
EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-ada-002")
MAX_ATTEMPTS = 2

LOGGER = logging.getLogger(__name__)


def get_client() -> OpenAI:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY environment variable is required")
    return OpenAI(api_key=api_key)


def create_embedding(text: str, client: OpenAI | None = None) -> list[float]:
    """Embed `text` and return the vector."""
    client = client or get_client()
    response = client.embeddings.create(model=EMBEDDING_MODEL, input=text)
    return list(response.data[0].embedding)


def chat_completion(prompt: str, max_tokens: int = 150, client: OpenAI | None = None) -> str:
    """Single-turn completion with a small number of retries.

    Raises RuntimeError when every attempt fails or returns nothing.
    """
    client = client or get_client()
    last_error: Exception | None = None

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            response = client.chat.completions.create(
                model=OPENAI_MODEL,
                temperature=OPENAI_TEMPERATURE,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
            content = response.choices[0].message.content
            if not content:
                raise RuntimeError("OpenAI returned an empty response")
            return content.strip()
        except Exception as exc:
            last_error = exc
            LOGGER.warning("OpenAI completion failed on attempt %s/%s: %s", attempt, MAX_ATTEMPTS, exc)

    raise RuntimeError(f"OpenAI completion failed: {last_error}")


def parse_json_value(content: str, expected: type = dict) -> Any:
    """Parse possibly noisy model output into a JSON object or array."""
    try:
        parsed = json.loads(content)
    except JSONDecodeError:
        parsed = _extract_first_json_value(content, expected)

    if not isinstance(parsed, expected):
        raise RuntimeError(f"Expected JSON {expected.__name__} from model output")
    return parsed


def _extract_first_json_value(content: str, expected: type) -> Any:
    """Extract the first decodable JSON value of the expected type from a string."""
    opener = "[" if expected is list else "{"
    decoder = json.JSONDecoder()
    for index, char in enumerate(content):
        if char != opener:
            continue
        try:
            candidate, _ = decoder.raw_decode(content[index:])
        except JSONDecodeError:
            continue
        if isinstance(candidate, expected):
            return candidate
    raise RuntimeError("Could not extract valid JSON from model output")
