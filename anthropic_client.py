"""Thin wrapper around the Anthropic Messages and Message Batches APIs."""

from __future__ import annotations

import logging
import os
from typing import Any

import anthropic

LOGGER = logging.getLogger(__name__)

BATCH_MODEL = os.getenv("CLAUDE_BATCH_MODEL", "claude-3-7-sonnet-20250219")
CHAT_MODEL = os.getenv("CLAUDE_MODEL", "claude-3-7-sonnet-20250219")
# Extended output is only offered for the 3.7 Sonnet family.
OUTPUT_128K_BETA = "output-128k-2025-02-19"


def get_client() -> anthropic.Anthropic:
    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        raise RuntimeError("ANTHROPIC_API_KEY environment variable is required")
    return anthropic.Anthropic(api_key=api_key)


def message_params(user: str, max_tokens: int, system: str | None = None, model: str | None = None) -> dict[str, Any]:
    """Messages API arguments for a single-turn prompt, shared by live calls and batch entries."""
    params: dict[str, Any] = {
        "model": model or BATCH_MODEL,
        "max_tokens": max_tokens,
        "messages": [{"role": "user", "content": user}],
    }
    if system:
        params["system"] = system
    return params


def claude_complete(prompt: str, max_tokens: int = 1024, system: str | None = None) -> str:
    """Run one prompt synchronously and return the reply's text blocks joined together."""
    params = message_params(prompt, max_tokens, system=system, model=CHAT_MODEL)
    LOGGER.debug("Calling Claude model=%s max_tokens=%s", CHAT_MODEL, max_tokens)
    response = get_client().messages.create(**params)
    return "".join(block.text for block in response.content if block.type == "text").strip()


def batch_request(custom_id: str, system: str, user: str, max_tokens: int) -> dict[str, Any]:
    """Build one entry for `messages.batches.create(requests=[...])`."""
    return {"custom_id": custom_id, "params": message_params(user, max_tokens, system=system)}


def create_batch(client: anthropic.Anthropic, requests: list[dict[str, Any]]) -> Any:
    """Submit a batch, opting into extended output for models that support it."""
    if BATCH_MODEL.startswith("claude-3-7-sonnet"):
        return client.beta.messages.batches.create(requests=requests, betas=[OUTPUT_128K_BETA])
    return client.messages.batches.create(requests=requests)
