"""Integration helpers for the OpenAI API (secondary suggestion provider).

This client shares the request/response handling of OpenRouterClient so the
fallback service can swap providers without branching call sites.
"""

from __future__ import annotations

from typing import Any

import httpx

from ..config import Settings
from .suggestions import ChatCompletionProvider


class OpenAIClient(ChatCompletionProvider):
    """Client responsible for talking to OpenAI's /chat/completions endpoint."""

    name = "openai"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(
            http_client,
            api_key=settings.openai_api_key,
            model=settings.openai_model,
        )

    def _payload(self, prompt: str, *, max_tokens: int) -> dict[str, Any]:
        payload = super()._payload(prompt, max_tokens=max_tokens)
        payload["response_format"] = {"type": "json_object"}
        return payload
