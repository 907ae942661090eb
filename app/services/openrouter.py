"""Integration helpers for the OpenRouter API (primary suggestion provider)."""

from __future__ import annotations

from typing import Any

import httpx

from ..config import Settings
from .suggestions import SYSTEM_PROMPT, ChatCompletionProvider


class OpenRouterClient(ChatCompletionProvider):
    """Client responsible for talking to OpenRouter."""

    name = "openrouter"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(
            http_client,
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
        )
        self._app_name = settings.app_name

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["HTTP-Referer"] = "https://github.com/playnext/playnext"
        headers["X-Title"] = self._app_name
        return headers

    def _payload(self, prompt: str, *, max_tokens: int) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": 0.8,
            "top_p": 0.95,
            "max_output_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
