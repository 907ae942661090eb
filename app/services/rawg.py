"""Catalog lookups against the RAWG video game database."""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx

from ..config import Settings
from ..errors import CatalogUnavailable, ResolutionMiss
from ..models import ResolvedGame
from ..utils import normalize_name

logger = logging.getLogger(__name__)

REACHABILITY_TTL_SECONDS = 30.0


class CatalogService(Protocol):
    async def search_by_name(self, name: str) -> ResolvedGame | None: ...

    async def get_by_id(self, game_id: int) -> ResolvedGame: ...

    async def get_popular(self, page: int, size: int) -> list[ResolvedGame]: ...


class RAWGClient:
    """Client responsible for searching RAWG for games."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._reachable: tuple[float, bool] | None = None

    def _params(self, **extra: Any) -> dict[str, Any]:
        params = {key: value for key, value in extra.items() if value is not None}
        if self._settings.rawg_api_key:
            params["key"] = self._settings.rawg_api_key
        return params

    async def _get(self, endpoint: str, **params: Any) -> httpx.Response:
        try:
            response = await self._client.get(endpoint, params=self._params(**params))
        except httpx.HTTPError as exc:
            raise CatalogUnavailable(f"RAWG request to {endpoint} failed: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise CatalogUnavailable(
                f"RAWG request to {endpoint} failed with {response.status_code}"
            )
        return response

    async def search_by_name(self, name: str) -> ResolvedGame | None:
        """Return the best search match for ``name`` or ``None``."""

        query = name.strip()
        if not query:
            return None
        response = await self._get(
            "/games", search=query, search_precise="true", page_size=5
        )
        if response.status_code >= 400:
            logger.warning("RAWG search for %s failed: %s", query, response.text)
            return None
        results = response.json().get("results") or []

        normalized = normalize_name(query)
        best_match: dict[str, Any] | None = None
        for candidate in results:
            candidate_name = candidate.get("name")
            if not candidate_name or candidate.get("id") is None:
                continue
            if normalize_name(candidate_name) == normalized:
                best_match = candidate
                break
            if best_match is None:
                best_match = candidate

        if best_match is None:
            return None
        return ResolvedGame.from_catalog_payload(best_match)

    async def get_by_id(self, game_id: int) -> ResolvedGame:
        response = await self._get(f"/games/{game_id}")
        if response.status_code == 404:
            raise ResolutionMiss(f"RAWG has no game with id {game_id}")
        if response.status_code >= 400:
            raise CatalogUnavailable(
                f"RAWG lookup for {game_id} failed with {response.status_code}"
            )
        return ResolvedGame.from_catalog_payload(response.json())

    async def get_popular(self, page: int, size: int) -> list[ResolvedGame]:
        response = await self._get(
            "/games", ordering="-added", page=max(1, page), page_size=size
        )
        if response.status_code >= 400:
            raise CatalogUnavailable(f"RAWG popular listing failed: {response.text}")
        return [
            ResolvedGame.from_catalog_payload(entry)
            for entry in response.json().get("results") or []
            if entry.get("id") is not None and entry.get("name")
        ]

    async def is_reachable(self) -> bool:
        """Cheap connectivity probe, cached for a short period."""

        now = time.monotonic()
        if self._reachable and now - self._reachable[0] < REACHABILITY_TTL_SECONDS:
            return self._reachable[1]
        try:
            response = await self._client.get(
                "/genres", params=self._params(page_size=1), timeout=5.0
            )
            reachable = response.status_code < 500
        except httpx.HTTPError:
            reachable = False
        self._reachable = (now, reachable)
        return reachable
