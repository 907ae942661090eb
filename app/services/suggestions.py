"""Shared prompt building and response parsing for AI suggestion providers."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Protocol, Sequence

import httpx

from ..errors import (
    MalformedResponseError,
    NetworkError,
    ProviderError,
    RateLimited,
    classify_provider_error,
)
from ..models import (
    DEFAULT_TIER_SCORE,
    GameStatus,
    LibraryEntry,
    Suggestion,
    rank_suggestions,
)
from ..utils import extract_json_object, normalize_name

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are PlayNext, a game recommendation assistant with encyclopedic knowledge of "
    "video games. You always respond with a single JSON object that matches the "
    "documented schema and never include commentary outside JSON."
)

LIBRARY_REQUEST_TEMPLATE = """
Recommend games for a player based on their library.

Library snapshot ({library_size} games):
- Favourites (rated 8+): {favourites}
- Currently playing: {playing}
- Finished: {finished}
- Dropped (avoid similar experiences): {dropped}
- Top genres: {genres}
- Favourite developers: {developers}
{liked_block}
Rules:
1. Recommend EXACTLY {count} released games the player does not own.
2. Never suggest anything from this list: {exclude}
3. Use exact official titles as listed on RAWG.
4. Rate each pick with a tier: PERFECT, STRONG, GOOD or DECENT.
5. Keep "why" to one short sentence.

Respond strictly with JSON following this structure:
{{
  "games": [
    {{"name": "Title", "tier": "STRONG", "why": "short sentence"}}
  ]
}}
"""

STUDIO_REQUEST_TEMPLATE = """
List the game development studios and labels owned by or operating under "{parent}".
Use names as they appear on RAWG. Do not include "{parent}" itself.

Respond strictly with JSON: {{"studios": ["Studio A", "Studio B"]}}
"""

REASON_WEIGHTS: dict[str, int] = {
    "FAVORITE_DEV": 30,
    "SAME_DEV": 20,
    "GENRE_MATCH": 15,
    "ASPECT_MATCH": 12,
    "HIGH_METACRITIC": 10,
    "SERIES_RELATED": 15,
    "SIMILAR_GAMEPLAY": 12,
    "SPIRITUAL_SUCCESSOR": 25,
    "CULT_CLASSIC": 8,
    "INDIE_GEM": 8,
    "RECENT_RELEASE": 5,
    "CLASSIC": 5,
}


class SuggestionProvider(Protocol):
    """Capability shared by every AI suggestion provider."""

    name: str

    async def suggest(
        self,
        library: Sequence[LibraryEntry],
        count: int,
        *,
        exclude: Sequence[str] = (),
        liked: Sequence[str] = (),
    ) -> list[Suggestion]: ...

    async def expand_studio(self, parent_name: str) -> list[str]: ...


def _join(values: Sequence[str], *, limit: int, empty: str = "none") -> str:
    picked = [value for value in values if value][:limit]
    return ", ".join(picked) if picked else empty


def build_library_prompt(
    library: Sequence[LibraryEntry],
    count: int,
    *,
    exclude: Sequence[str] = (),
    liked: Sequence[str] = (),
) -> str:
    """Render the recommendation request for a library snapshot."""

    by_rating = sorted(
        (entry for entry in library if entry.rating is not None and entry.rating >= 8),
        key=lambda entry: entry.rating or 0,
        reverse=True,
    )
    genre_counts = Counter(genre for entry in library for genre in entry.genres)
    developer_counts = Counter(
        developer
        for entry in library
        if entry.rating is None or entry.rating >= 7
        for developer in entry.developers
    )

    def names(status: GameStatus) -> list[str]:
        return [entry.name for entry in library if entry.status == status]

    liked_block = ""
    if liked:
        liked_block = (
            "- Earlier recommendations they added to their library: "
            f"{_join(list(liked), limit=20)}\n"
        )

    return LIBRARY_REQUEST_TEMPLATE.format(
        library_size=len(library),
        favourites=_join([entry.name for entry in by_rating], limit=15),
        playing=_join(names(GameStatus.PLAYING), limit=10),
        finished=_join(names(GameStatus.FINISHED), limit=15),
        dropped=_join(names(GameStatus.DROPPED), limit=10),
        genres=_join([genre for genre, _ in genre_counts.most_common(5)], limit=5),
        developers=_join([dev for dev, _ in developer_counts.most_common(5)], limit=5),
        liked_block=liked_block,
        count=count,
        exclude=_join(list(exclude), limit=200),
    ).strip()


def build_studio_prompt(parent_name: str) -> str:
    return STUDIO_REQUEST_TEMPLATE.format(parent=parent_name.strip()).strip()


def _parse_entry(entry: Any, position: int) -> Suggestion | None:
    if isinstance(entry, str):
        # Bare names carry only their order; rank them just under the default score.
        name = entry.strip()
        return Suggestion.scored(name, max(1, DEFAULT_TIER_SCORE - position)) if name else None
    if not isinstance(entry, dict):
        return None

    name = str(entry.get("name") or entry.get("title") or "").strip()
    if not name:
        return None
    reason = str(entry.get("why") or entry.get("reason") or "").strip()

    tier = entry.get("tier")
    if isinstance(tier, str) and tier.strip():
        return Suggestion.from_tier_label(name, tier, reason)

    reasons = entry.get("reasons")
    if isinstance(reasons, list):
        weights = [
            REASON_WEIGHTS[label.strip().upper()]
            for label in reasons
            if isinstance(label, str) and label.strip().upper() in REASON_WEIGHTS
        ]
        if weights:
            return Suggestion.scored(name, max(1, min(100, sum(weights))), reason)

    confidence = entry.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        return Suggestion.scored(name, max(1, min(100, int(confidence))), reason)

    return Suggestion.scored(name, DEFAULT_TIER_SCORE, reason)


def parse_suggestions(content: str) -> list[Suggestion]:
    """Parse a model response into ranked suggestions.

    Accepts, per entry, the tier format (``tier`` + ``why``), the weighted
    ``reasons`` format, a numeric ``confidence`` and plain name strings.
    Raises :class:`ValueError` when no JSON payload can be found.
    """

    payload = extract_json_object(content)
    if isinstance(payload, dict):
        entries = payload.get("games") or payload.get("recommendations") or []
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError("Model response is not a JSON object or array")
    if not isinstance(entries, list):
        raise ValueError("Model response 'games' is not a list")

    seen: set[str] = set()
    suggestions: list[Suggestion] = []
    for position, entry in enumerate(entries):
        suggestion = _parse_entry(entry, position)
        if suggestion is None:
            continue
        key = normalize_name(suggestion.name)
        if key in seen:
            continue
        seen.add(key)
        suggestions.append(suggestion)
    return rank_suggestions(suggestions)


def parse_studios(content: str) -> list[str]:
    payload = extract_json_object(content)
    if isinstance(payload, dict):
        entries = payload.get("studios") or payload.get("subsidiaries") or []
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError("Model response is not a JSON object or array")
    if not isinstance(entries, list):
        raise ValueError("Model response 'studios' is not a list")
    return [str(entry).strip() for entry in entries if isinstance(entry, str) and entry.strip()]


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class ChatCompletionProvider:
    """Base client for OpenAI-compatible ``/chat/completions`` endpoints."""

    name = "chat"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_key: str | None,
        model: str,
    ):
        self._client = http_client
        self._api_key = api_key
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, prompt: str, *, max_tokens: int) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": 0.7,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }

    @staticmethod
    def _estimate_token_budget(count: int) -> int:
        return min(4_096, 256 + count * 90)

    async def _complete(self, prompt: str, *, max_tokens: int) -> str:
        if not self._api_key:
            raise ProviderError(f"{self.name} API key is not configured", provider=self.name)

        try:
            response = await self._client.post(
                "/chat/completions",
                json=self._payload(prompt, max_tokens=max_tokens),
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            raise classify_provider_error(exc, provider=self.name) from exc

        if response.status_code == 429:
            raise RateLimited(
                response.text or "Rate limit exceeded",
                provider=self.name,
                retry_after=_retry_after(response),
            )
        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.text}", provider=self.name
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Response body is not JSON", provider=self.name) from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise MalformedResponseError("Model returned no choices", provider=self.name)
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError("Model response missing content", provider=self.name)
        return content

    async def suggest(
        self,
        library: Sequence[LibraryEntry],
        count: int,
        *,
        exclude: Sequence[str] = (),
        liked: Sequence[str] = (),
    ) -> list[Suggestion]:
        prompt = build_library_prompt(library, count, exclude=exclude, liked=liked)
        content = await self._complete(prompt, max_tokens=self._estimate_token_budget(count))
        try:
            suggestions = parse_suggestions(content)
        except ValueError as exc:
            raise MalformedResponseError(str(exc), provider=self.name) from exc
        if not suggestions:
            raise MalformedResponseError("Model returned no suggestions", provider=self.name)
        logger.info(
            "%s returned %d suggestions via %s", self.name, len(suggestions), self._model
        )
        return suggestions[:count]

    async def expand_studio(self, parent_name: str) -> list[str]:
        content = await self._complete(build_studio_prompt(parent_name), max_tokens=512)
        try:
            return parse_studios(content)
        except ValueError as exc:
            raise MalformedResponseError(str(exc), provider=self.name) from exc
