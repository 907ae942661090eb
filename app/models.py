"""Pydantic models describing library entries, suggestions and pages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import normalize_name, slugify, utcnow


class GameStatus(str, Enum):
    PLAYING = "playing"
    FINISHED = "finished"
    DROPPED = "dropped"
    WANT = "want"
    ON_HOLD = "on_hold"


class LibraryEntry(BaseModel):
    """A game the user owns or tracks."""

    model_config = ConfigDict(populate_by_name=True)

    game_id: int = Field(validation_alias=AliasChoices("game_id", "gameId", "rawgId", "id"))
    name: str
    status: GameStatus = GameStatus.WANT
    rating: float | None = Field(default=None, ge=0, le=10)
    hours_played: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("hours_played", "hoursPlayed")
    )
    genres: list[str] = Field(default_factory=list)
    developers: list[str] = Field(default_factory=list)

    def fingerprint(self) -> str:
        """Identity, rating and status; the only fields the snapshot hash covers."""

        rating = "" if self.rating is None else f"{self.rating:g}"
        return f"{self.game_id}_{rating}_{self.status.value}"


class SuggestionTier(str, Enum):
    PERFECT = "perfect"
    STRONG = "strong"
    GOOD = "good"
    DEFAULT = "default"

    @classmethod
    def from_confidence(cls, confidence: int) -> "SuggestionTier":
        if confidence >= 90:
            return cls.PERFECT
        if confidence >= 75:
            return cls.STRONG
        if confidence >= 60:
            return cls.GOOD
        return cls.DEFAULT


TIER_SCORES: dict[str, int] = {
    "perfect": 95,
    "strong": 82,
    "good": 68,
    "decent": 55,
}
DEFAULT_TIER_SCORE = 50


class Suggestion(BaseModel):
    """A ranked game name produced by an AI provider."""

    name: str
    confidence: int = Field(default=DEFAULT_TIER_SCORE, ge=0, le=100)
    tier: SuggestionTier = SuggestionTier.DEFAULT
    reason: str = ""

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Suggestion name must not be blank")
        return cleaned

    @classmethod
    def scored(cls, name: str, confidence: int, reason: str = "") -> "Suggestion":
        confidence = max(0, min(100, int(confidence)))
        return cls(
            name=name,
            confidence=confidence,
            tier=SuggestionTier.from_confidence(confidence),
            reason=reason,
        )

    @classmethod
    def from_tier_label(cls, name: str, label: str | None, reason: str = "") -> "Suggestion":
        key = (label or "").strip().lower().removesuffix("_match")
        score = TIER_SCORES.get(key, DEFAULT_TIER_SCORE)
        return cls.scored(name, score, reason)


def rank_suggestions(suggestions: Sequence[Suggestion]) -> list[Suggestion]:
    """Order by confidence descending; ``sorted`` is stable so ties keep provider order."""

    return sorted(suggestions, key=lambda suggestion: -suggestion.confidence)


class ResolvedGame(BaseModel):
    """A catalog entry matched to a suggestion."""

    id: int
    name: str
    slug: str | None = None
    released: str | None = None
    background_image: str | None = None
    rating: float | None = None
    metacritic: int | None = None
    genres: list[str] = Field(default_factory=list)
    developers: list[str] = Field(default_factory=list)
    confidence: int | None = None
    tier: SuggestionTier | None = None
    reason: str | None = None

    @classmethod
    def from_catalog_payload(cls, data: dict[str, object]) -> "ResolvedGame":
        name = str(data.get("name") or "").strip()
        genres = [
            str(entry.get("name"))
            for entry in data.get("genres") or []
            if isinstance(entry, dict) and entry.get("name")
        ]
        developers = [
            str(entry.get("name"))
            for entry in data.get("developers") or []
            if isinstance(entry, dict) and entry.get("name")
        ]
        return cls(
            id=int(data["id"]),  # type: ignore[arg-type]
            name=name,
            slug=str(data.get("slug") or slugify(name)),
            released=data.get("released") or None,  # type: ignore[arg-type]
            background_image=data.get("background_image") or None,  # type: ignore[arg-type]
            rating=data.get("rating"),  # type: ignore[arg-type]
            metacritic=data.get("metacritic"),  # type: ignore[arg-type]
            genres=genres,
            developers=developers,
        )

    def with_suggestion(self, suggestion: Suggestion) -> "ResolvedGame":
        return self.model_copy(
            update={
                "confidence": suggestion.confidence,
                "tier": suggestion.tier,
                "reason": suggestion.reason or None,
            }
        )


class Page(BaseModel):
    """One page of a recommendation series."""

    page_index: int = Field(ge=1)
    items: list[ResolvedGame] = Field(default_factory=list)
    token: str
    next_token: str | None = None
    generation: int = 0
    stale: bool = False
    end_reached: bool = False
    personalized: bool = True

    @property
    def item_ids(self) -> list[int]:
        return [game.id for game in self.items]


class FeedbackAction(str, Enum):
    ADDED = "added"
    DISMISSED = "dismissed"
    IGNORED = "ignored"


class FeedbackRecord(BaseModel):
    user_id: str
    game_id: int
    game_name: str | None = None
    action: FeedbackAction
    timestamp: datetime = Field(default_factory=utcnow)


class FeedbackSummary(BaseModel):
    total: int = 0
    added: int = 0
    dismissed: int = 0
    ignored: int = 0

    @property
    def conversion_rate(self) -> float:
        if not self.total:
            return 0.0
        return self.added / self.total


class ExpansionSource(str, Enum):
    STATIC = "static"
    PERSISTED = "persisted"
    LIVE = "live"


class StudioExpansionEntry(BaseModel):
    parent_name: str
    subsidiaries: set[str] = Field(default_factory=set)
    source: ExpansionSource
    expires_at: datetime | None = None

    @classmethod
    def build(
        cls,
        parent_name: str,
        subsidiaries: Sequence[str],
        *,
        source: ExpansionSource,
        expires_at: datetime | None = None,
    ) -> "StudioExpansionEntry":
        parent_key = normalize_name(parent_name)
        cleaned = {
            name.strip()
            for name in subsidiaries
            if name and name.strip() and normalize_name(name) != parent_key
        }
        return cls(
            parent_name=parent_name,
            subsidiaries=cleaned,
            source=source,
            expires_at=expires_at,
        )


class RecommendationCacheEntry(BaseModel):
    user_id: str
    library_hash: str
    games: list[ResolvedGame] = Field(default_factory=list)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at
