"""Turn a user's library into resolved, ranked game recommendations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Sequence, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import RecommendationCacheRecord
from ..errors import (
    CacheUnavailable,
    CatalogUnavailable,
    ResolutionMiss,
    SupersededPass,
)
from ..models import LibraryEntry, RecommendationCacheEntry, ResolvedGame, Suggestion
from ..results import Failure, Success
from ..utils import is_owned_variant, normalize_name, utcnow
from .dedup import RequestDeduplicator, RequestKey
from .fallback import FallbackSuggestionService
from .feedback import FeedbackBias, FeedbackLog
from .library import LibrarySource, compute_library_hash, owned_name_keys
from .rawg import CatalogService

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[list[ResolvedGame]], Awaitable[None] | None]

OWNED_EXCLUSION_LIMIT = 100


class EngineState(str, Enum):
    IDLE = "idle"
    COMPUTING_HASH = "computing_hash"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    REQUESTING_SUGGESTIONS = "requesting_suggestions"
    RESOLVING_CATALOG = "resolving_catalog"
    SERVING = "serving"


@dataclass(slots=True)
class ResolutionStats:
    """Running counters for catalog resolution across all passes."""

    passes: int = 0
    lookups: int = 0
    resolved: int = 0
    misses: int = 0
    failures: int = 0
    duplicates: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class RecommendationSet:
    games: list[ResolvedGame]
    library_hash: str
    from_cache: bool = False
    personalized: bool = True
    degraded: bool = False
    misses: int = 0


@dataclass(slots=True)
class _ResolutionOutcome:
    resolved: list[ResolvedGame] = field(default_factory=list)
    published: list[ResolvedGame] = field(default_factory=list)
    misses: int = 0
    degraded: bool = False
    last_error: Exception | None = None


class CancellationToken:
    """Marks a resolution pass as superseded; checked before every publish."""

    def __init__(self) -> None:
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SupersededPass("A newer recommendation pass replaced this one")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first."""

        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work.done():
            waiter.cancel()
            return work.result()
        work.cancel()
        with suppress(asyncio.CancelledError):
            await work
        raise SupersededPass("A newer recommendation pass replaced this one")


class RecommendationEngine:
    """Cache-aware recommendation passes for individual users."""

    def __init__(
        self,
        settings: Settings,
        suggestions: FallbackSuggestionService,
        catalog: CatalogService,
        library: LibrarySource,
        deduplicator: RequestDeduplicator,
        session_factory: async_sessionmaker[AsyncSession],
        feedback: FeedbackLog | None = None,
    ):
        self._settings = settings
        self._suggestions = suggestions
        self._catalog = catalog
        self._library = library
        self._deduplicator = deduplicator
        self._session_factory = session_factory
        self._feedback = feedback
        self._cache_ttl = timedelta(seconds=settings.recommendation_cache_seconds)
        self._states: dict[str, EngineState] = {}
        self._passes: dict[str, CancellationToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._invalidated: set[str] = set()
        self.stats = ResolutionStats()

    def state(self, user_id: str) -> EngineState:
        return self._states.get(user_id, EngineState.IDLE)

    def invalidate(self, user_id: str) -> None:
        """Treat the next request for ``user_id`` as a cache miss."""

        if user_id not in self._invalidated:
            logger.info("Recommendation cache for %s marked stale", user_id)
        self._invalidated.add(user_id)

    def is_invalidated(self, user_id: str) -> bool:
        return user_id in self._invalidated

    async def cached_entry(self, user_id: str) -> RecommendationCacheEntry | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(RecommendationCacheRecord, user_id)
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"Recommendation cache read failed for {user_id}") from exc
        if record is None:
            return None
        return RecommendationCacheEntry(
            user_id=record.user_id,
            library_hash=record.library_hash,
            games=[ResolvedGame.model_validate(entry) for entry in record.payload or []],
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    async def peek(self, user_id: str) -> RecommendationCacheEntry | None:
        """Return the live cache entry for the current library without any network call."""

        library = await self._library.current_library(user_id)
        return await self._fresh_entry(user_id, compute_library_hash(library))

    async def recommend(
        self,
        user_id: str,
        *,
        count: int | None = None,
        force_refresh: bool = False,
        load_more: bool = False,
        exclude_ids: Iterable[int] = (),
        exclude_names: Sequence[str] = (),
        on_progress: ProgressCallback | None = None,
    ) -> Success[RecommendationSet] | Failure:
        """Run one recommendation pass for ``user_id``.

        ``exclude_ids`` and ``exclude_names`` describe games delivered earlier in
        the same series. ``load_more`` passes skip the cache in both directions.
        Starting a pass supersedes any pass still running for the same user.
        """

        token = self._begin_pass(user_id)
        self.stats.passes += 1
        try:
            return await self._run_pass(
                user_id,
                token,
                count=count or self._settings.recommendation_count,
                force_refresh=force_refresh,
                load_more=load_more,
                exclude_ids=set(exclude_ids),
                exclude_names=list(exclude_names),
                on_progress=on_progress,
            )
        except SupersededPass as exc:
            logger.info("Recommendation pass for %s superseded", user_id)
            return Failure(exc)
        finally:
            self._end_pass(user_id, token)

    async def _run_pass(
        self,
        user_id: str,
        token: CancellationToken,
        *,
        count: int,
        force_refresh: bool,
        load_more: bool,
        exclude_ids: set[int],
        exclude_names: list[str],
        on_progress: ProgressCallback | None,
    ) -> Success[RecommendationSet] | Failure:
        self._set_state(user_id, EngineState.COMPUTING_HASH)
        library = await self._library.current_library(user_id)
        library_hash = compute_library_hash(library)

        if not library:
            return await self._popular(
                user_id, library_hash, token, count, exclude_ids, on_progress
            )

        if not force_refresh and not load_more:
            cached = await self._fresh_entry(user_id, library_hash)
            if cached is not None:
                self._set_state(user_id, EngineState.CACHE_HIT)
                logger.info("Serving cached recommendations for %s", user_id)
                self._set_state(user_id, EngineState.SERVING)
                return Success(
                    RecommendationSet(
                        games=list(cached.games), library_hash=library_hash, from_cache=True
                    )
                )

        self._set_state(user_id, EngineState.CACHE_MISS)
        bias = await self._load_bias(user_id)
        exclusions = self._build_exclusions(library, exclude_names, bias)

        self._set_state(user_id, EngineState.REQUESTING_SUGGESTIONS)
        result = await token.guard(
            self._suggestions.get_suggestions(
                library, count, exclude=exclusions, liked=bias.liked_names
            )
        )
        if isinstance(result, Failure):
            if exclude_ids:
                logger.warning(
                    "Suggestions failed for %s after earlier pages; serving nothing new: %s",
                    user_id,
                    result.error,
                )
                self._set_state(user_id, EngineState.SERVING)
                return Success(
                    RecommendationSet(games=[], library_hash=library_hash, degraded=True),
                    degraded=True,
                )
            self._set_state(user_id, EngineState.IDLE)
            return result

        suggestions = self._prioritise(result.value, bias)
        self._set_state(user_id, EngineState.RESOLVING_CATALOG)
        outcome = await self._resolve(
            user_id, suggestions, token, exclude_ids, bias, on_progress
        )

        if not outcome.published and outcome.last_error is not None and not exclude_ids:
            self._set_state(user_id, EngineState.IDLE)
            return Failure(outcome.last_error)

        if outcome.misses:
            logger.info(
                "%d of %d suggestions for %s had no catalog match",
                outcome.misses,
                len(suggestions),
                user_id,
            )
        if not load_more and not outcome.degraded:
            await self._commit(user_id, library_hash, outcome.published, token)

        self._set_state(user_id, EngineState.SERVING)
        return Success(
            RecommendationSet(
                games=outcome.published,
                library_hash=library_hash,
                degraded=outcome.degraded,
                misses=outcome.misses,
            ),
            degraded=outcome.degraded,
        )

    async def _popular(
        self,
        user_id: str,
        library_hash: str,
        token: CancellationToken,
        count: int,
        exclude_ids: set[int],
        on_progress: ProgressCallback | None,
    ) -> Success[RecommendationSet] | Failure:
        """Walk the popularity listing in fixed-size catalog pages.

        The listing position is derived from how many games the series has
        already delivered, so consecutive load-more passes continue where the
        previous one stopped regardless of the requested ``count``.
        """

        logger.info("Library for %s is empty; serving popular games", user_id)
        page_size = self._settings.recommendation_count
        first_page = len(exclude_ids) // page_size + 1
        max_pages = -(-count // page_size) + 1

        unique: list[ResolvedGame] = []
        seen = set(exclude_ids)
        degraded = False
        for page in range(first_page, first_page + max_pages):
            try:
                games = await token.guard(self._catalog.get_popular(page, page_size))
            except CatalogUnavailable as exc:
                if not unique and not exclude_ids:
                    self._set_state(user_id, EngineState.IDLE)
                    return Failure(exc)
                logger.warning("Popular listing for %s stopped early: %s", user_id, exc)
                degraded = True
                break
            for game in games:
                if game.id in seen:
                    continue
                seen.add(game.id)
                unique.append(game)
            if len(games) < page_size or len(unique) >= count:
                break

        unique = unique[:count]
        await self._publish(on_progress, unique, token)
        self._set_state(user_id, EngineState.SERVING)
        return Success(
            RecommendationSet(
                games=unique, library_hash=library_hash, personalized=False, degraded=degraded
            ),
            degraded=degraded,
        )

    async def _resolve(
        self,
        user_id: str,
        suggestions: Sequence[Suggestion],
        token: CancellationToken,
        exclude_ids: set[int],
        bias: FeedbackBias,
        on_progress: ProgressCallback | None,
    ) -> _ResolutionOutcome:
        outcome = _ResolutionOutcome()
        seen_ids = set(exclude_ids)
        batch_size = self._settings.resolution_batch_size

        for start in range(0, len(suggestions), batch_size):
            token.raise_if_cancelled()
            batch = suggestions[start : start + batch_size]
            results = await token.guard(
                asyncio.gather(
                    *(self._lookup(suggestion) for suggestion in batch),
                    return_exceptions=True,
                )
            )
            self.stats.lookups += len(batch)

            batch_failed = False
            for suggestion, result in zip(batch, results):
                if result is None or isinstance(
                    result, (ResolutionMiss, asyncio.TimeoutError, asyncio.CancelledError)
                ):
                    outcome.misses += 1
                    self.stats.misses += 1
                    logger.debug("No catalog match for %s", suggestion.name)
                    continue
                if isinstance(result, Exception):
                    batch_failed = True
                    outcome.last_error = result
                    self.stats.failures += 1
                    logger.warning("Catalog lookup for %s failed: %s", suggestion.name, result)
                    continue
                if result.id in seen_ids:
                    self.stats.duplicates += 1
                    continue
                seen_ids.add(result.id)
                self.stats.resolved += 1
                outcome.resolved.append(result.with_suggestion(suggestion))

            library = await self._library.current_library(user_id)
            outcome.published = self._demote_dismissed(
                self._exclude_owned(outcome.resolved, library), bias
            )
            await self._publish(on_progress, outcome.published, token)

            if batch_failed and (outcome.published or exclude_ids):
                outcome.degraded = True
                logger.warning(
                    "Stopping resolution for %s after a catalog failure; serving %d games",
                    user_id,
                    len(outcome.published),
                )
                break

        return outcome

    async def _lookup(self, suggestion: Suggestion) -> ResolvedGame | None:
        key = RequestKey.build("catalog/search", name=normalize_name(suggestion.name))
        return await asyncio.wait_for(
            self._deduplicator.execute(
                key, lambda: self._catalog.search_by_name(suggestion.name)
            ),
            timeout=self._settings.catalog_lookup_timeout_seconds,
        )

    @staticmethod
    def _exclude_owned(
        games: Sequence[ResolvedGame], library: Sequence[LibraryEntry]
    ) -> list[ResolvedGame]:
        owned_ids = {entry.game_id for entry in library}
        owned_names = owned_name_keys(library)
        return [
            game
            for game in games
            if game.id not in owned_ids and not is_owned_variant(game.name, owned_names)
        ]

    @staticmethod
    def _demote_dismissed(
        games: Sequence[ResolvedGame], bias: FeedbackBias
    ) -> list[ResolvedGame]:
        if not bias.dismissed_ids and not bias.dismissed_names:
            return list(games)
        return sorted(games, key=lambda game: bias.is_dismissed_game(game.id, game.name))

    @staticmethod
    def _prioritise(suggestions: Sequence[Suggestion], bias: FeedbackBias) -> list[Suggestion]:
        if not bias.dismissed_names:
            return list(suggestions)
        return sorted(suggestions, key=lambda suggestion: bias.is_dismissed(suggestion.name))

    def _build_exclusions(
        self,
        library: Sequence[LibraryEntry],
        delivered_names: Sequence[str],
        bias: FeedbackBias,
    ) -> list[str]:
        limit = self._settings.exclusion_history_limit
        recent_delivered = list(delivered_names)[-limit:] if limit else []
        owned = [entry.name for entry in library][:OWNED_EXCLUSION_LIMIT]
        exclusions: list[str] = []
        seen: set[str] = set()
        for name in [*owned, *recent_delivered, *bias.dismissed_names]:
            key = name.casefold()
            if name and key not in seen:
                seen.add(key)
                exclusions.append(name)
        return exclusions

    async def _load_bias(self, user_id: str) -> FeedbackBias:
        if self._feedback is None:
            return FeedbackBias()
        try:
            return await self._feedback.bias(
                user_id, liked_limit=self._settings.liked_history_limit
            )
        except CacheUnavailable as exc:
            logger.warning("%s; ignoring feedback for this pass", exc)
            return FeedbackBias()

    async def _fresh_entry(
        self, user_id: str, library_hash: str
    ) -> RecommendationCacheEntry | None:
        if user_id in self._invalidated:
            return None
        try:
            entry = await self.cached_entry(user_id)
        except CacheUnavailable as exc:
            logger.warning("%s; fetching fresh recommendations", exc)
            return None
        if entry is None or entry.library_hash != library_hash or entry.is_expired():
            return None
        return entry

    async def _commit(
        self,
        user_id: str,
        library_hash: str,
        games: Sequence[ResolvedGame],
        token: CancellationToken,
    ) -> None:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            token.raise_if_cancelled()
            now = utcnow()
            try:
                async with self._session_factory() as session:
                    await session.merge(
                        RecommendationCacheRecord(
                            user_id=user_id,
                            library_hash=library_hash,
                            payload=[game.model_dump(mode="json") for game in games],
                            created_at=now,
                            expires_at=now + self._cache_ttl,
                        )
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                logger.warning("Could not persist recommendations for %s: %s", user_id, exc)
                return
            self._invalidated.discard(user_id)

    async def _publish(
        self,
        on_progress: ProgressCallback | None,
        games: Sequence[ResolvedGame],
        token: CancellationToken,
    ) -> None:
        token.raise_if_cancelled()
        if on_progress is None:
            return
        outcome: Any = on_progress(list(games))
        if inspect.isawaitable(outcome):
            await outcome

    def _begin_pass(self, user_id: str) -> CancellationToken:
        previous = self._passes.get(user_id)
        if previous is not None:
            logger.info("Cancelling previous recommendation pass for %s", user_id)
            previous.cancel()
        token = CancellationToken()
        self._passes[user_id] = token
        return token

    def _end_pass(self, user_id: str, token: CancellationToken) -> None:
        if self._passes.get(user_id) is token:
            del self._passes[user_id]

    def _set_state(self, user_id: str, state: EngineState) -> None:
        self._states[user_id] = state
