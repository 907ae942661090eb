"""Paged, persisted view over the recommendation engine."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import RecommendationPageRecord
from ..errors import (
    CacheUnavailable,
    InvalidPageToken,
    OfflineUnavailable,
    StalePageToken,
    SupersededPass,
)
from ..models import FeedbackAction, FeedbackRecord, FeedbackSummary, Page, ResolvedGame
from ..results import Failure, Success
from .dedup import RequestDeduplicator, RequestKey
from .feedback import FeedbackLog
from .recommendation_engine import ProgressCallback, RecommendationEngine

logger = logging.getLogger(__name__)

DEFAULT_SERIES = "discover"
PAGE_TOKEN_RE = re.compile(r"^g(\d+)p(\d+)$")

Connectivity = Callable[[], Awaitable[bool]]


def encode_page_token(generation: int, page_index: int) -> str:
    return f"g{generation}p{page_index}"


def decode_page_token(token: str) -> tuple[int, int]:
    match = PAGE_TOKEN_RE.match(token.strip())
    if not match:
        raise InvalidPageToken(f"Malformed page token {token!r}")
    generation, page_index = int(match.group(1)), int(match.group(2))
    if page_index < 1:
        raise InvalidPageToken(f"Malformed page token {token!r}")
    return generation, page_index


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only projection of a user's paging state."""

    user_id: str
    series: str
    generation: int
    page_count: int
    delivered_ids: frozenset[int]
    end_reached: bool
    next_token: str | None


@dataclass(slots=True)
class RecommendationSession:
    """Mutable paging state for one user and series, owned by the store."""

    user_id: str
    series: str
    generation: int = 0
    pages: list[Page] = field(default_factory=list)
    loaded: bool = False

    @property
    def next_page_index(self) -> int:
        return len(self.pages) + 1

    @property
    def end_reached(self) -> bool:
        return bool(self.pages) and self.pages[-1].end_reached

    @property
    def delivered_ids(self) -> set[int]:
        return {game.id for page in self.pages for game in page.items}

    @property
    def delivered_names(self) -> list[str]:
        return [game.name for page in self.pages for game in page.items]

    def page(self, page_index: int) -> Page | None:
        if 1 <= page_index <= len(self.pages):
            return self.pages[page_index - 1]
        return None

    def snapshot(self) -> SessionSnapshot:
        next_token = None
        if not self.end_reached:
            next_token = encode_page_token(self.generation, self.next_page_index)
        return SessionSnapshot(
            user_id=self.user_id,
            series=self.series,
            generation=self.generation,
            page_count=len(self.pages),
            delivered_ids=frozenset(self.delivered_ids),
            end_reached=self.end_reached,
            next_token=next_token,
        )


class RecommendationStore:
    """Serve engine output as disjoint, replayable pages."""

    def __init__(
        self,
        settings: Settings,
        engine: RecommendationEngine,
        session_factory: async_sessionmaker[AsyncSession],
        deduplicator: RequestDeduplicator,
        feedback: FeedbackLog,
        *,
        connectivity: Connectivity | None = None,
    ):
        self._settings = settings
        self._engine = engine
        self._session_factory = session_factory
        self._deduplicator = deduplicator
        self._feedback = feedback
        self._connectivity = connectivity
        self._sessions: dict[tuple[str, str], RecommendationSession] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def get_page(
        self,
        user_id: str,
        page_token: str | None = None,
        *,
        series: str = DEFAULT_SERIES,
        on_progress: ProgressCallback | None = None,
    ) -> Success[Page] | Failure:
        """Return the page addressed by ``page_token`` (the first page when ``None``).

        Raises :class:`StalePageToken` for tokens of an older generation and
        :class:`InvalidPageToken` for tokens that are malformed or skip ahead.
        """

        session = await self._session(user_id, series)
        if page_token is None:
            generation, page_index = session.generation, 1
        else:
            generation, page_index = decode_page_token(page_token)
            if generation != session.generation:
                raise StalePageToken(
                    f"Page token generation {generation} is older than {session.generation}"
                )
        if page_index > session.next_page_index or (
            page_index == session.next_page_index and session.end_reached
        ):
            raise InvalidPageToken(f"Page {page_index} is not available yet")

        return await self._load(session, generation, page_index, on_progress=on_progress)

    async def refresh(
        self,
        user_id: str,
        *,
        series: str = DEFAULT_SERIES,
        on_progress: ProgressCallback | None = None,
    ) -> Success[Page] | Failure:
        """Rebuild page one from a forced pass and start a new generation.

        The saved series is only replaced once the pass succeeds; a failed
        refresh serves the previous page one marked stale.
        """

        session = await self._session(user_id, series)
        logger.info(
            "Refreshing %s series for %s from generation %d",
            series,
            user_id,
            session.generation,
        )
        return await self._load(
            session, session.generation, 1, on_progress=on_progress, force_refresh=True
        )

    async def record_feedback(
        self,
        user_id: str,
        game_id: int,
        action: FeedbackAction,
        *,
        game_name: str | None = None,
    ) -> FeedbackRecord:
        record = FeedbackRecord(
            user_id=user_id, game_id=game_id, game_name=game_name, action=action
        )
        await self._feedback.record(record)
        return record

    async def feedback_summary(self, user_id: str) -> FeedbackSummary:
        return await self._feedback.summary(user_id)

    def snapshot(self, user_id: str, *, series: str = DEFAULT_SERIES) -> SessionSnapshot | None:
        session = self._sessions.get((user_id, series))
        if session is None:
            return None
        return session.snapshot()

    async def _load(
        self,
        session: RecommendationSession,
        generation: int,
        page_index: int,
        *,
        on_progress: ProgressCallback | None,
        force_refresh: bool = False,
    ) -> Success[Page] | Failure:
        key = RequestKey.build(
            "recommendations/page",
            user=session.user_id,
            series=session.series,
            generation=generation,
            page=page_index,
            force=force_refresh,
        )
        if page_index == 1:
            producer = partial(
                self._first_page,
                session,
                generation,
                on_progress=on_progress,
                force_refresh=force_refresh,
            )
        else:
            producer = partial(
                self._next_page, session, generation, page_index, on_progress=on_progress
            )
        return await self._deduplicator.execute(key, producer)

    async def _first_page(
        self,
        session: RecommendationSession,
        generation: int,
        *,
        on_progress: ProgressCallback | None,
        force_refresh: bool,
    ) -> Success[Page] | Failure:
        persisted = session.page(1)

        if not force_refresh and not await self._is_online():
            entry = await self._engine.peek(session.user_id)
            if persisted is not None:
                stale = entry is None
                return Success(persisted.model_copy(update={"stale": stale}), stale=stale)
            if entry is not None:
                page = self._build_page(session, generation, 1, entry.games, personalized=True)
                await self._persist(session, page)
                return Success(page)
            return Failure(OfflineUnavailable("Offline with no saved recommendations"))

        result = await self._engine.recommend(
            session.user_id,
            count=self._settings.recommendation_count,
            force_refresh=force_refresh,
            on_progress=on_progress,
        )
        if isinstance(result, Failure):
            if isinstance(result.error, SupersededPass):
                raise StalePageToken("Page request was superseded by a newer one") from result.error
            if persisted is not None:
                logger.warning(
                    "Serving saved page for %s after failure: %s", session.user_id, result.error
                )
                return Success(persisted.model_copy(update={"stale": True}), stale=True)
            return await self._from_cached_entry(session, generation, result)

        self._check_generation(session, generation)
        recommendations = result.value
        if recommendations.from_cache and persisted is not None:
            return Success(persisted)

        if session.pages or force_refresh:
            # Fresh results start a new series; earlier pages no longer apply.
            async with self._lock_for(session):
                self._check_generation(session, generation)
                await self._clear_series(session)
            generation = session.generation

        page = self._build_page(
            session,
            generation,
            1,
            recommendations.games,
            personalized=recommendations.personalized,
        )
        await self._persist(session, page)
        return Success(page, degraded=result.degraded)

    async def _from_cached_entry(
        self, session: RecommendationSession, generation: int, failure: Failure
    ) -> Success[Page] | Failure:
        try:
            entry = await self._engine.cached_entry(session.user_id)
        except CacheUnavailable as exc:
            logger.warning("%s; nothing saved to fall back on", exc)
            return failure
        if entry is None or not entry.games:
            return failure

        logger.warning(
            "Serving last computed recommendations for %s after failure: %s",
            session.user_id,
            failure.error,
        )
        self._check_generation(session, generation)
        page = self._build_page(session, generation, 1, entry.games, personalized=True)
        await self._persist(session, page)
        return Success(page.model_copy(update={"stale": True}), stale=True)

    async def _next_page(
        self,
        session: RecommendationSession,
        generation: int,
        page_index: int,
        *,
        on_progress: ProgressCallback | None,
    ) -> Success[Page] | Failure:
        persisted = session.page(page_index)
        if persisted is not None:
            return Success(persisted)
        if not await self._is_online():
            return Failure(OfflineUnavailable("Offline; more recommendations need a connection"))

        delivered = session.delivered_ids
        count = self._settings.recommendation_count

        def _novel(games: Sequence[ResolvedGame]) -> list[ResolvedGame]:
            return [game for game in games if game.id not in delivered][:count]

        def _forward(games: list[ResolvedGame]):
            return on_progress(_novel(games))

        result = await self._engine.recommend(
            session.user_id,
            count=self._settings.load_more_budget,
            load_more=True,
            exclude_ids=delivered,
            exclude_names=session.delivered_names,
            on_progress=_forward if on_progress is not None else None,
        )
        if isinstance(result, Failure):
            if isinstance(result.error, SupersededPass):
                raise StalePageToken("Page request was superseded by a newer one") from result.error
            return result

        self._check_generation(session, generation)
        novel = _novel(result.value.games)
        if not novel and result.degraded:
            # Nothing new because the pass failed, not because the pool ran dry.
            token = encode_page_token(generation, page_index)
            page = Page(
                page_index=page_index,
                token=token,
                next_token=token,
                generation=generation,
                personalized=result.value.personalized,
            )
            return Success(page, degraded=True)
        page = self._build_page(
            session,
            generation,
            page_index,
            novel,
            personalized=result.value.personalized,
            end_reached=not novel,
        )
        await self._persist(session, page)
        return Success(page, degraded=result.degraded)

    def _build_page(
        self,
        session: RecommendationSession,
        generation: int,
        page_index: int,
        games: Sequence[ResolvedGame],
        *,
        personalized: bool,
        end_reached: bool | None = None,
    ) -> Page:
        items = list(games)[: self._settings.recommendation_count]
        if end_reached is None:
            end_reached = not items
        return Page(
            page_index=page_index,
            items=items,
            token=encode_page_token(generation, page_index),
            next_token=None if end_reached else encode_page_token(generation, page_index + 1),
            generation=generation,
            end_reached=end_reached,
            personalized=personalized,
        )

    @staticmethod
    def _check_generation(session: RecommendationSession, generation: int) -> None:
        if session.generation != generation:
            raise StalePageToken(
                f"Series for {session.user_id} moved to generation {session.generation}"
            )

    async def _persist(self, session: RecommendationSession, page: Page) -> None:
        async with self._lock_for(session):
            self._check_generation(session, page.generation)
            if page.page_index != session.next_page_index:
                return
            session.pages.append(page)
            try:
                async with self._session_factory() as db:
                    db.add(
                        RecommendationPageRecord(
                            user_id=session.user_id,
                            series=session.series,
                            generation=page.generation,
                            page_index=page.page_index,
                            payload=page.model_dump(mode="json"),
                        )
                    )
                    await db.commit()
            except SQLAlchemyError as exc:
                logger.warning(
                    "Could not save page %d for %s; kept in memory only: %s",
                    page.page_index,
                    session.user_id,
                    exc,
                )

    async def _clear_series(self, session: RecommendationSession) -> None:
        session.generation += 1
        session.pages.clear()
        try:
            async with self._session_factory() as db:
                await db.execute(
                    delete(RecommendationPageRecord).where(
                        RecommendationPageRecord.user_id == session.user_id,
                        RecommendationPageRecord.series == session.series,
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("Could not clear saved pages for %s: %s", session.user_id, exc)

    async def _session(self, user_id: str, series: str) -> RecommendationSession:
        key = (user_id, series)
        session = self._sessions.get(key)
        if session is None:
            session = RecommendationSession(user_id=user_id, series=series)
            self._sessions[key] = session
        if not session.loaded:
            async with self._lock_for(session):
                if not session.loaded:
                    await self._hydrate(session)
                    session.loaded = True
        return session

    async def _hydrate(self, session: RecommendationSession) -> None:
        stmt = (
            select(RecommendationPageRecord)
            .where(
                RecommendationPageRecord.user_id == session.user_id,
                RecommendationPageRecord.series == session.series,
            )
            .order_by(RecommendationPageRecord.page_index)
        )
        try:
            async with self._session_factory() as db:
                rows = (await db.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.warning("Could not load saved pages for %s: %s", session.user_id, exc)
            return
        if not rows:
            return
        generation = max(row.generation for row in rows)
        pages = [
            Page.model_validate(row.payload) for row in rows if row.generation == generation
        ]
        for expected_index, page in enumerate(pages, start=1):
            if page.page_index != expected_index:
                break
            session.pages.append(page)
        session.generation = generation

    async def _is_online(self) -> bool:
        if self._connectivity is None:
            return True
        try:
            return await self._connectivity()
        except Exception as exc:
            logger.warning("Connectivity probe failed: %s", exc)
            return False

    def _lock_for(self, session: RecommendationSession) -> asyncio.Lock:
        return self._locks.setdefault((session.user_id, session.series), asyncio.Lock())
