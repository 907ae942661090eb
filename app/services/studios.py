"""Three-tier studio/publisher expansion cache."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import StudioExpansionRecord
from ..errors import CacheUnavailable
from ..models import ExpansionSource, StudioExpansionEntry
from ..studio_mappings import static_subsidiaries
from ..utils import normalize_name, utcnow
from .dedup import RequestDeduplicator, RequestKey

logger = logging.getLogger(__name__)


class StudioExpander(Protocol):
    async def expand_studio(self, parent_name: str) -> list[str]: ...


class StudioExpansionCache:
    """Resolve a parent studio into its subsidiaries.

    Lookups go through the bundled table, then the persisted table, then a
    live AI query whose answer is written back with a fresh expiry. Expansion
    is best effort: a failed live query yields an empty set.
    """

    def __init__(
        self,
        expander: StudioExpander,
        session_factory: async_sessionmaker[AsyncSession],
        deduplicator: RequestDeduplicator,
        *,
        ttl: timedelta = timedelta(days=30),
    ):
        self._expander = expander
        self._session_factory = session_factory
        self._deduplicator = deduplicator
        self._ttl = ttl

    async def expand(self, parent_name: str) -> set[str]:
        entry = await self.lookup(parent_name)
        if entry is None:
            return set()
        return set(entry.subsidiaries)

    async def lookup(self, parent_name: str) -> StudioExpansionEntry | None:
        """Return the expansion entry (with the tier that answered) or ``None``."""

        key = normalize_name(parent_name)
        if not key:
            return None

        bundled = static_subsidiaries(key)
        if bundled is not None:
            return StudioExpansionEntry.build(
                parent_name,
                [studio.display_name for studio in bundled],
                source=ExpansionSource.STATIC,
            )

        try:
            persisted = await self._load(key)
        except CacheUnavailable as exc:
            logger.warning("%s; falling through to live lookup", exc)
            persisted = None
        if persisted is not None:
            logger.debug("Studio cache hit for %s", key)
            return persisted

        return await self._deduplicator.execute(
            RequestKey.build("studio-expansion", name=key),
            lambda: self._fetch_live(key, parent_name),
        )

    async def _load(self, key: str) -> StudioExpansionEntry | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(StudioExpansionRecord, key)
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"Studio cache read failed for {key!r}") from exc
        if record is None or record.expires_at <= utcnow():
            return None
        return StudioExpansionEntry.build(
            record.parent_name,
            record.subsidiaries or [],
            source=ExpansionSource.PERSISTED,
            expires_at=record.expires_at,
        )

    async def _fetch_live(self, key: str, parent_name: str) -> StudioExpansionEntry | None:
        try:
            names = await self._expander.expand_studio(parent_name)
        except Exception as exc:
            logger.warning("Live studio expansion failed for %s: %s", parent_name, exc)
            return None

        entry = StudioExpansionEntry.build(
            parent_name,
            names,
            source=ExpansionSource.LIVE,
            expires_at=utcnow() + self._ttl,
        )
        try:
            await self._store(key, entry)
        except CacheUnavailable as exc:
            logger.warning("%s; serving live result uncached", exc)
        return entry

    async def _store(self, key: str, entry: StudioExpansionEntry) -> None:
        now = utcnow()
        try:
            async with self._session_factory() as session:
                await session.merge(
                    StudioExpansionRecord(
                        parent_key=key,
                        parent_name=entry.parent_name,
                        subsidiaries=sorted(entry.subsidiaries),
                        expires_at=entry.expires_at or now + self._ttl,
                        created_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"Studio cache write failed for {key!r}") from exc

    async def purge_expired(self) -> int:
        """Delete persisted entries past their expiry; returns the number removed."""

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(StudioExpansionRecord).where(
                        StudioExpansionRecord.expires_at <= utcnow()
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheUnavailable("Studio cache purge failed") from exc
        return result.rowcount or 0
