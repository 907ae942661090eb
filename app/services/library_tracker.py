"""Invalidate cached recommendations when a user's library changes."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from ..errors import CacheUnavailable
from .library import LibraryChangeEvent, LibrarySource, compute_library_hash
from .recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)


class LibraryChangeTracker:
    def __init__(self, source: LibrarySource, engine: RecommendationEngine):
        self._source = source
        self._engine = engine
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Subscribe to library changes and launch the watch loop."""

        if self._task is None:
            changes = self._source.changes()
            self._task = asyncio.create_task(self._watch(changes))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def handle_change(self, event: LibraryChangeEvent) -> bool:
        """Invalidate the user's cache when the library snapshot hash moved.

        Returns ``True`` when the cache was invalidated.
        """

        library = await self._source.current_library(event.user_id)
        library_hash = compute_library_hash(library)
        try:
            entry = await self._engine.cached_entry(event.user_id)
        except CacheUnavailable as exc:
            logger.warning("%s; invalidating to be safe", exc)
            entry = None
        if entry is not None and entry.library_hash == library_hash:
            return False
        self._engine.invalidate(event.user_id)
        return True

    async def _watch(self, changes) -> None:
        async for event in changes:
            try:
                await self.handle_change(event)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Library change handling failed: %s", exc)
