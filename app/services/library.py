"""User library access, change notifications and snapshot hashing."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Iterable, Protocol, Sequence

from ..models import LibraryEntry
from ..utils import normalize_name, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LibraryChangeEvent:
    user_id: str
    kind: str = "updated"
    game_ids: tuple[int, ...] = ()
    occurred_at: datetime = field(default_factory=utcnow)


class LibrarySource(Protocol):
    async def current_library(self, user_id: str) -> list[LibraryEntry]: ...

    def changes(self) -> AsyncIterator[LibraryChangeEvent]: ...


def compute_library_hash(entries: Iterable[LibraryEntry]) -> str:
    """Order-independent digest over each entry's id, rating and status."""

    fingerprints = sorted(entry.fingerprint() for entry in entries)
    return hashlib.sha256("|".join(fingerprints).encode("utf-8")).hexdigest()


def owned_name_keys(entries: Iterable[LibraryEntry]) -> set[str]:
    return {normalize_name(entry.name) for entry in entries if entry.name}


class InMemoryLibrarySource:
    """Process-local library store that notifies subscribers on every change."""

    def __init__(self) -> None:
        self._libraries: dict[str, dict[int, LibraryEntry]] = {}
        self._subscribers: set[asyncio.Queue[LibraryChangeEvent]] = set()

    async def current_library(self, user_id: str) -> list[LibraryEntry]:
        return list(self._libraries.get(user_id, {}).values())

    async def set_library(self, user_id: str, entries: Sequence[LibraryEntry]) -> None:
        self._libraries[user_id] = {entry.game_id: entry for entry in entries}
        self._publish(
            LibraryChangeEvent(
                user_id=user_id,
                kind="replaced",
                game_ids=tuple(entry.game_id for entry in entries),
            )
        )

    async def upsert(self, user_id: str, entry: LibraryEntry) -> None:
        self._libraries.setdefault(user_id, {})[entry.game_id] = entry
        self._publish(LibraryChangeEvent(user_id=user_id, kind="upserted", game_ids=(entry.game_id,)))

    async def remove(self, user_id: str, game_id: int) -> bool:
        removed = self._libraries.get(user_id, {}).pop(game_id, None)
        if removed is None:
            return False
        self._publish(LibraryChangeEvent(user_id=user_id, kind="removed", game_ids=(game_id,)))
        return True

    def changes(self) -> AsyncIterator[LibraryChangeEvent]:
        """Subscribe immediately and return an iterator over future changes."""

        queue: asyncio.Queue[LibraryChangeEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        return self._drain(queue)

    async def _drain(
        self, queue: asyncio.Queue[LibraryChangeEvent]
    ) -> AsyncIterator[LibraryChangeEvent]:
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    def _publish(self, event: LibraryChangeEvent) -> None:
        logger.debug("Library %s for user %s", event.kind, event.user_id)
        for queue in list(self._subscribers):
            queue.put_nowait(event)
