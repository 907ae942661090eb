"""Collapse concurrent identical outbound requests into one in-flight call."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Hashable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _normalise_value(value: Any) -> Hashable:
    if isinstance(value, str):
        return " ".join(value.split())
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return tuple(
            sorted(
                ((str(key), _normalise_value(item)) for key, item in value.items() if item is not None),
                key=lambda pair: pair[0],
            )
        )
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(sorted((_normalise_value(item) for item in value), key=repr))
    return str(value)


@dataclass(frozen=True, slots=True)
class RequestKey:
    """Normalised, order-independent identity of an outbound request."""

    endpoint: str
    params: tuple[tuple[str, Hashable], ...] = ()

    @classmethod
    def build(
        cls, endpoint: str, params: Mapping[str, Any] | None = None, **extra: Any
    ) -> "RequestKey":
        merged = {**(params or {}), **extra}
        normalised = sorted(
            (
                (str(name), _normalise_value(value))
                for name, value in merged.items()
                if value is not None
            ),
            key=lambda pair: pair[0],
        )
        return cls(endpoint=endpoint.strip(), params=tuple(normalised))

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(repr((self.endpoint, self.params)).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class InFlightEntry:
    key: RequestKey
    task: asyncio.Future[Any]
    waiters: int = field(default=0)


class RequestDeduplicator:
    """Share one in-flight operation between every caller of the same key.

    The operation runs as its own task. Callers await it through
    :func:`asyncio.shield`, so cancelling one caller only detaches it; the task
    is cancelled once the last attached caller has gone.
    """

    def __init__(self) -> None:
        self._entries: dict[RequestKey, InFlightEntry] = {}

    async def execute(self, key: RequestKey, producer: Callable[[], Awaitable[T]]) -> T:
        entry = self._entries.get(key)
        if entry is None or entry.task.done():
            task = asyncio.ensure_future(producer())
            entry = InFlightEntry(key=key, task=task)
            self._entries[key] = entry
            task.add_done_callback(partial(self._release, key, entry))
        else:
            logger.debug("Joining in-flight request %s", key.endpoint)

        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if not entry.task.done():
                entry.waiters -= 1
                if entry.waiters <= 0:
                    logger.debug("Last waiter left %s; cancelling", key.endpoint)
                    entry.task.cancel()
            raise

    def _release(self, key: RequestKey, entry: InFlightEntry, _: asyncio.Future[Any]) -> None:
        if self._entries.get(key) is entry:
            del self._entries[key]

    def is_in_flight(self, key: RequestKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.task.done()

    @property
    def in_flight_count(self) -> int:
        return sum(1 for entry in self._entries.values() if not entry.task.done())

    def waiter_count(self, key: RequestKey) -> int:
        entry = self._entries.get(key)
        return entry.waiters if entry is not None else 0

    def cancel(self, key: RequestKey) -> bool:
        """Cancel the shared operation for every waiter of ``key``."""

        entry = self._entries.get(key)
        if entry is None or entry.task.done():
            return False
        return entry.task.cancel()

    def cancel_all(self) -> None:
        for entry in list(self._entries.values()):
            if not entry.task.done():
                entry.task.cancel()
