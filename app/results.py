"""Explicit result values returned by asynchronous operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    """Operation produced a value (possibly stale or degraded)."""

    value: T
    stale: bool = False
    degraded: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    """Operation failed with nothing usable to show."""

    error: Exception

    @property
    def ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return bool(getattr(self.error, "is_retryable", False))


Result = Union[Success[T], Failure]
