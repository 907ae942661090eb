"""Primary/secondary switchover for AI suggestion providers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from ..errors import ExhaustedFallback, ProviderTimeout, classify_provider_error
from ..models import LibraryEntry, Suggestion
from ..results import Failure, Success
from .suggestions import SuggestionProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackSuggestionService:
    """Try the primary provider once, then the secondary once.

    Any failure of the primary, whatever its class, moves the call to the
    secondary with identical arguments. When both fail the caller receives an
    :class:`ExhaustedFallback` carrying both causes.
    """

    def __init__(
        self,
        primary: SuggestionProvider,
        secondary: SuggestionProvider,
        *,
        timeout_seconds: float,
    ):
        self._primary = primary
        self._secondary = secondary
        self._timeout = timeout_seconds

    async def get_suggestions(
        self,
        library: Sequence[LibraryEntry],
        count: int,
        *,
        exclude: Sequence[str] = (),
        liked: Sequence[str] = (),
    ) -> Success[list[Suggestion]] | Failure:
        try:
            suggestions = await self._call_with_fallback(
                lambda provider: provider.suggest(
                    library, count, exclude=exclude, liked=liked
                ),
                operation="suggest",
            )
        except ExhaustedFallback as exc:
            return Failure(exc)
        return Success(suggestions)

    async def expand_studio(self, parent_name: str) -> list[str]:
        """Ask the providers for a studio's subsidiaries; raises ExhaustedFallback."""

        return await self._call_with_fallback(
            lambda provider: provider.expand_studio(parent_name),
            operation="expand_studio",
        )

    async def _call_with_fallback(
        self,
        call: Callable[[SuggestionProvider], Awaitable[T]],
        *,
        operation: str,
    ) -> T:
        try:
            return await self._attempt(self._primary, call)
        except Exception as exc:
            primary_error = classify_provider_error(exc, provider=self._primary.name)
            logger.warning(
                "%s via %s failed (%s: %s); switching to %s",
                operation,
                self._primary.name,
                type(primary_error).__name__,
                primary_error,
                self._secondary.name,
            )

        try:
            return await self._attempt(self._secondary, call)
        except Exception as exc:
            secondary_error = classify_provider_error(exc, provider=self._secondary.name)
            logger.error(
                "%s via %s failed as well (%s: %s)",
                operation,
                self._secondary.name,
                type(secondary_error).__name__,
                secondary_error,
            )
            raise ExhaustedFallback(primary_error, secondary_error) from exc

    async def _attempt(
        self,
        provider: SuggestionProvider,
        call: Callable[[SuggestionProvider], Awaitable[T]],
    ) -> T:
        try:
            return await asyncio.wait_for(call(provider), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeout(
                f"{provider.name} did not answer within {self._timeout:g}s",
                provider=provider.name,
            ) from exc
