"""Error taxonomy shared by the recommendation core."""

from __future__ import annotations

import asyncio
import json

import httpx


class RecommendationError(Exception):
    """Base class for every error raised by the recommendation core."""

    is_retryable: bool = False


class ProviderError(RecommendationError):
    """An AI suggestion provider failed to answer."""

    def __init__(self, message: str, *, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(ProviderError):
    """A provider failure that should trigger the fallback provider."""

    is_retryable = True


class RateLimited(TransientProviderError):
    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        provider: str = "unknown",
        retry_after: float | None = None,
    ):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class NetworkError(TransientProviderError):
    """Transport level failure or an unexpected HTTP status."""


class ProviderTimeout(NetworkError):
    """The provider did not answer within the configured timeout."""


class MalformedResponseError(TransientProviderError):
    """The provider answered with unparseable or empty suggestions."""


InvalidResponse = MalformedResponseError


class ExhaustedFallback(RecommendationError):
    """Both providers failed; carries each underlying cause."""

    is_retryable = True

    def __init__(self, primary_error: BaseException, secondary_error: BaseException):
        super().__init__(
            f"All suggestion providers failed (primary: {primary_error}; "
            f"secondary: {secondary_error})"
        )
        self.primary_error = primary_error
        self.secondary_error = secondary_error


class ResolutionMiss(RecommendationError):
    """A suggested name or id has no catalog entry."""


class CatalogUnavailable(RecommendationError):
    """The catalog service could not be reached."""

    is_retryable = True


class CacheUnavailable(RecommendationError):
    """A persistence read or write failed."""

    is_retryable = True


class SupersededPass(RecommendationError):
    """A newer resolution pass for the same user replaced this one."""


class StalePageToken(RecommendationError):
    """A page token or in-flight request belongs to a superseded generation."""


class InvalidPageToken(RecommendationError, ValueError):
    """A page token could not be parsed or points past the next page."""


class OfflineUnavailable(RecommendationError):
    """No network and nothing persisted to replay."""

    is_retryable = True


def classify_provider_error(exc: BaseException, *, provider: str) -> ProviderError:
    """Map an arbitrary exception raised while talking to a provider."""

    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeout(str(exc) or "Provider request timed out", provider=provider)
    if isinstance(exc, httpx.HTTPError):
        return NetworkError(str(exc) or type(exc).__name__, provider=provider)
    if isinstance(exc, (ValueError, KeyError, TypeError, json.JSONDecodeError)):
        return MalformedResponseError(str(exc), provider=provider)

    message = str(exc).lower()
    if "rate limit" in message or "429" in message or "quota" in message:
        return RateLimited(str(exc), provider=provider)
    if "timeout" in message or "timed out" in message:
        return ProviderTimeout(str(exc), provider=provider)
    if "network" in message or "connection" in message:
        return NetworkError(str(exc), provider=provider)
    return ProviderError(str(exc) or type(exc).__name__, provider=provider)
