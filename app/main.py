"""Entry point for the FastAPI-powered recommendation service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import settings
from .database import Database
from .errors import CacheUnavailable, InvalidPageToken, StalePageToken
from .models import FeedbackAction, LibraryEntry, Page
from .results import Failure, Success
from .services.dedup import RequestDeduplicator
from .services.fallback import FallbackSuggestionService
from .services.feedback import FeedbackLog
from .services.library import InMemoryLibrarySource
from .services.library_tracker import LibraryChangeTracker
from .services.openai import OpenAIClient
from .services.openrouter import OpenRouterClient
from .services.rawg import RAWGClient
from .services.recommendation_engine import RecommendationEngine
from .services.recommendation_store import DEFAULT_SERIES, RecommendationStore
from .services.studios import StudioExpansionCache

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


class FeedbackPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    game_id: int = Field(alias="gameId")
    action: FeedbackAction
    game_name: str | None = Field(default=None, alias="gameName")


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    openrouter_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openrouter_api_url),
            timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0),
        )
    )
    openai_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.openai_api_url),
            timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0),
        )
    )
    rawg_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.rawg_api_url),
            timeout=httpx.Timeout(15.0, connect=5.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    deduplicator = RequestDeduplicator()
    suggestions = FallbackSuggestionService(
        OpenRouterClient(settings, openrouter_http),
        OpenAIClient(settings, openai_http),
        timeout_seconds=settings.provider_timeout_seconds,
    )
    rawg = RAWGClient(settings, rawg_http)
    library = InMemoryLibrarySource()
    feedback = FeedbackLog(database.session_factory)
    engine = RecommendationEngine(
        settings,
        suggestions,
        rawg,
        library,
        deduplicator,
        database.session_factory,
        feedback,
    )
    store = RecommendationStore(
        settings,
        engine,
        database.session_factory,
        deduplicator,
        feedback,
        connectivity=rawg.is_reachable,
    )
    studios = StudioExpansionCache(
        suggestions,
        database.session_factory,
        deduplicator,
        ttl=timedelta(days=settings.studio_cache_days),
    )
    tracker = LibraryChangeTracker(library, engine)

    app.state.database = database
    app.state.library = library
    app.state.engine = engine
    app.state.store = store
    app.state.studios = studios
    app.state.tracker = tracker
    await tracker.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await tracker.stop()
        deduplicator.cancel_all()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Personalised video game recommendations from your library",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def _require(fastapi_app: FastAPI, name: str) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if service is None:
        raise RuntimeError(f"{name.capitalize()} service not initialised")
    return service


def get_store(fastapi_app: FastAPI) -> RecommendationStore:
    return _require(fastapi_app, "store")


def get_library(fastapi_app: FastAPI) -> InMemoryLibrarySource:
    return _require(fastapi_app, "library")


def get_studios(fastapi_app: FastAPI) -> StudioExpansionCache:
    return _require(fastapi_app, "studios")


def _page_response(result: Success[Page] | Failure) -> JSONResponse:
    if isinstance(result, Failure):
        return JSONResponse(
            {"error": str(result.error), "retryable": result.retryable},
            status_code=503,
        )
    payload = result.value.model_dump(mode="json")
    payload["stale"] = result.value.stale or result.stale
    payload["degraded"] = result.degraded
    return JSONResponse(payload)


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/users/{user_id}/recommendations")
    async def recommendations(
        user_id: str, token: str | None = None, series: str = DEFAULT_SERIES
    ) -> JSONResponse:
        store = get_store(fastapi_app)
        try:
            result = await store.get_page(user_id, token, series=series)
        except StalePageToken as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except InvalidPageToken as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _page_response(result)

    @fastapi_app.post("/users/{user_id}/recommendations/refresh")
    async def refresh_recommendations(
        user_id: str, series: str = DEFAULT_SERIES
    ) -> JSONResponse:
        store = get_store(fastapi_app)
        try:
            result = await store.refresh(user_id, series=series)
        except StalePageToken as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return _page_response(result)

    @fastapi_app.post("/users/{user_id}/feedback", status_code=201)
    async def record_feedback(user_id: str, payload: FeedbackPayload) -> dict[str, Any]:
        store = get_store(fastapi_app)
        try:
            record = await store.record_feedback(
                user_id, payload.game_id, payload.action, game_name=payload.game_name
            )
        except CacheUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return record.model_dump(mode="json")

    @fastapi_app.get("/users/{user_id}/feedback/summary")
    async def feedback_summary(user_id: str) -> dict[str, Any]:
        store = get_store(fastapi_app)
        try:
            summary = await store.feedback_summary(user_id)
        except CacheUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {**summary.model_dump(), "conversionRate": summary.conversion_rate}

    @fastapi_app.put("/users/{user_id}/library")
    async def replace_library(user_id: str, entries: list[LibraryEntry]) -> dict[str, Any]:
        library = get_library(fastapi_app)
        await library.set_library(user_id, entries)
        return {"userId": user_id, "count": len(entries)}

    @fastapi_app.get("/studios/{name}")
    async def studio_expansion(name: str) -> dict[str, Any]:
        studios = get_studios(fastapi_app)
        entry = await studios.lookup(name)
        if entry is None:
            return {"parent": name, "subsidiaries": [], "source": None}
        return {
            "parent": entry.parent_name,
            "subsidiaries": sorted(entry.subsidiaries),
            "source": entry.source.value,
        }


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
