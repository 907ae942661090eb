from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.errors import ExhaustedFallback, InvalidPageToken, NetworkError, StalePageToken
from app.main import register_routes
from app.models import (
    ExpansionSource,
    FeedbackAction,
    FeedbackRecord,
    FeedbackSummary,
    Page,
    ResolvedGame,
    StudioExpansionEntry,
)
from app.results import Failure, Success
from app.services.library import InMemoryLibrarySource


class DummyStore:
    """Minimal store stub returning scripted pages."""

    def __init__(self) -> None:
        self.result: Success[Page] | Failure | Exception = Success(
            Page(
                page_index=1,
                items=[ResolvedGame(id=101, name="Celeste")],
                token="g0p1",
                next_token="g0p2",
            )
        )
        self.feedback: list[tuple[str, int, FeedbackAction, str | None]] = []
        self.refreshed: list[str] = []

    async def get_page(self, user_id, page_token=None, *, series="discover"):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    async def refresh(self, user_id, *, series="discover"):
        self.refreshed.append(user_id)
        return self.result

    async def record_feedback(self, user_id, game_id, action, *, game_name=None):
        self.feedback.append((user_id, game_id, action, game_name))
        return FeedbackRecord(user_id=user_id, game_id=game_id, game_name=game_name, action=action)

    async def feedback_summary(self, user_id):
        return FeedbackSummary(total=4, added=1, dismissed=2, ignored=1)


class DummyStudios:
    async def lookup(self, name):
        if name == "nobody":
            return None
        return StudioExpansionEntry.build(
            "Bethesda", ["Arkane Studios", "id Software"], source=ExpansionSource.STATIC
        )


def _app() -> tuple[FastAPI, DummyStore]:
    app = FastAPI()
    register_routes(app)
    store = DummyStore()
    app.state.store = store
    app.state.library = InMemoryLibrarySource()
    app.state.studios = DummyStudios()
    return app, store


def test_recommendations_page_payload() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        response = client.get("/users/u1/recommendations")

    assert response.status_code == 200
    payload = response.json()
    assert payload["items"][0]["name"] == "Celeste"
    assert payload["next_token"] == "g0p2"
    assert payload["stale"] is False
    assert payload["degraded"] is False


def test_failure_is_service_unavailable_with_retry_hint() -> None:
    app, store = _app()
    store.result = Failure(
        ExhaustedFallback(NetworkError("down", provider="a"), NetworkError("down", provider="b"))
    )

    with TestClient(app) as client:
        response = client.get("/users/u1/recommendations")

    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_token_errors_map_to_client_errors() -> None:
    app, store = _app()

    with TestClient(app) as client:
        store.result = StalePageToken("old")
        stale = client.get("/users/u1/recommendations", params={"token": "g0p2"})
        store.result = InvalidPageToken("bad")
        invalid = client.get("/users/u1/recommendations", params={"token": "zzz"})

    assert stale.status_code == 409
    assert invalid.status_code == 400


def test_refresh_and_feedback_routes() -> None:
    app, store = _app()

    with TestClient(app) as client:
        refreshed = client.post("/users/u1/recommendations/refresh")
        created = client.post(
            "/users/u1/feedback",
            json={"gameId": 101, "action": "dismissed", "gameName": "Celeste"},
        )
        rejected = client.post("/users/u1/feedback", json={"gameId": 101, "action": "loved"})
        summary = client.get("/users/u1/feedback/summary")

    assert refreshed.status_code == 200
    assert store.refreshed == ["u1"]
    assert created.status_code == 201
    assert store.feedback == [("u1", 101, FeedbackAction.DISMISSED, "Celeste")]
    assert rejected.status_code == 422
    assert summary.json()["conversionRate"] == 0.25


def test_library_upload_and_studio_lookup() -> None:
    app, _ = _app()

    with TestClient(app) as client:
        uploaded = client.put(
            "/users/u1/library",
            json=[{"gameId": 1, "name": "Hades", "rating": 9}, {"id": 2, "name": "Celeste"}],
        )
        studio = client.get("/studios/bethesda")
        unknown = client.get("/studios/nobody")
        health = client.get("/healthz")

    assert uploaded.json() == {"userId": "u1", "count": 2}
    assert studio.json() == {
        "parent": "Bethesda",
        "subsidiaries": ["Arkane Studios", "id Software"],
        "source": "static",
    }
    assert unknown.json()["subsidiaries"] == []
    assert health.json() == {"status": "ok"}
