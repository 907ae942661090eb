"""Paging, replay and refresh tests for the recommendation store."""

from __future__ import annotations

import pytest

from app.errors import (
    ExhaustedFallback,
    InvalidPageToken,
    NetworkError,
    OfflineUnavailable,
    StalePageToken,
)
from app.models import FeedbackAction
from app.results import Failure, Success
from app.services.recommendation_store import decode_page_token, encode_page_token

from fakes import FakeCatalog, FakeProvider, build_harness, entry, game


CATALOG = [
    game(101, "Celeste"),
    game(102, "Hades"),
    game(103, "Tunic"),
    game(104, "Ori and the Blind Forest"),
    game(105, "Dead Cells"),
]


def test_page_tokens_round_trip_and_reject_garbage() -> None:
    assert decode_page_token(encode_page_token(3, 2)) == (3, 2)
    for token in ("", "p2", "g1p0", "g-1p2", "gxp1"):
        with pytest.raises(InvalidPageToken):
            decode_page_token(token)


@pytest.mark.anyio("asyncio")
async def test_pages_are_disjoint_and_end_when_pool_runs_dry(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider(
            "openrouter",
            ["Celeste", "Hades"],
            ["Celeste", "Tunic", "Dead Cells"],
        ),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        assert isinstance(first, Success)
        second = await store.get_page("u1", first.value.next_token)
        assert isinstance(second, Success)
        third = await store.get_page("u1", second.value.next_token)
        assert isinstance(third, Success)
        with pytest.raises(InvalidPageToken):
            await store.get_page("u1", encode_page_token(0, 4))
    finally:
        await harness.database.dispose()

    assert first.value.item_ids == [101, 102]
    assert second.value.item_ids == [103, 105]
    assert third.value.items == []
    assert third.value.end_reached and third.value.next_token is None
    load_more_call = harness.primary.calls[1]
    assert load_more_call["count"] == harness.settings.load_more_budget
    assert {"Celeste", "Hades"} <= set(load_more_call["exclude"])
    snapshot = store.snapshot("u1")
    assert snapshot is not None
    assert snapshot.page_count == 3
    assert snapshot.delivered_ids == frozenset({101, 102, 103, 105})


@pytest.mark.anyio("asyncio")
async def test_popular_pages_continue_where_the_previous_page_stopped(tmp_path) -> None:
    catalog = FakeCatalog(popular=[game(index, f"Game {index}") for index in range(1, 13)])
    harness = await build_harness(tmp_path, catalog=catalog)
    store = harness.store()
    try:
        first = await store.get_page("nobody")
        second = await store.get_page("nobody", first.value.next_token)
        third = await store.get_page("nobody", second.value.next_token)
        fourth = await store.get_page("nobody", third.value.next_token)
    finally:
        await harness.database.dispose()

    assert first.value.item_ids == [1, 2, 3, 4, 5]
    assert second.value.item_ids == [6, 7, 8, 9, 10]
    assert third.value.item_ids == [11, 12]
    assert not first.value.personalized
    assert fourth.value.items == [] and fourth.value.end_reached
    assert {size for _, size in catalog.popular_calls} == {harness.settings.recommendation_count}
    assert harness.primary.calls == []


@pytest.mark.anyio("asyncio")
async def test_persisted_pages_replay_without_provider_calls(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", ["Celeste", "Hades"], ["Tunic"]),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    try:
        store = harness.store()
        first = await store.get_page("u1")
        second = await store.get_page("u1", first.value.next_token)

        restarted = harness.store()
        replay_first = await restarted.get_page("u1")
        replay_second = await restarted.get_page("u1", first.value.next_token)
    finally:
        await harness.database.dispose()

    assert isinstance(replay_first, Success) and isinstance(replay_second, Success)
    assert replay_first.value.item_ids == first.value.item_ids
    assert replay_second.value.item_ids == second.value.item_ids == [103]
    assert len(harness.primary.calls) == 2


@pytest.mark.anyio("asyncio")
async def test_refresh_starts_a_new_generation(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", ["Celeste", "Hades"], ["Tunic", "Celeste"]),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        refreshed = await store.refresh("u1")
        with pytest.raises(StalePageToken):
            await store.get_page("u1", first.value.next_token)
        current = await store.get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(refreshed, Success)
    assert refreshed.value.generation == first.value.generation + 1
    assert refreshed.value.token == encode_page_token(refreshed.value.generation, 1)
    assert refreshed.value.item_ids == [103, 101]
    assert isinstance(current, Success)
    assert current.value.item_ids == [103, 101]


@pytest.mark.anyio("asyncio")
async def test_refresh_during_provider_outage_keeps_the_saved_page(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider(
            "openrouter", ["Celeste", "Hades"], NetworkError("down", provider="openrouter")
        ),
        secondary=FakeProvider("openai", NetworkError("down", provider="openai")),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        refreshed = await store.refresh("u1")
        restarted = await harness.store().get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(refreshed, Success)
    assert refreshed.stale and refreshed.value.stale
    assert refreshed.value.item_ids == [101, 102]
    assert refreshed.value.generation == first.value.generation
    snapshot = store.snapshot("u1")
    assert snapshot is not None and snapshot.page_count == 1
    assert isinstance(restarted, Success)
    assert restarted.value.item_ids == [101, 102]


@pytest.mark.anyio("asyncio")
async def test_refresh_outage_without_saved_pages_uses_last_computed_list(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider(
            "openrouter", ["Celeste", "Hades"], NetworkError("down", provider="openrouter")
        ),
        secondary=FakeProvider("openai", NetworkError("down", provider="openai")),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        await store.get_page("u1")
        weekly = await store.refresh("u1", series="weekly")
    finally:
        await harness.database.dispose()

    assert isinstance(weekly, Success)
    assert weekly.stale
    assert weekly.value.item_ids == [101, 102]


@pytest.mark.anyio("asyncio")
async def test_library_change_starts_fresh_series(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", ["Celeste"], ["Hades"]),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        await harness.library.upsert("u1", entry(2, "Terraria", rating=8))
        second = await store.get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(second, Success)
    assert second.value.item_ids == [102]
    assert second.value.generation == first.value.generation + 1


@pytest.mark.anyio("asyncio")
async def test_offline_replays_saved_page_as_stale(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", ["Celeste", "Hades"]),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        harness.engine.invalidate("u1")
        harness.online = False
        offline = await store.get_page("u1")
        more = await store.get_page("u1", first.value.next_token)
    finally:
        await harness.database.dispose()

    assert isinstance(offline, Success)
    assert offline.stale and offline.value.stale
    assert offline.value.item_ids == [101, 102]
    assert isinstance(more, Failure)
    assert isinstance(more.error, OfflineUnavailable)
    assert len(harness.primary.calls) == 1


@pytest.mark.anyio("asyncio")
async def test_offline_without_saved_pages_is_unavailable(tmp_path) -> None:
    harness = await build_harness(tmp_path, catalog=FakeCatalog(CATALOG))
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    harness.online = False
    try:
        result = await harness.store().get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(result, Failure)
    assert isinstance(result.error, OfflineUnavailable)
    assert result.retryable


@pytest.mark.anyio("asyncio")
async def test_provider_outage_is_an_error_not_an_empty_page(tmp_path) -> None:
    outage = NetworkError("down", provider="openrouter")
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", outage),
        secondary=FakeProvider("openai", NetworkError("down", provider="openai")),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    try:
        result = await harness.store().get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(result, Failure)
    assert isinstance(result.error, ExhaustedFallback)


@pytest.mark.anyio("asyncio")
async def test_provider_outage_after_first_page(tmp_path) -> None:
    harness = await build_harness(
        tmp_path,
        primary=FakeProvider("openrouter", ["Celeste"], NetworkError("down", provider="openrouter")),
        secondary=FakeProvider("openai", NetworkError("down", provider="openai")),
        catalog=FakeCatalog(CATALOG),
    )
    await harness.library.set_library("u1", [entry(1, "Stardew Valley")])
    store = harness.store()
    try:
        first = await store.get_page("u1")
        more = await store.get_page("u1", first.value.next_token)
        harness.engine.invalidate("u1")
        saved = await store.get_page("u1")
    finally:
        await harness.database.dispose()

    assert isinstance(more, Success)
    assert more.degraded
    assert more.value.items == [] and not more.value.end_reached
    assert more.value.next_token == first.value.next_token
    assert isinstance(saved, Success)
    assert saved.stale and saved.value.item_ids == [101]


@pytest.mark.anyio("asyncio")
async def test_feedback_is_recorded_and_summarised(tmp_path) -> None:
    harness = await build_harness(tmp_path, catalog=FakeCatalog(CATALOG))
    store = harness.store()
    try:
        await store.record_feedback("u1", 101, FeedbackAction.ADDED, game_name="Celeste")
        await store.record_feedback("u1", 102, FeedbackAction.DISMISSED, game_name="Hades")
        summary = await store.feedback_summary("u1")
        liked = await harness.feedback.liked_names("u1")
    finally:
        await harness.database.dispose()

    assert summary.total == 2
    assert summary.conversion_rate == 0.5
    assert liked == ["Celeste"]
