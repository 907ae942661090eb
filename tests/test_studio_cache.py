from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.db_models import StudioExpansionRecord
from app.models import ExpansionSource
from app.services.dedup import RequestDeduplicator
from app.services.studios import StudioExpansionCache
from app.utils import utcnow

from fakes import FakeProvider, open_database


@pytest.mark.anyio("asyncio")
async def test_static_tier_answers_without_provider(tmp_path) -> None:
    database = await open_database(tmp_path)
    provider = FakeProvider("openrouter", [])
    cache = StudioExpansionCache(provider, database.session_factory, RequestDeduplicator())
    try:
        entry = await cache.lookup("  BETHESDA ")
    finally:
        await database.dispose()

    assert entry is not None
    assert entry.source is ExpansionSource.STATIC
    assert "Arkane Studios" in entry.subsidiaries
    assert "Bethesda" not in entry.subsidiaries
    assert provider.studio_calls == []


@pytest.mark.anyio("asyncio")
async def test_live_answer_is_persisted_then_served_from_disk(tmp_path) -> None:
    database = await open_database(tmp_path)
    provider = FakeProvider("openrouter", [])
    provider.studios["annapurna interactive"] = [
        "Mobius Digital",
        "Annapurna Interactive",
        "Simogo",
    ]
    cache = StudioExpansionCache(provider, database.session_factory, RequestDeduplicator())
    try:
        live = await cache.lookup("Annapurna Interactive")
        again = await cache.lookup("annapurna interactive")
        async with database.session_factory() as session:
            record = await session.get(StudioExpansionRecord, "annapurna interactive")
    finally:
        await database.dispose()

    assert live is not None and live.source is ExpansionSource.LIVE
    assert live.subsidiaries == {"Mobius Digital", "Simogo"}
    assert again is not None and again.source is ExpansionSource.PERSISTED
    assert again.subsidiaries == live.subsidiaries
    assert provider.studio_calls == ["Annapurna Interactive"]
    assert record is not None
    assert record.expires_at > utcnow() + timedelta(days=29)


@pytest.mark.anyio("asyncio")
async def test_expired_rows_go_back_to_the_provider(tmp_path) -> None:
    database = await open_database(tmp_path)
    now = utcnow()
    async with database.session_factory() as session:
        session.add(
            StudioExpansionRecord(
                parent_key="raw fury",
                parent_name="Raw Fury",
                subsidiaries=["Old Studio"],
                expires_at=now - timedelta(days=1),
                created_at=now - timedelta(days=31),
            )
        )
        await session.commit()
    provider = FakeProvider("openrouter", [])
    provider.studios["raw fury"] = ["New Studio"]
    cache = StudioExpansionCache(provider, database.session_factory, RequestDeduplicator())
    try:
        assert await cache.expand("Raw Fury") == {"New Studio"}
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_failed_live_lookup_yields_empty_set(tmp_path) -> None:
    database = await open_database(tmp_path)
    cache = StudioExpansionCache(
        FakeProvider("openrouter", []), database.session_factory, RequestDeduplicator()
    )
    try:
        assert await cache.expand("Nobody Knows Games") == set()
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_concurrent_live_lookups_share_one_provider_call(tmp_path) -> None:
    database = await open_database(tmp_path)
    provider = FakeProvider("openrouter", [], delay=0.05)
    provider.studios["finji"] = ["Secret Lab"]
    cache = StudioExpansionCache(provider, database.session_factory, RequestDeduplicator())
    try:
        first, second = await asyncio.gather(cache.expand("Finji"), cache.expand(" finji"))
    finally:
        await database.dispose()

    assert first == second == {"Secret Lab"}
    assert len(provider.studio_calls) == 1


@pytest.mark.anyio("asyncio")
async def test_purge_expired_removes_only_stale_rows(tmp_path) -> None:
    database = await open_database(tmp_path)
    now = utcnow()
    async with database.session_factory() as session:
        for key, expires in (("old", now - timedelta(hours=1)), ("new", now + timedelta(days=3))):
            session.add(
                StudioExpansionRecord(
                    parent_key=key,
                    parent_name=key,
                    subsidiaries=[],
                    expires_at=expires,
                    created_at=now,
                )
            )
        await session.commit()
    cache = StudioExpansionCache(
        FakeProvider("openrouter", []), database.session_factory, RequestDeduplicator()
    )
    try:
        removed = await cache.purge_expired()
        async with database.session_factory() as session:
            remaining = await session.get(StudioExpansionRecord, "new")
    finally:
        await database.dispose()

    assert removed == 1
    assert remaining is not None
