from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from app.database import Database


def _count_pages(database_path) -> int:
    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.connect() as connection:
            return connection.execute(text("SELECT COUNT(*) FROM recommendation_pages")).scalar_one()
    finally:
        engine.dispose()


def test_create_all_builds_every_table(tmp_path) -> None:
    database_path = tmp_path / "fresh.db"

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        tables = set(inspector.get_table_names())
        page_columns = {column["name"] for column in inspector.get_columns("recommendation_pages")}
    finally:
        inspector_engine.dispose()

    assert {
        "studio_expansions",
        "recommendation_cache",
        "recommendation_pages",
        "feedback_records",
    } <= tables
    assert {"user_id", "series", "generation", "page_index", "payload"} <= page_columns


def test_create_all_keeps_existing_rows(tmp_path) -> None:
    """Re-running table creation on startup must not drop saved pages."""

    database_path = tmp_path / "existing.db"
    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    "INSERT INTO recommendation_pages "
                    "(user_id, series, generation, page_index, payload, created_at) "
                    "VALUES ('u1', 'discover', 0, 1, '{}', '2026-01-01 00:00:00')"
                )
            )
    finally:
        engine.dispose()

    restarted = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(restarted.create_all())
    asyncio.run(restarted.dispose())

    assert _count_pages(database_path) == 1
