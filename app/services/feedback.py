"""Append-only log of how users reacted to recommendations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import FeedbackRecordRow
from ..errors import CacheUnavailable
from ..models import FeedbackAction, FeedbackRecord, FeedbackSummary
from ..utils import normalize_name

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FeedbackBias:
    """Signals the engine folds into the next cache miss."""

    liked_names: list[str] = field(default_factory=list)
    dismissed_ids: set[int] = field(default_factory=set)
    dismissed_names: list[str] = field(default_factory=list)

    def is_dismissed(self, name: str) -> bool:
        key = normalize_name(name)
        return any(normalize_name(dismissed) == key for dismissed in self.dismissed_names)

    def is_dismissed_game(self, game_id: int, name: str) -> bool:
        return game_id in self.dismissed_ids or self.is_dismissed(name)


class FeedbackLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, record: FeedbackRecord) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    FeedbackRecordRow(
                        user_id=record.user_id,
                        game_id=record.game_id,
                        game_name=record.game_name,
                        action=record.action.value,
                        created_at=record.timestamp,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"Could not store feedback for {record.user_id}") from exc
        logger.info(
            "Feedback %s for game %s from user %s",
            record.action.value,
            record.game_id,
            record.user_id,
        )

    async def history(self, user_id: str, *, limit: int | None = None) -> list[FeedbackRecord]:
        """Return feedback for ``user_id``, most recent first."""

        stmt = (
            select(FeedbackRecordRow)
            .where(FeedbackRecordRow.user_id == user_id)
            .order_by(FeedbackRecordRow.created_at.desc(), FeedbackRecordRow.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise CacheUnavailable(f"Could not read feedback for {user_id}") from exc
        return [
            FeedbackRecord(
                user_id=row.user_id,
                game_id=row.game_id,
                game_name=row.game_name,
                action=FeedbackAction(row.action),
                timestamp=row.created_at,
            )
            for row in rows
        ]

    async def liked_names(self, user_id: str, *, limit: int = 20) -> list[str]:
        """Names of games the user added, most recent first and without repeats."""

        return self._liked(await self.history(user_id), limit)

    async def dismissed(self, user_id: str) -> tuple[set[int], list[str]]:
        return self._dismissed(await self.history(user_id))

    async def bias(self, user_id: str, *, liked_limit: int = 20) -> FeedbackBias:
        records = await self.history(user_id)
        dismissed_ids, dismissed_names = self._dismissed(records)
        return FeedbackBias(
            liked_names=self._liked(records, liked_limit),
            dismissed_ids=dismissed_ids,
            dismissed_names=dismissed_names,
        )

    async def summary(self, user_id: str) -> FeedbackSummary:
        summary = FeedbackSummary()
        for record in await self.history(user_id):
            summary.total += 1
            if record.action is FeedbackAction.ADDED:
                summary.added += 1
            elif record.action is FeedbackAction.DISMISSED:
                summary.dismissed += 1
            else:
                summary.ignored += 1
        return summary

    @staticmethod
    def _liked(records: list[FeedbackRecord], limit: int) -> list[str]:
        names: list[str] = []
        seen: set[str] = set()
        for record in records:
            name = (record.game_name or "").strip()
            if record.action is not FeedbackAction.ADDED or not name:
                continue
            key = normalize_name(name)
            if key in seen:
                continue
            if len(names) >= limit:
                break
            seen.add(key)
            names.append(name)
        return names

    @staticmethod
    def _dismissed(records: list[FeedbackRecord]) -> tuple[set[int], list[str]]:
        ids: set[int] = set()
        names: list[str] = []
        seen: set[str] = set()
        for record in records:
            if record.action is not FeedbackAction.DISMISSED:
                continue
            ids.add(record.game_id)
            name = (record.game_name or "").strip()
            if name and normalize_name(name) not in seen:
                seen.add(normalize_name(name))
                names.append(name)
        return ids, names
