from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert

from nsforecast.core.db import Database
from nsforecast.models.domain import Observation
from nsforecast.models.observation import ObservationRecord
from nsforecast.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)


class ObservationSource(Protocol):
    """Anything that can hand back observations for a time range. May return duplicates."""

    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        ...


def dedupe_observations(observations: Iterable[Observation]) -> list[Observation]:
    seen: set[str] = set()
    unique: list[Observation] = []
    for obs in observations:
        if obs.id in seen:
            continue
        seen.add(obs.id)
        unique.append(obs)
    return unique


class ReadingStore(ABC):
    """Time-ordered collection of observations, de-duplicated by external id."""

    @abstractmethod
    async def add_many(self, observations: Iterable[Observation]) -> int:
        """Stores unseen observations; returns how many were new."""

    @abstractmethod
    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        """Observations with start <= timestamp <= end, ascending."""

    @abstractmethod
    async def get(self, observation_id: str) -> Optional[Observation]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Deletes observations strictly older than `older_than`; returns how many."""


class InMemoryReadingStore(ReadingStore):
    def __init__(self, observations: Iterable[Observation] = ()):
        self._by_id: dict[str, Observation] = {}
        for obs in observations:
            self._by_id.setdefault(obs.id, obs)

    async def add_many(self, observations: Iterable[Observation]) -> int:
        added = 0
        for obs in observations:
            if obs.id in self._by_id:
                continue
            self._by_id[obs.id] = obs
            added += 1
        return added

    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        start, end = ensure_utc(start), ensure_utc(end)
        hits = [o for o in self._by_id.values() if start <= o.timestamp <= end]
        return sorted(hits, key=lambda o: o.timestamp)

    async def get(self, observation_id: str) -> Optional[Observation]:
        return self._by_id.get(observation_id)

    async def count(self) -> int:
        return len(self._by_id)

    async def prune(self, older_than: datetime) -> int:
        cutoff = ensure_utc(older_than)
        stale = [key for key, obs in self._by_id.items() if obs.timestamp < cutoff]
        for key in stale:
            del self._by_id[key]
        return len(stale)


class SqlReadingStore(ReadingStore):
    """
    Observations in the `observations` table.
    Timestamps are stored naive UTC, the same convention as the treatments table.
    """

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _naive(dt: datetime) -> datetime:
        return ensure_utc(dt).replace(tzinfo=None)

    def _insert(self, dialect: str):
        if dialect == "postgresql":
            return pg_insert(ObservationRecord)
        return sqlite_insert(ObservationRecord)

    async def add_many(self, observations: Iterable[Observation]) -> int:
        rows = [
            {
                "external_id": obs.id,
                "timestamp": self._naive(obs.timestamp),
                "value_mmol": obs.value,
                "source": obs.source,
            }
            for obs in dedupe_observations(observations)
        ]
        if not rows:
            return 0
        async with self.database.session() as session:
            before = await session.scalar(select(func.count()).select_from(ObservationRecord))
            stmt = self._insert(self.database.engine.dialect.name).values(rows)
            stmt = stmt.on_conflict_do_nothing(index_elements=["external_id"])
            await session.execute(stmt)
            await session.commit()
            after = await session.scalar(select(func.count()).select_from(ObservationRecord))
        added = int(after or 0) - int(before or 0)
        logger.info(f"Stored {added} new observations ({len(rows) - added} duplicates skipped)")
        return added

    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        stmt = (
            select(ObservationRecord)
            .where(ObservationRecord.timestamp >= self._naive(start))
            .where(ObservationRecord.timestamp <= self._naive(end))
            .order_by(ObservationRecord.timestamp.asc())
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
            return [row.to_domain() for row in result.scalars().all()]

    async def get(self, observation_id: str) -> Optional[Observation]:
        stmt = select(ObservationRecord).where(ObservationRecord.external_id == observation_id)
        async with self.database.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return row.to_domain() if row else None

    async def count(self) -> int:
        async with self.database.session() as session:
            total = await session.scalar(select(func.count()).select_from(ObservationRecord))
        return int(total or 0)

    async def prune(self, older_than: datetime) -> int:
        stmt = delete(ObservationRecord).where(ObservationRecord.timestamp < self._naive(older_than))
        async with self.database.session() as session:
            result = await session.execute(stmt)
            await session.commit()
        removed = result.rowcount or 0
        logger.info(f"Pruned {removed} observations older than {older_than.isoformat()}")
        return removed


class StoreObservationSource:
    """Adapts a ReadingStore to the ObservationSource protocol."""

    def __init__(self, store: ReadingStore):
        self.store = store

    async def fetch_range(self, start: datetime, end: datetime) -> list[Observation]:
        return await self.store.fetch_range(start, end)


__all__ = [
    "ObservationSource",
    "ReadingStore",
    "InMemoryReadingStore",
    "SqlReadingStore",
    "StoreObservationSource",
    "dedupe_observations",
]
