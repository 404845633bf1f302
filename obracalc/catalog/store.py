"""Year-scoped catalog store over SQLAlchemy.

Point lookup by (code, year), year deletion, and cosine nearest-neighbour
search. PostgreSQL uses the pgvector distance operator; other dialects fall
back to an in-Python scan (fine for tests and small catalogs).
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from obracalc.db.connection import get_session
from obracalc.db.models import CatalogItemModel
from obracalc.models import CatalogItem, CatalogMatch

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0
    dot_product = sum(a * b for a, b in zip(v1, v2))
    norm_a = math.sqrt(sum(a * a for a in v1))
    norm_b = math.sqrt(sum(b * b for b in v2))
    return dot_product / (norm_a * norm_b) if norm_a and norm_b else 0.0


def _embedding_list(raw: Any) -> list[float]:
    if raw is None:
        return []
    return [float(x) for x in raw]


def _to_domain(row: CatalogItemModel) -> CatalogItem:
    return CatalogItem(
        code=row.code,
        description=row.description,
        unit=row.unit,
        unit_price=row.unit_price,
        year=row.year,
        embedding=_embedding_list(row.embedding),
        source_job_id=row.source_job_id,
    )


class CatalogStore:
    """Persisted collection of priced, embedded catalog items."""

    def __init__(self, session_factory: SessionFactory = get_session):
        self._session_factory = session_factory

    async def upsert_many(self, items: Sequence[CatalogItem]) -> int:
        """Insert items not already present for their (year, code).

        Existing entries are never updated in place; returns the number inserted.
        """
        if not items:
            return 0

        inserted = 0
        async with self._session_factory() as session:
            by_year: dict[int, list[CatalogItem]] = {}
            for item in items:
                by_year.setdefault(item.year, []).append(item)

            for year, year_items in by_year.items():
                codes = {i.code for i in year_items}
                stmt = select(CatalogItemModel.code).where(
                    CatalogItemModel.year == year, CatalogItemModel.code.in_(codes)
                )
                existing = set((await session.execute(stmt)).scalars().all())

                for item in year_items:
                    if item.code in existing:
                        logger.debug(f"Skipping duplicate catalog code {item.code} ({year})")
                        continue
                    existing.add(item.code)
                    session.add(
                        CatalogItemModel(
                            year=item.year,
                            code=item.code,
                            description=item.description,
                            unit=item.unit,
                            unit_price=item.unit_price,
                            embedding=item.embedding or None,
                            source_job_id=item.source_job_id,
                        )
                    )
                    inserted += 1

        return inserted

    async def find_by_code(self, code: str, year: int) -> CatalogItem | None:
        async with self._session_factory() as session:
            stmt = select(CatalogItemModel).where(
                CatalogItemModel.code == code, CatalogItemModel.year == year
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_domain(row) if row else None

    async def delete_by_year(self, year: int) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CatalogItemModel).where(CatalogItemModel.year == year)
            )
            count = result.rowcount or 0
        logger.info(f"Deleted {count} catalog items for year {year}")
        return count

    async def count_by_year(self, year: int) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count()).select_from(CatalogItemModel).where(
                CatalogItemModel.year == year
            )
            return int(await session.scalar(stmt) or 0)

    async def list_by_year(self, year: int, limit: int = 50, offset: int = 0) -> list[CatalogItem]:
        async with self._session_factory() as session:
            stmt = (
                select(CatalogItemModel)
                .where(CatalogItemModel.year == year)
                .order_by(CatalogItemModel.code)
                .limit(limit)
                .offset(offset)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_domain(r) for r in rows]

    async def nearest_neighbors(
        self,
        query_vector: Sequence[float],
        k: int,
        year: int | None = None,
    ) -> list[CatalogMatch]:
        """Top-k items by cosine similarity, ties broken by lower code."""
        if k <= 0 or not query_vector:
            return []

        async with self._session_factory() as session:
            dialect = session.bind.dialect.name if session.bind else "sqlite"

            if dialect == "postgresql":
                distance = CatalogItemModel.embedding.cosine_distance(list(query_vector))
                stmt = (
                    select(CatalogItemModel, distance.label("distance"))
                    .where(CatalogItemModel.embedding.is_not(None))
                    .order_by(distance, CatalogItemModel.code)
                    .limit(k)
                )
                if year is not None:
                    stmt = stmt.where(CatalogItemModel.year == year)
                rows = (await session.execute(stmt)).all()
                scored = [(_to_domain(row), 1.0 - float(dist)) for row, dist in rows]
            else:
                # Fallback: fetch the year's items and rank in Python
                stmt = select(CatalogItemModel).where(CatalogItemModel.embedding.is_not(None))
                if year is not None:
                    stmt = stmt.where(CatalogItemModel.year == year)
                rows = (await session.execute(stmt)).scalars().all()
                scored = [
                    (_to_domain(row), cosine_similarity(query_vector, _embedding_list(row.embedding)))
                    for row in rows
                ]

        scored.sort(key=lambda pair: (-pair[1], pair[0].code))
        return [CatalogMatch(item=item, score=score) for item, score in scored[:k]]
