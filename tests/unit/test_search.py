"""Unit tests for catalog search and rank fusion."""

from decimal import Decimal

import pytest

from obracalc.catalog.search import CatalogSearchService, fuse_rankings
from obracalc.catalog.store import CatalogStore
from obracalc.models import CatalogItem, CatalogMatch
from tests.support import FakeEmbedder, catalog_item, unit_vector


def match(code: str, description: str, score: float) -> CatalogMatch:
    item = CatalogItem(code=code, description=description, unit="u", unit_price=Decimal("1"), year=2024)
    return CatalogMatch(item=item, score=score)


@pytest.fixture
def store(session_factory) -> CatalogStore:
    return CatalogStore(session_factory)


class TestSearch:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", " ", "a", "  b  "])
    async def test_short_queries_skip_embedding(self, store, gateway, query):
        embedder = FakeEmbedder()
        service = CatalogSearchService(store, embedder, gateway)

        assert await service.search(query) == []
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_returns_top_k_by_similarity(self, store, gateway):
        embedder = FakeEmbedder({"pintura plástica": unit_vector(1, 0.05)})
        await store.upsert_many(
            [
                catalog_item("RP0010", "Pintura plástica lisa", embedding=unit_vector(1, 0)),
                catalog_item("RP0020", "Pintura al temple", embedding=unit_vector(1, 1)),
                catalog_item("RA0001", "Alicatado cerámico", embedding=unit_vector(0, 1)),
            ]
        )
        service = CatalogSearchService(store, embedder, gateway)

        matches = await service.search("pintura plástica", k=2)

        assert [m.item.code for m in matches] == ["RP0010", "RP0020"]
        assert matches[0].score > 0.99
        assert embedder.calls == [["pintura plástica"]]

    @pytest.mark.asyncio
    async def test_year_filter(self, store, gateway):
        embedder = FakeEmbedder({"pintura": unit_vector(1, 0)})
        await store.upsert_many(
            [
                catalog_item("RP0010", "Pintura 2023", year=2023, embedding=unit_vector(1, 0)),
                catalog_item("RP0010", "Pintura 2024", year=2024, embedding=unit_vector(1, 0)),
            ]
        )
        service = CatalogSearchService(store, embedder, gateway)

        matches = await service.search("pintura", year=2023)

        assert [m.item.description for m in matches] == ["Pintura 2023"]

    @pytest.mark.asyncio
    async def test_rerank_keeps_raw_scores(self, store, gateway):
        embedder = FakeEmbedder({"alicatado de baño": unit_vector(1, 0)})
        await store.upsert_many(
            [
                catalog_item("A0001", "Pintura de fachada", embedding=unit_vector(1, 0.01)),
                catalog_item("A0002", "Alicatado de baño completo", embedding=unit_vector(1, 0.02)),
            ]
        )
        service = CatalogSearchService(store, embedder, gateway)

        plain = await service.search("alicatado de baño", k=2)
        fused = await service.search("alicatado de baño", k=2, rerank=True)

        assert {m.item.code: m.score for m in plain} == {m.item.code: m.score for m in fused}


class TestFuseRankings:
    def test_lexical_signal_promotes_close_second(self):
        matches = [
            match("A0001", "Pintura de fachada", 0.95),
            match("A0002", "Alicatado de baño", 0.94),
        ] + [match(f"B00{i:02d}", f"Alicatado pared {i}", 0.90 - i / 100) for i in range(8)]

        fused = fuse_rankings("alicatado baño", matches)

        assert [m.item.code for m in fused[:3]] == ["A0002", "A0001", "B0000"]
        assert fused[0].score == 0.94
        assert len(fused) == len(matches)

    def test_semantic_order_kept_without_lexical_signal(self):
        matches = [match("A0001", "uno", 0.9), match("A0002", "dos", 0.8), match("A0003", "tres", 0.7)]

        fused = fuse_rankings("nada en comun", matches)

        assert [m.item.code for m in fused] == ["A0001", "A0002", "A0003"]

    def test_empty(self):
        assert fuse_rankings("pintura", []) == []
