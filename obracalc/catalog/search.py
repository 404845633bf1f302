"""Semantic catalog search.

Embeds the query through the gateway and ranks catalog items by cosine
similarity. Optionally re-ranks with reciprocal rank fusion against a lexical
keyword ranking; scores always remain the raw cosine similarity.
"""

from __future__ import annotations

import logging

from obracalc.catalog.keywords import keyword_overlap
from obracalc.catalog.store import CatalogStore
from obracalc.core.embeddings import Embedder
from obracalc.core.gateway import RateLimitedGateway
from obracalc.models import CatalogMatch

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2

# Reciprocal rank fusion
RRF_K = 60
SEMANTIC_WEIGHT = 0.85
LEXICAL_WEIGHT = 0.15


def fuse_rankings(query: str, matches: list[CatalogMatch]) -> list[CatalogMatch]:
    """Re-order semantic matches by weighted reciprocal rank fusion."""
    lexical = sorted(
        matches,
        key=lambda m: (-keyword_overlap(query, m.item.description), -m.score, m.item.code),
    )
    lexical_rank = {m.item.code: rank for rank, m in enumerate(lexical, 1)}

    def fused(rank_match: tuple[int, CatalogMatch]) -> float:
        rank, match = rank_match
        return SEMANTIC_WEIGHT / (RRF_K + rank) + LEXICAL_WEIGHT / (
            RRF_K + lexical_rank[match.item.code]
        )

    ranked = sorted(enumerate(matches, 1), key=lambda pair: (-fused(pair), pair[1].item.code))
    return [match for _, match in ranked]


class CatalogSearchService:
    """Query text in, ranked catalog matches out."""

    def __init__(self, store: CatalogStore, embedder: Embedder, gateway: RateLimitedGateway):
        self.store = store
        self.embedder = embedder
        self.gateway = gateway

    async def search(
        self,
        query_text: str,
        k: int = 5,
        year: int | None = None,
        rerank: bool = False,
    ) -> list[CatalogMatch]:
        """Search the catalog.

        Queries shorter than two characters return ``[]`` without any
        embedding call.
        """
        query = (query_text or "").strip()
        if len(query) < MIN_QUERY_LENGTH or k <= 0:
            return []

        vector = await self.gateway.call("embed_query", lambda: self.embedder.embed(query))
        matches = await self.store.nearest_neighbors(vector, k, year=year)
        logger.debug(f"Search '{query[:40]}' -> {len(matches)} matches")

        return fuse_rankings(query, matches) if rerank else matches
