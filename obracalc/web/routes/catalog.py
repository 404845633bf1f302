"""Catalog search and listing routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from obracalc.core.errors import ExternalServiceError
from obracalc.services import Services
from obracalc.web.dependencies import get_services
from obracalc.web.models import CatalogListing, SearchResult

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/search", response_model=list[SearchResult])
async def search_catalog(
    q: str = "",
    k: int = Query(default=5, ge=1, le=50),
    year: int | None = None,
    rerank: bool = False,
    services: Services = Depends(get_services),
):
    """Semantic search; queries under two characters return an empty list."""
    try:
        matches = await services.search.search(q, k=k, year=year, rerank=rerank)
    except ExternalServiceError as e:
        raise HTTPException(status_code=503, detail=f"Search unavailable: {e}")
    return [SearchResult.from_match(m) for m in matches]


@router.get("/items", response_model=CatalogListing)
async def list_items(
    year: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
):
    items = await services.store.list_by_year(year, limit=limit, offset=offset)
    return CatalogListing(
        year=year,
        total=await services.store.count_by_year(year),
        items=[SearchResult.from_item(item) for item in items],
    )
