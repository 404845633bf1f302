"""Request and response models for the obracalc HTTP API."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from obracalc.models import CatalogItem, CatalogMatch


class IngestResponse(BaseModel):
    job_id: str


class DeleteYearResponse(BaseModel):
    year: int
    deleted: int


class SearchResult(BaseModel):
    code: str
    description: str
    unit: str
    unit_price: Decimal
    year: int
    score: float | None = None

    @classmethod
    def from_item(cls, item: CatalogItem, score: float | None = None) -> SearchResult:
        return cls(
            code=item.code,
            description=item.description,
            unit=item.unit,
            unit_price=item.unit_price,
            year=item.year,
            score=None if score is None else round(score, 4),
        )

    @classmethod
    def from_match(cls, match: CatalogMatch) -> SearchResult:
        return cls.from_item(match.item, match.score)


class CatalogListing(BaseModel):
    year: int
    total: int
    items: list[SearchResult]


class ResolveRequest(BaseModel):
    task: str = ""
    quantity: Decimal = Decimal("1")
    unit: str = "u"
    context: str | None = None
    year: int | None = None


class GenerateBudgetRequest(BaseModel):
    description: str = Field(..., min_length=1)
    scope_id: str | None = None
    total_area: float | None = Field(default=None, gt=0)
    context: str | None = None
    year: int | None = None
