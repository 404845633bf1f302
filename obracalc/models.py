"""obracalc Pydantic models for type-safe data validation.

Money is carried as ``Decimal`` end to end; embeddings as plain float lists.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value: Decimal | float | int | str) -> Decimal:
    """Quantize a value to cents, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ============================================================================
# Catalog
# ============================================================================


class CatalogItem(BaseModel):
    """Priced reference item from a year's price book."""

    code: str
    description: str
    unit: str
    unit_price: Decimal
    year: int
    embedding: list[float] = Field(default_factory=list)
    source_job_id: str | None = None

    @field_validator("unit_price")
    @classmethod
    def validate_unit_price(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("unit_price must be positive")
        # Stored with four decimals; keep cents unless the price is sub-cent
        v = v.normalize()
        if v.as_tuple().exponent > -2:
            v = v.quantize(CENT)
        return v

    def embedding_text(self) -> str:
        return f"{self.code}: {self.description} ({self.unit})"

    class Config:
        json_schema_extra = {
            "example": {
                "code": "B0001.0030",
                "description": "Oficial 1ª construcción",
                "unit": "h",
                "unit_price": Decimal("28.59"),
                "year": 2024,
            }
        }


class CatalogMatch(BaseModel):
    """A catalog item with its similarity to a query."""

    item: CatalogItem
    score: float


# ============================================================================
# Ingestion jobs
# ============================================================================


class JobStatus(str, Enum):
    QUEUED = "queued"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: Literal["info", "warning", "error", "success"] = "info"
    message: str


class IngestionJob(BaseModel):
    """Tracked lifecycle of one price book ingestion."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    status: JobStatus = JobStatus.QUEUED
    file_name: str | None = None
    year: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    logs: list[JobLog] = Field(default_factory=list)
    total_items: int = 0
    processed_items: int = 0
    skipped_items: int = 0
    dropped_items: int = 0
    progress: int = 0  # 0-100
    error: str | None = None


# ============================================================================
# Resolved line items
# ============================================================================


class MaterialMatch(BaseModel):
    """A single priced line, from the catalog or from an estimate."""

    type: Literal["material"] = "material"
    code: str
    description: str
    unit: str
    unit_price: Decimal
    quantity: Decimal = Decimal("1")
    total_price: Decimal = Decimal("0")
    match_confidence: float = 0.0
    source: Literal["catalog", "estimate", "placeholder"] = "catalog"
    is_estimate: bool = False
    needs_review: bool = False
    original_task: str | None = None
    note: str | None = None

    @model_validator(mode="after")
    def compute_total(self) -> MaterialMatch:
        self.total_price = money(self.unit_price * self.quantity)
        return self


class Assembly(BaseModel):
    """A synthesized line composed of resolved sub-items."""

    type: Literal["assembly"] = "assembly"
    synthetic_code: str = Field(default_factory=lambda: f"ASM-{uuid4().hex[:6].upper()}")
    description: str
    note: str | None = None
    quantity: Decimal = Decimal("1")
    unit: str = "u"
    components: list[ResolvedLineItem] = Field(default_factory=list)
    total_price: Decimal = Decimal("0")
    is_estimate: bool = False
    needs_review: bool = False
    original_task: str | None = None

    @model_validator(mode="after")
    def compute_total(self) -> Assembly:
        self.total_price = money(sum((c.total_price for c in self.components), Decimal("0")))
        return self


ResolvedLineItem = Annotated[Union[MaterialMatch, Assembly], Field(discriminator="type")]
Assembly.model_rebuild()


# ============================================================================
# Budget
# ============================================================================


class BudgetChapter(BaseModel):
    name: str
    items: list[ResolvedLineItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")

    @model_validator(mode="after")
    def compute_subtotal(self) -> BudgetChapter:
        self.subtotal = money(sum((i.total_price for i in self.items), Decimal("0")))
        return self


class CostBreakdown(BaseModel):
    material_execution_price: Decimal
    overhead_expenses: Decimal
    industrial_benefit: Decimal
    tax: Decimal
    global_adjustment: Decimal
    total: Decimal


class Budget(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    scope_id: str
    title: str
    chapters: list[BudgetChapter] = Field(default_factory=list)
    cost_breakdown: CostBreakdown
    total_estimated: Decimal
    pending_review: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Generation events
# ============================================================================


class EventType(str, Enum):
    DECOMPOSITION_START = "decomposition_start"
    CHAPTER_START = "chapter_start"
    ITEM_RESOLVING = "item_resolving"
    ITEM_RESOLVED = "item_resolved"
    VALIDATION_START = "validation_start"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR)


class GenerationEvent(BaseModel):
    """Append-only progress record scoped to a lead/session."""

    type: EventType
    scope_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    sequence: int = 0  # tie-breaker within a scope


# ============================================================================
# Structured outputs from the completion service
# ============================================================================


class TriageDecision(BaseModel):
    route: Literal["catalog", "bespoke"] = "catalog"
    query: str | None = None
    reasoning: str = ""


class PriceEstimate(BaseModel):
    description: str
    price: Decimal
    unit: str = "u"
    source: str = "Estimación de mercado"
    source_url: str | None = None
    confidence: float = 0.0

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


class SubTask(BaseModel):
    description: str
    quantity: Decimal = Decimal("1")
    unit: str = "u"


class Decomposition(BaseModel):
    components: list[SubTask] = Field(default_factory=list)


class PlannedChapter(BaseModel):
    name: str
    description: str = ""
    tasks: list[SubTask] = Field(default_factory=list)


class ProjectPlan(BaseModel):
    title: str = ""
    chapters: list[PlannedChapter] = Field(default_factory=list)
