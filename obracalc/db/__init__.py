"""Database layer for obracalc with async SQLAlchemy."""

from obracalc.db.connection import get_session, init_db
from obracalc.db.models import (
    Base,
    CatalogItemModel,
    GenerationEventModel,
    IngestionJobModel,
)

__all__ = [
    "Base",
    "CatalogItemModel",
    "IngestionJobModel",
    "GenerationEventModel",
    "get_session",
    "init_db",
]
