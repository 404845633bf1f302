"""obracalc web route modules.

Each module exports a ``router`` (APIRouter) included by ``obracalc.web.app``.
Shared dependencies come from ``obracalc.web.dependencies``.
"""

from obracalc.web.routes import budget, catalog, health, ingestion

__all__ = ["budget", "catalog", "health", "ingestion"]
