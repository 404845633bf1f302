"""Price book ingestion for obracalc.

Turns PDF price books into a year-scoped, embedded catalog.
"""

from obracalc.ingestion.pipeline import IngestionPipeline, IngestionResult
from obracalc.ingestion.pricebooks import format_price, parse_price, segment_records

__all__ = ["IngestionPipeline", "IngestionResult", "format_price", "parse_price", "segment_records"]
