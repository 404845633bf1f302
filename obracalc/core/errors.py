"""Error taxonomy for obracalc.

Parse and validation errors are absorbed by the ingestion pipeline and
recorded in the job log. Rate-limit and external-service errors drive
retries at the gateway and branch fallback in the resolver. Not-found
conditions are returned as ``None``/empty results at the public interface.
"""

from __future__ import annotations


class ObracalcError(Exception):
    """Base class for all obracalc errors."""


class ParseError(ObracalcError):
    """A document line could not be segmented into a catalog record."""

    def __init__(self, message: str, line: str | None = None):
        super().__init__(message)
        self.line = line


class ValidationError(ObracalcError):
    """A parsed record failed price or unit sanity checks."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ExternalServiceError(ObracalcError):
    """A completion, embedding or web-search call failed."""


class RateLimitError(ExternalServiceError):
    """The external service throttled the request (HTTP 429 or equivalent)."""


class NotFoundError(ObracalcError):
    """A requested job or catalog entry does not exist."""
