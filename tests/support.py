"""Deterministic fake collaborators shared by the test suite.

Embedding, completion and price-search fakes, plus small builders for
catalog items and text fixtures.
"""

from __future__ import annotations

import hashlib
import math
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from obracalc.catalog.keywords import keywords
from obracalc.core.errors import ExternalServiceError
from obracalc.ingestion.layout import TextToken
from obracalc.models import CatalogItem, PriceEstimate

DIM = 16


def unit_vector(*components: float, dim: int = DIM) -> list[float]:
    values = list(components) + [0.0] * (dim - len(components))
    norm = math.sqrt(sum(v * v for v in values)) or 1.0
    return [v / norm for v in values]


def hashed_vector(text: str, dim: int = DIM) -> list[float]:
    """Bag-of-keywords vector; identical texts map to identical vectors."""
    values = [0.0] * dim
    for word in sorted(keywords(text)) or [text]:
        digest = hashlib.md5(word.encode("utf-8")).digest()
        values[digest[0] % dim] += 1.0
    return unit_vector(*values, dim=dim)


class FakeEmbedder:
    """Deterministic embedder with optional fixed vectors per text."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, dim: int = DIM):
        self.vectors = vectors or {}
        self.dim = dim
        self.calls: list[list[str]] = []
        self.failures: list[Exception] = []  # raised (in order) before succeeding

    def _vector(self, text: str) -> list[float]:
        return self.vectors.get(text) or hashed_vector(text, self.dim)

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self._vector(t) for t in texts]


class ScriptedCompleter:
    """Completion fake answering per schema.

    A script entry may be a value, an exception, a callable taking the prompt,
    or a list consumed one call at a time (last entry repeats).
    """

    def __init__(self, scripts: dict[type, Any] | None = None):
        self.scripts = dict(scripts or {})
        self.prompts: list[tuple[str, type | None]] = []

    def calls_for(self, schema: type) -> list[str]:
        return [prompt for prompt, s in self.prompts if s is schema]

    async def complete(self, prompt, schema=None):
        self.prompts.append((prompt, schema))
        if schema not in self.scripts:
            raise ExternalServiceError(f"No scripted response for {schema}")

        entry = self.scripts[schema]
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(entry, Exception):
            raise entry
        if callable(entry) and not isinstance(entry, type):
            entry = entry(prompt)
            if isinstance(entry, Exception):
                raise entry
        return entry


class ScriptedPriceSearcher:
    def __init__(self, result: PriceEstimate | Exception | Callable[[str], Any] | None = None):
        self.result = result
        self.queries: list[str] = []

    async def search(self, query: str) -> PriceEstimate:
        self.queries.append(query)
        result = self.result(query) if callable(self.result) else self.result
        if result is None:
            raise ExternalServiceError("price search unavailable")
        if isinstance(result, Exception):
            raise result
        return result


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def text_extractor(data: bytes) -> list[TextToken]:
    """Token extractor for plain-text fixtures: one token per line, top to bottom."""
    return [
        TextToken(text=line, x=0.0, y=float(i * 12), page=1)
        for i, line in enumerate(data.decode("utf-8").splitlines())
    ]


def catalog_item(
    code: str,
    description: str,
    unit: str = "u",
    price: str = "10.00",
    year: int = 2024,
    embedding: list[float] | None = None,
) -> CatalogItem:
    item = CatalogItem(code=code, description=description, unit=unit, unit_price=Decimal(price), year=year)
    item.embedding = embedding if embedding is not None else hashed_vector(item.embedding_text())
    return item

