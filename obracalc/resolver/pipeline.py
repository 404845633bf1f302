"""Line item resolution with a confidence-gated fallback chain.

Each task runs: triage -> catalog search -> estimation -> decomposition,
with the triage decision only changing which branch is tried first. Every
external call is retried once locally; a failing branch falls through to
the next. ``resolve`` always returns an item, at worst a zero-confidence
placeholder flagged for review.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import TypeVar
from uuid import uuid4

from obracalc.catalog.keywords import keyword_overlap
from obracalc.catalog.search import CatalogSearchService
from obracalc.config import ResolverConfig, get_config
from obracalc.core.gateway import RateLimitedGateway
from obracalc.core.llm import Completer, PriceSearcher
from obracalc.models import (
    Assembly,
    Decomposition,
    MaterialMatch,
    ResolvedLineItem,
    TriageDecision,
)
from obracalc.resolver.prompts import DECOMPOSITION_PROMPT, TRIAGE_PROMPT, context_block

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_ATTEMPTS = 2  # first try plus one local retry

BRANCH_ORDER = {
    "catalog": ("catalog", "estimate", "decompose"),
    "bespoke": ("estimate", "decompose", "catalog"),
}


class SubtaskBudget:
    """Caps the total number of sub-tasks spawned for one top-level task."""

    def __init__(self, limit: int):
        self.remaining = limit

    def take(self, wanted: int) -> int:
        granted = max(0, min(wanted, self.remaining))
        self.remaining -= granted
        return granted


def placeholder(task: str, quantity: Decimal, unit: str, reason: str) -> MaterialMatch:
    return MaterialMatch(
        code=f"REVIEW-{uuid4().hex[:6].upper()}",
        description=task or "Partida sin descripción",
        unit=unit,
        unit_price=Decimal("0"),
        quantity=quantity,
        match_confidence=0.0,
        source="placeholder",
        is_estimate=True,
        needs_review=True,
        original_task=task,
        note=f"Manual pricing required: {reason}",
    )


class ResolverPipeline:
    """Resolves a task description into a priced line item.

    Example:
        >>> resolver = ResolverPipeline(search, completer, price_searcher, gateway)
        >>> item = await resolver.resolve("Pintura de paredes interiores", 20, "m2")
        >>> item.total_price
        Decimal('178.00')
    """

    def __init__(
        self,
        search: CatalogSearchService,
        completer: Completer,
        price_searcher: PriceSearcher,
        gateway: RateLimitedGateway,
        config: ResolverConfig | None = None,
    ):
        self.search = search
        self.completer = completer
        self.price_searcher = price_searcher
        self.gateway = gateway
        self.config = config or get_config().resolver

    async def resolve(
        self,
        task: str,
        quantity: Decimal | float | int = 1,
        unit: str = "u",
        context: str | None = None,
        year: int | None = None,
    ) -> ResolvedLineItem:
        """Resolve one task. Never raises for task-level failures."""
        task = (task or "").strip()
        quantity = Decimal(str(quantity))
        unit = unit or "u"
        budget = SubtaskBudget(self.config.max_total_subtasks)

        try:
            return await self._resolve(task, quantity, unit, 0, context, year, budget)
        except Exception as e:
            logger.exception(f"Resolution of '{task[:60]}' failed unexpectedly")
            return placeholder(task, quantity, unit, str(e))

    async def _resolve(
        self,
        task: str,
        quantity: Decimal,
        unit: str,
        depth: int,
        context: str | None,
        year: int | None,
        budget: SubtaskBudget,
    ) -> ResolvedLineItem:
        route, query = "catalog", task
        if task:
            decision = await self._attempt(
                "triage",
                lambda: self.completer.complete(
                    TRIAGE_PROMPT.format(task=task, context=context_block(context)),
                    TriageDecision,
                ),
            )
            if decision is not None:
                route = decision.route
                query = (decision.query or task).strip() or task
                logger.debug(f"Triage '{task[:40]}' -> {route} ({decision.reasoning})")

        low_confidence: MaterialMatch | None = None

        for branch in BRANCH_ORDER[route]:
            item: ResolvedLineItem | None = None

            if branch == "catalog":
                item = await self._match_catalog(task, query, quantity, year)
            elif branch == "estimate":
                estimate = await self._estimate(task, query, quantity, context)
                if estimate is not None:
                    if estimate.match_confidence >= self.config.estimation_confidence_threshold:
                        item = estimate
                    else:
                        low_confidence = estimate
            else:
                item = await self._decompose(task, quantity, unit, depth, context, year, budget)

            if item is not None:
                logger.info(f"Resolved '{task[:40]}' via {branch} at depth {depth}")
                return item

        if low_confidence is not None:
            low_confidence.needs_review = True
            return low_confidence

        return placeholder(task, quantity, unit, "no branch produced a price")

    async def _attempt(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        via_gateway: bool = True,
    ) -> T | None:
        for attempt in range(1, LOCAL_ATTEMPTS + 1):
            try:
                if via_gateway:
                    return await self.gateway.call(operation, fn)
                return await fn()
            except Exception as e:
                logger.warning(f"{operation} failed (attempt {attempt}/{LOCAL_ATTEMPTS}): {e}")
        return None

    async def _match_catalog(
        self, task: str, query: str, quantity: Decimal, year: int | None
    ) -> MaterialMatch | None:
        matches = await self._attempt(
            "catalog_search",
            lambda: self.search.search(query, k=max(5, self.config.search_k), year=year),
            via_gateway=False,
        )
        if not matches:
            return None

        top = matches[0]
        if top.score <= self.config.catalog_confidence_threshold:
            return None

        overlap = max(
            keyword_overlap(task, top.item.description),
            keyword_overlap(query, top.item.description),
        )
        if overlap < self.config.min_keyword_overlap:
            logger.debug(f"Rejected {top.item.code} for '{task[:40]}': no shared keywords")
            return None

        return MaterialMatch(
            code=top.item.code,
            description=top.item.description,
            unit=top.item.unit,
            unit_price=top.item.unit_price,
            quantity=quantity,
            match_confidence=top.score,
            source="catalog",
            original_task=task,
        )

    async def _estimate(
        self, task: str, query: str, quantity: Decimal, context: str | None
    ) -> MaterialMatch | None:
        search_query = f"{query} ({context})" if context else query
        if not search_query:
            return None

        estimate = await self._attempt(
            "price_search", lambda: self.price_searcher.search(search_query)
        )
        if estimate is None or estimate.price <= 0:
            return None

        return MaterialMatch(
            code=f"EST-{uuid4().hex[:6].upper()}",
            description=estimate.description,
            unit=estimate.unit,
            unit_price=estimate.price,
            quantity=quantity,
            match_confidence=estimate.confidence,
            source="estimate",
            is_estimate=True,
            original_task=task,
            note=f"Estimated price. Source: {estimate.source_url or estimate.source}",
        )

    async def _decompose(
        self,
        task: str,
        quantity: Decimal,
        unit: str,
        depth: int,
        context: str | None,
        year: int | None,
        budget: SubtaskBudget,
    ) -> Assembly | None:
        if depth >= self.config.max_depth or not task or budget.remaining <= 0:
            return None

        decomposition = await self._attempt(
            "decompose",
            lambda: self.completer.complete(
                DECOMPOSITION_PROMPT.format(
                    task=task,
                    quantity=quantity,
                    unit=unit,
                    context=context_block(context),
                    max_items=self.config.max_subtasks,
                ),
                Decomposition,
            ),
        )
        if decomposition is None:
            return None

        subtasks = [s for s in decomposition.components if s.description.strip()]
        subtasks = subtasks[: budget.take(min(len(subtasks), self.config.max_subtasks))]
        if not subtasks:
            return None

        components = [
            await self._resolve(
                sub.description.strip(),
                sub.quantity if sub.quantity > 0 else Decimal("1"),
                sub.unit or "u",
                depth + 1,
                context,
                year,
                budget,
            )
            for sub in subtasks
        ]

        return Assembly(
            description=task,
            quantity=quantity,
            unit=unit,
            components=components,
            is_estimate=any(c.is_estimate for c in components),
            needs_review=any(c.needs_review for c in components),
            original_task=task,
            note=f"Decomposed into {len(components)} items",
        )
