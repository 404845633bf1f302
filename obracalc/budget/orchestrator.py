"""Budget generation orchestrator.

Structures a free-text project description into chapters and tasks, resolves
every task with bounded concurrency, and assembles the priced budget while
publishing progress events for the session's scope.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Protocol

from obracalc.budget.costs import compute_breakdown
from obracalc.config import BudgetConfig, get_config
from obracalc.core.errors import ObracalcError
from obracalc.core.events import EventBus, ScopedPublisher
from obracalc.core.gateway import RateLimitedGateway
from obracalc.core.llm import Completer
from obracalc.models import (
    Budget,
    BudgetChapter,
    EventType,
    ProjectPlan,
    ResolvedLineItem,
    SubTask,
)

logger = logging.getLogger(__name__)

PLAN_PROMPT = """You are a Spanish quantity surveyor (aparejador). Break the following renovation
project into budget chapters (e.g. "Demoliciones", "Fontanería", "Electricidad", "Pintura")
and, per chapter, a flat list of atomic tasks that can each be priced as one price book line.

Project: "{description}"
{area}{context}
For each task give a technical Spanish description, the quantity and its unit
(m, m2, m3, u, h, kg). Use the total area to size surface tasks when it is given.
Omit quantity and unit only if they cannot be inferred.

Return JSON:
{{"title": "...", "chapters": [{{"name": "...", "description": "...",
  "tasks": [{{"description": "...", "quantity": 1, "unit": "u"}}]}}]}}
"""


class Resolver(Protocol):
    async def resolve(
        self,
        task: str,
        quantity: Decimal | float | int = 1,
        unit: str = "u",
        context: str | None = None,
        year: int | None = None,
    ) -> ResolvedLineItem: ...


class BudgetGenerationError(ObracalcError):
    """The project description could not be structured into tasks."""


class GenerationCancelled(ObracalcError):
    """The caller went away before all tasks were scheduled."""


class BudgetOrchestrator:
    """Turns a project description into a priced, chapter-structured budget."""

    def __init__(
        self,
        resolver: Resolver,
        completer: Completer,
        gateway: RateLimitedGateway,
        events: EventBus,
        config: BudgetConfig | None = None,
    ):
        self.resolver = resolver
        self.completer = completer
        self.gateway = gateway
        self.events = events
        self.config = config or get_config().budget

    async def plan(
        self, description: str, total_area: float | None = None, context: str | None = None
    ) -> ProjectPlan:
        prompt = PLAN_PROMPT.format(
            description=description,
            area=f"Total area: {total_area} m2\n" if total_area else "",
            context=f"Context: {context}\n" if context else "",
        )
        return await self.gateway.call(
            "structure_project", lambda: self.completer.complete(prompt, ProjectPlan)
        )

    async def generate_budget(
        self,
        description: str,
        scope_id: str,
        total_area: float | None = None,
        context: str | None = None,
        year: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Budget:
        """Generate a budget, publishing events under ``scope_id``.

        Raises:
            BudgetGenerationError: If no tasks could be extracted
            GenerationCancelled: If ``cancel_event`` was set mid-run
        """
        publisher = self.events.scoped(scope_id)
        await publisher.emit(EventType.DECOMPOSITION_START, description=description)

        try:
            plan = await self.plan(description, total_area, context)
        except Exception as e:
            logger.error(f"Structuring failed for scope {scope_id}: {e}")
            await publisher.emit(EventType.ERROR, message=f"Could not structure project: {e}")
            raise BudgetGenerationError(str(e)) from e

        if not any(chapter.tasks for chapter in plan.chapters):
            await publisher.emit(EventType.ERROR, message="No tasks could be extracted")
            raise BudgetGenerationError("No tasks could be extracted from the description")

        chapters = []
        for planned in plan.chapters:
            if not planned.tasks:
                continue
            await publisher.emit(
                EventType.CHAPTER_START, name=planned.name, task_count=len(planned.tasks)
            )
            items = await self._resolve_chapter(
                publisher, planned.name, planned.tasks, context, year, cancel_event
            )
            chapters.append(BudgetChapter(name=planned.name, items=items))

        await publisher.emit(EventType.VALIDATION_START)
        breakdown = compute_breakdown(chapters, self.config)
        budget = Budget(
            scope_id=scope_id,
            title=plan.title or description[:80],
            chapters=chapters,
            cost_breakdown=breakdown,
            total_estimated=breakdown.total,
            pending_review=[
                item.original_task or item.description
                for chapter in chapters
                for item in chapter.items
                if item.needs_review
            ],
        )

        await publisher.emit(
            EventType.COMPLETE,
            budget_id=budget.id,
            total=str(budget.total_estimated),
            pending_review=len(budget.pending_review),
        )
        logger.info(
            f"Budget {budget.id} for scope {scope_id}: {len(chapters)} chapters, "
            f"total {budget.total_estimated}"
        )
        return budget

    async def _resolve_chapter(
        self,
        publisher: ScopedPublisher,
        chapter: str,
        tasks: list[SubTask],
        context: str | None,
        year: int | None,
        cancel_event: asyncio.Event | None,
    ) -> list[ResolvedLineItem]:
        # One slot per declared task; each slot has a single writer
        slots: list[ResolvedLineItem | None] = [None] * len(tasks)
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def run(index: int, task: SubTask) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return
                await publisher.emit(
                    EventType.ITEM_RESOLVING, chapter=chapter, index=index, task=task.description
                )
                item = await self.resolver.resolve(
                    task.description, task.quantity, task.unit, context=context, year=year
                )
                slots[index] = item
                await publisher.emit(
                    EventType.ITEM_RESOLVED,
                    chapter=chapter,
                    index=index,
                    item=item.model_dump(mode="json"),
                )

        await asyncio.gather(*(run(i, t) for i, t in enumerate(tasks)))

        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled(f"Generation cancelled during chapter '{chapter}'")

        return [item for item in slots if item is not None]
