"""Event bus for budget generation progress.

Events are scoped by a lead/session id, written to a pluggable sink
(in-memory for tests, database for production) and fanned out to live
subscribers. A subscriber may replay the persisted history of its scope
before receiving live events; duplicates are suppressed by sequence number.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from obracalc.db.connection import get_session
from obracalc.db.models import GenerationEventModel
from obracalc.models import EventType, GenerationEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def write(self, event: GenerationEvent) -> None: ...

    async def history(self, scope_id: str) -> list[GenerationEvent]: ...


class InMemoryEventSink:
    """Keeps events in process memory, ordered per scope."""

    def __init__(self) -> None:
        self._events: dict[str, list[GenerationEvent]] = defaultdict(list)

    async def write(self, event: GenerationEvent) -> None:
        self._events[event.scope_id].append(event)

    async def history(self, scope_id: str) -> list[GenerationEvent]:
        return list(self._events.get(scope_id, []))


class DatabaseEventSink:
    """Persists events to the ``generation_events`` table."""

    def __init__(
        self,
        session_factory: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_session,
    ):
        self._session_factory = session_factory

    async def write(self, event: GenerationEvent) -> None:
        async with self._session_factory() as session:
            session.add(
                GenerationEventModel(
                    scope_id=event.scope_id,
                    type=event.type.value,
                    data=event.model_dump(mode="json")["data"],
                    timestamp=event.timestamp,
                    sequence=event.sequence,
                )
            )

    async def history(self, scope_id: str) -> list[GenerationEvent]:
        async with self._session_factory() as session:
            stmt = (
                select(GenerationEventModel)
                .where(GenerationEventModel.scope_id == scope_id)
                .order_by(GenerationEventModel.timestamp, GenerationEventModel.sequence)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                GenerationEvent(
                    type=EventType(row.type),
                    scope_id=row.scope_id,
                    data=row.data or {},
                    timestamp=row.timestamp,
                    sequence=row.sequence,
                )
                for row in rows
            ]


class Subscription:
    """Ordered, de-duplicated view of one scope's events."""

    def __init__(self, scope_id: str):
        self.scope_id = scope_id
        self.queue: asyncio.Queue[GenerationEvent] = asyncio.Queue()
        self._last_sequence = -1
        self._pending: list[GenerationEvent] | None = []  # live events held during replay

    def deliver(self, event: GenerationEvent) -> None:
        if self._pending is not None:
            self._pending.append(event)
        else:
            self.queue.put_nowait(event)

    def finish_replay(self, history: list[GenerationEvent]) -> None:
        for event in history + sorted(self._pending or [], key=lambda e: e.sequence):
            self.queue.put_nowait(event)
        self._pending = None

    async def get(self, timeout: float | None = None) -> GenerationEvent | None:
        """Next unseen event, or ``None`` if ``timeout`` elapses first."""
        while True:
            try:
                event = await asyncio.wait_for(self.queue.get(), timeout)
            except asyncio.TimeoutError:
                return None
            if event.sequence <= self._last_sequence:
                continue
            self._last_sequence = event.sequence
            return event


class EventBus:
    """Process-wide publisher keyed by scope id, backed by a pluggable sink.

    Publishing is serialized: a sequence number is assigned, the event
    written and delivered before the next publish starts, so live
    subscribers always see increasing sequences.
    """

    def __init__(self, sink: EventSink | None = None):
        self.sink: EventSink = sink or InMemoryEventSink()
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)
        self._sequences: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def _next_sequence(self, scope_id: str) -> int:
        if scope_id not in self._sequences:
            # Continue numbering after anything already persisted for this scope
            history = await self.sink.history(scope_id)
            self._sequences[scope_id] = history[-1].sequence if history else -1
        self._sequences[scope_id] += 1
        return self._sequences[scope_id]

    async def publish(
        self, scope_id: str, event_type: EventType, data: dict[str, Any] | None = None
    ) -> GenerationEvent:
        async with self._lock:
            event = GenerationEvent(
                type=event_type,
                scope_id=scope_id,
                data=data or {},
                sequence=await self._next_sequence(scope_id),
            )

            try:
                await self.sink.write(event)
            except Exception as e:
                # Live subscribers still get the event; only the replay log misses it
                logger.warning(f"Failed to persist event {event_type.value} for {scope_id}: {e}")

            for subscription in list(self._subscribers.get(scope_id, ())):
                subscription.deliver(event)

            if event_type.is_terminal:
                # A later publish resumes numbering from the sink's history
                self._sequences.pop(scope_id, None)

        return event

    def tracked_scopes(self) -> int:
        return len(self._sequences)

    def scoped(self, scope_id: str) -> ScopedPublisher:
        return ScopedPublisher(self, scope_id)

    def subscriber_count(self, scope_id: str) -> int:
        return len(self._subscribers.get(scope_id, ()))

    @asynccontextmanager
    async def subscribe(self, scope_id: str, replay: bool = True) -> AsyncIterator[Subscription]:
        """Register a listener for a scope; removed when the context exits."""
        subscription = Subscription(scope_id)
        self._subscribers[scope_id].add(subscription)
        try:
            subscription.finish_replay(await self.sink.history(scope_id) if replay else [])
            yield subscription
        finally:
            self._subscribers[scope_id].discard(subscription)
            if not self._subscribers[scope_id]:
                del self._subscribers[scope_id]


class ScopedPublisher:
    """Event bus handle with the scope id injected."""

    def __init__(self, bus: EventBus, scope_id: str):
        self.bus = bus
        self.scope_id = scope_id

    async def emit(self, event_type: EventType, **data: Any) -> GenerationEvent:
        return await self.bus.publish(self.scope_id, event_type, data)
