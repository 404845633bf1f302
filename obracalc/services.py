"""Service wiring shared by the web app, CLI and worker.

Collaborators are built once per process. Tests and alternative runtimes can
pass their own adapters to ``build_services``.
"""

from __future__ import annotations

from dataclasses import dataclass

from obracalc.budget.orchestrator import BudgetOrchestrator
from obracalc.catalog.search import CatalogSearchService
from obracalc.catalog.store import CatalogStore, SessionFactory
from obracalc.core.embeddings import Embedder, OpenAIEmbedder
from obracalc.core.events import DatabaseEventSink, EventBus, EventSink
from obracalc.core.gateway import RateLimitedGateway
from obracalc.core.llm import Completer, LLMPriceSearcher, OpenAICompleter, PriceSearcher
from obracalc.db.connection import get_session
from obracalc.ingestion.jobs import IngestionJobRepository
from obracalc.ingestion.pipeline import IngestionPipeline
from obracalc.resolver.pipeline import ResolverPipeline


@dataclass
class Services:
    session_factory: SessionFactory
    gateway: RateLimitedGateway
    embedder: Embedder
    completer: Completer
    price_searcher: PriceSearcher
    store: CatalogStore
    jobs: IngestionJobRepository
    search: CatalogSearchService
    ingestion: IngestionPipeline
    resolver: ResolverPipeline
    events: EventBus
    orchestrator: BudgetOrchestrator


def build_services(
    session_factory: SessionFactory = get_session,
    embedder: Embedder | None = None,
    completer: Completer | None = None,
    price_searcher: PriceSearcher | None = None,
    gateway: RateLimitedGateway | None = None,
    event_sink: EventSink | None = None,
) -> Services:
    gateway = gateway or RateLimitedGateway()
    embedder = embedder or OpenAIEmbedder()
    completer = completer or OpenAICompleter()
    price_searcher = price_searcher or LLMPriceSearcher(completer)

    store = CatalogStore(session_factory)
    jobs = IngestionJobRepository(session_factory)
    search = CatalogSearchService(store, embedder, gateway)
    resolver = ResolverPipeline(search, completer, price_searcher, gateway)
    events = EventBus(event_sink or DatabaseEventSink(session_factory))

    return Services(
        session_factory=session_factory,
        gateway=gateway,
        embedder=embedder,
        completer=completer,
        price_searcher=price_searcher,
        store=store,
        jobs=jobs,
        search=search,
        ingestion=IngestionPipeline(store, jobs, embedder, gateway),
        resolver=resolver,
        events=events,
        orchestrator=BudgetOrchestrator(resolver, completer, gateway, events),
    )


# Global singleton
_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def reset_services() -> None:
    global _services
    _services = None
