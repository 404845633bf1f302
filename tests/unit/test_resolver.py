"""Unit tests for the line item resolver."""

import math
from decimal import Decimal

import pytest
import pytest_asyncio

from obracalc.catalog.search import CatalogSearchService
from obracalc.catalog.store import CatalogStore
from obracalc.config import ResolverConfig
from obracalc.core.errors import ExternalServiceError
from obracalc.models import (
    Assembly,
    Decomposition,
    MaterialMatch,
    PriceEstimate,
    SubTask,
    TriageDecision,
)
from obracalc.resolver.pipeline import ResolverPipeline, SubtaskBudget
from tests.support import (
    FakeEmbedder,
    ScriptedCompleter,
    ScriptedPriceSearcher,
    catalog_item,
    unit_vector,
)

PAINT_QUERY = "pintura plástica paredes interiores"
NEAR_PAINT = unit_vector(0.9, math.sqrt(0.19))  # cosine 0.9 against unit_vector(1)


def task_of(prompt: str) -> str:
    return prompt.split('Task: "', 1)[1].split('"', 1)[0]


def triage(bespoke: tuple[str, ...] = (), queries: dict[str, str] | None = None):
    """Triage script: bespoke for tasks containing any marker, catalog otherwise."""
    queries = queries or {}

    def decide(prompt: str) -> TriageDecision:
        task = task_of(prompt)
        route = "bespoke" if any(m in task.lower() for m in bespoke) else "catalog"
        return TriageDecision(route=route, query=queries.get(task, task), reasoning="test")

    return decide


@pytest.fixture
def store(session_factory) -> CatalogStore:
    return CatalogStore(session_factory)


@pytest_asyncio.fixture
async def paint_catalog(store):
    await store.upsert_many(
        [
            catalog_item(
                "RP0010",
                "Pintura plástica lisa en paramentos interiores",
                unit="m2",
                price="8.90",
                embedding=unit_vector(1),
            ),
            catalog_item(
                "RA0001", "Alicatado cerámico", unit="m2", price="32.40", embedding=unit_vector(0, 1)
            ),
        ]
    )
    return store


def make_resolver(store, gateway, completer, price_searcher=None, embedder=None, **config):
    embedder = embedder or FakeEmbedder({PAINT_QUERY: NEAR_PAINT})
    return ResolverPipeline(
        search=CatalogSearchService(store, embedder, gateway),
        completer=completer,
        price_searcher=price_searcher or ScriptedPriceSearcher(None),
        gateway=gateway,
        config=ResolverConfig(**config),
    )


class TestCatalogRoute:
    @pytest.mark.asyncio
    async def test_paint_resolves_from_catalog(self, paint_catalog, gateway):
        completer = ScriptedCompleter(
            {TriageDecision: triage(queries={"Pintura de paredes interiores": PAINT_QUERY})}
        )
        price_searcher = ScriptedPriceSearcher(None)
        resolver = make_resolver(paint_catalog, gateway, completer, price_searcher)

        item = await resolver.resolve("Pintura de paredes interiores", 20, "m2")

        assert isinstance(item, MaterialMatch)
        assert item.code == "RP0010"
        assert item.source == "catalog"
        assert item.match_confidence == pytest.approx(0.9)
        assert item.match_confidence >= 0.75
        assert item.total_price == Decimal("178.00")
        assert not item.is_estimate
        assert price_searcher.queries == []

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, paint_catalog, gateway):
        completer = ScriptedCompleter({TriageDecision: triage(queries={"pintar salón": PAINT_QUERY})})
        estimate = PriceEstimate(description="Pintura", price=Decimal("9.50"), unit="m2", confidence=0.8)
        resolver = make_resolver(
            paint_catalog,
            gateway,
            completer,
            ScriptedPriceSearcher(estimate),
            embedder=FakeEmbedder({PAINT_QUERY: unit_vector(1)}),
            catalog_confidence_threshold=1.0,
        )

        item = await resolver.resolve("pintar salón", 10, "m2")

        assert item.source == "estimate"

    @pytest.mark.asyncio
    async def test_keyword_overlap_through_triage_query(self, paint_catalog, gateway):
        completer = ScriptedCompleter({TriageDecision: triage(queries={"Repintado": PAINT_QUERY})})
        resolver = make_resolver(paint_catalog, gateway, completer)

        item = await resolver.resolve("Repintado", 30, "m2")

        assert item.code == "RP0010"

    @pytest.mark.asyncio
    async def test_top_match_without_shared_keywords_is_rejected(self, paint_catalog, gateway):
        estimate = PriceEstimate(description="Lijado", price=Decimal("12.00"), unit="m2", confidence=0.7)
        completer = ScriptedCompleter(
            {TriageDecision: TriageDecision(route="catalog", query="acuchillado madera")}
        )
        embedder = FakeEmbedder({"acuchillado madera": unit_vector(1)})
        resolver = make_resolver(
            paint_catalog, gateway, completer, ScriptedPriceSearcher(estimate), embedder=embedder
        )

        item = await resolver.resolve("Lijado de parquet", 30, "m2")

        assert item.source == "estimate"
        assert item.unit_price == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_search_failure_falls_through(self, paint_catalog, gateway):
        embedder = FakeEmbedder()
        embedder.failures = [ValueError("embedding backend down"), ValueError("still down")]
        completer = ScriptedCompleter({TriageDecision: triage()})
        estimate = PriceEstimate(description="Pintura", price=Decimal("9.00"), unit="m2", confidence=0.9)
        resolver = make_resolver(
            paint_catalog, gateway, completer, ScriptedPriceSearcher(estimate), embedder=embedder
        )

        item = await resolver.resolve("Pintura de paredes", 10, "m2")

        assert item.source == "estimate"
        assert len(embedder.calls) == 2  # first try plus one local retry

    @pytest.mark.asyncio
    async def test_triage_failure_defaults_to_catalog(self, paint_catalog, gateway):
        completer = ScriptedCompleter({TriageDecision: ExternalServiceError("completion down")})
        embedder = FakeEmbedder({"Pintura plástica interiores": NEAR_PAINT})
        resolver = make_resolver(paint_catalog, gateway, completer, embedder=embedder)

        item = await resolver.resolve("Pintura plástica interiores", 5, "m2")

        assert item.code == "RP0010"
        assert len(completer.calls_for(TriageDecision)) == 2


class TestBespokeRoute:
    @pytest.mark.asyncio
    async def test_mural_decomposes_into_assembly(self, paint_catalog, gateway):
        completer = ScriptedCompleter(
            {
                TriageDecision: triage(
                    bespoke=("mural",),
                    queries={"Pintura plástica en paramento interior": PAINT_QUERY},
                ),
                Decomposition: Decomposition(
                    components=[
                        SubTask(description="Pintura plástica en paramento interior", quantity=12, unit="m2"),
                        SubTask(description="Diseño artístico del mural", quantity=1, unit="u"),
                    ]
                ),
            }
        )

        def search(query: str) -> PriceEstimate:
            if "Mural" in query:
                return PriceEstimate(description="Mural", price=Decimal("900"), confidence=0.3)
            return PriceEstimate(description="Diseño", price=Decimal("450"), confidence=0.6)

        price_searcher = ScriptedPriceSearcher(search)
        resolver = make_resolver(paint_catalog, gateway, completer, price_searcher)

        item = await resolver.resolve("Mural artístico pintado a mano en salón", 1, "u")

        assert isinstance(item, Assembly)
        assert item.synthetic_code.startswith("ASM-")
        assert len(item.components) >= 1
        paint, design = item.components
        assert paint.code == "RP0010"
        assert paint.total_price == Decimal("106.80")
        assert design.source == "estimate"
        assert item.total_price == Decimal("556.80")
        assert item.is_estimate
        assert price_searcher.queries[0] == "Mural artístico pintado a mano en salón"

    @pytest.mark.asyncio
    async def test_low_confidence_estimate_kept_when_nothing_better(self, paint_catalog, gateway):
        completer = ScriptedCompleter(
            {
                TriageDecision: triage(bespoke=("escultura",)),
                Decomposition: ExternalServiceError("no structured output"),
            }
        )
        estimate = PriceEstimate(description="Escultura", price=Decimal("2500"), confidence=0.2)
        resolver = make_resolver(paint_catalog, gateway, completer, ScriptedPriceSearcher(estimate))

        item = await resolver.resolve("Escultura de bronce a medida", 1, "u")

        assert isinstance(item, MaterialMatch)
        assert item.source == "estimate"
        assert item.needs_review
        assert item.unit_price == Decimal("2500")

    @pytest.mark.asyncio
    async def test_context_is_appended_to_estimate_query(self, paint_catalog, gateway):
        completer = ScriptedCompleter({TriageDecision: triage(bespoke=("pan de oro",))})
        estimate = PriceEstimate(description="Dorado", price=Decimal("300"), confidence=0.9)
        price_searcher = ScriptedPriceSearcher(estimate)
        resolver = make_resolver(paint_catalog, gateway, completer, price_searcher)

        await resolver.resolve("Restauración con pan de oro", 2, "m2", context="Madrid centro")

        assert price_searcher.queries == ["Restauración con pan de oro (Madrid centro)"]


class TestBounds:
    @pytest.mark.asyncio
    async def test_empty_task_is_placeholder(self, paint_catalog, gateway):
        completer = ScriptedCompleter()
        resolver = make_resolver(paint_catalog, gateway, completer)

        item = await resolver.resolve("", 3, "m2")

        assert item.source == "placeholder"
        assert item.code.startswith("REVIEW-")
        assert item.match_confidence == 0.0
        assert item.needs_review and item.is_estimate
        assert item.total_price == Decimal("0.00")
        assert completer.prompts == []

    @pytest.mark.asyncio
    async def test_everything_failing_gives_placeholder(self, paint_catalog, gateway):
        resolver = make_resolver(paint_catalog, gateway, ScriptedCompleter())

        item = await resolver.resolve("Reparación de goteras en claraboya", 1, "u")

        assert item.source == "placeholder"
        assert item.original_task == "Reparación de goteras en claraboya"

    @pytest.mark.asyncio
    async def test_depth_bound_is_never_exceeded(self, paint_catalog, gateway):
        decompositions = []

        def decompose(prompt: str) -> Decomposition:
            decompositions.append(task_of(prompt))
            return Decomposition(components=[SubTask(description=f"{task_of(prompt)} > parte")])

        completer = ScriptedCompleter(
            {TriageDecision: triage(bespoke=("obra",)), Decomposition: decompose}
        )
        resolver = make_resolver(paint_catalog, gateway, completer, max_depth=2)

        item = await resolver.resolve("obra singular", 1, "u")

        # depth 0 and depth 1 may decompose, depth 2 may not
        assert decompositions == ["obra singular", "obra singular > parte"]
        assert isinstance(item, Assembly)
        inner = item.components[0]
        assert isinstance(inner, Assembly)
        assert inner.components[0].source == "placeholder"
        assert item.needs_review

    @pytest.mark.asyncio
    async def test_subtask_caps(self, paint_catalog, gateway):
        many = Decomposition(
            components=[SubTask(description=f"obra parte {i}") for i in range(10)]
        )
        completer = ScriptedCompleter(
            {TriageDecision: triage(bespoke=("obra",)), Decomposition: many}
        )
        resolver = make_resolver(
            paint_catalog, gateway, completer, max_depth=2, max_subtasks=4, max_total_subtasks=6
        )

        item = await resolver.resolve("obra completa", 1, "u")

        assert len(item.components) == 4
        spawned = len(item.components) + sum(
            len(c.components) for c in item.components if isinstance(c, Assembly)
        )
        assert spawned <= 6


def test_subtask_budget():
    budget = SubtaskBudget(5)

    assert budget.take(3) == 3
    assert budget.take(3) == 2
    assert budget.take(1) == 0
    assert budget.remaining == 0
