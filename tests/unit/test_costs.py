"""Unit tests for the budget cost breakdown."""

from decimal import Decimal

from obracalc.budget.costs import compute_breakdown
from obracalc.config import BudgetConfig
from obracalc.models import BudgetChapter, MaterialMatch


def chapter(*prices: str) -> BudgetChapter:
    return BudgetChapter(
        name="Capítulo",
        items=[
            MaterialMatch(code=f"A{i:04d}", description="x", unit="u", unit_price=Decimal(p))
            for i, p in enumerate(prices)
        ],
    )


def test_standard_breakdown():
    breakdown = compute_breakdown([chapter("600.00"), chapter("400.00")], BudgetConfig())

    assert breakdown.material_execution_price == Decimal("1000.00")
    assert breakdown.overhead_expenses == Decimal("130.00")
    assert breakdown.industrial_benefit == Decimal("60.00")
    assert breakdown.tax == Decimal("119.00")  # 10% of 1190
    assert breakdown.global_adjustment == Decimal("0.00")
    assert breakdown.total == Decimal("1309.00")


def test_global_adjustment_applied_last():
    config = BudgetConfig(global_adjustment_factor=Decimal("1.10"))

    breakdown = compute_breakdown([chapter("1000.00")], config)

    assert breakdown.global_adjustment == Decimal("130.90")
    assert breakdown.total == Decimal("1439.90")


def test_empty_budget():
    breakdown = compute_breakdown([], BudgetConfig())

    assert breakdown.material_execution_price == Decimal("0.00")
    assert breakdown.total == Decimal("0.00")


def test_custom_rates():
    config = BudgetConfig(
        overhead_expenses=Decimal("0.15"),
        industrial_benefit=Decimal("0.05"),
        tax_rate=Decimal("0.21"),
    )

    breakdown = compute_breakdown([chapter("100.00")], config)

    assert breakdown.overhead_expenses == Decimal("15.00")
    assert breakdown.industrial_benefit == Decimal("5.00")
    assert breakdown.tax == Decimal("25.20")
    assert breakdown.total == Decimal("145.20")
