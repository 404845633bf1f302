"""Budget cost breakdown (Spanish convention).

PEM (material execution price) -> + Gastos Generales -> + Beneficio
Industrial -> x (1 + IVA) -> + global adjustment. Overhead and benefit are
both percentages of the PEM. Each step is rounded to cents.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal

from obracalc.config import BudgetConfig, get_config
from obracalc.models import BudgetChapter, CostBreakdown, money


def compute_breakdown(
    chapters: Iterable[BudgetChapter],
    config: BudgetConfig | None = None,
) -> CostBreakdown:
    """Apply overhead, benefit, tax and the global adjustment to the chapter subtotals."""
    config = config or get_config().budget

    pem = money(sum((c.subtotal for c in chapters), Decimal("0")))
    overhead = money(pem * config.overhead_expenses)
    benefit = money(pem * config.industrial_benefit)
    tax = money((pem + overhead + benefit) * config.tax_rate)
    taxed_total = pem + overhead + benefit + tax
    adjustment = money(taxed_total * (config.global_adjustment_factor - Decimal("1")))

    return CostBreakdown(
        material_execution_price=pem,
        overhead_expenses=overhead,
        industrial_benefit=benefit,
        tax=tax,
        global_adjustment=adjustment,
        total=money(taxed_total + adjustment),
    )
