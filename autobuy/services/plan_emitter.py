"""
Plan Emitter.

Turns planner output into the final Plan:

- baskets ordered by total descending (seller, marketplace break ties)
- unfilled entries aggregated per (card, reason)
- diagnostics in category order: validation warnings, ceiling
  rejections, cap rejections, speculative trims, forced-override notices
- the run manifest and the budget summary

Output is a pure function of its inputs, so JSON rendering is
byte-identical across runs on equal inputs.
"""

import json
import logging
from typing import Any

from autobuy.config import MONEY_EPSILON, Settings
from autobuy.models.budget import BudgetConfig
from autobuy.models.diagnostics import DiagnosticEntry
from autobuy.models.plan import Basket, BudgetSummary, ManifestLine, Plan, UnfilledDemand
from autobuy.services.planner import PlannerResult, speculative_spend

logger = logging.getLogger(__name__)


def order_baskets(baskets: list[Basket]) -> list[Basket]:
    return sorted(baskets, key=lambda b: (-round(b.total, 6), b.seller_id, b.marketplace))


def aggregate_unfilled(entries: list[UnfilledDemand]) -> list[UnfilledDemand]:
    """Sum remaining quantity per (card, reason)."""
    totals: dict[tuple[str, str], int] = {}
    for entry in entries:
        key = (entry.card_id, entry.reason_code)
        totals[key] = totals.get(key, 0) + entry.remaining_quantity
    return [
        UnfilledDemand(card_id, quantity, reason)
        for (card_id, reason), quantity in sorted(totals.items())
    ]


def order_diagnostics(entries: list[DiagnosticEntry]) -> list[DiagnosticEntry]:
    unique: dict[tuple[int, str, str], DiagnosticEntry] = {}
    for entry in entries:
        unique.setdefault(entry.sort_key, entry)
    return [unique[key] for key in sorted(unique)]


def build_manifest(baskets: list[Basket]) -> list[ManifestLine]:
    """One manifest line per basket line, in emitted basket order."""
    return [
        ManifestLine(
            card_id=item.card_id,
            predicted_unit_price=item.unit_price,
            quantity=item.quantity,
            seller_id=basket.seller_id,
            marketplace=basket.marketplace,
        )
        for basket in baskets
        for item in basket.items
    ]


def summarize_budget(
    baskets: list[Basket],
    budget: BudgetConfig,
    warning_percent: float = 80.0,
    critical_percent: float = 95.0,
) -> BudgetSummary:
    """
    Budget utilization with operator warnings.

    Utilization is measured against max_total_spend. Reserved budget is
    reported but not counted as spent.
    """
    total = sum(basket.total for basket in baskets)
    limit = budget.max_total_spend
    if limit > 0:
        utilization = total / limit * 100
    else:
        utilization = 0.0 if total <= MONEY_EPSILON else 100.0

    hard_exceeded = total > limit + MONEY_EPSILON
    warnings: list[str] = []
    if hard_exceeded:
        warnings.append(f"HARD BUDGET EXCEEDED: spend {total:.2f} exceeds {limit:.2f}")
    elif utilization > critical_percent:
        warnings.append(f"CRITICAL: Budget utilization exceeds {critical_percent:g}%")
    elif utilization > warning_percent:
        warnings.append(f"Budget utilization exceeds {warning_percent:g}%")

    return BudgetSummary(
        total_spend=total,
        max_total_spend=limit,
        effective_budget=budget.effective_total_spend,
        reserved_budget=budget.reserved_budget,
        utilization_percent=utilization,
        speculative_spend=speculative_spend(baskets),
        hard_budget_exceeded=hard_exceeded,
        warnings=tuple(warnings),
    )


def emit_plan(
    result: PlannerResult,
    budget: BudgetConfig,
    extra_diagnostics: list[DiagnosticEntry] | None = None,
    settings: Settings | None = None,
) -> Plan:
    """
    Assemble the final Plan.

    Args:
        result: Planner output
        budget: Budget the run was planned against
        extra_diagnostics: Diagnostics from earlier stages
        settings: Warning thresholds (defaults to 80% and 95%)
    """
    baskets = order_baskets(result.baskets)
    diagnostics = order_diagnostics(result.diagnostics.entries() + (extra_diagnostics or []))
    unfilled = aggregate_unfilled(result.unfilled)

    if settings is not None:
        summary = summarize_budget(
            baskets,
            budget,
            settings.budget_warning_percent,
            settings.budget_critical_percent,
        )
    else:
        summary = summarize_budget(baskets, budget)

    plan = Plan(
        baskets=tuple(baskets),
        unfilled=tuple(unfilled),
        diagnostics=tuple(diagnostics),
        manifest=tuple(build_manifest(baskets)),
        budget=summary,
        cancelled=result.cancelled,
    )

    logger.info(
        "plan_emitted",
        extra={
            "baskets": len(plan.baskets),
            "filled_units": plan.filled_units,
            "unfilled": len(plan.unfilled),
            "diagnostics": len(plan.diagnostics),
            "total_spend": round(plan.total_spend, 2),
            "cancelled": plan.cancelled,
        },
    )
    return plan


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return plan.to_dict()


def plan_to_json(plan: Plan, indent: int | None = 2) -> str:
    """Stable JSON rendering of a plan."""
    return json.dumps(plan_to_dict(plan), indent=indent, sort_keys=True)
