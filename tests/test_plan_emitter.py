"""Tests for plan emission: ordering, aggregation, manifest and budget summary."""

import json

import pytest

from autobuy.models.budget import BudgetConfig
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry, DiagnosticLog
from autobuy.models.plan import Basket, LineItem, UnfilledDemand
from autobuy.services.plan_emitter import (
    aggregate_unfilled,
    build_manifest,
    emit_plan,
    order_baskets,
    order_diagnostics,
    plan_to_json,
    summarize_budget,
)
from autobuy.services.planner import PlannerResult


def _basket(seller_id: str, total: float, profitable: bool = True) -> Basket:
    return Basket(
        seller_id=seller_id,
        marketplace="TCG",
        items=(LineItem(f"card-{seller_id}", f"offer-{seller_id}", total, 1),),
        subtotal=total,
        shipping=0.0,
        total=total,
        retail_total=total * 2,
        cost_ratio=0.5,
        is_profitable=profitable,
    )


class TestOrdering:
    def test_baskets_by_total_descending(self) -> None:
        """Largest basket first; seller id breaks ties."""
        baskets = [_basket("b", 5.0), _basket("a", 5.0), _basket("c", 9.0)]

        assert [b.seller_id for b in order_baskets(baskets)] == ["c", "a", "b"]

    def test_unfilled_aggregated_per_card_and_reason(self) -> None:
        entries = [
            UnfilledDemand("a", 2, "CapHit"),
            UnfilledDemand("a", 1, "CapHit"),
            UnfilledDemand("a", 1, "NoOffers"),
        ]

        assert aggregate_unfilled(entries) == [
            UnfilledDemand("a", 3, "CapHit"),
            UnfilledDemand("a", 1, "NoOffers"),
        ]

    def test_diagnostics_in_category_order(self) -> None:
        """Validation warnings, ceilings, caps, trims, then forced notices."""
        entries = [
            DiagnosticEntry(DiagnosticCode.FORCED_OVER_BUDGET, {"cardId": "a"}),
            DiagnosticEntry(DiagnosticCode.CAP_HIT, {"dimension": "total"}),
            DiagnosticEntry(DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED, {"basketRef": "s@TCG"}),
            DiagnosticEntry(DiagnosticCode.PRICE_CEILING_EXCEEDED, {"cardId": "b"}),
            DiagnosticEntry(DiagnosticCode.NO_OFFERS, {"cardId": "c"}),
        ]

        codes = [e.code for e in order_diagnostics(entries)]

        assert codes == [
            DiagnosticCode.NO_OFFERS,
            DiagnosticCode.PRICE_CEILING_EXCEEDED,
            DiagnosticCode.CAP_HIT,
            DiagnosticCode.SPECULATIVE_BUDGET_EXHAUSTED,
            DiagnosticCode.FORCED_OVER_BUDGET,
        ]

    def test_duplicate_diagnostics_collapsed(self) -> None:
        entry = DiagnosticEntry(DiagnosticCode.NO_OFFERS, {"cardId": "a"})

        assert len(order_diagnostics([entry, entry])) == 1


class TestManifest:
    def test_one_line_per_item(self) -> None:
        manifest = build_manifest([_basket("a", 4.0), _basket("b", 2.0)])

        assert [(m.seller_id, m.card_id, m.predicted_unit_price) for m in manifest] == [
            ("a", "card-a", 4.0),
            ("b", "card-b", 2.0),
        ]


class TestBudgetSummary:
    def test_utilization_against_max_total(self) -> None:
        """Reserve is reported but utilization uses the full cap."""
        budget = BudgetConfig(max_total_spend=100.0, reserve_budget_percent=10.0)

        summary = summarize_budget([_basket("a", 50.0)], budget)

        assert summary.utilization_percent == pytest.approx(50.0)
        assert summary.reserved_budget == pytest.approx(10.0)
        assert summary.effective_budget == pytest.approx(90.0)
        assert summary.warnings == ()

    @pytest.mark.parametrize(
        ("spend", "warning"),
        [
            (85.0, "Budget utilization exceeds 80%"),
            (96.0, "CRITICAL: Budget utilization exceeds 95%"),
            (120.0, "HARD BUDGET EXCEEDED: spend 120.00 exceeds 100.00"),
        ],
    )
    def test_warning_levels(self, spend: float, warning: str) -> None:
        summary = summarize_budget([_basket("a", spend)], BudgetConfig(max_total_spend=100.0))

        assert summary.warnings == (warning,)

    def test_speculative_spend_counts_unprofitable(self) -> None:
        baskets = [_basket("a", 10.0), _basket("b", 4.0, profitable=False)]

        summary = summarize_budget(baskets, BudgetConfig(max_total_spend=100.0))

        assert summary.speculative_spend == pytest.approx(4.0)
        assert not summary.hard_budget_exceeded


class TestEmitPlan:
    def test_assembles_plan(self) -> None:
        log = DiagnosticLog()
        log.record(DiagnosticCode.CAP_HIT, dimension="total", cap=10.0, enforced=True)
        result = PlannerResult(
            baskets=[_basket("a", 2.0), _basket("b", 6.0)],
            unfilled=[UnfilledDemand("z", 1, "CapHit")],
            diagnostics=log,
        )
        extra = [DiagnosticEntry(DiagnosticCode.MISSING_REFERENCE_PRICE, {"cardId": "z"})]

        plan = emit_plan(result, BudgetConfig(max_total_spend=9.0), extra)

        assert [b.seller_id for b in plan.baskets] == ["b", "a"]
        assert [d.code for d in plan.diagnostics] == [
            DiagnosticCode.MISSING_REFERENCE_PRICE,
            DiagnosticCode.CAP_HIT,
        ]
        assert len(plan.manifest) == 2
        assert plan.budget is not None
        assert plan.budget.total_spend == pytest.approx(8.0)
        assert plan.budget.warnings == ("Budget utilization exceeds 80%",)

    def test_json_is_stable(self) -> None:
        """Rendering the same plan twice gives identical bytes."""
        result = PlannerResult(
            baskets=[_basket("a", 2.0)], unfilled=[], diagnostics=DiagnosticLog()
        )
        plan = emit_plan(result, BudgetConfig(max_total_spend=10.0))

        rendered = plan_to_json(plan)

        assert rendered == plan_to_json(plan)
        assert json.loads(rendered)["baskets"][0]["sellerId"] == "a"
        assert json.loads(plan_to_json(plan, indent=None))["cancelled"] is False
