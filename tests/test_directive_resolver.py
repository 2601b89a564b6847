"""Tests for operator directive resolution."""

import pytest

from autobuy.models.demand import Demand, DemandPriority
from autobuy.models.diagnostics import DiagnosticCode
from autobuy.models.directive import (
    BlockCard,
    BlockSeller,
    BudgetPartition,
    ForceInclude,
    SubstitutionGroup,
)
from autobuy.models.failure import InvalidDirectiveError, OverlappingSubstitutionGroupsError
from autobuy.services.directive_resolver import (
    UnionFind,
    build_substitution_classes,
    resolve_directives,
)


@pytest.fixture
def demands() -> list[Demand]:
    return [Demand("bolt", 2), Demand("island", 4), Demand("swiftspear", 1)]


class TestUnionFind:
    def test_smallest_member_is_root(self) -> None:
        uf = UnionFind()
        uf.union("c", "b")
        uf.union("b", "a")

        assert uf.find("c") == "a"
        assert uf.groups() == {"a": ("a", "b", "c")}


class TestSubstitutionClasses:
    def test_every_member_maps_to_same_class(self) -> None:
        """The closure is symmetric: each card sees the whole group."""
        classes = build_substitution_classes([SubstitutionGroup("g1", ("b", "a", "c"))])

        assert classes["a"] == ("a", "b", "c")
        assert classes["c"] == classes["a"]

    def test_disjoint_groups_stay_separate(self) -> None:
        classes = build_substitution_classes(
            [SubstitutionGroup("g1", ("a", "b")), SubstitutionGroup("g2", ("x", "y"))]
        )

        assert classes["a"] == ("a", "b")
        assert classes["y"] == ("x", "y")

    def test_overlapping_groups_rejected(self) -> None:
        """A card in two groups is an input error, not a merge."""
        with pytest.raises(OverlappingSubstitutionGroupsError) as exc_info:
            build_substitution_classes(
                [SubstitutionGroup("g1", ("a", "b")), SubstitutionGroup("g2", ("b", "c"))]
            )

        assert exc_info.value.card_id == "b"
        assert exc_info.value.groups == ("g1", "g2")

    def test_duplicate_group_id_rejected(self) -> None:
        with pytest.raises(InvalidDirectiveError):
            build_substitution_classes(
                [SubstitutionGroup("g1", ("a", "b")), SubstitutionGroup("g1", ("x", "y"))]
            )


class TestResolveDirectives:
    def test_block_card_removes_demand(self, demands: list[Demand]) -> None:
        """Blocked cards leave the demand list with a diagnostic."""
        resolved = resolve_directives(demands, [BlockCard("bolt", "banned")])

        assert [d.card_id for d in resolved.demands] == ["island", "swiftspear"]
        assert resolved.blocked_cards == {"bolt": "banned"}
        assert resolved.diagnostics[0].code == DiagnosticCode.CARD_BLOCKED

    def test_block_seller_recorded(self, demands: list[Demand]) -> None:
        resolved = resolve_directives(demands, [BlockSeller("shady", "late shipments")])

        assert resolved.is_seller_blocked("shady")
        assert not resolved.is_seller_blocked("honest")
        assert len(resolved.demands) == 3

    def test_force_include_adds_manual_demand(self, demands: list[Demand]) -> None:
        """Forced inclusions are extra manual demands with stable ids."""
        resolved = resolve_directives(demands, [ForceInclude("bolt", 1, reason="promo")])

        forced = [d for d in resolved.demands if d.is_manual]
        assert len(forced) == 1
        assert forced[0].demand_id == "force:0:bolt"
        assert forced[0].priority == DemandPriority.MANUAL
        assert forced[0].max_unit_price is None
        assert forced[0].source_tags == frozenset({"force:promo"})
        assert len(resolved.demands) == 4

    def test_force_include_of_blocked_card_dropped(self, demands: list[Demand]) -> None:
        """BlockCard applies before ForceInclude."""
        resolved = resolve_directives(demands, [ForceInclude("bolt", 1), BlockCard("bolt")])

        assert all(d.card_id != "bolt" for d in resolved.demands)

    def test_force_include_at_blocked_seller_dropped(self, demands: list[Demand]) -> None:
        resolved = resolve_directives(
            demands, [ForceInclude("bolt", 1, seller_id="shady"), BlockSeller("shady")]
        )

        assert not any(d.is_manual for d in resolved.demands)
        assert any(d.code == DiagnosticCode.SELLER_BLOCKED for d in resolved.diagnostics)

    def test_partitions_collected(self, demands: list[Demand]) -> None:
        resolved = resolve_directives(demands, [BudgetPartition("deck:Burn", 25.0)])

        assert resolved.partitions == {"deck:Burn": 25.0}

    def test_duplicate_partition_rejected(self, demands: list[Demand]) -> None:
        with pytest.raises(InvalidDirectiveError):
            resolve_directives(
                demands,
                [BudgetPartition("deck:Burn", 25.0), BudgetPartition("deck:Burn", 10.0)],
            )

    def test_class_of_unknown_card_is_itself(self, demands: list[Demand]) -> None:
        resolved = resolve_directives(demands, [])

        assert resolved.class_of("bolt") == ("bolt",)

    def test_directive_order_irrelevant(self, demands: list[Demand]) -> None:
        """Shuffling directives never changes the resolution."""
        directives = [
            ForceInclude("island", 2),
            BlockCard("swiftspear"),
            SubstitutionGroup("g1", ("bolt", "chain-lightning")),
            ForceInclude("bolt", 1, seller_id="s1"),
            BudgetPartition("alert", 5.0),
        ]

        forward = resolve_directives(demands, directives)
        backward = resolve_directives(demands, list(reversed(directives)))

        assert forward.demands == backward.demands
        assert forward.classes == backward.classes
        assert forward.partitions == backward.partitions

    def test_resolution_is_idempotent(self, demands: list[Demand]) -> None:
        """Resolving resolved demands again changes nothing."""
        directives = [
            ForceInclude("bolt", 1),
            BlockCard("island"),
            SubstitutionGroup("g1", ("bolt", "chain-lightning")),
        ]

        once = resolve_directives(demands, directives)
        twice = resolve_directives(once.demands, directives)

        assert twice.demands == once.demands
        assert twice.classes == once.classes
