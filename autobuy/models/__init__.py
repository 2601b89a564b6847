from autobuy.models.budget import BudgetConfig, BudgetMode, CapDimension
from autobuy.models.demand import PRIORITY_RANK, Demand, DemandPriority
from autobuy.models.diagnostics import DiagnosticCode, DiagnosticEntry, DiagnosticLog
from autobuy.models.directive import (
    BlockCard,
    BlockSeller,
    BudgetPartition,
    Directive,
    ForceInclude,
    SubstitutionGroup,
)
from autobuy.models.failure import (
    ApiResponse,
    FailureDetail,
    FailureKind,
    InconsistentBudgetError,
    InvalidDemandError,
    InvalidDirectiveError,
    InvalidOfferError,
    InvalidRequestError,
    KnownError,
    OutcomeType,
    OverlappingSubstitutionGroupsError,
    PlanInputError,
    create_known_failure,
    create_success,
    create_unknown_failure,
    finalize_response,
)
from autobuy.models.inventory import InventorySnapshot
from autobuy.models.offer import Offer, Shipping
from autobuy.models.plan import (
    Basket,
    BudgetSummary,
    DemandAllocation,
    LineItem,
    ManifestLine,
    Plan,
    UnfilledDemand,
)
from autobuy.models.request import CancellationToken, PlanRequest
from autobuy.models.sources import Deck, DeckStatus, DemandOptions, DemandSources, InventoryRow

__all__ = [
    "ApiResponse",
    "Basket",
    "BlockCard",
    "BlockSeller",
    "BudgetConfig",
    "BudgetMode",
    "BudgetPartition",
    "BudgetSummary",
    "CancellationToken",
    "CapDimension",
    "Demand",
    "Deck",
    "DeckStatus",
    "DemandAllocation",
    "DemandOptions",
    "DemandPriority",
    "DemandSources",
    "DiagnosticCode",
    "DiagnosticEntry",
    "DiagnosticLog",
    "Directive",
    "FailureDetail",
    "FailureKind",
    "ForceInclude",
    "InconsistentBudgetError",
    "InvalidDemandError",
    "InvalidDirectiveError",
    "InvalidOfferError",
    "InvalidRequestError",
    "InventoryRow",
    "InventorySnapshot",
    "KnownError",
    "LineItem",
    "ManifestLine",
    "Offer",
    "OutcomeType",
    "OverlappingSubstitutionGroupsError",
    "PRIORITY_RANK",
    "Plan",
    "PlanInputError",
    "PlanRequest",
    "Shipping",
    "SubstitutionGroup",
    "UnfilledDemand",
    "create_known_failure",
    "create_success",
    "create_unknown_failure",
    "finalize_response",
]
