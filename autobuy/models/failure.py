"""
Failure Envelope and Structural Input Errors.

Two kinds of trouble exist in a planning run:

- Structural input errors (bad demands, offers, directives, budgets).
  These abort the run and are raised as PlanInputError subclasses.
- Everything else (ceilings, caps, blocked sellers, missing offers).
  These are recorded as diagnostics on the plan and never raised.

All user-visible responses from the HTTP adapter pass through
`finalize_response()`, which guarantees the outcome classification is
consistent with the payload.
"""

from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class FailureKind(str, Enum):
    """Classification of structural failures."""

    INVALID_REQUEST = "invalid_request"
    INVALID_DEMAND = "invalid_demand"
    INVALID_OFFER = "invalid_offer"
    INVALID_DIRECTIVE = "invalid_directive"
    OVERLAPPING_SUBSTITUTION_GROUPS = "overlapping_substitution_groups"
    INCONSISTENT_BUDGET = "inconsistent_budget"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"

    UNKNOWN = "unknown"


class OutcomeType(str, Enum):
    """High-level outcome classification."""

    SUCCESS = "success"
    KNOWN_FAILURE = "known_failure"
    UNKNOWN_FAILURE = "unknown_failure"


T = TypeVar("T")


class FailureDetail(BaseModel):
    """Detailed information about a failure."""

    kind: FailureKind = Field(
        ...,
        description="Classification of the failure",
    )
    message: str = Field(
        ...,
        description="Operator-facing explanation of what went wrong",
    )
    detail: str | None = Field(
        default=None,
        description="Offending field or record (optional)",
    )
    suggestion: str | None = Field(
        default=None,
        description="Suggested fix for the request",
    )


class ApiResponse(BaseModel, Generic[T]):
    """
    Response envelope for the planner's HTTP and CLI surfaces.

    A response is either a success carrying data, or a failure
    carrying a classified FailureDetail. Never both.
    """

    outcome: OutcomeType = Field(
        ...,
        description="High-level classification of the result",
    )
    data: T | None = Field(
        default=None,
        description="Response data (present on success)",
    )
    failure: FailureDetail | None = Field(
        default=None,
        description="Failure details (present on non-success)",
    )


# =============================================================================
# STRUCTURAL INPUT ERRORS
# =============================================================================


class KnownError(Exception):
    """
    Base class for exceptions that represent known, explainable failures.

    Subclass this for errors where the system knows exactly what went wrong.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
        status_code: int = 400,
    ):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.suggestion = suggestion
        self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ApiResponse[Any]:
        """Convert to a finalized known-failure ApiResponse."""
        response: ApiResponse[Any] = ApiResponse(
            outcome=OutcomeType.KNOWN_FAILURE,
            failure=FailureDetail(
                kind=self.kind,
                message=self.message,
                detail=self.detail,
                suggestion=self.suggestion,
            ),
        )
        return finalize_response(response)


class PlanInputError(KnownError):
    """
    A structural violation in the planning input.

    Raised at the input boundary. The run is aborted and no plan is produced.
    """

    def __init__(
        self,
        kind: FailureKind,
        message: str,
        detail: str | None = None,
        suggestion: str | None = None,
    ):
        super().__init__(
            kind=kind,
            message=message,
            detail=detail,
            suggestion=suggestion,
            status_code=422,
        )


class InvalidRequestError(PlanInputError):
    """The request envelope itself is unreadable or not an object."""

    def __init__(self, detail: str):
        super().__init__(
            kind=FailureKind.INVALID_REQUEST,
            message="Plan request is malformed.",
            detail=detail,
            suggestion="Send a JSON object with demands, offers and budget.",
        )


class InvalidDemandError(PlanInputError):
    """Non-positive quantity or missing CardId on a demand."""

    def __init__(self, detail: str):
        super().__init__(
            kind=FailureKind.INVALID_DEMAND,
            message="Demand record is invalid.",
            detail=detail,
            suggestion="Every demand needs a cardId and a positive integer quantity.",
        )


class InvalidOfferError(PlanInputError):
    """Non-positive price, negative quantity, or missing shipping terms."""

    def __init__(self, detail: str):
        super().__init__(
            kind=FailureKind.INVALID_OFFER,
            message="Offer record is invalid.",
            detail=detail,
            suggestion="Offers need a positive unitPrice, a quantity and shipping terms.",
        )


class InvalidDirectiveError(PlanInputError):
    """Malformed directive payload."""

    def __init__(self, detail: str):
        super().__init__(
            kind=FailureKind.INVALID_DIRECTIVE,
            message="Directive is malformed.",
            detail=detail,
            suggestion="Check the directive type and its required fields.",
        )


class OverlappingSubstitutionGroupsError(PlanInputError):
    """Two substitution groups share a CardId."""

    def __init__(self, card_id: str, first_group: str, second_group: str):
        self.card_id = card_id
        self.groups = (first_group, second_group)
        super().__init__(
            kind=FailureKind.OVERLAPPING_SUBSTITUTION_GROUPS,
            message="Substitution groups overlap.",
            detail=f"{card_id} is in both '{first_group}' and '{second_group}'",
            suggestion="Merge the groups or remove the card from one of them.",
        )


class InconsistentBudgetError(PlanInputError):
    """Budget caps contradict each other or are negative."""

    def __init__(self, detail: str):
        super().__init__(
            kind=FailureKind.INCONSISTENT_BUDGET,
            message="Budget configuration is inconsistent.",
            detail=detail,
            suggestion="Caps must be non-negative and no larger than maxTotalSpend.",
        )


class UpstreamFetchError(KnownError):
    """A marketplace listing fetch failed."""

    def __init__(self, source: str, detail: str):
        super().__init__(
            kind=FailureKind.UPSTREAM_UNAVAILABLE,
            message=f"{source} listings could not be fetched.",
            detail=detail,
            suggestion="Retry later or import an offer sheet instead.",
            status_code=502,
        )


# =============================================================================
# RESPONSE BOUNDARY
# =============================================================================

UNKNOWN_FAILURE_MESSAGE = "The planner failed unexpectedly. The request was not planned."


def finalize_response(response: ApiResponse[Any]) -> ApiResponse[Any]:
    """
    Validate a response before it leaves the service.

    Raises:
        ValueError: If the outcome and payload disagree
    """
    if response.outcome == OutcomeType.SUCCESS:
        if response.failure is not None:
            raise ValueError("Success response must not have failure details")
    elif response.failure is None:
        raise ValueError(f"{response.outcome.value} response must have failure details")

    return response


def create_success(data: T) -> ApiResponse[T]:
    """Create a finalized success response."""
    response = ApiResponse[T](outcome=OutcomeType.SUCCESS, data=data)
    return finalize_response(response)


def create_known_failure(error: KnownError) -> ApiResponse[Any]:
    """Create a finalized known-failure response from a raised KnownError."""
    return error.to_response()


def create_unknown_failure(exception: Exception) -> ApiResponse[Any]:
    """
    Create a finalized unknown-failure response.

    Only the exception type is exposed, never its message.
    """
    response: ApiResponse[Any] = ApiResponse(
        outcome=OutcomeType.UNKNOWN_FAILURE,
        failure=FailureDetail(
            kind=FailureKind.UNKNOWN,
            message=UNKNOWN_FAILURE_MESSAGE,
            detail=type(exception).__name__,
            suggestion="If this persists, please report the issue.",
        ),
    )
    return finalize_response(response)
