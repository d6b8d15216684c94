"""Allotment domain models.

Type-safe representations of offerings, subscription snapshots, predictions,
allotment results, user application links and analysis output.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, model_validator


PAN_REGEX = r"^[A-Z]{5}[0-9]{4}[A-Z]$"

ResultStatus = Literal["allotted", "not_allotted", "partially_allotted"]
VALID_RESULT_STATUSES: frozenset[str] = frozenset(
    {"allotted", "not_allotted", "partially_allotted"}
)
PENDING_STATUS = "pending"


class LifecycleStatus(str, Enum):
    """Tracking state of an offering."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class Priority(str, Enum):
    """Polling priority derived from days since close."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def derive_result_status(applied_quantity: int, allotted_quantity: int) -> str:
    """Status implied by quantities when a source omits it."""
    if allotted_quantity <= 0:
        return "not_allotted"
    if allotted_quantity >= applied_quantity:
        return "allotted"
    return "partially_allotted"


# =============================================================================
# Offering inputs
# =============================================================================


class SubscriptionSnapshot(BaseModel):
    """Latest subscription figures for one category."""

    category: str = Field(..., description="Category code, e.g. RETAIL")
    subscription_ratio: float = Field(default=0.0, description="Demand / supply")
    quantity: int | None = Field(None, ge=0, description="Shares bid")
    bid_count: int | None = Field(None, ge=0, description="Number of bids")
    timestamp: datetime | None = None

    model_config = {"from_attributes": True}


class OfferingDetails(BaseModel):
    """Dates, registrar and pricing of an offering."""

    open_date: datetime | None = None
    close_date: datetime
    listing_date: datetime | None = None
    allotment_date: datetime | None = None
    registrar: str | None = None
    lot_size: int = Field(default=1, ge=1)
    min_price: Decimal | None = Field(None, ge=0)
    max_price: Decimal | None = Field(None, ge=0)
    cut_off_price: Decimal | None = Field(None, ge=0)
    issue_size: Decimal | None = None

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def final_price(self) -> Decimal:
        """Cut-off price, falling back to the upper price band."""
        if self.cut_off_price is not None:
            return self.cut_off_price
        if self.max_price is not None:
            return self.max_price
        return Decimal("0")


class OfferingSnapshot(BaseModel):
    """An offering as read from the persistent store."""

    id: str
    symbol: str
    name: str = ""
    status: str = Field(default="closed", description="Listing status in the store")
    details: OfferingDetails
    subscriptions: list[SubscriptionSnapshot] = Field(default_factory=list)

    model_config = {"from_attributes": True}


# =============================================================================
# Predictions
# =============================================================================


class Insight(BaseModel):
    """Rule-based observation about an offering."""

    type: str
    message: str
    category: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class CategoryPrediction(BaseModel):
    """Allotment estimate for one category."""

    category: str
    subscription_ratio: float
    allotment_probability: float = Field(..., ge=0, le=100)
    expected_lots: int | None = Field(
        None, description="None when the allotment method makes lots unpredictable"
    )
    confidence: float = Field(..., ge=0, le=1)
    method: str
    lots_predictable: bool = True


class OverallPrediction(BaseModel):
    """Aggregate of the category predictions."""

    probability: float = 0.0
    expected_ratio: float = 0.0
    confidence: float = 0.0


class AllotmentPrediction(BaseModel):
    """Prediction set computed for one subscription snapshot."""

    overall: OverallPrediction = Field(default_factory=OverallPrediction)
    categories: dict[str, CategoryPrediction] = Field(default_factory=dict)
    insights: list[Insight] = Field(default_factory=list)
    methodology: str = "subscription_based"
    computed_at: datetime | None = None

    model_config = {"frozen": True}


# =============================================================================
# Results
# =============================================================================


class AllotmentResultRecord(BaseModel):
    """One applicant-offering outcome, unique on (offering, PAN, application).

    Amounts are derived from quantities, lot size and final price and cannot
    be set independently, so ``applied_amount == allotted_amount + refund_amount``
    always holds.
    """

    offering_id: str
    pan_number: str = Field(..., pattern=PAN_REGEX)
    application_number: str = Field(..., min_length=1)
    category: str = "UNKNOWN"
    applied_quantity: int = Field(..., ge=0)
    allotted_quantity: int = Field(..., ge=0)
    allotment_status: ResultStatus
    lot_size: int = Field(default=1, ge=1)
    final_price: Decimal = Field(default=Decimal("0"), ge=0)
    source: str | None = None
    fetched_at: datetime | None = None
    processed_at: datetime | None = None

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def check_quantities(self) -> "AllotmentResultRecord":
        if self.allotted_quantity > self.applied_quantity:
            raise ValueError("allotted_quantity cannot exceed applied_quantity")
        return self

    @computed_field
    @property
    def applied_amount(self) -> Decimal:
        return self.applied_quantity * self.lot_size * self.final_price

    @computed_field
    @property
    def allotted_amount(self) -> Decimal:
        return self.allotted_quantity * self.lot_size * self.final_price

    @computed_field
    @property
    def refund_amount(self) -> Decimal:
        return self.applied_amount - self.allotted_amount

    @property
    def key(self) -> tuple[str, str]:
        return (self.pan_number, self.application_number)

    @property
    def is_allotted(self) -> bool:
        return self.allotted_quantity > 0


class UserApplicationLink(BaseModel):
    """A user's submitted application, resolved once its result arrives."""

    id: str
    user_id: str
    offering_id: str
    pan_number: str
    application_number: str
    category: str = "RETAIL"
    quantity: int = Field(default=0, ge=0)
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    allotment_status: str = PENDING_STATUS
    allotted_quantity: int = 0
    allotted_amount: Decimal = Decimal("0")
    refund_amount: Decimal = Decimal("0")
    submitted_at: datetime | None = None
    result_received_at: datetime | None = None
    notified_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_resolved(self) -> bool:
        return self.allotment_status != PENDING_STATUS

    def matches(self, record: AllotmentResultRecord) -> bool:
        return (
            self.pan_number == record.pan_number
            and self.application_number == record.application_number
        )

    def apply_result(self, record: AllotmentResultRecord, at: datetime) -> dict[str, Any]:
        """Copy the result onto this link and return the changed fields."""
        self.allotment_status = record.allotment_status
        self.allotted_quantity = record.allotted_quantity
        self.allotted_amount = record.allotted_amount
        self.refund_amount = record.refund_amount
        self.result_received_at = at
        return {
            "allotment_status": self.allotment_status,
            "allotted_quantity": self.allotted_quantity,
            "allotted_amount": self.allotted_amount,
            "refund_amount": self.refund_amount,
            "result_received_at": at,
        }


# =============================================================================
# Analysis
# =============================================================================


class CategoryRatio(BaseModel):
    """Actual allotment figures for one category."""

    allotment_ratio: float
    average_allotment: float
    total_applications: int
    allotted_applications: int
    refund_percentage: float


class AllotmentPattern(BaseModel):
    """Regularity detected in a result set."""

    type: str
    description: str
    percentage: float
    common_lots: int | None = None
    max_consecutive_length: int | None = None
    total_numbers: int | None = None


class AnalysisResult(BaseModel):
    """Projection of an offering's result records; recomputed each cycle."""

    overall_allotment_ratio: float = 0.0
    category_wise_ratio: dict[str, CategoryRatio] = Field(default_factory=dict)
    refund_percentage: float = 0.0
    average_allotment_size: float = 0.0
    total_applications: int = 0
    allotted_applications: int = 0
    patterns: list[AllotmentPattern] = Field(default_factory=list)
    insights: list[Insight] = Field(default_factory=list)
    analyzed_at: datetime | None = None
