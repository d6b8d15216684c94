"""Applicant category rulebook.

Static table of categories and one pure prediction function per allotment
method. Probabilities are percentages (0-100), confidences fractions (0-1).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from .models import CategoryPrediction, OverallPrediction


class AllotmentMethod(str, Enum):
    """How a category's shares are distributed when oversubscribed."""

    LOTTERY = "lottery"
    PROPORTIONATE = "proportionate"
    DISCRETIONARY = "discretionary"


BASE_CONFIDENCE = 0.7
STABLE_CONFIDENCE_BOOST = 0.2
MAX_CONFIDENCE = 0.9
DEGENERATE_CONFIDENCE = 0.9
STABLE_RATIO_RANGE = (0.5, 20.0)


@dataclass(frozen=True)
class CategoryConfig:
    """Characteristics of an applicant category."""

    code: str
    name: str
    allotment_method: AllotmentMethod | str
    reservation_quota: float
    min_investment: int | None = None
    max_investment: int | None = None
    max_lots: int | None = None
    priority: int = 99


CATEGORIES: dict[str, CategoryConfig] = {
    "RETAIL": CategoryConfig(
        code="RETAIL",
        name="Retail Individual Investors",
        allotment_method=AllotmentMethod.LOTTERY,
        reservation_quota=0.35,
        min_investment=15_000,
        max_investment=200_000,
        max_lots=13,
        priority=1,
    ),
    "HNI": CategoryConfig(
        code="HNI",
        name="High Net Worth Individual",
        allotment_method=AllotmentMethod.PROPORTIONATE,
        reservation_quota=0.15,
        min_investment=200_000,
        max_investment=1_000_000,
        priority=2,
    ),
    "QIB": CategoryConfig(
        code="QIB",
        name="Qualified Institutional Buyers",
        allotment_method=AllotmentMethod.DISCRETIONARY,
        reservation_quota=0.50,
        min_investment=100_000,
        priority=3,
    ),
    "NIB": CategoryConfig(
        code="NIB",
        name="Non-Institutional Buyers",
        allotment_method=AllotmentMethod.PROPORTIONATE,
        reservation_quota=0.15,
        min_investment=200_000,
        priority=4,
    ),
    "EMPLOYEE": CategoryConfig(
        code="EMPLOYEE",
        name="Employee Reservation",
        allotment_method=AllotmentMethod.PROPORTIONATE,
        reservation_quota=0.05,
        min_investment=15_000,
        max_investment=500_000,
        priority=5,
    ),
}


def get_category(code: str) -> CategoryConfig | None:
    """Look up a category by code (case-insensitive)."""
    return CATEGORIES.get(code.upper()) if code else None


# =============================================================================
# Per-method probability rules
# =============================================================================


def lottery_probability(ratio: float) -> float:
    """Step function used for retail lotteries."""
    if ratio <= 1:
        return 95.0
    if ratio <= 2:
        return 85.0
    if ratio <= 5:
        return 60.0
    if ratio <= 10:
        return 35.0
    return max(10.0, 100 / ratio)


def lottery_expected_lots(ratio: float, max_lots: int | None) -> int:
    cap = max_lots or 1
    if ratio > 1:
        return min(cap, math.ceil(cap / ratio))
    return cap


def proportionate_probability(ratio: float) -> float:
    if ratio <= 1:
        return 100.0
    return min(95.0, 100 / ratio)


def proportionate_expected_lots(
    ratio: float, quantity: int | None, bid_count: int | None
) -> int:
    if ratio <= 1:
        if quantity and bid_count:
            return quantity // bid_count
        return 1
    return max(1, math.floor((1 / ratio) * 10))


def discretionary_probability(ratio: float) -> float:
    if ratio <= 1:
        return 90.0
    return max(70.0, 100 - (ratio - 1) * 20)


def fallback_probability(ratio: float) -> float:
    return min(90.0, 100 / max(ratio, 1))


def _confidence(ratio: float) -> float:
    low, high = STABLE_RATIO_RANGE
    if low < ratio < high:
        return min(MAX_CONFIDENCE, BASE_CONFIDENCE + STABLE_CONFIDENCE_BOOST)
    return BASE_CONFIDENCE


def predict_category(
    subscription_ratio: float | None,
    config: CategoryConfig,
    quantity: int | None = None,
    bid_count: int | None = None,
) -> CategoryPrediction:
    """Estimate allotment probability and lots for one category.

    Args:
        subscription_ratio: Demand / supply for the category
        config: Category rulebook entry
        quantity: Shares bid (proportionate lots when undersubscribed)
        bid_count: Number of bids (proportionate lots when undersubscribed)

    Returns:
        CategoryPrediction; QIB-style discretionary allotment reports
        ``expected_lots=None`` with ``lots_predictable=False``.
    """
    ratio = float(subscription_ratio or 0)
    method = (
        config.allotment_method.value
        if isinstance(config.allotment_method, AllotmentMethod)
        else str(config.allotment_method)
    )

    if ratio <= 0:
        return CategoryPrediction(
            category=config.code,
            subscription_ratio=ratio,
            allotment_probability=0.0,
            expected_lots=0,
            confidence=DEGENERATE_CONFIDENCE,
            method=method,
        )

    lots_predictable = True
    if method == AllotmentMethod.LOTTERY.value:
        probability = lottery_probability(ratio)
        expected_lots: int | None = lottery_expected_lots(ratio, config.max_lots)
    elif method == AllotmentMethod.PROPORTIONATE.value:
        probability = proportionate_probability(ratio)
        expected_lots = proportionate_expected_lots(ratio, quantity, bid_count)
    elif method == AllotmentMethod.DISCRETIONARY.value:
        probability = discretionary_probability(ratio)
        expected_lots = None
        lots_predictable = False
    else:
        probability = fallback_probability(ratio)
        expected_lots = 1

    return CategoryPrediction(
        category=config.code,
        subscription_ratio=ratio,
        allotment_probability=probability,
        expected_lots=expected_lots,
        confidence=_confidence(ratio),
        method=method,
        lots_predictable=lots_predictable,
    )


def aggregate_overall(predictions: Iterable[CategoryPrediction]) -> OverallPrediction:
    """Combine category predictions into an overall estimate.

    Probability is the confidence-weighted mean, confidence the plain mean,
    and the expected ratio ``min(1, 1 / max(mean_ratio, 1))``.
    """
    preds = list(predictions)
    if not preds:
        return OverallPrediction()

    total_confidence = sum(p.confidence for p in preds)
    weighted = (
        sum(p.allotment_probability * p.confidence for p in preds) / total_confidence
        if total_confidence > 0
        else 0.0
    )
    mean_confidence = total_confidence / len(preds)
    mean_ratio = sum(p.subscription_ratio for p in preds) / len(preds)
    expected_ratio = min(1.0, 1 / max(mean_ratio, 1.0))

    return OverallPrediction(
        probability=round(weighted, 2),
        expected_ratio=round(expected_ratio, 4),
        confidence=round(mean_confidence, 2),
    )
