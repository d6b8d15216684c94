"""Subscription-based allotment prediction and accuracy scoring."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping

from allotrack.core.logging import get_logger
from allotrack.domain.categories import aggregate_overall, get_category, predict_category
from allotrack.domain.models import (
    AllotmentPrediction,
    AnalysisResult,
    CategoryPrediction,
    Insight,
    OfferingDetails,
    SubscriptionSnapshot,
)


logger = get_logger("services.allotment.prediction")

HIGH_PROBABILITY_THRESHOLD = 80.0
LOW_PROBABILITY_THRESHOLD = 30.0
HEAVY_OVERSUBSCRIPTION_RATIO = 10.0
FAVORABLE_FACTOR = 1.5
TIMELINE_HORIZON_DAYS = 7

OVERALL_ACCURACY_THRESHOLD = 70.0
CATEGORY_ACCURACY_THRESHOLD = 60.0


def latest_by_category(
    subscriptions: Iterable[SubscriptionSnapshot],
) -> dict[str, SubscriptionSnapshot]:
    """Keep the most recent snapshot per category code."""
    latest: dict[str, SubscriptionSnapshot] = {}
    for snapshot in subscriptions:
        code = snapshot.category.upper()
        current = latest.get(code)
        if current is None:
            latest[code] = snapshot
            continue
        if snapshot.timestamp and (
            current.timestamp is None or snapshot.timestamp > current.timestamp
        ):
            latest[code] = snapshot
    return latest


def prediction_insights(
    categories: Mapping[str, CategoryPrediction],
    details: OfferingDetails | None,
    now: datetime,
) -> list[Insight]:
    insights: list[Insight] = []

    for code, prediction in categories.items():
        probability = prediction.allotment_probability
        if probability > HIGH_PROBABILITY_THRESHOLD:
            insights.append(
                Insight(
                    type="HIGH_PROBABILITY",
                    category=code,
                    message=f"High allotment probability ({probability:.1f}%) for {code} category",
                    details={"confidence": prediction.confidence},
                )
            )
        elif probability < LOW_PROBABILITY_THRESHOLD:
            insights.append(
                Insight(
                    type="LOW_PROBABILITY",
                    category=code,
                    message=f"Low allotment probability ({probability:.1f}%) for {code} category",
                    details={"confidence": prediction.confidence},
                )
            )

        if prediction.subscription_ratio > HEAVY_OVERSUBSCRIPTION_RATIO:
            insights.append(
                Insight(
                    type="HEAVY_OVERSUBSCRIPTION",
                    category=code,
                    message=f"{code} heavily oversubscribed ({prediction.subscription_ratio:.2f}x)",
                )
            )

    retail = categories.get("RETAIL")
    qib = categories.get("QIB")
    if retail and qib:
        if retail.allotment_probability > qib.allotment_probability * FAVORABLE_FACTOR:
            insights.append(
                Insight(
                    type="RETAIL_FAVORABLE",
                    message="Retail category shows better allotment prospects than institutional",
                )
            )
        elif qib.allotment_probability > retail.allotment_probability * FAVORABLE_FACTOR:
            insights.append(
                Insight(
                    type="INSTITUTIONAL_FAVORABLE",
                    message="Institutional categories show better allotment prospects",
                )
            )

    if details is not None and details.allotment_date is not None:
        days = math.ceil((details.allotment_date - now).total_seconds() / 86400)
        if 0 < days <= TIMELINE_HORIZON_DAYS:
            insights.append(
                Insight(
                    type="ALLOTMENT_TIMELINE",
                    message=f"Allotment expected within {days} days",
                    details={"allotment_date": details.allotment_date.isoformat()},
                )
            )

    return insights


def predict_offering(
    details: OfferingDetails | None,
    subscriptions: Iterable[SubscriptionSnapshot],
    now: datetime,
) -> AllotmentPrediction:
    """Build the prediction set for an offering from its latest subscriptions.

    Categories missing from the rulebook are skipped. With no subscription
    data at all the result carries zeroed overall figures and a single
    ``NO_SUBSCRIPTION_DATA`` insight.
    """
    latest = latest_by_category(subscriptions)
    if not latest:
        return AllotmentPrediction(
            insights=[
                Insight(
                    type="NO_SUBSCRIPTION_DATA",
                    message="No subscription data available for prediction",
                )
            ],
            computed_at=now,
        )

    categories: dict[str, CategoryPrediction] = {}
    for code, snapshot in latest.items():
        config = get_category(code)
        if config is None:
            logger.debug("Skipping unknown category", extra={"category": code})
            continue
        categories[config.code] = predict_category(
            snapshot.subscription_ratio,
            config,
            quantity=snapshot.quantity,
            bid_count=snapshot.bid_count,
        )

    return AllotmentPrediction(
        overall=aggregate_overall(categories.values()),
        categories=categories,
        insights=prediction_insights(categories, details, now),
        computed_at=now,
    )


@dataclass
class AccuracyReport:
    """Running prediction accuracy across scored offerings."""

    total: int = 0
    accurate: int = 0

    @property
    def accuracy(self) -> float:
        if self.total == 0:
            return 0.0
        return self.accurate / self.total * 100

    def merge(self, other: "AccuracyReport") -> "AccuracyReport":
        return AccuracyReport(
            total=self.total + other.total,
            accurate=self.accurate + other.accurate,
        )


def score_accuracy(
    prediction: AllotmentPrediction, analysis: AnalysisResult
) -> AccuracyReport:
    """Compare a prediction with the realised allotment.

    Only predictions with a positive probability are scored. The overall
    prediction counts as accurate when ``100 - |p - a| > 70``, a category
    prediction when ``> 60``.
    """
    report = AccuracyReport()

    predicted = prediction.overall.probability
    if predicted > 0:
        report.total += 1
        if 100 - abs(predicted - analysis.overall_allotment_ratio) > OVERALL_ACCURACY_THRESHOLD:
            report.accurate += 1

    for code, category_prediction in prediction.categories.items():
        actual = analysis.category_wise_ratio.get(code)
        if actual is None or category_prediction.allotment_probability <= 0:
            continue
        report.total += 1
        error = abs(category_prediction.allotment_probability - actual.allotment_ratio)
        if 100 - error > CATEGORY_ACCURACY_THRESHOLD:
            report.accurate += 1

    return report
