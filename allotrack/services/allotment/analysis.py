"""Analysis of realised allotment results.

Everything here is a pure function of the validated record set (plus the
prediction it is compared against), so the analysis is recomputed wholesale
each cycle rather than patched incrementally.
"""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Sequence

from allotrack.domain.models import (
    AllotmentPattern,
    AllotmentPrediction,
    AllotmentResultRecord,
    AnalysisResult,
    CategoryRatio,
    Insight,
)


UNIFORM_LOT_SHARE = 0.6
SEQUENTIAL_RUN_SHARE = 0.3
SEQUENTIAL_MIN_NUMBERS = 10

HIGH_ALLOTMENT_RATE = 80.0
LOW_ALLOTMENT_RATE = 30.0
HIGH_REFUND = 70.0
CATEGORY_DISPARITY_FACTOR = 2.0
PREDICTION_VARIANCE = 20.0

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def _percentage(part: Decimal | int | float, whole: Decimal | int | float) -> float:
    if not whole:
        return 0.0
    return float(Decimal(part) / Decimal(whole) * 100)


def _category_ratio(records: Sequence[AllotmentResultRecord]) -> CategoryRatio:
    allotted = [r for r in records if r.is_allotted]
    applied_amount = sum((r.applied_amount for r in records), Decimal("0"))
    refund_amount = sum((r.refund_amount for r in records), Decimal("0"))
    average = (
        sum(r.allotted_quantity for r in allotted) / len(allotted) if allotted else 0.0
    )
    return CategoryRatio(
        allotment_ratio=round(_percentage(len(allotted), len(records)), 2),
        average_allotment=round(average, 2),
        total_applications=len(records),
        allotted_applications=len(allotted),
        refund_percentage=_percentage(refund_amount, applied_amount),
    )


def detect_uniform_lots(records: Sequence[AllotmentResultRecord]) -> AllotmentPattern | None:
    """Report an allotted quantity held by more than 60% of allottees.

    The reported percentage is the share of the whole sample holding that
    quantity.
    """
    allotted = [r.allotted_quantity for r in records if r.is_allotted]
    if not allotted:
        return None
    # ties go to the smaller quantity
    lots, count = max(Counter(allotted).items(), key=lambda item: (item[1], -item[0]))
    if count <= len(allotted) * UNIFORM_LOT_SHARE:
        return None
    share = round(count / len(records) * 100, 1)
    return AllotmentPattern(
        type="UNIFORM_ALLOTMENT",
        description=f"{share}% of applicants received {lots} lots",
        percentage=share,
        common_lots=lots,
    )


def detect_sequential_numbers(application_numbers: Iterable[str]) -> AllotmentPattern | None:
    """Look for a long run of consecutive trailing application numbers."""
    numbers = sorted(
        int(match.group(1))
        for match in (_TRAILING_DIGITS.search(n) for n in application_numbers if n)
        if match
    )
    if len(numbers) < SEQUENTIAL_MIN_NUMBERS:
        return None

    longest = current = 1
    for previous, number in zip(numbers, numbers[1:]):
        if number == previous + 1:
            current += 1
            longest = max(longest, current)
        else:
            current = 1

    if longest <= len(numbers) * SEQUENTIAL_RUN_SHARE:
        return None
    return AllotmentPattern(
        type="SEQUENTIAL_PATTERN",
        description="Sequential application number pattern detected",
        percentage=round(longest / len(numbers) * 100, 1),
        max_consecutive_length=longest,
        total_numbers=len(numbers),
    )


def detect_patterns(records: Sequence[AllotmentResultRecord]) -> list[AllotmentPattern]:
    patterns: list[AllotmentPattern] = []
    uniform = detect_uniform_lots(records)
    if uniform:
        patterns.append(uniform)
    sequential = detect_sequential_numbers(r.application_number for r in records)
    if sequential:
        patterns.append(sequential)
    return patterns


def analysis_insights(
    analysis: AnalysisResult, prediction: AllotmentPrediction | None
) -> list[Insight]:
    insights: list[Insight] = []
    ratio = analysis.overall_allotment_ratio

    if ratio > HIGH_ALLOTMENT_RATE:
        insights.append(
            Insight(type="HIGH_ALLOTMENT_RATE", message=f"High overall allotment rate: {ratio:.1f}%")
        )
    elif ratio < LOW_ALLOTMENT_RATE:
        insights.append(
            Insight(type="LOW_ALLOTMENT_RATE", message=f"Low overall allotment rate: {ratio:.1f}%")
        )

    ranked = sorted(
        analysis.category_wise_ratio.items(),
        key=lambda item: (-item[1].allotment_ratio, item[0]),
    )
    if len(ranked) > 1:
        (best_code, best), (worst_code, worst) = ranked[0], ranked[-1]
        if best.allotment_ratio > worst.allotment_ratio * CATEGORY_DISPARITY_FACTOR:
            insights.append(
                Insight(
                    type="CATEGORY_DISPARITY",
                    category=best_code,
                    message=(
                        f"{best_code} category had a significantly better allotment rate "
                        f"({best.allotment_ratio:.1f}%) than {worst_code} "
                        f"({worst.allotment_ratio:.1f}%)"
                    ),
                )
            )

    if analysis.refund_percentage > HIGH_REFUND:
        insights.append(
            Insight(
                type="HIGH_REFUND",
                message=f"High refund percentage: {analysis.refund_percentage:.1f}%",
            )
        )

    if prediction is not None and prediction.overall.probability > 0:
        predicted = prediction.overall.probability
        variance = ratio - predicted
        if abs(variance) > PREDICTION_VARIANCE:
            direction = "exceeded" if variance > 0 else "fell short of"
            insights.append(
                Insight(
                    type="PREDICTION_VARIANCE",
                    message=(
                        f"Actual allotment rate ({ratio:.1f}%) {direction} "
                        f"prediction ({predicted:.1f}%)"
                    ),
                    details={"variance": round(abs(variance), 2)},
                )
            )

    return insights


def analyze(
    records: Sequence[AllotmentResultRecord],
    prediction: AllotmentPrediction | None = None,
    now: datetime | None = None,
) -> AnalysisResult:
    """Compute ratios, patterns and insights for an offering's results."""
    if not records:
        return AnalysisResult(analyzed_at=now)

    by_category: dict[str, list[AllotmentResultRecord]] = defaultdict(list)
    for record in records:
        by_category[record.category or "UNKNOWN"].append(record)

    allotted = [r for r in records if r.is_allotted]
    applied_amount = sum((r.applied_amount for r in records), Decimal("0"))
    refund_amount = sum((r.refund_amount for r in records), Decimal("0"))

    analysis = AnalysisResult(
        overall_allotment_ratio=_percentage(len(allotted), len(records)),
        category_wise_ratio={
            code: _category_ratio(group) for code, group in sorted(by_category.items())
        },
        refund_percentage=_percentage(refund_amount, applied_amount),
        average_allotment_size=(
            sum(r.allotted_quantity for r in allotted) / len(allotted) if allotted else 0.0
        ),
        total_applications=len(records),
        allotted_applications=len(allotted),
        patterns=detect_patterns(records),
        analyzed_at=now,
    )
    analysis.insights = analysis_insights(analysis, prediction)
    return analysis
