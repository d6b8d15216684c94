"""Domain models and the category rulebook."""

from .categories import (
    CATEGORIES,
    AllotmentMethod,
    CategoryConfig,
    aggregate_overall,
    get_category,
    predict_category,
)
from .models import (
    AllotmentPattern,
    AllotmentPrediction,
    AllotmentResultRecord,
    AnalysisResult,
    CategoryPrediction,
    CategoryRatio,
    Insight,
    LifecycleStatus,
    OfferingDetails,
    OfferingSnapshot,
    OverallPrediction,
    Priority,
    SubscriptionSnapshot,
    UserApplicationLink,
)


__all__ = [
    "CATEGORIES",
    "AllotmentMethod",
    "AllotmentPattern",
    "AllotmentPrediction",
    "AllotmentResultRecord",
    "AnalysisResult",
    "CategoryConfig",
    "CategoryPrediction",
    "CategoryRatio",
    "Insight",
    "LifecycleStatus",
    "OfferingDetails",
    "OfferingSnapshot",
    "OverallPrediction",
    "Priority",
    "SubscriptionSnapshot",
    "UserApplicationLink",
    "aggregate_overall",
    "get_category",
    "predict_category",
]
