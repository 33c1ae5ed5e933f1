"""Popularity score shared by ranking and the index document.

Nothing feeds real order/review/view counts into the indexer yet, so indexed
documents carry a zero score unless a caller passes metrics explicitly.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone

WEIGHTS = {
    "orders": 0.4,
    "reviews": 0.2,
    "rating": 0.2,
    "views": 0.1,
    "freshness": 0.1,
}
FRESHNESS_WINDOW_DAYS = 365


@dataclass(frozen=True)
class PopularityMetrics:
    order_count: int = 0
    review_count: int = 0
    average_rating: float = 0.0
    view_count: int = 0
    wishlist_count: int = 0


def freshness_factor(created_at: datetime, now: datetime) -> float:
    """Linear decay from 1 at creation to 0 after a year."""

    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    days = (now - created_at).total_seconds() / 86400
    return max(0.0, 1 - days / FRESHNESS_WINDOW_DAYS)


def popularity_score(metrics: PopularityMetrics, created_at: datetime, now: datetime) -> float:
    """Weighted, log-scaled score in roughly the 0-100 range, two decimals."""

    score = (
        math.log(metrics.order_count + 1) * WEIGHTS["orders"]
        + math.log(metrics.review_count + 1) * WEIGHTS["reviews"]
        + (metrics.average_rating / 5) * WEIGHTS["rating"]
        + math.log(metrics.view_count + 1) * WEIGHTS["views"]
        + freshness_factor(created_at, now) * WEIGHTS["freshness"]
    ) * 100
    return round(score, 2)
