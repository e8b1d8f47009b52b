"""
Statistics Engine — per-variant aggregation and a pooled two-proportion z-test.

Pure functions over the stored events of one test; recomputed on every read.

Conversion metric: a single canonical metric is used for rate, lift and
significance at every call site, chosen by ``stats_conversion_metric``:
  - ADD_TO_CART (default): add-to-carts / impressions
  - PURCHASE:              purchases / impressions

p-value: two-tailed, from the standard normal CDF (``statistics.NormalDist``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from statistics import NormalDist
from typing import Any, Iterable, Protocol

from core.config import get_settings
from experiments.errors import ValidationError
from experiments.types import EventType, VariantTag

LIFT_RATE_FLOOR = 0.001
_STANDARD_NORMAL = NormalDist()


class ConversionMetric(str, Enum):
    ADD_TO_CART = "add_to_cart"
    PURCHASE = "purchase"

    @property
    def event_type(self) -> EventType:
        return EventType.ADD_TO_CART if self is ConversionMetric.ADD_TO_CART else EventType.PURCHASE

    @classmethod
    def configured(cls) -> "ConversionMetric":
        return cls(get_settings().stats_conversion_metric.strip().lower())


class _EventLike(Protocol):
    variant: str | None
    event_type: str
    revenue: float | None


@dataclass
class VariantStats:
    variant: VariantTag
    impressions: int = 0
    add_to_carts: int = 0
    purchases: int = 0
    revenue: float = 0.0
    conversions: int = 0
    rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant": self.variant.value,
            "impressions": self.impressions,
            "addToCarts": self.add_to_carts,
            "purchases": self.purchases,
            "revenue": round(self.revenue, 2),
            "conversions": self.conversions,
            "conversionRate": round(self.rate * 100, 4),
            "revenuePerImpression": round(self.revenue / self.impressions, 4) if self.impressions else 0.0,
        }


@dataclass(frozen=True)
class ZTestResult:
    z_score: float
    p_value: float
    confidence: float


@dataclass
class ExperimentStatistics:
    metric: ConversionMetric
    variant_a: VariantStats
    variant_b: VariantStats
    lift: float
    z_score: float
    p_value: float
    confidence: float
    is_significant: bool
    winner: VariantTag | None
    confidence_threshold: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric.value,
            "variantA": self.variant_a.to_dict(),
            "variantB": self.variant_b.to_dict(),
            "lift": round(self.lift, 4),
            "zScore": round(self.z_score, 4),
            "pValue": round(self.p_value, 6),
            "confidence": round(self.confidence, 4),
            "isSignificant": self.is_significant,
            "winner": self.winner.value if self.winner else None,
            "confidenceThreshold": self.confidence_threshold,
        }


def z_test(conversions_a: int, n_a: int, conversions_b: int, n_b: int) -> ZTestResult:
    """
    Pooled two-sample z-test for proportions.

    z is 0 when either sample is empty or the standard error is 0, giving a
    p-value of 1 and confidence 0.
    """
    if n_a <= 0 or n_b <= 0:
        return ZTestResult(z_score=0.0, p_value=1.0, confidence=0.0)

    p_a = conversions_a / n_a
    p_b = conversions_b / n_b
    pooled = (conversions_a + conversions_b) / (n_a + n_b)
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / n_a + 1 / n_b))
    if standard_error == 0:
        return ZTestResult(z_score=0.0, p_value=1.0, confidence=0.0)

    z = (p_a - p_b) / standard_error
    p_value = 2 * (1 - _STANDARD_NORMAL.cdf(abs(z)))
    confidence = max(0.0, (1 - p_value) * 100)
    return ZTestResult(z_score=z, p_value=p_value, confidence=confidence)


def lift_percent(rate_a: float, rate_b: float) -> float:
    return (rate_b - rate_a) / max(rate_a, LIFT_RATE_FLOOR) * 100


def aggregate(events: Iterable[_EventLike], metric: ConversionMetric) -> tuple[VariantStats, VariantStats]:
    buckets = {VariantTag.A: VariantStats(VariantTag.A), VariantTag.B: VariantStats(VariantTag.B)}
    for event in events:
        if event.variant not in (VariantTag.A.value, VariantTag.B.value):
            continue
        bucket = buckets[VariantTag(event.variant)]
        if event.event_type == EventType.IMPRESSION.value:
            bucket.impressions += 1
        elif event.event_type == EventType.ADD_TO_CART.value:
            bucket.add_to_carts += 1
        elif event.event_type == EventType.PURCHASE.value:
            bucket.purchases += 1
            bucket.revenue += float(event.revenue or 0.0)

    for bucket in buckets.values():
        bucket.conversions = bucket.add_to_carts if metric is ConversionMetric.ADD_TO_CART else bucket.purchases
        bucket.rate = bucket.conversions / bucket.impressions if bucket.impressions else 0.0
    return buckets[VariantTag.A], buckets[VariantTag.B]


def compute_statistics(
    events: Iterable[_EventLike],
    metric: ConversionMetric | None = None,
    confidence_threshold: float | None = None,
) -> ExperimentStatistics:
    metric = metric or ConversionMetric.configured()
    threshold = get_settings().stats_confidence_threshold if confidence_threshold is None else confidence_threshold

    variant_a, variant_b = aggregate(events, metric)
    result = z_test(variant_a.conversions, variant_a.impressions, variant_b.conversions, variant_b.impressions)
    significant = result.confidence >= threshold

    winner = None
    if significant and variant_a.rate != variant_b.rate:
        winner = VariantTag.B if variant_b.rate > variant_a.rate else VariantTag.A

    return ExperimentStatistics(
        metric=metric,
        variant_a=variant_a,
        variant_b=variant_b,
        lift=lift_percent(variant_a.rate, variant_b.rate),
        z_score=result.z_score,
        p_value=result.p_value,
        confidence=result.confidence,
        is_significant=significant,
        winner=winner,
        confidence_threshold=threshold,
    )


def required_sample_size(
    baseline_rate: float,
    minimum_detectable_effect: float,
    *,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """
    Impressions needed per variant to detect a relative lift of
    ``minimum_detectable_effect`` (0.1 = +10%) over ``baseline_rate``.
    """
    if not 0 < baseline_rate < 1:
        raise ValidationError("baseline_rate must be between 0 and 1")
    if minimum_detectable_effect <= 0:
        raise ValidationError("minimum_detectable_effect must be positive")
    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    if p2 >= 1:
        raise ValidationError("baseline_rate * (1 + minimum_detectable_effect) must stay below 1")

    z_alpha = _STANDARD_NORMAL.inv_cdf(1 - alpha / 2)
    z_beta = _STANDARD_NORMAL.inv_cdf(power)
    p_bar = (p1 + p2) / 2
    numerator = (
        z_alpha * math.sqrt(2 * p_bar * (1 - p_bar)) + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)
