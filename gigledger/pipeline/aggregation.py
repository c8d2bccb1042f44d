"""Period aggregation, scoring, and projections."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from pydantic import BaseModel

from gigledger.adaptation.rules import Benchmark
from gigledger.config.settings import AggregationPolicy
from gigledger.pipeline.records import CleanedRecord, Validity

logger = logging.getLogger(__name__)

CATEGORY_THRESHOLDS = ((80.0, "Excellent"), (60.0, "Good"), (40.0, "Average"))
BELOW_AVERAGE = "Below Average"


def performance_category(score: float) -> str:
    for threshold, label in CATEGORY_THRESHOLDS:
        if score >= threshold:
            return label
    return BELOW_AVERAGE


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


class PeriodTotals(BaseModel):
    """Aggregate totals for a set of records."""

    total_earnings: float = 0.0
    total_distance: float = 0.0
    total_events: int = 0
    total_tips: float = 0.0
    total_cost: float = 0.0
    net: float = 0.0
    record_count: int = 0
    active_periods: int = 0
    performance_score: float = 0.0
    performance_category: str = BELOW_AVERAGE
    value_per_distance: float = 0.0
    net_per_distance: float = 0.0
    value_per_event: float = 0.0
    net_per_event: float = 0.0
    cost_ratio: float = 0.0
    avg_value_per_period: float = 0.0
    avg_net_per_period: float = 0.0

    model_config = {"frozen": True}


class PersonalizedScore(BaseModel):
    score: float
    category: str
    explanation: str


class Projection(BaseModel):
    net: float
    events: float


class Projections(BaseModel):
    daily: Projection
    weekly: Projection
    monthly: Projection


class Aggregator:
    """Sums cleaned records into PeriodTotals.

    Rejected records are excluded. Undated records contribute to the sums
    but not to the count of active periods.
    """

    def __init__(self, policy: AggregationPolicy | None = None) -> None:
        self._policy = policy or AggregationPolicy()

    def aggregate(self, records: Sequence[CleanedRecord]) -> PeriodTotals:
        usable = [r for r in records if r.validity != Validity.REJECTED]

        earnings = sum(r.earnings or 0.0 for r in usable)
        distance = sum(r.distance or 0.0 for r in usable)
        events = sum(r.event_count or 0 for r in usable)
        tips = sum(r.tip_amount or 0.0 for r in usable)
        cost = distance * self._policy.cost_per_distance_unit
        net = earnings - cost
        periods = len({r.record_date for r in usable if r.record_date is not None})

        avg_net = _ratio(net, periods)
        score = min(max(avg_net / self._policy.value_per_score_point, 0.0), 100.0)

        totals = PeriodTotals(
            total_earnings=round(earnings, 2),
            total_distance=round(distance, 2),
            total_events=events,
            total_tips=round(tips, 2),
            total_cost=round(cost, 2),
            net=round(net, 2),
            record_count=len(usable),
            active_periods=periods,
            performance_score=round(score, 2),
            performance_category=performance_category(score),
            value_per_distance=round(_ratio(earnings, distance), 4),
            net_per_distance=round(_ratio(net, distance), 4),
            value_per_event=round(_ratio(earnings, events), 4),
            net_per_event=round(_ratio(net, events), 4),
            cost_ratio=round(_ratio(cost, earnings), 4),
            avg_value_per_period=round(_ratio(earnings, periods), 2),
            avg_net_per_period=round(avg_net, 2),
        )
        logger.debug(
            "Aggregated %d records over %d periods: net=%.2f score=%.1f",
            totals.record_count,
            periods,
            totals.net,
            totals.performance_score,
        )
        return totals


def personalized_score(totals: PeriodTotals, benchmark: Benchmark) -> PersonalizedScore:
    """Score net value per event against a subject's own benchmark."""
    per_event = totals.net_per_event
    target = benchmark.target_value_per_event

    if per_event >= target:
        score, category = benchmark.excellent, "Excellent"
        explanation = f"{per_event:.2f} per event meets the personal target of {target:.2f}"
    elif per_event >= target * 0.8:
        score, category = benchmark.good, "Good"
        explanation = "within 80% of the personal target"
    elif per_event >= target * 0.6:
        score, category = benchmark.average, "Average"
        explanation = "between 60% and 80% of the personal target"
    else:
        score, category = max(per_event * 5, 10.0), BELOW_AVERAGE
        explanation = "below the historical average"

    return PersonalizedScore(
        score=round(min(score, 100.0)), category=category, explanation=explanation
    )


def project(totals: PeriodTotals) -> Projections:
    """Daily, weekly and monthly projections from the per-period averages."""
    events_per_period = _ratio(totals.total_events, totals.active_periods)
    return Projections(
        daily=Projection(net=totals.avg_net_per_period, events=round(events_per_period, 2)),
        weekly=Projection(
            net=round(totals.avg_net_per_period * 7, 2), events=round(events_per_period * 7, 2)
        ),
        monthly=Projection(
            net=round(totals.avg_net_per_period * 30, 2), events=round(events_per_period * 30, 2)
        ),
    )
