"""Rule adaptation and personal benchmarks from a subject's own history."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Sequence
from datetime import date, datetime
from statistics import fmean

from gigledger.adaptation.rules import (
    AdaptationResult,
    AdaptiveRuleSet,
    Benchmark,
    FieldBounds,
    PeriodCaps,
    default_benchmark,
)
from gigledger.config.settings import AdaptationPolicy, ValidationPolicy
from gigledger.pipeline.outliers import index_quantile
from gigledger.pipeline.records import CleanedRecord, RawRecord

logger = logging.getLogger(__name__)

Record = CleanedRecord | RawRecord

PER_EVENT_FIELDS = ("earnings", "distance", "tip_amount")


def _events(record: Record) -> int:
    return max(record.event_count or 0, 1)


class RuleAdapter:
    """Widens validation bounds from observed legitimate data.

    Adaptive maxima never drop below the static defaults, so a subject's
    bounds only ever widen relative to the baseline.
    """

    def __init__(
        self,
        policy: AdaptationPolicy | None = None,
        static: ValidationPolicy | None = None,
    ) -> None:
        self._policy = policy or AdaptationPolicy()
        self._static = static or ValidationPolicy()

    def adapt(
        self,
        corpus: Sequence[Record],
        rules: AdaptiveRuleSet,
        now: datetime | None = None,
    ) -> AdaptationResult:
        if not rules.enable_adaptive:
            return AdaptationResult(
                rule_set=rules, skipped=True, reason="adaptation disabled", sample_size=len(corpus)
            )
        if len(corpus) < self._policy.min_sample:
            return AdaptationResult(
                rule_set=rules,
                skipped=True,
                reason=(
                    f"insufficient sample: {len(corpus)} records, "
                    f"need {self._policy.min_sample}"
                ),
                sample_size=len(corpus),
            )

        bounds = dict(rules.bounds)
        for field in PER_EVENT_FIELDS:
            static = self._static.bounds.get(field)
            if static is None:
                continue
            per_event = sorted(
                getattr(r, field) / _events(r)
                for r in corpus
                if getattr(r, field) is not None and getattr(r, field) > 0
            )
            adapted_max = static.max
            if per_event:
                p95 = index_quantile(per_event, self._policy.percentile)
                adapted_max = max(static.max, round(p95 * self._policy.percentile_margin, 2))
            bounds[field] = FieldBounds(min=static.min, max=adapted_max)

        daily_events, daily_earnings = _daily_totals(corpus)
        caps = PeriodCaps(
            max_events_per_day=self._adapt_cap(
                self._static.max_events_per_day,
                max(daily_events, default=0.0),
                self._policy.events_per_day_ceiling,
            ),
            max_earnings_per_day=self._adapt_cap(
                self._static.max_earnings_per_day,
                max(daily_earnings, default=0.0),
                self._policy.earnings_per_day_ceiling,
            ),
            max_events_per_hour=rules.period_caps.max_events_per_hour,
            max_earnings_per_hour=rules.period_caps.max_earnings_per_hour,
        )
        count_static = self._static.bounds.get("event_count")
        if count_static is not None:
            bounds["event_count"] = FieldBounds(
                min=count_static.min, max=max(count_static.max, caps.max_events_per_day)
            )

        updated = rules.next_version(bounds=bounds, period_caps=caps, now=now)
        logger.info(
            "Adapted rules for %s to v%d from %d records",
            rules.subject_id,
            updated.version,
            len(corpus),
        )
        return AdaptationResult(rule_set=updated, sample_size=len(corpus))

    def _adapt_cap(self, static: float, observed: float, ceiling: float) -> float:
        return max(static, round(min(observed * self._policy.period_margin, ceiling), 2))

    def benchmark(self, corpus: Sequence[Record]) -> Benchmark:
        """Personal performance thresholds from the subject's quartiles."""
        qualifying = [
            r
            for r in corpus
            if (r.earnings or 0) > 0 and (r.distance or 0) > 0
        ]
        if len(qualifying) < self._policy.benchmark_min_sample:
            return default_benchmark(self._policy)

        values = sorted(r.earnings / _events(r) for r in qualifying)
        q1 = index_quantile(values, 0.25)
        median = index_quantile(values, 0.5)
        q3 = index_quantile(values, 0.75)
        multiplier = self._policy.benchmark_multiplier

        daily_events, _ = _daily_totals(qualifying)
        target_events = (
            round(fmean(daily_events), 2)
            if daily_events
            else self._policy.default_target_events_per_period
        )

        return Benchmark(
            excellent=min(round(q3 * multiplier, 2), 100.0),
            good=min(round(median * multiplier, 2), 100.0),
            average=min(round(q1 * multiplier, 2), 100.0),
            target_value_per_event=round(q3, 2),
            target_events_per_period=target_events,
            sample_size=len(qualifying),
            is_default=False,
        )


def _daily_totals(corpus: Sequence[Record]) -> tuple[list[float], list[float]]:
    events: dict[date, float] = defaultdict(float)
    earnings: dict[date, float] = defaultdict(float)
    for record in corpus:
        if record.record_date is None:
            continue
        events[record.record_date] += _events(record)
        earnings[record.record_date] += record.earnings or 0.0
    return list(events.values()), list(earnings.values())
