"""Adaptive rule sets and benchmarks.

A rule set is an explicit, versioned value owned by the caller. The engine
never mutates one in place; adaptation returns a copy with ``version + 1``.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator

from gigledger.config.settings import AdaptationPolicy, ValidationPolicy


class FieldBounds(BaseModel):
    """Per-event min/max for one numeric field."""

    min: float
    max: float

    model_config = {"frozen": True}

    @field_validator("max")
    @classmethod
    def _validate_max(cls, value: float) -> float:
        if value < 0:
            raise ValueError("bounds max must be >= 0")
        return value


class PeriodCaps(BaseModel):
    """Daily and hourly caps applied across records of one period."""

    max_events_per_day: float
    max_earnings_per_day: float
    max_events_per_hour: float
    max_earnings_per_hour: float

    model_config = {"frozen": True}


class AdaptiveRuleSet(BaseModel):
    """Per-subject validation rules."""

    subject_id: str
    bounds: dict[str, FieldBounds]
    period_caps: PeriodCaps
    enable_adaptive: bool = True
    strict: bool = False
    version: int = 0
    adapted_at: datetime | None = None

    model_config = {"frozen": True}

    def bounds_for(self, field: str) -> FieldBounds | None:
        return self.bounds.get(field)

    def next_version(
        self,
        *,
        bounds: dict[str, FieldBounds],
        period_caps: PeriodCaps,
        now: datetime | None = None,
    ) -> AdaptiveRuleSet:
        """Return a copy carrying new bounds and caps with the version bumped."""
        return self.model_copy(
            update={
                "bounds": bounds,
                "period_caps": period_caps,
                "version": self.version + 1,
                "adapted_at": now or datetime.now(timezone.utc),
            }
        )


def static_rule_set(subject_id: str, policy: ValidationPolicy | None = None) -> AdaptiveRuleSet:
    """Build the initial rule set for a subject from static policy defaults."""
    policy = policy or ValidationPolicy()
    return AdaptiveRuleSet(
        subject_id=subject_id,
        bounds={
            name: FieldBounds(min=default.min, max=default.max)
            for name, default in policy.bounds.items()
        },
        period_caps=PeriodCaps(
            max_events_per_day=policy.max_events_per_day,
            max_earnings_per_day=policy.max_earnings_per_day,
            max_events_per_hour=policy.max_events_per_hour,
            max_earnings_per_hour=policy.max_earnings_per_hour,
        ),
        enable_adaptive=policy.enable_adaptive,
        strict=policy.strict,
    )


class Benchmark(BaseModel):
    """Personalized performance thresholds derived from a subject's history."""

    excellent: float
    good: float
    average: float
    target_value_per_event: float
    target_events_per_period: float
    sample_size: int = 0
    is_default: bool = False

    model_config = {"frozen": True}


def default_benchmark(policy: AdaptationPolicy | None = None) -> Benchmark:
    policy = policy or AdaptationPolicy()
    return Benchmark(
        excellent=policy.default_excellent,
        good=policy.default_good,
        average=policy.default_average,
        target_value_per_event=policy.default_target_value_per_event,
        target_events_per_period=policy.default_target_events_per_period,
        sample_size=0,
        is_default=True,
    )


class AdaptationResult(BaseModel):
    """Outcome of one adaptation attempt."""

    rule_set: AdaptiveRuleSet
    skipped: bool = False
    reason: str = ""
    sample_size: int = Field(default=0, ge=0)
