"""gigledger configuration settings.

Every empirically chosen threshold lives here as a named, overridable policy
constant. Environment variables override defaults where an operator is
expected to tune them.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


def _float_env(var_name: str, default: float) -> float:
    raw = os.getenv(var_name, "").strip()
    return float(raw) if raw else default


def _bool_env(var_name: str, default: bool) -> bool:
    raw = os.getenv(var_name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


class BoundsDefault(BaseModel):
    """Static per-event min/max for one numeric field."""

    min: float = 0.0
    max: float


def _default_bounds() -> dict[str, BoundsDefault]:
    return {
        "earnings": BoundsDefault(min=2.00, max=75.00),
        "distance": BoundsDefault(min=0.0, max=50.0),
        "tip_amount": BoundsDefault(min=0.0, max=50.00),
        "event_count": BoundsDefault(min=1, max=50),
    }


class ValidationPolicy(BaseModel):
    """Static validation defaults for single records and reporting periods."""

    bounds: dict[str, BoundsDefault] = Field(default_factory=_default_bounds)
    estimation_floor: float = 2.50
    estimation_rate_per_distance: float = 1.20
    max_events_per_day: float = 50
    max_earnings_per_day: float = 500.00
    max_events_per_hour: float = 8
    max_earnings_per_hour: float = 80.00
    min_extraction_confidence: float = Field(
        default_factory=lambda: _float_env("GIGLEDGER_MIN_CONFIDENCE", 0.5)
    )
    strict: bool = Field(default_factory=lambda: _bool_env("GIGLEDGER_STRICT", False))
    enable_adaptive: bool = Field(
        default_factory=lambda: _bool_env("GIGLEDGER_ENABLE_ADAPTIVE", True)
    )

    @field_validator("min_extraction_confidence")
    @classmethod
    def _validate_confidence(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("min_extraction_confidence must be within [0, 1]")
        return value


class FingerprintPolicy(BaseModel):
    """Duplicate-artifact detection policy."""

    size_tolerance: float = 0.05
    recent_window_s: int = 24 * 60 * 60
    near_hash_buckets: int = 64
    near_hash_quantization_bits: int = 4
    max_size_candidates: int = 10

    @field_validator("size_tolerance")
    @classmethod
    def _validate_tolerance(cls, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ValueError("size_tolerance must be within [0, 1)")
        return value


class OutlierPolicy(BaseModel):
    """Quartile outlier filter policy."""

    min_sample: int = 10
    iqr_multiplier: float = 1.5


class AdaptationPolicy(BaseModel):
    """Adaptive bounds and benchmark policy."""

    min_sample: int = 20
    percentile: float = 0.95
    percentile_margin: float = 1.2
    period_margin: float = 1.1
    events_per_day_ceiling: float = 60
    earnings_per_day_ceiling: float = 600.00
    benchmark_min_sample: int = 5
    benchmark_multiplier: float = 10.0
    default_excellent: float = 80.0
    default_good: float = 60.0
    default_average: float = 40.0
    default_target_value_per_event: float = 8.0
    default_target_events_per_period: float = 12.0


class AggregationPolicy(BaseModel):
    """Derived-cost and scoring constants."""

    cost_per_distance_unit: float = Field(
        default_factory=lambda: _float_env("GIGLEDGER_COST_PER_DISTANCE", 0.18)
    )
    value_per_score_point: float = 2.0

    @field_validator("value_per_score_point")
    @classmethod
    def _validate_score_divisor(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("value_per_score_point must be > 0")
        return value


class ModelPricing(BaseModel):
    """Price per 1K units for one generation model."""

    input_per_1k: float
    output_per_1k: float


def _default_pricing() -> dict[str, ModelPricing]:
    return {
        "gemini-2.5-flash": ModelPricing(input_per_1k=0.0003, output_per_1k=0.0025),
        "gemini-2.5-pro": ModelPricing(input_per_1k=0.00125, output_per_1k=0.01),
    }


class InsightPolicy(BaseModel):
    """Insight cache and generation policy."""

    project_id: str = Field(default_factory=lambda: os.getenv("VERTEX_PROJECT_ID", ""))
    location: str = Field(default_factory=lambda: os.getenv("VERTEX_LOCATION", "us-central1"))
    model: str = "gemini-2.5-flash"
    ttl_s: int = 24 * 60 * 60
    events_drift_threshold: float = 0.20
    value_drift_threshold: float = 0.25
    timeout_s: float = Field(
        default_factory=lambda: _float_env("GIGLEDGER_INSIGHT_TIMEOUT_S", 20.0)
    )
    max_output_units: int = 800
    pricing: dict[str, ModelPricing] = Field(default_factory=_default_pricing)

    @field_validator("timeout_s")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("GIGLEDGER_INSIGHT_TIMEOUT_S must be > 0")
        return value


class StorageConfig(BaseModel):
    """Disk layout for the file-backed repository and ledgers."""

    data_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("GIGLEDGER_DATA_DIR", "./data"))
    )


class EngineConfig(BaseModel):
    """Root configuration for the gigledger engine."""

    validation: ValidationPolicy = Field(default_factory=ValidationPolicy)
    fingerprint: FingerprintPolicy = Field(default_factory=FingerprintPolicy)
    outliers: OutlierPolicy = Field(default_factory=OutlierPolicy)
    adaptation: AdaptationPolicy = Field(default_factory=AdaptationPolicy)
    aggregation: AggregationPolicy = Field(default_factory=AggregationPolicy)
    insights: InsightPolicy = Field(default_factory=InsightPolicy)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    log_level: str = Field(default_factory=lambda: os.getenv("GIGLEDGER_LOG_LEVEL", "INFO"))
