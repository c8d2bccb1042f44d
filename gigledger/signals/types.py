"""Signal type definitions for gigledger run observability."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SignalType(str, Enum):
    """All signal types emitted during a pipeline run."""

    STAGE_TRANSITION = "STAGE_TRANSITION"
    STAGE_DEGRADED = "STAGE_DEGRADED"
    DUPLICATE_BLOCKED = "DUPLICATE_BLOCKED"
    RECORDS_VALIDATED = "RECORDS_VALIDATED"
    OUTLIERS_REMOVED = "OUTLIERS_REMOVED"
    RULES_ADAPTED = "RULES_ADAPTED"
    CACHE_HIT = "CACHE_HIT"
    CACHE_MISS = "CACHE_MISS"
    INSIGHT_GENERATED = "INSIGHT_GENERATED"
    RUN_COMPLETE = "RUN_COMPLETE"
    RUN_FAILED = "RUN_FAILED"


class Signal(BaseModel):
    """An immutable signal emitted during a pipeline run.

    Signals are append-only and cannot be modified after emission.
    """

    sequence: int = Field(description="Monotonic sequence number within the run")
    signal_type: SignalType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
