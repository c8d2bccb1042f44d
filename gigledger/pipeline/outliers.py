"""Quartile-based outlier filter for a batch of records."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date

from pydantic import BaseModel, Field

from gigledger.config.settings import OutlierPolicy
from gigledger.pipeline.records import CleanedRecord

logger = logging.getLogger(__name__)


def index_quantile(sorted_values: Sequence[float], q: float) -> float:
    """Quantile by the index method: ``sorted[floor(n * q)]``."""
    idx = min(int(len(sorted_values) * q), len(sorted_values) - 1)
    return sorted_values[idx]


class OutlierResult(BaseModel):
    kept: list[CleanedRecord] = Field(default_factory=list)
    removed: list[CleanedRecord] = Field(default_factory=list)
    lower_bound: float | None = None
    upper_bound: float | None = None

    @property
    def applied(self) -> bool:
        return self.lower_bound is not None


class OutlierFilter:
    """Excludes records whose earnings fall outside the Tukey fences.

    Records are grouped by calendar day (undated records last) and then
    flattened, so the returned order is stable by day. Records are never
    modified, only excluded. Batches with too few positive earnings values
    are returned unchanged.
    """

    def __init__(self, policy: OutlierPolicy | None = None) -> None:
        self._policy = policy or OutlierPolicy()

    def filter(self, records: Sequence[CleanedRecord]) -> OutlierResult:
        values = sorted(r.earnings for r in records if r.earnings is not None and r.earnings > 0)
        if len(values) < self._policy.min_sample:
            return OutlierResult(kept=list(records))

        q1 = index_quantile(values, 0.25)
        q3 = index_quantile(values, 0.75)
        iqr = q3 - q1
        lower = q1 - self._policy.iqr_multiplier * iqr
        upper = q3 + self._policy.iqr_multiplier * iqr

        kept: list[CleanedRecord] = []
        removed: list[CleanedRecord] = []
        for record in _flatten_by_day(records):
            earnings = record.earnings
            if earnings is not None and earnings > 0 and not lower <= earnings <= upper:
                removed.append(record)
            else:
                kept.append(record)

        if removed:
            logger.info(
                "Removed %d outliers outside [%.2f, %.2f] from %d records",
                len(removed),
                lower,
                upper,
                len(records),
            )
        return OutlierResult(kept=kept, removed=removed, lower_bound=lower, upper_bound=upper)


def _flatten_by_day(records: Sequence[CleanedRecord]) -> list[CleanedRecord]:
    groups: dict[date | None, list[CleanedRecord]] = {}
    for record in records:
        groups.setdefault(record.record_date, []).append(record)
    dated = sorted(key for key in groups if key is not None)
    ordered = [r for key in dated for r in groups[key]]
    ordered.extend(groups.get(None, []))
    return ordered
