"""Usage and cost ledger for insight generation."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, Field

from gigledger.config.settings import ModelPricing

logger = logging.getLogger(__name__)


class UsageRecord(BaseModel):
    """Units consumed and cost of one generation call."""

    model: str
    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0
    subject_id: str | None = None
    request_type: str = "insight"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}

    @property
    def total_units(self) -> int:
        return self.input_units + self.output_units


def estimate_cost(
    model: str, input_units: int, output_units: int, pricing: dict[str, ModelPricing]
) -> float:
    """Cost from the per-1K pricing table. Unknown models cost 0."""
    price = pricing.get(model)
    if price is None:
        return 0.0
    return round(
        input_units / 1000 * price.input_per_1k + output_units / 1000 * price.output_per_1k, 6
    )


class DailyUsage(BaseModel):
    day: str
    units: int
    cost: float
    requests: int


class UsageSummary(BaseModel):
    total_units: int
    total_cost: float
    request_count: int
    requests_by_model: dict[str, int]
    average_units_per_request: float
    daily: list[DailyUsage]
    session_units: int
    session_cost: float
    session_requests: int


class UsageLedger:
    """Append-only usage ledger, optionally persisted as JSONL.

    Appends are serialized so concurrent generations never interleave lines.
    """

    def __init__(self, ledger_path: Path | None = None) -> None:
        self._ledger_path = ledger_path
        self._lock = asyncio.Lock()
        self._records: list[UsageRecord] = []

        if self._ledger_path:
            self._ledger_path.parent.mkdir(parents=True, exist_ok=True)
            self._records = self.load(self._ledger_path)
        # Records appended by this process form the current session.
        self._session_offset = len(self._records)

    @property
    def records(self) -> list[UsageRecord]:
        return list(self._records)

    async def append(self, record: UsageRecord) -> None:
        async with self._lock:
            if self._ledger_path:
                with open(self._ledger_path, "a") as f:
                    f.write(record.model_dump_json() + "\n")
            self._records.append(record)

    def summary(self, now: datetime | None = None, days: int = 30) -> UsageSummary:
        now = now or datetime.now(timezone.utc)
        window = [r for r in self._records if r.created_at >= now - timedelta(days=days)]
        session = self._records[self._session_offset :]

        by_model: dict[str, int] = defaultdict(int)
        daily: dict[str, list[float]] = defaultdict(lambda: [0, 0.0, 0])
        for record in window:
            by_model[record.model] += 1
            bucket = daily[record.created_at.date().isoformat()]
            bucket[0] += record.total_units
            bucket[1] += record.cost
            bucket[2] += 1

        total_units = sum(r.total_units for r in window)
        return UsageSummary(
            total_units=total_units,
            total_cost=round(sum(r.cost for r in window), 6),
            request_count=len(window),
            requests_by_model=dict(by_model),
            average_units_per_request=round(total_units / len(window), 2) if window else 0.0,
            daily=[
                DailyUsage(day=day, units=int(v[0]), cost=round(v[1], 6), requests=int(v[2]))
                for day, v in sorted(daily.items())
            ],
            session_units=sum(r.total_units for r in session),
            session_cost=round(sum(r.cost for r in session), 6),
            session_requests=len(session),
        )

    @staticmethod
    def load(ledger_path: Path) -> list[UsageRecord]:
        records = []
        if ledger_path.exists():
            with open(ledger_path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        records.append(UsageRecord.model_validate_json(line))
        return records
