"""Record models shared by every pipeline stage.

RawRecord is what the extraction edge produces and is never mutated.
CleanedRecord carries the sanitized values together with the trail of
findings that explain every difference from the raw values.
"""

from __future__ import annotations

from datetime import date, time
from enum import Enum

from pydantic import BaseModel, Field


class RawRecord(BaseModel):
    """One extracted earnings record, exactly as the extractor reported it."""

    subject_id: str
    source_artifact_id: str | None = None
    earnings: float | None = None
    distance: float | None = None
    event_count: int | None = None
    tip_amount: float | None = None
    record_date: date | None = None
    record_time: time | None = None
    confidence: float = Field(ge=0.0, le=1.0, default=1.0)

    model_config = {"frozen": True, "allow_inf_nan": False}


class FindingKind(str, Enum):
    VIOLATION = "VIOLATION"
    ESTIMATED = "ESTIMATED"
    CAPPED = "CAPPED"


class ValidationFinding(BaseModel):
    """A single validation observation about one field of a record or period."""

    field: str
    kind: FindingKind
    message: str
    original_value: float | None = None
    adjusted_value: float | None = None

    model_config = {"frozen": True}


class Validity(str, Enum):
    VALID = "VALID"
    ADJUSTED = "ADJUSTED"
    REJECTED = "REJECTED"


class CleanedRecord(BaseModel):
    """A validated record: sanitized values plus the findings trail."""

    raw: RawRecord
    earnings: float | None = None
    distance: float | None = None
    event_count: int | None = None
    tip_amount: float | None = None
    findings: list[ValidationFinding] = Field(default_factory=list)
    validity: Validity = Validity.VALID

    model_config = {"frozen": True, "allow_inf_nan": False}

    @classmethod
    def from_raw(cls, raw: RawRecord) -> CleanedRecord:
        """Wrap a raw record as-is, with no findings."""
        return cls(
            raw=raw,
            earnings=raw.earnings,
            distance=raw.distance,
            event_count=raw.event_count,
            tip_amount=raw.tip_amount,
        )

    @property
    def subject_id(self) -> str:
        return self.raw.subject_id

    @property
    def record_date(self) -> date | None:
        return self.raw.record_date

    @property
    def record_time(self) -> time | None:
        return self.raw.record_time

    def has(self, kind: FindingKind) -> bool:
        return any(f.kind == kind for f in self.findings)
