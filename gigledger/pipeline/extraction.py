"""Extraction boundary: the extractor protocol and the one normalizing adapter.

Extractors (vision/OCR models) return loosely shaped dictionaries whose key
names vary between models and prompts. ``normalize_extraction`` maps that
output onto ``RawRecord`` once, at the edge, so nothing downstream ever reads
an untyped mapping.
"""

from __future__ import annotations

import logging
import re
from math import isfinite
from datetime import date, datetime, time
from typing import Any, Protocol

from pydantic import BaseModel, Field

from gigledger.pipeline.records import RawRecord

logger = logging.getLogger(__name__)


class Extractor(Protocol):
    """External model that reads an artifact and returns extracted fields."""

    async def extract(self, content: bytes, hint: str | None = None) -> dict[str, Any]: ...


class FieldValue(BaseModel):
    """A single extracted field with confidence and provenance."""

    value: Any
    confidence: float = Field(ge=0.0, le=1.0, default=1.0)
    source_key: str | None = None


# Canonical field -> accepted source keys, in priority order.
KEY_ALIASES: dict[str, tuple[str, ...]] = {
    "earnings": (
        "earnings",
        "driver_earnings",
        "total_earnings",
        "total_amount",
        "fare_amount",
        "amount",
    ),
    "distance": ("distance", "trip_distance", "total_distance", "miles"),
    "event_count": ("event_count", "total_trips", "trip_count", "trips"),
    "tip_amount": ("tip_amount", "tips", "tip"),
    "record_date": ("record_date", "trip_date", "date"),
    "record_time": ("record_time", "trip_time", "pickup_time", "time"),
}

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_TIME_FORMATS = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y")


def _to_field_value(raw: Any, key: str) -> FieldValue:
    if isinstance(raw, dict) and "value" in raw:
        confidence = raw.get("confidence", 1.0)
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = 0.0
        confidence = min(max(confidence, 0.0), 1.0) if isfinite(confidence) else 0.0
        return FieldValue(value=raw["value"], confidence=confidence, source_key=key)
    return FieldValue(value=raw, confidence=1.0, source_key=key)


def _parse_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _NUMBER_RE.search(str(value).replace(",", ""))
        if not match:
            return None
        number = float(match.group())
    return number if isfinite(number) else None


def _parse_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _parse_time(value: Any) -> time | None:
    if value is None:
        return None
    if isinstance(value, time):
        return value
    text = str(value).strip().upper()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    return None


_PARSERS = {
    "earnings": _parse_number,
    "distance": _parse_number,
    "tip_amount": _parse_number,
    "event_count": _parse_number,
    "record_date": _parse_date,
    "record_time": _parse_time,
}


def _pick(item: dict[str, Any], field: str) -> FieldValue | None:
    for key in KEY_ALIASES[field]:
        if key in item and item[key] is not None:
            return _to_field_value(item[key], key)
    return None


def normalize_item(
    item: dict[str, Any],
    *,
    subject_id: str,
    source_artifact_id: str | None,
    min_confidence: float,
) -> RawRecord:
    """Normalize one extracted mapping into a RawRecord.

    Fields that fail to parse, are not finite, or fall below ``min_confidence``
    are treated as absent. A record-level ``confidence`` below the threshold
    makes every field absent. The record confidence is the lowest confidence
    among the fields that were kept.
    """
    overall = item.get("confidence")
    if isinstance(overall, (int, float)) and not isinstance(overall, bool) and isfinite(overall):
        overall = min(max(float(overall), 0.0), 1.0)
    else:
        overall = None
    if overall is not None and overall < min_confidence:
        logger.debug("Dropping low-confidence record (%.2f < %.2f)", overall, min_confidence)
        return RawRecord(
            subject_id=subject_id, source_artifact_id=source_artifact_id, confidence=overall
        )

    values: dict[str, Any] = {}
    kept_confidences: list[float] = []

    for field, parser in _PARSERS.items():
        picked = _pick(item, field)
        if picked is None:
            continue
        if picked.confidence < min_confidence:
            logger.debug(
                "Dropping low-confidence field %s (%.2f < %.2f)",
                field,
                picked.confidence,
                min_confidence,
            )
            continue
        parsed = parser(picked.value)
        if parsed is None:
            continue
        if field == "event_count":
            parsed = int(round(parsed))
        values[field] = parsed
        kept_confidences.append(picked.confidence)

    if overall is not None:
        kept_confidences.append(overall)

    return RawRecord(
        subject_id=subject_id,
        source_artifact_id=source_artifact_id,
        confidence=min(kept_confidences) if kept_confidences else 0.0,
        **values,
    )


def normalize_extraction(
    payload: dict[str, Any],
    *,
    subject_id: str,
    source_artifact_id: str | None = None,
    min_confidence: float = 0.5,
) -> list[RawRecord]:
    """Map one extractor payload onto RawRecords.

    Accepts either a single record mapping or ``{"records": [...]}``.
    Items that are not mappings are skipped.
    """
    items = payload.get("records") if isinstance(payload.get("records"), list) else [payload]
    records: list[RawRecord] = []
    for item in items:
        if not isinstance(item, dict):
            logger.debug("Skipping non-mapping extraction item: %r", type(item).__name__)
            continue
        records.append(
            normalize_item(
                item,
                subject_id=subject_id,
                source_artifact_id=source_artifact_id,
                min_confidence=min_confidence,
            )
        )
    return records
