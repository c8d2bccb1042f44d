"""Logical-record deduplication within a batch."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date

from gigledger.pipeline.records import CleanedRecord

logger = logging.getLogger(__name__)

DedupKey = tuple[date, float | None, int | None]


def dedup_key(record: CleanedRecord) -> DedupKey | None:
    """Identity of a logical event, or None when the record is undated."""
    if record.record_date is None:
        return None
    earnings = round(record.earnings, 2) if record.earnings is not None else None
    return (record.record_date, earnings, record.event_count)


class Deduplicator:
    """Keeps the first occurrence of each (date, earnings, event_count) key.

    Undated records cannot be matched and are always kept. Applying the
    deduplicator to its own output changes nothing.
    """

    def deduplicate(self, records: Sequence[CleanedRecord]) -> tuple[list[CleanedRecord], int]:
        seen: set[DedupKey] = set()
        unique: list[CleanedRecord] = []
        dropped = 0
        for record in records:
            key = dedup_key(record)
            if key is None:
                unique.append(record)
                continue
            if key in seen:
                dropped += 1
                continue
            seen.add(key)
            unique.append(record)
        if dropped:
            logger.info("Dropped %d duplicate records of %d", dropped, len(records))
        return unique, dropped
