"""Bounds validation for single records and reporting periods.

Per numeric field:
- within bounds: unchanged
- below minimum or missing, with a positive companion field: estimated
- below minimum or missing, without a companion: violation
- above maximum: capped (non-strict) or violation + rejection (strict)

Monetary and distance maxima are per event, so a record that reports ``n``
events is checked against ``n * max``. ``event_count`` itself is bounded
directly.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date

from gigledger.adaptation.rules import AdaptiveRuleSet
from gigledger.config.settings import ValidationPolicy
from gigledger.pipeline.records import (
    CleanedRecord,
    FindingKind,
    RawRecord,
    ValidationFinding,
    Validity,
)

logger = logging.getLogger(__name__)

PER_EVENT_FIELDS = ("earnings", "distance", "tip_amount")


class BoundsValidator:
    """Validates records against an explicit AdaptiveRuleSet."""

    def __init__(self, policy: ValidationPolicy | None = None) -> None:
        self._policy = policy or ValidationPolicy()

    def estimate_earnings(self, distance: float) -> float:
        return round(
            max(
                self._policy.estimation_floor,
                distance * self._policy.estimation_rate_per_distance,
            ),
            2,
        )

    def validate(self, record: RawRecord, rules: AdaptiveRuleSet) -> CleanedRecord:
        findings: list[ValidationFinding] = []
        values: dict[str, float | int | None] = {
            "earnings": record.earnings,
            "distance": record.distance,
            "event_count": record.event_count,
            "tip_amount": record.tip_amount,
        }
        rejected = False

        # Earnings: estimated from distance when missing or below minimum.
        earnings_bounds = rules.bounds_for("earnings")
        if earnings_bounds is not None:
            earnings = record.earnings
            if earnings is None or earnings < earnings_bounds.min:
                if record.distance is not None and record.distance > 0:
                    estimated = self.estimate_earnings(record.distance)
                    values["earnings"] = estimated
                    findings.append(
                        ValidationFinding(
                            field="earnings",
                            kind=FindingKind.ESTIMATED,
                            message=(
                                "earnings missing; estimated from distance"
                                if earnings is None
                                else f"earnings {earnings} below minimum "
                                f"{earnings_bounds.min}; estimated from distance"
                            ),
                            original_value=earnings,
                            adjusted_value=estimated,
                        )
                    )
                else:
                    findings.append(
                        ValidationFinding(
                            field="earnings",
                            kind=FindingKind.VIOLATION,
                            message=(
                                "earnings missing and no distance to estimate from"
                                if earnings is None
                                else f"earnings {earnings} below minimum {earnings_bounds.min}"
                            ),
                            original_value=earnings,
                        )
                    )

        # Event count: a record with earnings represents at least one event.
        count_bounds = rules.bounds_for("event_count")
        if count_bounds is not None:
            count = record.event_count
            if count is None or count < count_bounds.min:
                if values["earnings"] is not None and values["earnings"] > 0:
                    values["event_count"] = 1
                    findings.append(
                        ValidationFinding(
                            field="event_count",
                            kind=FindingKind.ESTIMATED,
                            message="event_count missing; assumed a single event",
                            original_value=count,
                            adjusted_value=1,
                        )
                    )
                elif count is not None:
                    findings.append(
                        ValidationFinding(
                            field="event_count",
                            kind=FindingKind.VIOLATION,
                            message=f"event_count {count} below minimum {count_bounds.min}",
                            original_value=count,
                        )
                    )
            elif count > count_bounds.max:
                finding, capped = self._over_max("event_count", count, count_bounds.max, rules)
                findings.append(finding)
                if capped is None:
                    rejected = True
                else:
                    values["event_count"] = int(capped)

        events = max(int(values["event_count"] or 0), 1)

        for field in PER_EVENT_FIELDS:
            bounds = rules.bounds_for(field)
            value = values[field]
            if bounds is None or value is None:
                continue
            if field != "earnings" and value < bounds.min:
                findings.append(
                    ValidationFinding(
                        field=field,
                        kind=FindingKind.VIOLATION,
                        message=f"{field} {value} below minimum {bounds.min}",
                        original_value=value,
                    )
                )
                continue
            limit = round(bounds.max * events, 2)
            if value > limit:
                finding, capped = self._over_max(field, value, limit, rules)
                findings.append(finding)
                if capped is None:
                    rejected = True
                else:
                    values[field] = capped

        findings.extend(self._cross_field(record))

        if rules.strict and any(f.kind == FindingKind.VIOLATION for f in findings):
            rejected = True

        if rejected and rules.strict:
            validity = Validity.REJECTED
        elif findings:
            validity = Validity.ADJUSTED
        else:
            validity = Validity.VALID

        return CleanedRecord(
            raw=record,
            earnings=values["earnings"],
            distance=values["distance"],
            event_count=values["event_count"],
            tip_amount=values["tip_amount"],
            findings=findings,
            validity=validity,
        )

    def validate_batch(
        self, records: Iterable[RawRecord], rules: AdaptiveRuleSet
    ) -> list[CleanedRecord]:
        cleaned = [self.validate(record, rules) for record in records]
        logger.debug(
            "Validated %d records for %s (rules v%d)",
            len(cleaned),
            rules.subject_id,
            rules.version,
        )
        return cleaned

    @staticmethod
    def _over_max(
        field: str, value: float, limit: float, rules: AdaptiveRuleSet
    ) -> tuple[ValidationFinding, float | None]:
        """Build the finding for a value above its limit.

        Returns the capped value, or None when strict mode rejects instead.
        """
        if rules.strict:
            return (
                ValidationFinding(
                    field=field,
                    kind=FindingKind.VIOLATION,
                    message=f"{field} {value} exceeds maximum {limit}",
                    original_value=value,
                ),
                None,
            )
        return (
            ValidationFinding(
                field=field,
                kind=FindingKind.CAPPED,
                message=f"{field} {value} capped to maximum {limit}",
                original_value=value,
                adjusted_value=limit,
            ),
            limit,
        )

    @staticmethod
    def _cross_field(record: RawRecord) -> list[ValidationFinding]:
        findings = []
        if record.earnings is not None and record.earnings > 0 and not record.distance:
            findings.append(
                ValidationFinding(
                    field="distance",
                    kind=FindingKind.VIOLATION,
                    message="earnings reported without distance",
                    original_value=record.distance,
                )
            )
        if record.distance is not None and record.distance > 0 and record.earnings == 0:
            findings.append(
                ValidationFinding(
                    field="earnings",
                    kind=FindingKind.VIOLATION,
                    message="distance reported with zero earnings",
                    original_value=record.earnings,
                )
            )
        return findings

    def check_period_caps(
        self, records: Iterable[CleanedRecord], rules: AdaptiveRuleSet
    ) -> list[ValidationFinding]:
        """Flag days and hours whose totals exceed the period caps.

        Findings only; no record is removed or changed.
        """
        caps = rules.period_caps
        daily: dict[date, list[float]] = defaultdict(lambda: [0.0, 0.0])
        hourly: dict[tuple[date, int], list[float]] = defaultdict(lambda: [0.0, 0.0])

        for record in records:
            if record.validity == Validity.REJECTED or record.record_date is None:
                continue
            events = record.event_count or 0
            earnings = record.earnings or 0.0
            day = daily[record.record_date]
            day[0] += events
            day[1] += earnings
            if record.record_time is not None:
                hour = hourly[(record.record_date, record.record_time.hour)]
                hour[0] += events
                hour[1] += earnings

        findings: list[ValidationFinding] = []
        for day_key in sorted(daily):
            events, earnings = daily[day_key]
            findings.extend(
                self._cap_findings(
                    f"on {day_key.isoformat()}",
                    events,
                    earnings,
                    caps.max_events_per_day,
                    caps.max_earnings_per_day,
                    "day",
                )
            )
        for day_key, hour_key in sorted(hourly):
            events, earnings = hourly[(day_key, hour_key)]
            findings.extend(
                self._cap_findings(
                    f"on {day_key.isoformat()} at {hour_key:02d}:00",
                    events,
                    earnings,
                    caps.max_events_per_hour,
                    caps.max_earnings_per_hour,
                    "hour",
                )
            )
        return findings

    @staticmethod
    def _cap_findings(
        where: str,
        events: float,
        earnings: float,
        max_events: float,
        max_earnings: float,
        unit: str,
    ) -> list[ValidationFinding]:
        findings = []
        if events > max_events:
            findings.append(
                ValidationFinding(
                    field=f"events_per_{unit}",
                    kind=FindingKind.VIOLATION,
                    message=f"{events:g} events {where} exceeds cap {max_events:g}",
                    original_value=events,
                )
            )
        if earnings > max_earnings:
            findings.append(
                ValidationFinding(
                    field=f"earnings_per_{unit}",
                    kind=FindingKind.VIOLATION,
                    message=f"{earnings:.2f} earnings {where} exceeds cap {max_earnings:.2f}",
                    original_value=round(earnings, 2),
                )
            )
        return findings
