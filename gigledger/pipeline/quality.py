"""Data-quality report over a validated batch."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, Field

from gigledger.pipeline.records import CleanedRecord, FindingKind, Validity


class QualityReport(BaseModel):
    """Percentages in [0, 100]."""

    raw_count: int
    cleaned_count: int
    estimated_count: int
    capped_count: int
    rejected_count: int
    completeness: float
    consistency: float
    accuracy: float
    overall: float
    recommendations: list[str] = Field(default_factory=list)


def quality_report(raw_count: int, cleaned: Sequence[CleanedRecord]) -> QualityReport:
    n = len(cleaned)
    estimated = sum(1 for r in cleaned if r.has(FindingKind.ESTIMATED))
    capped = sum(1 for r in cleaned if r.has(FindingKind.CAPPED))
    rejected = sum(1 for r in cleaned if r.validity == Validity.REJECTED)
    valid = sum(1 for r in cleaned if r.validity == Validity.VALID)

    if n == 0:
        return QualityReport(
            raw_count=raw_count,
            cleaned_count=0,
            estimated_count=0,
            capped_count=0,
            rejected_count=0,
            completeness=0.0,
            consistency=0.0,
            accuracy=0.0,
            overall=0.0,
            recommendations=["No records were extracted; check artifact quality."],
        )

    completeness = (n - estimated) / n * 100
    consistency = valid / n * 100
    accuracy = (n - capped) / n * 100
    overall = (completeness + consistency + accuracy) / 3

    recommendations = []
    if completeness < 90:
        recommendations.append("Many records needed estimated values; upload clearer artifacts.")
    if consistency < 85:
        recommendations.append("Many records carry validation findings; review the findings trail.")
    if accuracy < 95:
        recommendations.append("Several values were capped; check for extraction misreads.")
    if estimated > n * 0.1:
        recommendations.append(
            "More than 10% of records were estimated; missing fields reduce accuracy."
        )

    return QualityReport(
        raw_count=raw_count,
        cleaned_count=n,
        estimated_count=estimated,
        capped_count=capped,
        rejected_count=rejected,
        completeness=round(completeness, 1),
        consistency=round(consistency, 1),
        accuracy=round(accuracy, 1),
        overall=round(overall, 1),
        recommendations=recommendations,
    )
