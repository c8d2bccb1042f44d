"""Tests for the data-quality report."""

from gigledger.adaptation.rules import static_rule_set
from gigledger.pipeline.quality import quality_report
from gigledger.pipeline.records import RawRecord
from gigledger.pipeline.validation import BoundsValidator


def _validate(**kwargs):
    return BoundsValidator().validate(
        RawRecord(subject_id="driver-1", **kwargs), static_rule_set("driver-1")
    )


class TestQualityReport:
    def test_clean_batch_scores_full_marks(self):
        batch = [_validate(earnings=20.0, distance=8.0, event_count=1) for _ in range(5)]
        report = quality_report(5, batch)
        assert report.completeness == 100.0
        assert report.consistency == 100.0
        assert report.accuracy == 100.0
        assert report.overall == 100.0
        assert report.recommendations == []

    def test_estimated_and_capped_records_lower_scores(self):
        batch = [
            _validate(earnings=20.0, distance=8.0, event_count=1),
            _validate(earnings=20.0, distance=8.0, event_count=1),
            _validate(distance=8.0, event_count=1),
            _validate(earnings=300.0, distance=8.0, event_count=1),
        ]
        report = quality_report(4, batch)
        assert report.estimated_count == 1
        assert report.capped_count == 1
        assert report.completeness == 75.0
        assert report.consistency == 50.0
        assert report.accuracy == 75.0
        assert report.overall == 66.7
        assert len(report.recommendations) == 4

    def test_empty_batch(self):
        report = quality_report(3, [])
        assert report.overall == 0.0
        assert report.recommendations
