"""End-to-end tests for the pipeline orchestrator."""

import asyncio
import random
from datetime import date, datetime, timedelta, timezone

import pytest

from gigledger.config.settings import EngineConfig, InsightPolicy, StorageConfig
from gigledger.fingerprint.hashing import Artifact
from gigledger.insights.cache import InsightCache, InsightSource
from gigledger.insights.generator import GenerationResult, InsightRequest
from gigledger.insights.usage import UsageLedger, UsageRecord
from gigledger.orchestrator.engine import PipelineOrchestrator, Upload
from gigledger.orchestrator.phases import Phase
from gigledger.signals.emitter import SignalEmitter
from gigledger.signals.types import SignalType
from gigledger.storage.repository import FileRepository, InMemoryRepository
from gigledger.telemetry.errors import ExternalServiceError, FailureKind, PersistenceError

SUBJECT = "driver-1"
START = date(2026, 3, 2)
T0 = datetime(2026, 3, 2, 20, 0, tzinfo=timezone.utc)


def content(seed: int, size: int = 4000) -> bytes:
    rng = random.Random(seed)
    return bytes(rng.randrange(256) for _ in range(size))


def upload(seed: int, at: datetime = T0) -> Upload:
    return Upload(
        artifact=Artifact(
            artifact_id=f"a-{seed}", subject_id=SUBJECT, filename=f"shot-{seed}.png", uploaded_at=at
        ),
        content=content(seed),
    )


def trip(earnings: float, day: int = 0, distance: float = 5.0, trips: int = 1) -> dict:
    return {
        "driver_earnings": earnings,
        "trip_distance": distance,
        "total_trips": trips,
        "trip_date": (START + timedelta(days=day)).isoformat(),
    }


class FakeExtractor:
    def __init__(self) -> None:
        self.payloads: dict[bytes, object] = {}
        self.calls = 0

    def add(self, seed: int, payload: object) -> Upload:
        item = upload(seed)
        self.payloads[item.content] = payload
        return item

    async def extract(self, content: bytes, hint: str | None = None) -> dict:
        self.calls += 1
        payload = self.payloads[content]
        if isinstance(payload, Exception):
            raise payload
        return payload


class FakeGenerator:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def generate(self, request: InsightRequest) -> GenerationResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return GenerationResult(
            narrative={"summary": f"{request.totals.total_events} events"},
            usage=UsageRecord(model="fake", input_units=10, output_units=5),
        )


class FlakyHistoryRepository(InMemoryRepository):
    def records_for(self, subject_id, start=None, end=None):
        raise PersistenceError("history store offline")


class FlakyRulesRepository(InMemoryRepository):
    def get_rule_set(self, subject_id):
        raise PersistenceError("rule store offline")


@pytest.fixture
def config(monkeypatch):
    monkeypatch.delenv("GIGLEDGER_STRICT", raising=False)
    return EngineConfig()


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def extractor():
    return FakeExtractor()


def make_cache(repo, generator):
    return InsightCache(repo, generator, UsageLedger(), InsightPolicy(), clock=lambda: T0)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_complete_run(self, config, repo, extractor, tmp_path):
        uploads = [
            extractor.add(1, {"records": [trip(20.0), trip(24.0, day=1)]}),
            extractor.add(2, trip(30.0, day=2, distance=10.0)),
        ]
        orchestrator = PipelineOrchestrator(config, repo, extractor, signals_dir=tmp_path / "runs")

        result = await orchestrator.run(SUBJECT, uploads)

        assert result.status == "complete"
        assert result.phase == Phase.COMPLETE
        assert len(result.records) == 3
        assert result.totals.total_earnings == 74.0
        assert result.totals.active_periods == 3
        assert result.quality.overall == 100.0
        assert result.adaptation_skipped
        assert result.benchmark.is_default
        assert [f.kind for f in result.failures] == [FailureKind.ADAPTATION_SKIPPED]
        assert len(repo.records_for(SUBJECT)) == 3

        ledger = SignalEmitter.load_ledger(tmp_path / "runs" / result.run_id / "signals.jsonl")
        stages = [s.payload["to_stage"] for s in ledger if s.signal_type == SignalType.STAGE_TRANSITION]
        assert stages == [
            "FINGERPRINT", "EXTRACT", "VALIDATE", "FILTER", "DEDUPLICATE", "ADAPT", "AGGREGATE", "COMPLETE",
        ]
        assert ledger[-1].signal_type == SignalType.RUN_COMPLETE
        assert result.signals_count == len(ledger)

    @pytest.mark.asyncio
    async def test_twelve_record_scenario(self, config, repo, extractor):
        items = [trip(float(v), day=i % 3) for i, v in enumerate(range(20, 30))]
        items += [trip(500.0), trip(0.01)]
        uploads = [extractor.add(1, {"records": items})]
        orchestrator = PipelineOrchestrator(config, repo, extractor)

        result = await orchestrator.run(SUBJECT, uploads)

        assert result.outliers_removed == 2
        assert len(result.records) == 10
        assert result.totals.total_earnings == sum(range(20, 30))
        assert result.adaptation_skipped
        assert result.rule_set.version == 0

    @pytest.mark.asyncio
    async def test_rules_adapt_once_history_is_large_enough(self, config, repo, extractor):
        items = [trip(130.0 + i, day=i % 5, trips=2) for i in range(20)]
        orchestrator = PipelineOrchestrator(config, repo, extractor)

        result = await orchestrator.run(SUBJECT, [extractor.add(1, {"records": items})])

        assert not result.adaptation_skipped
        assert result.rule_set.version == 1
        assert result.rule_set.bounds["earnings"].max == 89.4
        assert repo.get_rule_set(SUBJECT).version == 1
        assert not result.benchmark.is_default

    @pytest.mark.asyncio
    async def test_concurrent_runs_serialize_rule_updates(self, config, repo, extractor):
        first = extractor.add(1, {"records": [trip(40.0 + i, day=i % 4) for i in range(20)]})
        second = extractor.add(2, {"records": [trip(50.0 + i, day=4 + i % 4) for i in range(20)]})
        orchestrator = PipelineOrchestrator(config, repo, extractor)

        results = await asyncio.gather(
            orchestrator.run(SUBJECT, [first]), orchestrator.run(SUBJECT, [second])
        )

        assert sorted(r.rule_set.version for r in results) == [1, 2]
        assert repo.get_rule_set(SUBJECT).version == 2


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_reupload_is_blocked_before_extraction(self, config, repo, extractor):
        item = extractor.add(1, trip(20.0))
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        await orchestrator.run(SUBJECT, [item])

        again = Upload(
            artifact=item.artifact.model_copy(
                update={"artifact_id": "a-1-again", "uploaded_at": T0 + timedelta(hours=1)}
            ),
            content=item.content,
        )
        result = await orchestrator.run(SUBJECT, [again])

        assert extractor.calls == 1
        assert result.status == "complete"
        assert result.blocked_artifacts[0].check.kind.value == "EXACT"
        assert FailureKind.DUPLICATE_DETECTED in {f.kind for f in result.failures}
        assert orchestrator.fingerprinter.duplicate_stats().duplicates_blocked == 1

    @pytest.mark.asyncio
    async def test_repeat_within_one_batch_is_blocked(self, config, repo, extractor):
        item = extractor.add(1, trip(20.0))
        twin = Upload(
            artifact=item.artifact.model_copy(update={"artifact_id": "twin"}), content=item.content
        )
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        result = await orchestrator.run(SUBJECT, [item, twin])
        assert [b.artifact_id for b in result.blocked_artifacts] == ["twin"]
        assert len(result.records) == 1

    @pytest.mark.asyncio
    async def test_same_logical_record_from_two_artifacts_is_deduplicated(
        self, config, repo, extractor
    ):
        uploads = [extractor.add(1, trip(20.0)), extractor.add(2, trip(20.0))]
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        result = await orchestrator.run(SUBJECT, uploads)
        assert result.duplicates_dropped == 1
        assert len(result.records) == 1

    @pytest.mark.asyncio
    async def test_same_logical_record_in_a_later_run_is_counted_once(
        self, config, repo, extractor
    ):
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        first = await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])
        second = await orchestrator.run(SUBJECT, [extractor.add(2, trip(20.0))])

        assert first.totals.total_earnings == 20.0
        assert second.blocked_artifacts == []
        assert second.records == []
        assert second.duplicates_dropped == 1
        assert second.totals.total_earnings == 20.0
        assert second.totals.record_count == 1
        assert len(repo.records_for(SUBJECT)) == 1

    @pytest.mark.asyncio
    async def test_aggregation_ignores_duplicates_already_in_history(
        self, config, repo, extractor
    ):
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])
        repo.add_records(SUBJECT, list(repo.records_for(SUBJECT)))

        result = await orchestrator.run(SUBJECT, [])

        assert len(repo.records_for(SUBJECT)) == 2
        assert result.totals.total_earnings == 20.0


class TestDegradation:
    @pytest.mark.asyncio
    async def test_failed_extraction_does_not_abort_batch(self, config, repo, extractor):
        uploads = [
            extractor.add(1, RuntimeError("model unavailable")),
            extractor.add(2, trip(25.0)),
        ]
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        result = await orchestrator.run(SUBJECT, uploads)

        assert result.status == "partial"
        assert len(result.records) == 1
        failure = next(f for f in result.failures if f.stage == "EXTRACT")
        assert failure.kind == FailureKind.DATA_QUALITY_ISSUE
        assert "a-1" in failure.detail

    @pytest.mark.asyncio
    async def test_history_outage_yields_partial_run(self, config, extractor):
        repo = FlakyHistoryRepository()
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(25.0))])

        assert result.status == "partial"
        assert result.totals.total_earnings == 25.0
        stages = {(f.stage, f.kind) for f in result.failures}
        assert ("AGGREGATE", FailureKind.PERSISTENCE_FAILURE) in stages
        assert ("ADAPT", FailureKind.PERSISTENCE_FAILURE) in stages

    @pytest.mark.asyncio
    async def test_rule_store_outage_falls_back_to_static_rules(self, config, extractor):
        orchestrator = PipelineOrchestrator(config, FlakyRulesRepository(), extractor)
        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(25.0))])

        assert result.status == "partial"
        assert result.phase == Phase.COMPLETE
        assert result.totals.total_earnings == 25.0
        assert result.rule_set.version == 0
        stages = {(f.stage, f.kind) for f in result.failures}
        assert ("VALIDATE", FailureKind.PERSISTENCE_FAILURE) in stages

    @pytest.mark.asyncio
    async def test_unhandled_error_fails_run(self, config, repo, extractor, monkeypatch):
        orchestrator = PipelineOrchestrator(config, repo, extractor)

        def explode(records, rules):
            raise RuntimeError("validator crashed")

        monkeypatch.setattr(orchestrator._validator, "validate_batch", explode)
        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])

        assert result.status == "failed"
        assert result.phase == Phase.FAIL


class TestInsights:
    @pytest.mark.asyncio
    async def test_second_run_with_unchanged_totals_hits_cache(self, config, repo, extractor):
        generator = FakeGenerator()
        orchestrator = PipelineOrchestrator(
            config, repo, extractor, insight_cache=make_cache(repo, generator)
        )
        item = extractor.add(1, {"records": [trip(20.0), trip(22.0, day=1)]})

        first = await orchestrator.run(SUBJECT, [item])
        second = await orchestrator.run(SUBJECT, [])

        assert first.insight.source == InsightSource.GENERATED
        assert second.insight.source == InsightSource.CACHE
        assert generator.calls == 1
        assert second.usage.session_requests == 1
        assert orchestrator.usage_summary().session_units == 15
        assert second.status == "complete"

    @pytest.mark.asyncio
    async def test_generator_failure_returns_fallback(self, config, repo, extractor):
        generator = FakeGenerator(error=ExternalServiceError("429", rate_limited=True))
        orchestrator = PipelineOrchestrator(
            config, repo, extractor, insight_cache=make_cache(repo, generator)
        )
        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])

        assert result.insight.source == InsightSource.FALLBACK
        assert result.insight.result["fallback_mode"] is True
        assert result.usage.session_requests == 0
        assert result.status == "partial"
        assert result.phase == Phase.COMPLETE

    @pytest.mark.asyncio
    async def test_window_limits_aggregation(self, config, repo, extractor):
        orchestrator = PipelineOrchestrator(config, repo, extractor)
        item = extractor.add(1, {"records": [trip(20.0), trip(40.0, day=10)]})
        result = await orchestrator.run(SUBJECT, [item], start=START, end=START + timedelta(days=6))
        assert result.window == "2026-03-02..2026-03-08"
        assert result.totals.total_earnings == 20.0


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_disk_backed_run_persists_everything(self, extractor, tmp_path, monkeypatch):
        monkeypatch.delenv("GIGLEDGER_STRICT", raising=False)
        config = EngineConfig(storage=StorageConfig(data_dir=tmp_path))
        generator = FakeGenerator()
        orchestrator = PipelineOrchestrator.from_config(config, extractor, generator)

        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])

        assert result.insight.source == InsightSource.GENERATED
        assert (tmp_path / "runs" / result.run_id / "signals.jsonl").exists()
        assert len(UsageLedger.load(tmp_path / "usage.jsonl")) == 1
        assert result.usage.session_requests == 1
        assert result.usage.total_units == 15
        reopened = FileRepository(tmp_path)
        assert len(reopened.records_for(SUBJECT)) == 1
        assert reopened.count_artifacts() == 1

    @pytest.mark.asyncio
    async def test_without_generator_skips_insight(self, extractor, tmp_path):
        config = EngineConfig(storage=StorageConfig(data_dir=tmp_path))
        orchestrator = PipelineOrchestrator.from_config(config, extractor)
        result = await orchestrator.run(SUBJECT, [extractor.add(1, trip(20.0))])
        assert result.insight is None
        assert result.phase == Phase.COMPLETE
        assert result.usage is None
        assert orchestrator.usage_summary() is None
