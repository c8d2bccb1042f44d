"""The pipeline orchestrator: execution engine and lifecycle controller.

The orchestrator is a finite state machine. It holds no validation or
scoring logic of its own; it sequences the stages, enforces the phase
transition guards, emits Signals at every boundary, and turns stage
failures into explicit StageResults so one bad artifact or collaborator
never aborts a batch.

Responsibilities:
- Fingerprint artifacts and block duplicates before extraction
- Fan extraction out per artifact and fan results back in
- Validate, filter, and deduplicate the batch
- Recompute the subject's rule set as one locked read-modify-write
- Aggregate history for the requested window and fetch or generate insights
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from gigledger.adaptation.adapter import RuleAdapter
from gigledger.adaptation.rules import (
    AdaptationResult,
    AdaptiveRuleSet,
    Benchmark,
    static_rule_set,
)
from gigledger.config.settings import EngineConfig
from gigledger.fingerprint.hashing import Artifact, ContentFingerprinter, DuplicateCheck
from gigledger.insights.cache import InsightCache, InsightOutcome, InsightSource
from gigledger.insights.generator import InsightGenerator, InsightRequest
from gigledger.insights.usage import UsageLedger, UsageSummary
from gigledger.orchestrator.locks import KeyedLocks
from gigledger.orchestrator.outcome import NON_DEGRADING, StageFailure, StageResult
from gigledger.orchestrator.phases import TERMINAL_PHASES, VALID_TRANSITIONS, Phase
from gigledger.pipeline.aggregation import (
    Aggregator,
    PeriodTotals,
    PersonalizedScore,
    Projections,
    personalized_score,
    project,
)
from gigledger.pipeline.dedup import Deduplicator, dedup_key
from gigledger.pipeline.extraction import Extractor, normalize_extraction
from gigledger.pipeline.outliers import OutlierFilter
from gigledger.pipeline.quality import QualityReport, quality_report
from gigledger.pipeline.records import CleanedRecord, RawRecord, ValidationFinding, Validity
from gigledger.pipeline.validation import BoundsValidator
from gigledger.signals.emitter import SignalEmitter
from gigledger.signals.types import SignalType
from gigledger.storage.repository import FileRepository, Repository
from gigledger.telemetry.errors import ErrorCode, FailureKind, emit_structured_error

logger = logging.getLogger(__name__)


class OrchestratorError(Exception):
    """Raised on an invalid phase transition."""


class Upload(BaseModel):
    """An artifact together with its raw content."""

    artifact: Artifact
    content: bytes


class BlockedArtifact(BaseModel):
    artifact_id: str
    check: DuplicateCheck


class PipelineResult(BaseModel):
    """Everything a caller reports back from one run."""

    run_id: str
    subject_id: str
    status: str
    phase: Phase
    window: str
    totals: PeriodTotals = Field(default_factory=PeriodTotals)
    records: list[CleanedRecord] = Field(default_factory=list)
    rejected_count: int = 0
    outliers_removed: int = 0
    duplicates_dropped: int = 0
    blocked_artifacts: list[BlockedArtifact] = Field(default_factory=list)
    period_findings: list[ValidationFinding] = Field(default_factory=list)
    quality: QualityReport | None = None
    rule_set: AdaptiveRuleSet | None = None
    adaptation_skipped: bool = False
    benchmark: Benchmark | None = None
    personalized: PersonalizedScore | None = None
    projections: Projections | None = None
    insight: InsightOutcome | None = None
    usage: UsageSummary | None = None
    failures: list[StageFailure] = Field(default_factory=list)
    duration_s: float = 0.0
    signals_count: int = 0


def window_label(start: date | None, end: date | None) -> str:
    if start is None and end is None:
        return "all"
    return f"{start.isoformat() if start else ''}..{end.isoformat() if end else ''}"


class PipelineOrchestrator:
    """Runs artifact batches through the full pipeline for one subject at a time."""

    def __init__(
        self,
        config: EngineConfig,
        repository: Repository,
        extractor: Extractor,
        insight_cache: InsightCache | None = None,
        signals_dir: Path | None = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._extractor = extractor
        self._insight_cache = insight_cache
        self._signals_dir = signals_dir

        self._fingerprinter = ContentFingerprinter(repository, config.fingerprint)
        self._validator = BoundsValidator(config.validation)
        self._outliers = OutlierFilter(config.outliers)
        self._deduplicator = Deduplicator()
        self._adapter = RuleAdapter(config.adaptation, config.validation)
        self._aggregator = Aggregator(config.aggregation)
        self._subject_locks = KeyedLocks()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        extractor: Extractor,
        generator: InsightGenerator | None = None,
    ) -> PipelineOrchestrator:
        """Build a disk-backed orchestrator rooted at the configured data dir.

        Runs write their signal ledgers under ``runs/`` and generation usage
        goes to ``usage.jsonl``. Without a generator the INSIGHT stage is
        skipped.
        """
        logging.getLogger("gigledger").setLevel(config.log_level.upper())
        data_dir = config.storage.data_dir
        repository = FileRepository(data_dir)
        insight_cache = None
        if generator is not None:
            insight_cache = InsightCache(
                repository, generator, UsageLedger(data_dir / "usage.jsonl"), config.insights
            )
        return cls(
            config,
            repository,
            extractor,
            insight_cache=insight_cache,
            signals_dir=data_dir / "runs",
        )

    @property
    def fingerprinter(self) -> ContentFingerprinter:
        return self._fingerprinter

    def usage_summary(self) -> UsageSummary | None:
        """Cumulative insight generation usage and cost, when insights are enabled."""
        if self._insight_cache is None:
            return None
        return self._insight_cache.usage_summary()

    async def run(
        self,
        subject_id: str,
        uploads: Sequence[Upload],
        start: date | None = None,
        end: date | None = None,
    ) -> PipelineResult:
        """Run one batch of uploads for a subject and aggregate the window."""
        run = RunContext(subject_id, uploads, start, end, self._signals_dir)
        return await self._execute(run)

    # --- Stages ---

    async def fingerprint_stage(
        self, uploads: Sequence[Upload], signals: SignalEmitter
    ) -> StageResult[tuple[list[Upload], list[BlockedArtifact]]]:
        fingerprints = await asyncio.gather(
            *(asyncio.to_thread(self._fingerprinter.fingerprint, u.content) for u in uploads)
        )
        accepted: list[Upload] = []
        blocked: list[BlockedArtifact] = []
        degraded: list[str] = []
        # Checks run in upload order so a batch can block its own repeats.
        for upload, fingerprint in zip(uploads, fingerprints):
            artifact = upload.artifact
            check = self._fingerprinter.is_duplicate(artifact, fingerprint)
            if check.is_duplicate:
                try:
                    self._fingerprinter.record_block(artifact, fingerprint, check)
                except Exception as exc:
                    emit_structured_error(
                        logger,
                        code=ErrorCode.ARTIFACT_REGISTRATION_FAILED,
                        message=str(exc),
                        suppressed=True,
                        run_id=signals.run_id,
                        stage=Phase.FINGERPRINT.value,
                        details={"artifact_id": artifact.artifact_id},
                    )
                blocked.append(BlockedArtifact(artifact_id=artifact.artifact_id, check=check))
                await signals.emit(
                    SignalType.DUPLICATE_BLOCKED,
                    {
                        "artifact_id": artifact.artifact_id,
                        "kind": check.kind.value,
                        "matched_artifact_id": check.matched_artifact_id,
                        "reason": check.reason,
                    },
                )
                continue
            if check.degraded:
                degraded.append(artifact.artifact_id)
            try:
                self._fingerprinter.register(artifact, fingerprint)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.ARTIFACT_REGISTRATION_FAILED,
                    message=str(exc),
                    suppressed=True,
                    run_id=signals.run_id,
                    stage=Phase.FINGERPRINT.value,
                    details={"artifact_id": artifact.artifact_id},
                )
            accepted.append(upload)

        if degraded:
            return StageResult.failed(
                FailureKind.PERSISTENCE_FAILURE,
                (accepted, blocked),
                f"duplicate check unavailable for: {', '.join(degraded)}",
            )
        return StageResult.ok((accepted, blocked))

    async def extract_stage(
        self, subject_id: str, uploads: Sequence[Upload], run_id: str
    ) -> StageResult[list[RawRecord]]:
        payloads = await asyncio.gather(
            *(self._extractor.extract(u.content, u.artifact.filename) for u in uploads),
            return_exceptions=True,
        )
        records: list[RawRecord] = []
        failed: list[str] = []
        for upload, payload in zip(uploads, payloads):
            if isinstance(payload, BaseException):
                if isinstance(payload, asyncio.CancelledError):
                    raise payload
                failed.append(upload.artifact.artifact_id)
                emit_structured_error(
                    logger,
                    code=ErrorCode.EXTRACTION_FAILED,
                    message=str(payload),
                    suppressed=True,
                    run_id=run_id,
                    stage=Phase.EXTRACT.value,
                    details={"artifact_id": upload.artifact.artifact_id},
                )
                continue
            records.extend(
                normalize_extraction(
                    payload,
                    subject_id=subject_id,
                    source_artifact_id=upload.artifact.artifact_id,
                    min_confidence=self._config.validation.min_extraction_confidence,
                )
            )
        if failed:
            return StageResult.failed(
                FailureKind.DATA_QUALITY_ISSUE,
                records,
                f"extraction failed for {len(failed)} artifact(s): {', '.join(failed)}",
            )
        return StageResult.ok(records)

    def load_rules(self, subject_id: str) -> AdaptiveRuleSet:
        stored = self._repository.get_rule_set(subject_id)
        if stored is not None:
            return stored
        return static_rule_set(subject_id, self._config.validation)

    def rules_stage(self, subject_id: str, run_id: str) -> StageResult[AdaptiveRuleSet]:
        try:
            return StageResult.ok(self.load_rules(subject_id))
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.RULES_LOAD_FAILED,
                message=str(exc),
                suppressed=True,
                run_id=run_id,
                stage=Phase.VALIDATE.value,
                details={"subject_id": subject_id},
            )
            return StageResult.failed(
                FailureKind.PERSISTENCE_FAILURE,
                static_rule_set(subject_id, self._config.validation),
                f"rule set unavailable, using static defaults: {exc}",
            )

    async def adapt_stage(
        self, subject_id: str, fallback: AdaptiveRuleSet
    ) -> tuple[StageResult[AdaptationResult], list[CleanedRecord]]:
        """Load, adapt, and save the subject's rule set under the subject lock."""
        async with self._subject_locks.hold(subject_id):
            try:
                rules = self.load_rules(subject_id)
                corpus = self._repository.records_for(subject_id)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.HISTORY_LOAD_FAILED,
                    message=str(exc),
                    suppressed=True,
                    stage=Phase.ADAPT.value,
                    details={"subject_id": subject_id},
                )
                return (
                    StageResult.failed(
                        FailureKind.PERSISTENCE_FAILURE,
                        AdaptationResult(rule_set=fallback, skipped=True, reason=str(exc)),
                        str(exc),
                    ),
                    [],
                )

            usable = [r for r in corpus if r.validity != Validity.REJECTED]
            result = self._adapter.adapt(usable, rules)
            if result.skipped:
                return (
                    StageResult.failed(FailureKind.ADAPTATION_SKIPPED, result, result.reason),
                    usable,
                )
            try:
                self._repository.put_rule_set(result.rule_set)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.ADAPTATION_FAILED,
                    message=str(exc),
                    suppressed=True,
                    stage=Phase.ADAPT.value,
                    details={"subject_id": subject_id, "version": result.rule_set.version},
                )
                return (
                    StageResult.failed(FailureKind.PERSISTENCE_FAILURE, result, str(exc)),
                    usable,
                )
            return StageResult.ok(result), usable

    def aggregate_input(
        self,
        subject_id: str,
        start: date | None,
        end: date | None,
        fallback: list[CleanedRecord],
    ) -> StageResult[list[CleanedRecord]]:
        try:
            return StageResult.ok(self._repository.records_for(subject_id, start, end))
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.HISTORY_LOAD_FAILED,
                message=str(exc),
                suppressed=True,
                stage=Phase.AGGREGATE.value,
                details={"subject_id": subject_id},
            )
            return StageResult.failed(FailureKind.PERSISTENCE_FAILURE, fallback, str(exc))

    # --- Run lifecycle ---

    async def _execute(self, run: RunContext) -> PipelineResult:
        started = time.monotonic()
        try:
            await self._stages(run)
        except Exception as exc:
            if run.phase not in TERMINAL_PHASES:
                await run.fail(f"Unhandled exception: {exc}")

        result = run.result
        result.phase = run.phase
        if run.phase == Phase.FAIL:
            result.status = "failed"
        elif any(f.kind not in NON_DEGRADING for f in result.failures):
            result.status = "partial"
        else:
            result.status = "complete"
        result.duration_s = round(time.monotonic() - started, 3)

        if run.phase == Phase.COMPLETE:
            await run.signals.emit_run_complete(
                status=result.status,
                record_count=len(result.records),
                duration_s=result.duration_s,
                insight_source=result.insight.source.value if result.insight else None,
            )
        result.signals_count = len(run.signals.signals)
        return result

    async def _stages(self, run: RunContext) -> None:
        result = run.result
        subject_id = result.subject_id

        await run.transition(Phase.FINGERPRINT, {"artifacts": len(run.uploads)})
        screened = await self.fingerprint_stage(run.uploads, run.signals)
        await run.note(Phase.FINGERPRINT, screened)
        accepted, result.blocked_artifacts = screened.value
        for blocked in result.blocked_artifacts:
            await run.note(
                Phase.FINGERPRINT,
                StageResult.failed(
                    FailureKind.DUPLICATE_DETECTED,
                    None,
                    f"{blocked.artifact_id}: {blocked.check.reason}",
                ),
            )

        await run.transition(Phase.EXTRACT, {"accepted": len(accepted)})
        extracted = await self.extract_stage(subject_id, accepted, run.run_id)
        await run.note(Phase.EXTRACT, extracted)
        raw_records = extracted.value

        await run.transition(Phase.VALIDATE, {"records": len(raw_records)})
        loaded = self.rules_stage(subject_id, run.run_id)
        await run.note(Phase.VALIDATE, loaded)
        rules = loaded.value
        cleaned = self._validator.validate_batch(raw_records, rules)
        usable = [r for r in cleaned if r.validity != Validity.REJECTED]
        result.rejected_count = len(cleaned) - len(usable)
        result.quality = quality_report(len(raw_records), cleaned)
        await run.signals.emit(
            SignalType.RECORDS_VALIDATED,
            {
                "records": len(cleaned),
                "rejected": result.rejected_count,
                "rules_version": rules.version,
            },
        )

        await run.transition(Phase.FILTER)
        filtered = self._outliers.filter(usable)
        result.outliers_removed = len(filtered.removed)
        if filtered.removed:
            await run.signals.emit(
                SignalType.OUTLIERS_REMOVED,
                {
                    "removed": len(filtered.removed),
                    "lower_bound": filtered.lower_bound,
                    "upper_bound": filtered.upper_bound,
                },
            )

        await run.transition(Phase.DEDUPLICATE)
        unique, dropped = self._deduplicator.deduplicate(filtered.kept)
        stored = await self.store_records(subject_id, unique, run.run_id)
        await run.note(Phase.DEDUPLICATE, stored)
        result.records = stored.value
        result.duplicates_dropped = dropped + len(unique) - len(stored.value)
        result.period_findings = self._validator.check_period_caps(result.records, rules)

        await run.transition(Phase.ADAPT)
        adapted, corpus = await self.adapt_stage(subject_id, rules)
        await run.note(Phase.ADAPT, adapted)
        result.rule_set = adapted.value.rule_set
        result.adaptation_skipped = adapted.value.skipped
        if not adapted.value.skipped:
            await run.signals.emit(
                SignalType.RULES_ADAPTED,
                {
                    "version": adapted.value.rule_set.version,
                    "sample_size": adapted.value.sample_size,
                },
            )
        result.benchmark = self._adapter.benchmark(corpus or result.records)

        await run.transition(Phase.AGGREGATE)
        window_records = self.aggregate_input(subject_id, run.start, run.end, result.records)
        await run.note(Phase.AGGREGATE, window_records)
        window, _ = self._deduplicator.deduplicate(window_records.value)
        totals = self._aggregator.aggregate(window)
        result.totals = totals
        result.personalized = personalized_score(totals, result.benchmark)
        result.projections = project(totals)

        if self._insight_cache is None:
            await run.transition(Phase.COMPLETE)
            return

        await run.transition(Phase.INSIGHT)
        outcome = await self._insight_cache.get_or_generate(
            InsightRequest(
                subject_id=subject_id,
                window=result.window,
                totals=totals,
                benchmark=result.benchmark,
            )
        )
        result.insight = outcome
        result.usage = self._insight_cache.usage_summary()
        hit = outcome.source == InsightSource.CACHE
        await run.signals.emit(
            SignalType.CACHE_HIT if hit else SignalType.CACHE_MISS,
            {"fingerprint": outcome.fingerprint, "source": outcome.source.value},
        )
        if outcome.source == InsightSource.GENERATED:
            await run.signals.emit(
                SignalType.INSIGHT_GENERATED,
                {"cost": outcome.cost.cost if outcome.cost else 0.0},
            )
        if outcome.failure is not None:
            await run.note(
                Phase.INSIGHT, StageResult.failed(outcome.failure, None, outcome.detail)
            )

        await run.transition(Phase.COMPLETE)

    async def store_records(
        self, subject_id: str, records: list[CleanedRecord], run_id: str
    ) -> StageResult[list[CleanedRecord]]:
        """Append the records whose logical key is not already in the subject's history.

        Returns the records that were new to the history. When the history
        cannot be read, every record is treated as new.
        """
        async with self._subject_locks.hold(subject_id):
            history_error = None
            try:
                known = {dedup_key(r) for r in self._repository.records_for(subject_id)}
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.HISTORY_LOAD_FAILED,
                    message=str(exc),
                    suppressed=True,
                    run_id=run_id,
                    stage=Phase.DEDUPLICATE.value,
                    details={"subject_id": subject_id},
                )
                known = set()
                history_error = str(exc)

            fresh = [r for r in records if dedup_key(r) is None or dedup_key(r) not in known]
            if len(fresh) < len(records):
                logger.info(
                    "Skipped %d records already in %s history",
                    len(records) - len(fresh),
                    subject_id,
                )
            try:
                if fresh:
                    self._repository.add_records(subject_id, fresh)
            except Exception as exc:
                emit_structured_error(
                    logger,
                    code=ErrorCode.HISTORY_SAVE_FAILED,
                    message=str(exc),
                    suppressed=True,
                    run_id=run_id,
                    stage=Phase.DEDUPLICATE.value,
                    details={"subject_id": subject_id, "records": len(fresh)},
                )
                return StageResult.failed(FailureKind.PERSISTENCE_FAILURE, fresh, str(exc))

        if history_error is not None:
            return StageResult.failed(FailureKind.PERSISTENCE_FAILURE, fresh, history_error)
        return StageResult.ok(fresh)


class RunContext:
    """Mutable state of a single run: its phase, signals and partial result."""

    def __init__(
        self,
        subject_id: str,
        uploads: Sequence[Upload],
        start: date | None,
        end: date | None,
        signals_dir: Path | None,
    ) -> None:
        self.run_id = f"run_{uuid.uuid4().hex[:12]}"
        self.phase = Phase.INIT
        self.uploads = list(uploads)
        self.start = start
        self.end = end
        ledger = signals_dir / self.run_id / "signals.jsonl" if signals_dir else None
        self.signals = SignalEmitter(run_id=self.run_id, ledger_path=ledger)
        self.result = PipelineResult(
            run_id=self.run_id,
            subject_id=subject_id,
            status="running",
            phase=Phase.INIT,
            window=window_label(start, end),
        )

    async def transition(self, to_phase: Phase, context: dict[str, Any] | None = None) -> None:
        """Move to ``to_phase``. Every phase change must go through here."""
        if to_phase not in VALID_TRANSITIONS.get(self.phase, set()):
            raise OrchestratorError(f"Invalid transition: {self.phase.value} -> {to_phase.value}")
        from_phase = self.phase
        self.phase = to_phase
        await self.signals.emit_stage_transition(from_phase.value, to_phase.value, context)

    async def note(self, stage: Phase, outcome: StageResult[Any]) -> None:
        """Record a stage failure, signalling it when it degrades the run."""
        if outcome.failure is None:
            return
        self.result.failures.append(
            StageFailure(stage=stage.value, kind=outcome.failure, detail=outcome.detail)
        )
        if outcome.degraded:
            await self.signals.emit_stage_degraded(
                stage.value, outcome.failure.value, outcome.detail
            )

    async def fail(self, reason: str) -> None:
        failed_at = self.phase
        self.phase = Phase.FAIL
        await self.signals.emit_run_failed(reason, failed_at.value)
        logger.error("Run %s failed at %s: %s", self.run_id, failed_at.value, reason)
