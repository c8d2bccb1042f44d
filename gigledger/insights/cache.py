"""Fetch-or-generate cache in front of the insight generator.

Lookup order:
1. an entry with the same fingerprint younger than the TTL;
2. the latest entry of the same lineage (subject, window) younger than the
   TTL whose basis totals drifted less than the event and value thresholds.

Misses call the generator under a deadline. Concurrent misses for one
fingerprint share a single generation. Failures return the fallback
narrative, which is never cached.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from gigledger.config.settings import InsightPolicy
from gigledger.insights.generator import (
    GenerationResult,
    InsightGenerator,
    InsightRequest,
    fallback_insights,
)
from gigledger.insights.usage import UsageLedger, UsageRecord, UsageSummary
from gigledger.orchestrator.locks import KeyedLocks
from gigledger.telemetry.errors import (
    ErrorCode,
    ExternalServiceError,
    FailureKind,
    emit_structured_error,
)

logger = logging.getLogger(__name__)


class CacheEntry(BaseModel):
    fingerprint: str
    lineage: str
    payload: dict[str, Any]
    cost: UsageRecord
    basis_events: int
    basis_value: float
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CacheStore(Protocol):
    def get_cache_entry(self, fingerprint: str) -> CacheEntry | None: ...

    def latest_cache_entry(self, lineage: str) -> CacheEntry | None: ...

    def put_cache_entry(self, entry: CacheEntry) -> None: ...


class InsightSource(str, Enum):
    CACHE = "CACHE"
    GENERATED = "GENERATED"
    FALLBACK = "FALLBACK"


class InsightOutcome(BaseModel):
    result: dict[str, Any]
    source: InsightSource
    fingerprint: str
    cost: UsageRecord | None = None
    failure: FailureKind | None = None
    detail: str = ""


def request_fingerprint(request: InsightRequest) -> str:
    shape = [
        request.subject_id,
        request.window,
        request.totals.total_events,
        round(request.totals.total_earnings, 2),
    ]
    return hashlib.sha256(json.dumps(shape).encode()).hexdigest()


def request_lineage(request: InsightRequest) -> str:
    return f"{request.subject_id}:{request.window}"


def drift(old: float, new: float) -> float:
    """Relative change, measured against at least 1 to avoid dividing by zero."""
    return abs(new - old) / max(abs(old), 1.0)


class InsightCache:
    """Cost-aware insight cache with single-flight generation."""

    def __init__(
        self,
        store: CacheStore,
        generator: InsightGenerator,
        ledger: UsageLedger,
        policy: InsightPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._ledger = ledger
        self._policy = policy or InsightPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = KeyedLocks()

    def usage_summary(self, now: datetime | None = None) -> UsageSummary:
        """Cumulative generation usage and cost from the usage ledger."""
        return self._ledger.summary(now or self._clock())

    def lookup(self, request: InsightRequest, now: datetime | None = None) -> CacheEntry | None:
        """Return a reusable entry for the request, or None on a miss."""
        now = now or self._clock()
        ttl = timedelta(seconds=self._policy.ttl_s)

        entry = self._store.get_cache_entry(request_fingerprint(request))
        if entry is not None and now - entry.created_at < ttl:
            return entry

        latest = self._store.latest_cache_entry(request_lineage(request))
        if latest is None or now - latest.created_at >= ttl:
            return None
        events_drift = drift(latest.basis_events, request.totals.total_events)
        value_drift = drift(latest.basis_value, request.totals.total_earnings)
        if (
            events_drift < self._policy.events_drift_threshold
            and value_drift < self._policy.value_drift_threshold
        ):
            return latest
        logger.debug(
            "Lineage %s drifted (events %.2f, value %.2f); regenerating",
            latest.lineage,
            events_drift,
            value_drift,
        )
        return None

    def _safe_lookup(self, request: InsightRequest) -> CacheEntry | None:
        try:
            return self.lookup(request)
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.CACHE_STORE_FAILED,
                message=str(exc),
                suppressed=True,
                details={"subject_id": request.subject_id, "operation": "lookup"},
            )
            return None

    async def get_or_generate(self, request: InsightRequest) -> InsightOutcome:
        fingerprint = request_fingerprint(request)

        entry = self._safe_lookup(request)
        if entry is not None:
            return self._hit(entry, fingerprint)

        async with self._locks.hold(fingerprint):
            entry = self._safe_lookup(request)
            if entry is not None:
                return self._hit(entry, fingerprint)
            return await self._generate(request, fingerprint)

    @staticmethod
    def _hit(entry: CacheEntry, fingerprint: str) -> InsightOutcome:
        return InsightOutcome(
            result=entry.payload,
            source=InsightSource.CACHE,
            fingerprint=fingerprint,
            cost=entry.cost,
        )

    async def _generate(self, request: InsightRequest, fingerprint: str) -> InsightOutcome:
        try:
            generated: GenerationResult = await asyncio.wait_for(
                self._generator.generate(request), timeout=self._policy.timeout_s
            )
        except asyncio.TimeoutError:
            return self._fallback(
                request,
                fingerprint,
                ErrorCode.INSIGHT_TIMEOUT,
                f"generation exceeded {self._policy.timeout_s}s",
            )
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return self._fallback(
                request, fingerprint, ErrorCode.INSIGHT_GENERATION_FAILED, "generation cancelled"
            )
        except ExternalServiceError as exc:
            detail = f"rate limited: {exc}" if exc.rate_limited else str(exc)
            return self._fallback(
                request, fingerprint, ErrorCode.INSIGHT_GENERATION_FAILED, detail
            )
        except Exception as exc:
            return self._fallback(
                request, fingerprint, ErrorCode.INSIGHT_GENERATION_FAILED, str(exc)
            )

        try:
            await self._ledger.append(generated.usage)
        except OSError as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.USAGE_LEDGER_FAILED,
                message=str(exc),
                suppressed=True,
                details={"subject_id": request.subject_id},
            )

        entry = CacheEntry(
            fingerprint=fingerprint,
            lineage=request_lineage(request),
            payload=generated.narrative,
            cost=generated.usage,
            basis_events=request.totals.total_events,
            basis_value=request.totals.total_earnings,
            created_at=self._clock(),
        )
        try:
            self._store.put_cache_entry(entry)
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.CACHE_STORE_FAILED,
                message=str(exc),
                suppressed=True,
                details={"subject_id": request.subject_id, "operation": "store"},
            )

        logger.info(
            "Generated insight for %s (%d units, cost %.6f)",
            request_lineage(request),
            generated.usage.total_units,
            generated.usage.cost,
        )
        return InsightOutcome(
            result=generated.narrative,
            source=InsightSource.GENERATED,
            fingerprint=fingerprint,
            cost=generated.usage,
        )

    @staticmethod
    def _fallback(
        request: InsightRequest, fingerprint: str, code: ErrorCode, detail: str
    ) -> InsightOutcome:
        emit_structured_error(
            logger,
            code=code,
            message=detail,
            suppressed=True,
            details={"subject_id": request.subject_id, "window": request.window},
        )
        return InsightOutcome(
            result=fallback_insights(request.totals),
            source=InsightSource.FALLBACK,
            fingerprint=fingerprint,
            failure=FailureKind.EXTERNAL_SERVICE_FAILURE,
            detail=detail,
        )
