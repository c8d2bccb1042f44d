"""Tests for the fetch-or-generate insight cache."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from gigledger.config.settings import InsightPolicy
from gigledger.insights.cache import (
    InsightCache,
    InsightSource,
    drift,
    request_fingerprint,
)
from gigledger.insights.generator import GenerationResult, InsightRequest
from gigledger.insights.usage import UsageLedger, UsageRecord
from gigledger.pipeline.aggregation import PeriodTotals
from gigledger.storage.repository import InMemoryRepository
from gigledger.telemetry.errors import ExternalServiceError, FailureKind

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeGenerator:
    def __init__(self, delay: float = 0.0, error: Exception | None = None) -> None:
        self.calls = 0
        self.delay = delay
        self.error = error

    async def generate(self, request: InsightRequest) -> GenerationResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(
            narrative={"summary": f"call {self.calls}"},
            usage=UsageRecord(model="fake", input_units=100, output_units=50, cost=0.01),
        )


def request(events: int = 100, value: float = 1000.0, window: str = "2026-W09") -> InsightRequest:
    return InsightRequest(
        subject_id="driver-1",
        window=window,
        totals=PeriodTotals(total_events=events, total_earnings=value),
    )


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def ledger():
    return UsageLedger()


def make_cache(generator, ledger, clock, **policy):
    return InsightCache(
        InMemoryRepository(), generator, ledger, InsightPolicy(**policy), clock=clock
    )


class TestFingerprint:
    def test_same_shape_same_fingerprint(self):
        assert request_fingerprint(request(value=1000.001)) == request_fingerprint(request())

    def test_shape_changes_fingerprint(self):
        assert request_fingerprint(request(events=101)) != request_fingerprint(request())
        assert request_fingerprint(request(window="2026-W10")) != request_fingerprint(request())

    def test_drift_guards_zero(self):
        assert drift(0, 0.5) == 0.5
        assert drift(100, 120) == 0.2


class TestCacheHits:
    @pytest.mark.asyncio
    async def test_second_identical_call_makes_no_external_invocation(self, clock, ledger):
        generator = FakeGenerator()
        cache = make_cache(generator, ledger, clock)

        first = await cache.get_or_generate(request())
        clock.now = T0 + timedelta(hours=2)
        second = await cache.get_or_generate(request())

        assert first.source == InsightSource.GENERATED
        assert second.source == InsightSource.CACHE
        assert second.result == first.result
        assert generator.calls == 1
        assert len(ledger.records) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_misses(self, clock, ledger):
        generator = FakeGenerator()
        cache = make_cache(generator, ledger, clock)
        await cache.get_or_generate(request())
        clock.now = T0 + timedelta(hours=25)
        outcome = await cache.get_or_generate(request())
        assert outcome.source == InsightSource.GENERATED
        assert generator.calls == 2

    @pytest.mark.asyncio
    async def test_small_drift_reuses_lineage(self, clock, ledger):
        generator = FakeGenerator()
        cache = make_cache(generator, ledger, clock)
        await cache.get_or_generate(request(events=100, value=1000.0))
        outcome = await cache.get_or_generate(request(events=110, value=1150.0))
        assert outcome.source == InsightSource.CACHE
        assert generator.calls == 1

    @pytest.mark.parametrize("events,value", [(120, 1000.0), (100, 1250.0), (150, 2000.0)])
    @pytest.mark.asyncio
    async def test_drift_at_threshold_always_misses(self, clock, ledger, events, value):
        generator = FakeGenerator()
        cache = make_cache(generator, ledger, clock)
        await cache.get_or_generate(request(events=100, value=1000.0))
        outcome = await cache.get_or_generate(request(events=events, value=value))
        assert outcome.source == InsightSource.GENERATED
        assert generator.calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_misses_are_single_flighted(self, clock, ledger):
        generator = FakeGenerator(delay=0.05)
        cache = make_cache(generator, ledger, clock)
        outcomes = await asyncio.gather(*(cache.get_or_generate(request()) for _ in range(5)))
        assert generator.calls == 1
        assert sorted(o.source.value for o in outcomes) == ["CACHE"] * 4 + ["GENERATED"]
        assert len(cache._locks) == 0
        assert cache.usage_summary().session_requests == 1


class TestFallback:
    @pytest.mark.asyncio
    async def test_timeout_returns_fallback(self, clock, ledger):
        generator = FakeGenerator(delay=1.0)
        cache = make_cache(generator, ledger, clock, timeout_s=0.01)
        outcome = await cache.get_or_generate(request())
        assert outcome.source == InsightSource.FALLBACK
        assert outcome.failure == FailureKind.EXTERNAL_SERVICE_FAILURE
        assert outcome.result["fallback_mode"] is True
        assert ledger.records == []

    @pytest.mark.asyncio
    async def test_rate_limit_returns_fallback_and_is_not_cached(self, clock, ledger):
        generator = FakeGenerator(error=ExternalServiceError("quota", rate_limited=True))
        cache = make_cache(generator, ledger, clock)

        first = await cache.get_or_generate(request())
        assert first.source == InsightSource.FALLBACK
        assert "rate limited" in first.detail

        generator.error = None
        second = await cache.get_or_generate(request())
        assert second.source == InsightSource.GENERATED
        assert generator.calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_fallback(self, clock, ledger):
        cache = make_cache(FakeGenerator(error=RuntimeError("boom")), ledger, clock)
        outcome = await cache.get_or_generate(request())
        assert outcome.source == InsightSource.FALLBACK
        assert outcome.detail == "boom"
