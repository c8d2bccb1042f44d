"""Tests for the Signal emitter."""

import logging

import pytest

from gigledger.signals.emitter import SignalEmitter
from gigledger.signals.types import SignalType


@pytest.fixture
def tmp_ledger(tmp_path):
    return tmp_path / "run_test" / "signals.jsonl"


@pytest.fixture
def emitter(tmp_ledger):
    return SignalEmitter(run_id="run_test_001", ledger_path=tmp_ledger)


class TestSignalEmitter:
    """Test signal emission, persistence, and broadcasting."""

    @pytest.mark.asyncio
    async def test_emit_creates_signal(self, emitter):
        signal = await emitter.emit(SignalType.STAGE_TRANSITION, {"from": "INIT"})
        assert signal.sequence == 1
        assert signal.signal_type == SignalType.STAGE_TRANSITION
        assert signal.run_id == "run_test_001"
        assert signal.payload["from"] == "INIT"

    @pytest.mark.asyncio
    async def test_monotonic_sequence(self, emitter):
        s1 = await emitter.emit(SignalType.STAGE_TRANSITION)
        s2 = await emitter.emit(SignalType.DUPLICATE_BLOCKED)
        s3 = await emitter.emit(SignalType.CACHE_HIT)
        assert [s1.sequence, s2.sequence, s3.sequence] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_signals_are_immutable(self, emitter):
        signal = await emitter.emit(SignalType.STAGE_TRANSITION, {"key": "value"})
        with pytest.raises(Exception):
            signal.payload = {"modified": True}

    @pytest.mark.asyncio
    async def test_ledger_round_trip(self, emitter, tmp_ledger):
        await emitter.emit(SignalType.STAGE_TRANSITION, {"to_stage": "FINGERPRINT"})
        await emitter.emit(SignalType.RUN_COMPLETE, {"record_count": 5})

        assert len(tmp_ledger.read_text().strip().split("\n")) == 2
        loaded = SignalEmitter.load_ledger(tmp_ledger)
        assert [s.signal_type for s in loaded] == [
            SignalType.STAGE_TRANSITION,
            SignalType.RUN_COMPLETE,
        ]

    def test_load_missing_ledger(self, tmp_path):
        assert SignalEmitter.load_ledger(tmp_path / "absent.jsonl") == []

    @pytest.mark.asyncio
    async def test_subscribers_sync_and_async(self, emitter):
        received = []

        def on_signal(signal):
            received.append(("sync", signal.sequence))

        async def on_signal_async(signal):
            received.append(("async", signal.sequence))

        emitter.subscribe(on_signal)
        emitter.subscribe(on_signal_async)
        await emitter.emit(SignalType.STAGE_TRANSITION)

        assert received == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, emitter):
        received = []

        def on_signal(signal):
            received.append(signal)

        emitter.subscribe(on_signal)
        await emitter.emit(SignalType.STAGE_TRANSITION)
        emitter.unsubscribe(on_signal)
        await emitter.emit(SignalType.CACHE_MISS)

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_subscriber_error_is_logged_not_raised(self, emitter, caplog):
        def bad_subscriber(signal):
            raise RuntimeError("Subscriber failure")

        emitter.subscribe(bad_subscriber)
        with caplog.at_level(logging.ERROR, logger="gigledger.signals.emitter"):
            signal = await emitter.emit(SignalType.STAGE_TRANSITION)

        assert signal.sequence == 1
        assert any(r.getMessage() == "gigledger_error" for r in caplog.records)

    @pytest.mark.asyncio
    async def test_signals_property_returns_copy(self, emitter):
        await emitter.emit(SignalType.STAGE_TRANSITION)
        signals = emitter.signals
        signals.clear()
        assert len(emitter.signals) == 1

    @pytest.mark.asyncio
    async def test_of_type_filters(self, emitter):
        await emitter.emit(SignalType.CACHE_HIT)
        await emitter.emit(SignalType.CACHE_MISS)
        await emitter.emit(SignalType.CACHE_HIT)
        assert len(emitter.of_type(SignalType.CACHE_HIT)) == 2

    @pytest.mark.asyncio
    async def test_stage_transition_convenience(self, emitter):
        signal = await emitter.emit_stage_transition("INIT", "FINGERPRINT", {"artifacts": 2})
        assert signal.payload == {"from_stage": "INIT", "to_stage": "FINGERPRINT", "artifacts": 2}

    @pytest.mark.asyncio
    async def test_run_complete_and_failed_convenience(self, emitter):
        done = await emitter.emit_run_complete(
            status="complete", record_count=10, duration_s=1.5, insight_source="CACHE"
        )
        failed = await emitter.emit_run_failed("boom", "VALIDATE")
        assert done.payload["record_count"] == 10
        assert done.payload["insight_source"] == "CACHE"
        assert failed.payload == {"failure_reason": "boom", "stage_at_failure": "VALIDATE"}

    @pytest.mark.asyncio
    async def test_emitter_without_ledger(self):
        emitter = SignalEmitter(run_id="run_memory")
        await emitter.emit(SignalType.STAGE_DEGRADED)
        assert len(emitter.signals) == 1
