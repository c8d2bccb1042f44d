"""Signal emitter for pipeline runs.

Handles emission, persistence, and broadcasting of Signals.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from gigledger.signals.types import Signal, SignalType
from gigledger.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class SignalEmitter:
    """Emits, persists, and broadcasts signals for a single run.

    Signals are:
    - Immutable once emitted
    - Assigned monotonic sequence numbers
    - Persisted to a JSONL ledger in append-only mode
    - Broadcast to subscribers
    """

    def __init__(self, run_id: str, ledger_path: Path | None = None) -> None:
        self._run_id = run_id
        self._sequence = 0
        self._ledger_path = ledger_path
        self._subscribers: list[Callable[[Signal], Any]] = []
        self._signals: list[Signal] = []
        self._lock = asyncio.Lock()

        if self._ledger_path:
            self._ledger_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def signals(self) -> list[Signal]:
        """Return all emitted signals (read-only copy)."""
        return list(self._signals)

    def of_type(self, signal_type: SignalType) -> list[Signal]:
        return [s for s in self._signals if s.signal_type == signal_type]

    def subscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Register a subscriber for real-time signal streaming."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Signal], Any]) -> None:
        """Remove a subscriber."""
        self._subscribers = [s for s in self._subscribers if s is not callback]

    async def emit(self, signal_type: SignalType, payload: dict[str, Any] | None = None) -> Signal:
        """Emit a signal with the next sequence number, persist it, and broadcast it."""
        async with self._lock:
            self._sequence += 1
            signal = Signal(
                sequence=self._sequence,
                signal_type=signal_type,
                timestamp=datetime.now(timezone.utc),
                run_id=self._run_id,
                payload=payload or {},
            )
            self._signals.append(signal)
            if self._ledger_path:
                self._persist(signal)

        await self._broadcast(signal)
        return signal

    def _persist(self, signal: Signal) -> None:
        """Append signal to the JSONL ledger file."""
        with open(self._ledger_path, "a") as f:
            f.write(signal.model_dump_json() + "\n")

    async def _broadcast(self, signal: Signal) -> None:
        for subscriber in self._subscribers:
            try:
                result = subscriber(signal)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                # A failing subscriber must not break emission.
                emit_structured_error(
                    logger,
                    code=ErrorCode.SIGNAL_SUBSCRIBER_FAILURE,
                    message=str(exc),
                    suppressed=True,
                    run_id=self._run_id,
                    details={"signal_type": signal.signal_type.value},
                )

    async def emit_stage_transition(
        self, from_stage: str, to_stage: str, context: dict[str, Any] | None = None
    ) -> Signal:
        return await self.emit(
            SignalType.STAGE_TRANSITION,
            {"from_stage": from_stage, "to_stage": to_stage, **(context or {})},
        )

    async def emit_stage_degraded(
        self, stage: str, failure_kind: str, detail: str
    ) -> Signal:
        return await self.emit(
            SignalType.STAGE_DEGRADED,
            {"stage": stage, "failure_kind": failure_kind, "detail": detail},
        )

    async def emit_run_complete(
        self, status: str, record_count: int, duration_s: float, insight_source: str | None
    ) -> Signal:
        return await self.emit(
            SignalType.RUN_COMPLETE,
            {
                "status": status,
                "record_count": record_count,
                "duration_s": duration_s,
                "insight_source": insight_source,
            },
        )

    async def emit_run_failed(self, failure_reason: str, stage_at_failure: str) -> Signal:
        return await self.emit(
            SignalType.RUN_FAILED,
            {"failure_reason": failure_reason, "stage_at_failure": stage_at_failure},
        )

    @staticmethod
    def load_ledger(ledger_path: Path) -> list[Signal]:
        """Load all signals from a JSONL ledger file."""
        signals = []
        if ledger_path.exists():
            with open(ledger_path) as f:
                for line in f:
                    line = line.strip()
                    if line:
                        signals.append(Signal.model_validate_json(line))
        return signals
