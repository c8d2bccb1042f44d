"""Explicit stage outcomes.

A stage never hides a failure behind an exception chain: it returns a
StageResult carrying either its value or a fallback value together with the
FailureKind that forced the fallback.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

from gigledger.telemetry.errors import FailureKind

T = TypeVar("T")

# Failure kinds that describe expected outcomes rather than degraded stages.
NON_DEGRADING = {FailureKind.ADAPTATION_SKIPPED, FailureKind.DUPLICATE_DETECTED}


class StageResult(BaseModel, Generic[T]):
    value: T
    failure: FailureKind | None = None
    detail: str = ""

    @classmethod
    def ok(cls, value: T) -> StageResult[T]:
        return cls(value=value)

    @classmethod
    def failed(cls, kind: FailureKind, fallback: T, detail: str = "") -> StageResult[T]:
        return cls(value=fallback, failure=kind, detail=detail)

    @property
    def is_ok(self) -> bool:
        return self.failure is None

    @property
    def degraded(self) -> bool:
        return self.failure is not None and self.failure not in NON_DEGRADING


class StageFailure(BaseModel):
    """Record of one stage that did not complete normally."""

    stage: str
    kind: FailureKind
    detail: str = ""
