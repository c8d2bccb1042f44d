"""Structured error telemetry and the engine's failure taxonomy."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Canonical error codes for operational telemetry."""

    DUPLICATE_CHECK_DEGRADED = "DUPLICATE_CHECK_DEGRADED"
    ARTIFACT_REGISTRATION_FAILED = "ARTIFACT_REGISTRATION_FAILED"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    HISTORY_SAVE_FAILED = "HISTORY_SAVE_FAILED"
    ADAPTATION_FAILED = "ADAPTATION_FAILED"
    HISTORY_LOAD_FAILED = "HISTORY_LOAD_FAILED"
    RULES_LOAD_FAILED = "RULES_LOAD_FAILED"
    INSIGHT_GENERATION_FAILED = "INSIGHT_GENERATION_FAILED"
    INSIGHT_TIMEOUT = "INSIGHT_TIMEOUT"
    INSIGHT_INITIALIZATION_FAILED = "INSIGHT_INITIALIZATION_FAILED"
    CACHE_STORE_FAILED = "CACHE_STORE_FAILED"
    USAGE_LEDGER_FAILED = "USAGE_LEDGER_FAILED"
    SIGNAL_SUBSCRIBER_FAILURE = "SIGNAL_SUBSCRIBER_FAILURE"


class FailureKind(str, Enum):
    """Recoverable failure classes a stage can report instead of raising."""

    DATA_QUALITY_ISSUE = "DATA_QUALITY_ISSUE"
    DUPLICATE_DETECTED = "DUPLICATE_DETECTED"
    ADAPTATION_SKIPPED = "ADAPTATION_SKIPPED"
    EXTERNAL_SERVICE_FAILURE = "EXTERNAL_SERVICE_FAILURE"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"


class PersistenceError(Exception):
    """Raised by a repository when the backing store is unavailable."""


class ExternalServiceError(Exception):
    """Raised by an insight generator on rate-limit or upstream errors."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


def emit_structured_error(
    logger: logging.Logger,
    *,
    code: ErrorCode,
    message: str,
    suppressed: bool,
    run_id: str | None = None,
    stage: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit a structured telemetry event via logging."""
    logger.error(
        "gigledger_error",
        extra={
            "error_code": code,
            "error_message": message,
            "suppressed": suppressed,
            "run_id": run_id,
            "stage": stage,
            "details": details or {},
        },
    )
