"""Content fingerprinting and duplicate-artifact detection.

An artifact is a definitive duplicate when its exact SHA-256 matches a stored
artifact. Among stored artifacts of similar size it is a probable duplicate
when its near hash matches (checking the newest candidates first) or the
same filename was uploaded within the recent window. When the artifact store
fails, the check fails open.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from gigledger.config.settings import FingerprintPolicy
from gigledger.telemetry.errors import ErrorCode, emit_structured_error

logger = logging.getLogger(__name__)


class Fingerprint(BaseModel):
    exact_hash: str
    near_hash: str
    size_bytes: int

    model_config = {"frozen": True}


class Artifact(BaseModel):
    """An uploaded file before extraction."""

    artifact_id: str
    subject_id: str
    filename: str
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"frozen": True}


class StoredArtifact(BaseModel):
    artifact: Artifact
    fingerprint: Fingerprint


class BlockedUpload(BaseModel):
    """Ledger entry for an upload rejected as a duplicate."""

    artifact: Artifact
    fingerprint: Fingerprint
    matched_artifact_id: str | None
    reason: str
    blocked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DuplicateKind(str, Enum):
    EXACT = "EXACT"
    PROBABLE = "PROBABLE"
    NONE = "NONE"


class DuplicateCheck(BaseModel):
    is_duplicate: bool
    kind: DuplicateKind = DuplicateKind.NONE
    matched_artifact_id: str | None = None
    reason: str = ""
    degraded: bool = False


class DuplicateStats(BaseModel):
    total_artifacts: int
    duplicates_blocked: int
    recent_duplicate_attempts: int


class ArtifactStore(Protocol):
    def find_artifact_by_hash(self, exact_hash: str) -> StoredArtifact | None: ...

    def find_artifacts_by_size(
        self, min_size: int, max_size: int, limit: int
    ) -> list[StoredArtifact]: ...

    def find_recent_by_filename(self, filename: str, since: datetime) -> list[StoredArtifact]: ...

    def add_artifact(self, stored: StoredArtifact) -> None: ...

    def add_blocked(self, blocked: BlockedUpload) -> None: ...

    def list_blocked(self) -> list[BlockedUpload]: ...

    def count_artifacts(self) -> int: ...


def near_hash(content: bytes, buckets: int = 64, quantization_bits: int = 4) -> str:
    """Digest over a down-sampled, quantized view of the bytes.

    The content is split into ``buckets`` contiguous slices, each reduced to
    its mean byte value and quantized by dropping the low bits, so small
    scattered edits usually leave the digest unchanged.
    """
    if not content:
        return hashlib.sha256(b"").hexdigest()[:16]
    n = len(content)
    count = min(buckets, n)
    levels = bytearray()
    for i in range(count):
        start = i * n // count
        end = (i + 1) * n // count
        chunk = content[start:end]
        levels.append((sum(chunk) // len(chunk)) >> quantization_bits)
    return hashlib.sha256(bytes(levels)).hexdigest()[:16]


class ContentFingerprinter:
    """Fingerprints artifacts and checks them against the artifact store."""

    def __init__(self, store: ArtifactStore, policy: FingerprintPolicy | None = None) -> None:
        self._store = store
        self._policy = policy or FingerprintPolicy()

    def fingerprint(self, content: bytes) -> Fingerprint:
        return Fingerprint(
            exact_hash=hashlib.sha256(content).hexdigest(),
            near_hash=near_hash(
                content,
                buckets=self._policy.near_hash_buckets,
                quantization_bits=self._policy.near_hash_quantization_bits,
            ),
            size_bytes=len(content),
        )

    def is_duplicate(
        self,
        artifact: Artifact,
        fingerprint: Fingerprint,
        recent_window: timedelta | None = None,
    ) -> DuplicateCheck:
        window = recent_window or timedelta(seconds=self._policy.recent_window_s)
        try:
            exact = self._store.find_artifact_by_hash(fingerprint.exact_hash)
            if exact is not None:
                return DuplicateCheck(
                    is_duplicate=True,
                    kind=DuplicateKind.EXACT,
                    matched_artifact_id=exact.artifact.artifact_id,
                    reason="identical content",
                )

            tolerance = self._policy.size_tolerance
            min_size = int(fingerprint.size_bytes * (1 - tolerance))
            max_size = int(fingerprint.size_bytes * (1 + tolerance)) + 1
            candidates = self._store.find_artifacts_by_size(
                min_size, max_size, self._policy.max_size_candidates
            )
            same_name = self._store.find_recent_by_filename(
                artifact.filename, artifact.uploaded_at - window
            )
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.DUPLICATE_CHECK_DEGRADED,
                message=str(exc),
                suppressed=True,
                details={"artifact_id": artifact.artifact_id},
            )
            return DuplicateCheck(
                is_duplicate=False,
                reason="duplicate check unavailable; allowed",
                degraded=True,
            )

        for candidate in candidates:
            if candidate.fingerprint.near_hash == fingerprint.near_hash:
                return DuplicateCheck(
                    is_duplicate=True,
                    kind=DuplicateKind.PROBABLE,
                    matched_artifact_id=candidate.artifact.artifact_id,
                    reason="similar content",
                )

        for candidate in same_name:
            elapsed = abs(artifact.uploaded_at - candidate.artifact.uploaded_at)
            if min_size <= candidate.fingerprint.size_bytes <= max_size and elapsed <= window:
                return DuplicateCheck(
                    is_duplicate=True,
                    kind=DuplicateKind.PROBABLE,
                    matched_artifact_id=candidate.artifact.artifact_id,
                    reason=f"same filename uploaded within {window}",
                )

        return DuplicateCheck(is_duplicate=False)

    def register(self, artifact: Artifact, fingerprint: Fingerprint) -> None:
        """Store a fingerprint for future checks."""
        self._store.add_artifact(StoredArtifact(artifact=artifact, fingerprint=fingerprint))

    def record_block(
        self, artifact: Artifact, fingerprint: Fingerprint, check: DuplicateCheck
    ) -> None:
        self._store.add_blocked(
            BlockedUpload(
                artifact=artifact,
                fingerprint=fingerprint,
                matched_artifact_id=check.matched_artifact_id,
                reason=check.reason,
            )
        )
        logger.info(
            "Blocked duplicate upload %s (%s: %s)",
            artifact.artifact_id,
            check.kind.value,
            check.reason,
        )

    def duplicate_stats(self, now: datetime | None = None) -> DuplicateStats:
        now = now or datetime.now(timezone.utc)
        blocked = self._store.list_blocked()
        cutoff = now - timedelta(seconds=self._policy.recent_window_s)
        return DuplicateStats(
            total_artifacts=self._store.count_artifacts(),
            duplicates_blocked=len(blocked),
            recent_duplicate_attempts=sum(1 for b in blocked if b.blocked_at >= cutoff),
        )
