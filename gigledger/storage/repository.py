"""Repositories for artifacts, record history, rule sets and cache entries.

``InMemoryRepository`` keeps everything in process. ``FileRepository``
keeps the same structures and writes each collection through to a JSON
document under the data dir, atomically (temp file then rename).
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, TypeAdapter

from gigledger.adaptation.rules import AdaptiveRuleSet
from gigledger.fingerprint.hashing import BlockedUpload, StoredArtifact
from gigledger.insights.cache import CacheEntry
from gigledger.pipeline.records import CleanedRecord
from gigledger.telemetry.errors import PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Repository(Protocol):
    """Everything the orchestrator reads from or writes to storage."""

    def find_artifact_by_hash(self, exact_hash: str) -> StoredArtifact | None: ...

    def find_artifacts_by_size(
        self, min_size: int, max_size: int, limit: int
    ) -> list[StoredArtifact]: ...

    def find_recent_by_filename(self, filename: str, since: datetime) -> list[StoredArtifact]: ...

    def add_artifact(self, stored: StoredArtifact) -> None: ...

    def add_blocked(self, blocked: BlockedUpload) -> None: ...

    def list_blocked(self) -> list[BlockedUpload]: ...

    def count_artifacts(self) -> int: ...

    def add_records(self, subject_id: str, records: list[CleanedRecord]) -> None: ...

    def records_for(
        self, subject_id: str, start: date | None = None, end: date | None = None
    ) -> list[CleanedRecord]: ...

    def get_rule_set(self, subject_id: str) -> AdaptiveRuleSet | None: ...

    def put_rule_set(self, rules: AdaptiveRuleSet) -> None: ...

    def get_cache_entry(self, fingerprint: str) -> CacheEntry | None: ...

    def latest_cache_entry(self, lineage: str) -> CacheEntry | None: ...

    def put_cache_entry(self, entry: CacheEntry) -> None: ...


def _in_range(record: CleanedRecord, start: date | None, end: date | None) -> bool:
    if start is None and end is None:
        return True
    if record.record_date is None:
        return False
    if start is not None and record.record_date < start:
        return False
    if end is not None and record.record_date > end:
        return False
    return True


class InMemoryRepository:
    """Process-local repository."""

    def __init__(self) -> None:
        self._artifacts: list[StoredArtifact] = []
        self._blocked: list[BlockedUpload] = []
        self._history: dict[str, list[CleanedRecord]] = {}
        self._rules: dict[str, AdaptiveRuleSet] = {}
        self._cache: dict[str, CacheEntry] = {}

    # --- Artifacts ---

    def find_artifact_by_hash(self, exact_hash: str) -> StoredArtifact | None:
        for stored in self._artifacts:
            if stored.fingerprint.exact_hash == exact_hash:
                return stored
        return None

    def find_artifacts_by_size(
        self, min_size: int, max_size: int, limit: int
    ) -> list[StoredArtifact]:
        """Newest first, so the cap never hides recent uploads."""
        matches = [
            s for s in reversed(self._artifacts) if min_size <= s.fingerprint.size_bytes <= max_size
        ]
        matches.sort(key=lambda s: s.artifact.uploaded_at, reverse=True)
        return matches[:limit]

    def find_recent_by_filename(self, filename: str, since: datetime) -> list[StoredArtifact]:
        return [
            s
            for s in reversed(self._artifacts)
            if s.artifact.filename == filename and s.artifact.uploaded_at >= since
        ]

    def add_artifact(self, stored: StoredArtifact) -> None:
        self._artifacts.append(stored)

    def add_blocked(self, blocked: BlockedUpload) -> None:
        self._blocked.append(blocked)

    def list_blocked(self) -> list[BlockedUpload]:
        return list(self._blocked)

    def count_artifacts(self) -> int:
        return len(self._artifacts)

    # --- Record history ---

    def add_records(self, subject_id: str, records: list[CleanedRecord]) -> None:
        self._history.setdefault(subject_id, []).extend(records)

    def records_for(
        self, subject_id: str, start: date | None = None, end: date | None = None
    ) -> list[CleanedRecord]:
        return [r for r in self._history.get(subject_id, []) if _in_range(r, start, end)]

    # --- Rule sets ---

    def get_rule_set(self, subject_id: str) -> AdaptiveRuleSet | None:
        return self._rules.get(subject_id)

    def put_rule_set(self, rules: AdaptiveRuleSet) -> None:
        self._rules[rules.subject_id] = rules

    # --- Cache entries ---

    def get_cache_entry(self, fingerprint: str) -> CacheEntry | None:
        return self._cache.get(fingerprint)

    def latest_cache_entry(self, lineage: str) -> CacheEntry | None:
        entries = [e for e in self._cache.values() if e.lineage == lineage]
        return max(entries, key=lambda e: e.created_at, default=None)

    def put_cache_entry(self, entry: CacheEntry) -> None:
        self._cache[entry.fingerprint] = entry


_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class FileRepository(InMemoryRepository):
    """Disk-backed repository with atomic JSON document writes.

    Layout under ``data_dir``::

        artifacts.json
        blocked.json
        cache.json
        history/<subject>.json
        rules/<subject>.json
    """

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self._data_dir = data_dir
        try:
            (data_dir / "history").mkdir(parents=True, exist_ok=True)
            (data_dir / "rules").mkdir(parents=True, exist_ok=True)
            self._hydrate()
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"cannot open repository at {data_dir}: {exc}") from exc

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _hydrate(self) -> None:
        self._artifacts = self._load_list(self._data_dir / "artifacts.json", StoredArtifact)
        self._blocked = self._load_list(self._data_dir / "blocked.json", BlockedUpload)
        self._cache = {
            e.fingerprint: e for e in self._load_list(self._data_dir / "cache.json", CacheEntry)
        }
        for path in (self._data_dir / "history").glob("*.json"):
            records = self._load_list(path, CleanedRecord)
            if records:
                self._history[records[0].subject_id] = records
        for path in (self._data_dir / "rules").glob("*.json"):
            rules = AdaptiveRuleSet.model_validate_json(path.read_text())
            self._rules[rules.subject_id] = rules
        logger.debug(
            "Hydrated repository from %s: %d artifacts, %d subjects",
            self._data_dir,
            len(self._artifacts),
            len(self._history),
        )

    @staticmethod
    def _load_list(path: Path, model: type[ModelT]) -> list[ModelT]:
        if not path.exists():
            return []
        return TypeAdapter(list[model]).validate_json(path.read_text())

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(text)
            temp_path.replace(path)
        except OSError as exc:
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceError(f"failed to write {path}: {exc}") from exc

    def _write_list(self, path: Path, items: list[BaseModel]) -> None:
        payload = "[" + ",".join(item.model_dump_json() for item in items) + "]"
        self._write_atomic(path, payload)

    def _subject_path(self, folder: str, subject_id: str) -> Path:
        return self._data_dir / folder / f"{_SAFE_NAME.sub('_', subject_id)}.json"

    # Mutators write the new document before touching memory.

    def add_artifact(self, stored: StoredArtifact) -> None:
        self._write_list(self._data_dir / "artifacts.json", [*self._artifacts, stored])
        super().add_artifact(stored)

    def add_blocked(self, blocked: BlockedUpload) -> None:
        self._write_list(self._data_dir / "blocked.json", [*self._blocked, blocked])
        super().add_blocked(blocked)

    def add_records(self, subject_id: str, records: list[CleanedRecord]) -> None:
        history = [*self._history.get(subject_id, []), *records]
        self._write_list(self._subject_path("history", subject_id), history)
        super().add_records(subject_id, records)

    def put_rule_set(self, rules: AdaptiveRuleSet) -> None:
        self._write_atomic(
            self._subject_path("rules", rules.subject_id), rules.model_dump_json(indent=2)
        )
        super().put_rule_set(rules)

    def put_cache_entry(self, entry: CacheEntry) -> None:
        entries = {**self._cache, entry.fingerprint: entry}
        self._write_list(self._data_dir / "cache.json", list(entries.values()))
        super().put_cache_entry(entry)
