"""
InMemoryJobStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Records held as plain dicts; callers always get a fresh JobRecord,
    so mutating a returned record never touches the store until save()
  - Safe within a single event loop (no awaits inside a read-modify-write)
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import (
    BaseJobStore, JobStoreError, RecordNotFoundError, StaleRecordError,
)
from models.schemas import JobRecord

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJobStore(BaseJobStore):

    def __init__(self):
        self._jobs: dict[str, dict[str, Any]] = {}      # id → record dict
        logger.info("inmemory_job_store_initialized")

    async def create(self, record: JobRecord) -> JobRecord:
        if record.id in self._jobs:
            raise JobStoreError(f"Job record {record.id} already exists", record.id)
        self._commit(record.id, record.model_dump(mode="json"), previous=None)
        return record

    async def find_by_id(self, job_id: str) -> Optional[JobRecord]:
        data = self._jobs.get(job_id)
        return JobRecord.model_validate(data) if data else None

    async def save(self, record: JobRecord) -> JobRecord:
        stored = self._jobs.get(record.id)
        if stored is None:
            raise RecordNotFoundError(record.id)
        if stored["version"] != record.version:
            raise StaleRecordError(record.id, record.version, stored["version"])
        updated = record.model_copy(update={"version": record.version + 1, "updated_at": _utcnow()})
        self._commit(record.id, updated.model_dump(mode="json"), previous=stored)
        record.version = updated.version
        record.updated_at = updated.updated_at
        return record

    async def list_recent(self, limit: int = 50) -> list[JobRecord]:
        # insertion order breaks created_at ties
        rows = sorted(
            enumerate(self._jobs.values()),
            key=lambda pair: (pair[1].get("created_at", ""), pair[0]),
            reverse=True,
        )
        return [JobRecord.model_validate(r) for _, r in rows[:limit]]

    def _commit(self, job_id: str, row: dict[str, Any], previous: Optional[dict[str, Any]]) -> None:
        """Install ``row``; restore ``previous`` if the write hook fails."""
        self._jobs[job_id] = row
        try:
            self._on_write()
        except Exception:
            if previous is None:
                self._jobs.pop(job_id, None)
            else:
                self._jobs[job_id] = previous
            raise

    def _on_write(self) -> None:
        """Hook for persistent subclasses."""

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {"jobs": len(self._jobs)}
        for row in self._jobs.values():
            counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts
