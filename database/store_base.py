"""
Abstract Job Store: Interface for job-record storage backends.

Implementations:
  - InMemoryJobStore (dict-based, single-process, no persistence)
  - FileJobStore     (JSON file on disk, single-process, durable)

The worker needs only get/update by id. ``save`` is a compare-and-swap on
``JobRecord.version`` so two consumers of one queue cannot silently
overwrite each other's status updates.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import JobRecord


class JobStoreError(Exception):
    """Base exception for job store operations."""

    def __init__(self, message: str, job_id: str = ""):
        self.job_id = job_id
        super().__init__(message)


class RecordNotFoundError(JobStoreError):
    def __init__(self, job_id: str):
        super().__init__(f"Job record {job_id} does not exist", job_id)


class StaleRecordError(JobStoreError):
    def __init__(self, job_id: str, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Job record {job_id} changed concurrently "
            f"(have version {expected}, store has {actual})",
            job_id,
        )


class BaseJobStore(ABC):
    """Interface that all job store backends must implement."""

    @abstractmethod
    async def create(self, record: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def find_by_id(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def save(self, record: JobRecord) -> JobRecord:
        """Persist ``record`` if its version matches the stored one.

        Bumps ``record.version`` and ``record.updated_at`` in place and
        returns the record. Raises StaleRecordError on a version mismatch
        and RecordNotFoundError if the record was never created.
        """
        ...

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> list[JobRecord]:
        ...
