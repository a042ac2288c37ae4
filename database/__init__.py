"""
Database layer: Job record persistence.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_job_store
  store = create_job_store()
  record = await store.find_by_id("job-1")
"""
from database.store_base import (
    BaseJobStore, JobStoreError, RecordNotFoundError, StaleRecordError,
)
from database.store_memory import InMemoryJobStore
from database.store_file import FileJobStore
from database.store_factory import create_job_store

__all__ = [
    # Store interface
    "BaseJobStore", "JobStoreError", "RecordNotFoundError", "StaleRecordError",
    # Store backends
    "InMemoryJobStore", "FileJobStore",
    # Factory
    "create_job_store",
]
