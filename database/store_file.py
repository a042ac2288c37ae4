"""
FileJobStore: JSON file-backed job store with persistence across restarts.

Data layout:
  {data_dir}/
    jobs.json

Features:
  - Survives process restarts (unlike InMemoryJobStore), so retry counts
    kept on the record outlive the worker process
  - No external dependencies (no database server)
  - Writes go through a temp file and rename
  - Single-process only (no concurrent write safety across processes)
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from database.store_memory import InMemoryJobStore

logger = structlog.get_logger()


class FileJobStore(InMemoryJobStore):
    """
    Extends InMemoryJobStore with JSON file persistence.

    On init: loads all records from disk into memory.
    On every write: flushes the collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_job_store_initialized",
                    data_dir=str(self._data_dir), records=len(self._jobs))

    @property
    def path(self) -> Path:
        return self._data_dir / "jobs.json"

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_job_store_load_error", path=str(self.path), error=str(e))
            return
        if isinstance(data, dict):
            self._jobs = data

    def _on_write(self) -> None:
        self.flush()

    def flush(self):
        """Write all records to disk."""
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(self._jobs, f, indent=2, default=str)
        tmp_path.replace(self.path)  # atomic on POSIX
