"""
Store Factory: Create the right job store backend from configuration.

Configuration in settings.yaml:
    database:
      # Job store backend
      #   "memory"  : In-memory dicts (development, testing)
      #   "file"    : JSON file on disk (small deployments, demos)
      store_backend: "memory"

      # For file backend: directory path
      store_file_dir: "./data"

Usage:
    from database.store_factory import create_job_store
    store = create_job_store(settings.database)
"""
from __future__ import annotations

import structlog

from config.settings import DatabaseConfig
from database.store_base import BaseJobStore

logger = structlog.get_logger()


def create_job_store(config: DatabaseConfig = None) -> BaseJobStore:
    """Factory: create the configured job store backend."""
    config = config or DatabaseConfig()
    backend = config.store_backend

    if backend == "file":
        from database.store_file import FileJobStore
        store = FileJobStore(data_dir=config.store_file_dir)
        logger.info("store_created", backend="file", data_dir=config.store_file_dir)
        return store

    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend, fallback="memory")

    from database.store_memory import InMemoryJobStore
    store = InMemoryJobStore()
    logger.info("store_created", backend="memory")
    return store
