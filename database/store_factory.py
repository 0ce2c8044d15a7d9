"""
Builds the call store named by ``database.store_backend``.

  sql     SqlCallStore over ``database.url`` (engine bound by init_db)
  file    FileCallStore under ``database.store_file_dir``
  memory  InMemoryCallStore (default; also used for unknown names)
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig, get_settings
from database.store_base import BaseCallStore

logger = structlog.get_logger()

STORE_BACKENDS = ("sql", "file", "memory")


def create_store(config: Optional[DatabaseConfig] = None) -> BaseCallStore:
    config = config or DatabaseConfig()
    backend = (config.store_backend or "memory").lower()

    if backend == "sql":
        from database.store import SqlCallStore
        store: BaseCallStore = SqlCallStore()
        logger.info("store_created", backend="sql")
        return store

    if backend == "file":
        from database.store_file import FileCallStore
        store = FileCallStore(
            data_dir=config.store_file_dir,
            flush_interval_s=config.flush_interval_s,
        )
        logger.info("store_created", backend="file",
                    data_dir=config.store_file_dir, flush_interval_s=config.flush_interval_s)
        return store

    if backend not in STORE_BACKENDS:
        logger.warning("store_backend_unknown", backend=backend, fallback="memory")

    from database.store_memory import InMemoryCallStore
    logger.info("store_created", backend="memory")
    return InMemoryCallStore()


def create_configured_store() -> BaseCallStore:
    return create_store(get_settings().database)
