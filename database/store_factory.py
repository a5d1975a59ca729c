"""
Store Factory — build a flow store backend from the `database` settings.

    database:
      url: "sqlite:///./convoflow.db"   # postgresql:// | mysql:// | sqlite://
      store_backend: "memory"           # "sql" | "memory" | "file"
      store_file_dir: "./data"          # file backend only

Every call returns a new store. The caller owns it and closes it; in a
running process that is FlowRuntime.
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseFlowStore

logger = structlog.get_logger()

BACKENDS = ("sql", "memory", "file")


def create_store(config: Optional[DatabaseConfig] = None) -> BaseFlowStore:
    config = config or DatabaseConfig()
    backend = (config.store_backend or "memory").lower()
    if backend not in BACKENDS:
        raise ValueError(f"Unknown store backend {backend!r}; expected one of {', '.join(BACKENDS)}")

    if backend == "sql":
        from database.store import SqlFlowStore
        store = SqlFlowStore(db_url=config.url)
        logger.info("store_created", backend=backend, url=config.url.split("@")[-1])
    elif backend == "file":
        from database.store_file import FileFlowStore
        store = FileFlowStore(data_dir=config.store_file_dir)
        logger.info("store_created", backend=backend, data_dir=config.store_file_dir)
    else:
        from database.store_memory import InMemoryFlowStore
        store = InMemoryFlowStore()
        logger.info("store_created", backend=backend)
    return store
