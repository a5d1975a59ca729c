"""
Database layer — Multi-backend persistence for flows, queue and timers.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  state = await store.get_state("contact-1", "welcome")
"""
from database.models import (
    Base, FlowDefinitionRow, FlowStateRow, OutboundMessageRow,
    FlowTimerRow, MessageHistoryRow, FlowEventRow,
)
from database.session import (
    get_engine, get_session, init_db, close_db, create_session_factory,
)
from database.store_base import BaseFlowStore
from database.store import SqlFlowStore
from database.store_memory import InMemoryFlowStore
from database.store_file import FileFlowStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "FlowDefinitionRow", "FlowStateRow", "OutboundMessageRow",
    "FlowTimerRow", "MessageHistoryRow", "FlowEventRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "create_session_factory",
    # Store interface
    "BaseFlowStore",
    # Store backends
    "SqlFlowStore", "InMemoryFlowStore", "FileFlowStore",
    # Factory
    "create_store",
]
