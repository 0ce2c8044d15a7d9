"""
Database layer: Multi-backend call record persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  call = await store.get_call("3f2a9c0d1b7e4a55")
"""
from database.models import Base, CallRow, TranscriptRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseCallStore
from database.store import SqlCallStore
from database.store_memory import InMemoryCallStore
from database.store_file import FileCallStore
from database.store_factory import create_store, create_configured_store

__all__ = [
    # ORM models
    "Base", "CallRow", "TranscriptRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseCallStore",
    # Store backends
    "SqlCallStore", "InMemoryCallStore", "FileCallStore",
    # Factory
    "create_store", "create_configured_store",
]
