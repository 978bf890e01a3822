"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  record = await store.get_message("wamid.123")
"""
from database.models import (
    Base, CourseScheduleRow, LessonCursorRow, MessageContextRow, MessageRow, RevokedTokenRow,
)
from database.session import close_db, get_engine, get_session, init_db
from database.store import SqlStore
from database.store_base import BaseStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryStore

__all__ = [
    # ORM models
    "Base", "MessageRow", "MessageContextRow", "CourseScheduleRow",
    "LessonCursorRow", "RevokedTokenRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
