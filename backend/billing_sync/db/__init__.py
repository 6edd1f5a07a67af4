"""Database package"""

from billing_sync.db.session import AsyncSessionLocal, engine, get_db, session_scope
from billing_sync.models.base import Base

__all__ = ["Base", "AsyncSessionLocal", "engine", "get_db", "session_scope"]
