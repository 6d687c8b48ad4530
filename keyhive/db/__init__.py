"""Database layer."""

from keyhive.db.session import close_db, get_async_session, init_db
from keyhive.db.transaction import atomic

__all__ = ["atomic", "close_db", "get_async_session", "init_db"]
