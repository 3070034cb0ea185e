"""Database utilities for the Clinx relay."""

from .retry import with_store_retry, with_store_retry_async
from .session import SessionLocal, get_db

__all__ = ["SessionLocal", "get_db", "with_store_retry", "with_store_retry_async"]
