"""Database engine, sessions and ORM models."""

from .connection import Database, get_async_database_url


__all__ = ["Database", "get_async_database_url"]
