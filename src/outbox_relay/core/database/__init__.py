"""Database access layer."""

from .adapter import (
    DatabaseAdapter,
    DatabaseConfig,
    affected_rows,
    close_database,
    get_database,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseConfig",
    "affected_rows",
    "close_database",
    "get_database",
]
