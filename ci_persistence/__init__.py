"""
CI Persistence module.

This module contains the database implementation of the CI repository.
Currently supports SQLite, but can be extended to PostgreSQL, MySQL, etc.

The persistence layer depends on ci_common for domain models and interfaces,
and is used by ci_server and ci_admin.
"""

from .sqlite_repository import SQLiteCiRepository

__all__ = ["SQLiteCiRepository"]
