"""
Persistence package for directory access records.

- base: AccessStore interface (keyed reads, conditional writes, change feed).
- postgres: asyncpg implementation using LISTEN/NOTIFY for live changes.
- memory: in-process document store for local runs and tests.
"""

from .base import AccessStore
from .memory import InMemoryAccessStore
from .postgres import PostgresAccessStore

__all__ = ["AccessStore", "InMemoryAccessStore", "PostgresAccessStore"]
