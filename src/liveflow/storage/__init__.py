"""Table stores holding rows, commit history and checkpoints of live tables."""

from .base import CommitGuard, CommitInfo, CommitRequest, CommitSlice, TableStore
from .factory import create_store
from .memory import InMemoryTableStore
from .sql import SQLTableStore, create_sql_engine

__all__ = [
    "CommitGuard",
    "CommitInfo",
    "CommitRequest",
    "CommitSlice",
    "TableStore",
    "InMemoryTableStore",
    "SQLTableStore",
    "create_sql_engine",
    "create_store",
]
