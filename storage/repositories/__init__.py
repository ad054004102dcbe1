"""
Repository Layer.

All journal reads and writes go through these classes. Each
takes an injected Session, flushes but never commits, and
re-raises SQLAlchemy failures as RepositoryError subclasses.

- ConnectionRepository: user exchange connections and sync cursors
- ExecutionRepository: raw fills, append-only
- TradeRepository: trades reconstructed from fills and positions
- MarketStructureRepository: detector snapshots
"""

from storage.repositories.base import BaseRepository
from storage.repositories.connections import ConnectionRepository
from storage.repositories.exceptions import (
    DuplicateRecordError,
    QueryError,
    RepositoryError,
    StorageUnavailableError,
)
from storage.repositories.executions import ExecutionRepository
from storage.repositories.market_structures import MarketStructureRepository
from storage.repositories.trades import TradeRepository


__all__ = [
    "BaseRepository",
    "ConnectionRepository",
    "ExecutionRepository",
    "MarketStructureRepository",
    "TradeRepository",
    "DuplicateRecordError",
    "QueryError",
    "RepositoryError",
    "StorageUnavailableError",
]
