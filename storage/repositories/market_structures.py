"""
Market Structure Repository.

============================================================
PURPOSE
============================================================
Append-only snapshots keyed by (symbol, timeframe, timestamp)
plus the age/activity based pruning queries used by retention.

============================================================
"""

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from storage.models.journal import MarketStructure
from storage.repositories.base import BaseRepository


class MarketStructureRepository(BaseRepository[MarketStructure]):
    """Repository for market-structure snapshots."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, MarketStructure, "MarketStructureRepository")

    def latest(self, symbol: str, timeframe: str) -> Optional[MarketStructure]:
        stmt = (
            select(MarketStructure)
            .where(
                MarketStructure.symbol == symbol,
                MarketStructure.timeframe == timeframe,
            )
            .order_by(MarketStructure.timestamp.desc(), MarketStructure.id.desc())
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def save_snapshot(self, snapshot: MarketStructure) -> Optional[MarketStructure]:
        """Insert a snapshot; an existing row with the same key wins."""
        return self._add_if_absent(snapshot)

    def list_for_pair(self, symbol: str, timeframe: str) -> List[MarketStructure]:
        stmt = (
            select(MarketStructure)
            .where(MarketStructure.symbol == symbol, MarketStructure.timeframe == timeframe)
            .order_by(MarketStructure.timestamp)
        )
        return self._execute_query(stmt)

    def count(self) -> int:
        return self._count()

    # =========================================================
    # PRUNING
    # =========================================================

    def prune_pair(self, symbol: str, timeframe: str, cutoff: datetime) -> int:
        """Delete snapshots of one pair older than `cutoff`."""
        return self._execute_delete(
            delete(MarketStructure).where(
                MarketStructure.symbol == symbol,
                MarketStructure.timeframe == timeframe,
                MarketStructure.timestamp < cutoff,
            )
        )

    def count_timeframe_before(self, timeframe: str, cutoff: datetime) -> int:
        return self._count(
            MarketStructure.timeframe == timeframe,
            MarketStructure.timestamp < cutoff,
        )

    def delete_timeframe_before(self, timeframe: str, cutoff: datetime) -> int:
        return self._execute_delete(
            delete(MarketStructure).where(
                MarketStructure.timeframe == timeframe,
                MarketStructure.timestamp < cutoff,
            )
        )

    def inactive_symbols(self, active_symbols: Sequence[str], cutoff: datetime) -> List[str]:
        """Symbols outside `active_symbols` that have rows older than `cutoff`."""
        stmt = (
            select(MarketStructure.symbol)
            .where(
                MarketStructure.symbol.not_in(list(active_symbols)),
                MarketStructure.timestamp < cutoff,
            )
            .distinct()
            .order_by(MarketStructure.symbol)
        )
        return [row[0] for row in self._execute_rows(stmt)]

    def count_inactive_before(self, active_symbols: Sequence[str], cutoff: datetime) -> int:
        return self._count(
            MarketStructure.symbol.not_in(list(active_symbols)),
            MarketStructure.timestamp < cutoff,
        )

    def delete_inactive_before(self, active_symbols: Sequence[str], cutoff: datetime) -> int:
        return self._execute_delete(
            delete(MarketStructure).where(
                MarketStructure.symbol.not_in(list(active_symbols)),
                MarketStructure.timestamp < cutoff,
            )
        )
