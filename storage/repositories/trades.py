"""
Trade Repository.

============================================================
PURPOSE
============================================================
Lookup and persistence for reconstructed trades.

============================================================
LOOKUP KEYS
============================================================
- external_id     unique per (user, exchange); idempotent inserts
- order_id        open trade built from an opening order's fills
- close_order_id  closing order already applied (replay guard)
- symbol/side     FIFO candidates for closure and position upserts

============================================================
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from storage.models.journal import Trade, TradeStatus
from storage.repositories.base import BaseRepository


class TradeRepository(BaseRepository[Trade]):
    """Repository for trades."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Trade, "TradeRepository")

    # =========================================================
    # LOOKUPS
    # =========================================================

    def get(self, trade_id: int) -> Optional[Trade]:
        return self._get(trade_id)

    def get_by_external_id(self, user_id: int, exchange: str, external_id: str) -> Optional[Trade]:
        stmt = select(Trade).where(
            Trade.user_id == user_id,
            Trade.exchange == exchange,
            Trade.external_id == external_id,
        )
        return self._execute_scalar(stmt)

    def find_open_by_order(self, user_id: int, exchange: str, order_id: str) -> Optional[Trade]:
        """Open trade seeded by `order_id`, if any."""
        stmt = (
            select(Trade)
            .where(
                Trade.user_id == user_id,
                Trade.exchange == exchange,
                Trade.order_id == order_id,
                Trade.status == TradeStatus.OPEN.value,
            )
            .order_by(Trade.id)
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def find_by_close_order(self, user_id: int, exchange: str, close_order_id: str) -> Optional[Trade]:
        stmt = (
            select(Trade)
            .where(
                Trade.user_id == user_id,
                Trade.exchange == exchange,
                Trade.close_order_id == close_order_id,
            )
            .order_by(Trade.id)
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def list_open(
        self,
        user_id: int,
        exchange: str,
        symbol: Optional[str] = None,
        side: Optional[str] = None,
    ) -> List[Trade]:
        """Open trades, oldest first."""
        stmt = select(Trade).where(
            Trade.user_id == user_id,
            Trade.exchange == exchange,
            Trade.status == TradeStatus.OPEN.value,
        )
        if symbol is not None:
            stmt = stmt.where(Trade.symbol == symbol)
        if side is not None:
            stmt = stmt.where(Trade.side == side)
        return self._execute_query(stmt.order_by(Trade.entry_time, Trade.id))

    def list_for_user(self, user_id: int, exchange: Optional[str] = None) -> List[Trade]:
        stmt = select(Trade).where(Trade.user_id == user_id)
        if exchange is not None:
            stmt = stmt.where(Trade.exchange == exchange)
        return self._execute_query(stmt.order_by(Trade.entry_time, Trade.id))

    def open_symbols(self) -> List[str]:
        stmt = (
            select(Trade.symbol)
            .where(Trade.status == TradeStatus.OPEN.value)
            .distinct()
            .order_by(Trade.symbol)
        )
        return [row[0] for row in self._execute_rows(stmt)]

    def symbols_traded_since(self, since: datetime) -> List[str]:
        """Distinct symbols with a trade entered at or after `since`."""
        stmt = (
            select(Trade.symbol)
            .where(Trade.entry_time >= since)
            .distinct()
            .order_by(Trade.symbol)
        )
        return [row[0] for row in self._execute_rows(stmt)]

    # =========================================================
    # WRITES
    # =========================================================

    def create_trade(self, trade: Trade) -> Optional[Trade]:
        """
        Insert a trade.

        Returns:
            The trade, or None if (user, exchange, external_id) exists
        """
        if self.get_by_external_id(trade.user_id, trade.exchange, trade.external_id) is not None:
            return None
        return self._add_if_absent(trade)

    def flush(self) -> None:
        self._session.flush()

    # =========================================================
    # RETENTION
    # =========================================================

    def count(self) -> int:
        return self._count()

    def count_entered_before(self, cutoff: datetime) -> int:
        return self._count(Trade.entry_time < cutoff)

    def delete_entered_before(self, cutoff: datetime, batch_size: int = 1000) -> int:
        """Delete trades entered before `cutoff` in id batches."""
        total = 0
        while True:
            ids = [
                row[0] for row in self._execute_rows(
                    select(Trade.id)
                    .where(Trade.entry_time < cutoff)
                    .order_by(Trade.id)
                    .limit(batch_size)
                )
            ]
            if not ids:
                break
            total += self._execute_delete(delete(Trade).where(Trade.id.in_(ids)))
            self._session.flush()
            self._logger.debug(f"Deleted batch of {len(ids)} trades")
        return total
