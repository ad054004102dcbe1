"""
Execution Repository.

============================================================
PURPOSE
============================================================
Append-only store of raw fills, deduplicated on
(exchange, execution_id).

============================================================
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storage.models.journal import Execution
from storage.repositories.base import BaseRepository


class ExecutionRepository(BaseRepository[Execution]):
    """Repository for raw executions."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, Execution, "ExecutionRepository")

    def exists(self, exchange: str, execution_id: str) -> bool:
        stmt = select(Execution.id).where(
            Execution.exchange == exchange,
            Execution.execution_id == execution_id,
        )
        return self._execute_scalar(stmt) is not None

    def record_execution(self, execution: Execution) -> Optional[Execution]:
        """
        Insert a raw fill.

        Returns:
            The stored row, or None if the fill was already recorded
        """
        if self.exists(execution.exchange, execution.execution_id):
            return None
        return self._add_if_absent(execution)

    def active_symbols(self, since: datetime, min_count: int = 3) -> List[str]:
        """Symbols with at least `min_count` trade fills since `since`."""
        stmt = (
            select(Execution.symbol)
            .where(
                Execution.exec_type == "Trade",
                Execution.execution_time >= since,
            )
            .group_by(Execution.symbol)
            .having(func.count(Execution.id) >= min_count)
            .order_by(Execution.symbol)
        )
        return [row[0] for row in self._execute_rows(stmt)]

    def count(self) -> int:
        return self._count()
