"""
Reconciliation - Fill Aggregator.

============================================================
PURPOSE
============================================================
Folds raw executions into Trade aggregates.

============================================================
RULES (per execution, ascending execution time)
============================================================
1. exec_type != "Trade"          -> ignored (funding, settlement)
2. symbol outside symbols_filter -> ignored
3. non-positive qty / price      -> counted as malformed, skipped
4. (exchange, execution_id) seen -> no-op
5. RawExecution row persisted
6. opening fill (closed_size == 0):
   - open trade holds order_id   -> volume-weighted update
   - otherwise                   -> new open trade, external_id = order_id
7. closing fill (closed_size > 0):
   - trade closed by this order  -> fee accumulated
   - otherwise                   -> oldest opposite-side open trade
                                    on the symbol is closed (FIFO)

============================================================
"""

import logging
from decimal import Decimal
from typing import Sequence

from sqlalchemy.orm import Session

from exchange.base import ExecutionRecord
from reconciliation.types import AggregationStats, ConnectionSettings
from storage.models.journal import Execution, Trade, TradeSource, TradeStatus
from storage.repositories.executions import ExecutionRepository
from storage.repositories.trades import TradeRepository


logger = logging.getLogger(__name__)


def opposite_side(side: str) -> str:
    return "sell" if side == "buy" else "buy"


def gross_pnl(side: str, entry_price: Decimal, exit_price: Decimal, size: Decimal) -> Decimal:
    """Price-difference PnL before fees for a long (buy) or short (sell)."""
    if side == "buy":
        return (exit_price - entry_price) * size
    return (entry_price - exit_price) * size


class FillAggregator:
    """
    Applies pages of executions for one (user, exchange).

    The caller owns the transaction; everything here only flushes.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        exchange: str,
        settings: ConnectionSettings = None,
    ) -> None:
        self._user_id = user_id
        self._exchange = exchange
        self._settings = settings or ConnectionSettings()
        self._session = session
        self._executions = ExecutionRepository(session)
        self._trades = TradeRepository(session)

    def apply_page(self, records: Sequence[ExecutionRecord]) -> AggregationStats:
        stats = AggregationStats()

        for record in sorted(records, key=lambda r: (r.execution_time, r.execution_id)):
            stats.executions_seen += 1

            if not record.is_trade:
                stats.skipped_non_trade += 1
                continue

            if not self._settings.allows_symbol(record.symbol):
                stats.filtered += 1
                continue

            if record.quantity <= 0 or record.price <= 0:
                self._reject(record, stats, "non-positive quantity or price")
                continue

            try:
                # the raw row and its trade effect commit or roll back together
                with self._session.begin_nested():
                    if self._executions.record_execution(self._to_row(record)) is None:
                        stats.duplicates += 1
                        continue
                    if record.is_closing:
                        self._apply_closing_fill(record, stats)
                    else:
                        self._apply_opening_fill(record, stats)
                    # sessions run with autoflush off; later lookups filter on status
                    self._trades.flush()
            except ValueError as e:
                self._reject(record, stats, str(e))
                continue
            stats.executions_recorded += 1

        return stats

    def _reject(self, record: ExecutionRecord, stats: AggregationStats, reason: str) -> None:
        stats.malformed += 1
        logger.warning(
            f"Skipping execution {record.execution_id} on {record.symbol}: {reason}",
            extra={"user_id": self._user_id, "exchange": self._exchange},
        )

    # ---------------------------------------------------------
    # OPENING FILLS
    # ---------------------------------------------------------

    def _apply_opening_fill(self, record: ExecutionRecord, stats: AggregationStats) -> None:
        trade = self._trades.find_open_by_order(self._user_id, self._exchange, record.order_id)
        if trade is not None:
            trade.apply_fill(record.quantity, record.price, record.fee)
            stats.trades_updated += 1
            return

        created = self._trades.create_trade(Trade(
            user_id=self._user_id,
            exchange=self._exchange,
            symbol=record.symbol,
            side=record.side,
            size=record.quantity,
            entry_price=record.price,
            entry_time=record.execution_time,
            external_id=record.order_id,
            order_id=record.order_id,
            fee=record.fee,
            status=TradeStatus.OPEN.value,
            source=TradeSource.FILLS.value,
            raw_data=record.raw or None,
        ))
        if created is None:
            # external_id taken by a trade that is already closed
            logger.warning(
                f"Order {record.order_id} already journaled as closed trade, "
                f"fill {record.execution_id} not applied"
            )
            return
        stats.trades_opened += 1

    # ---------------------------------------------------------
    # CLOSING FILLS
    # ---------------------------------------------------------

    def _apply_closing_fill(self, record: ExecutionRecord, stats: AggregationStats) -> None:
        already_closed = self._trades.find_by_close_order(
            self._user_id, self._exchange, record.order_id
        )
        if already_closed is not None:
            already_closed.add_fee(record.fee)
            stats.trades_updated += 1
            return

        candidates = self._trades.list_open(
            self._user_id,
            self._exchange,
            symbol=record.symbol,
            side=opposite_side(record.side),
        )
        if not candidates:
            logger.warning(
                f"No open {opposite_side(record.side)} trade on {record.symbol} "
                f"for closing fill {record.execution_id}",
                extra={"user_id": self._user_id, "exchange": self._exchange},
            )
            stats.unmatched_closes += 1
            return

        trade = candidates[0]
        trade.close(
            exit_price=record.price,
            exit_time=record.execution_time,
            realized_pnl=gross_pnl(trade.side, trade.entry_price, record.price, record.closed_size),
            fee=(trade.fee or Decimal("0")) + record.fee,
            close_order_id=record.order_id,
        )
        stats.trades_closed += 1

    def _to_row(self, record: ExecutionRecord) -> Execution:
        return Execution(
            user_id=self._user_id,
            exchange=self._exchange,
            execution_id=record.execution_id,
            order_id=record.order_id,
            symbol=record.symbol,
            side=record.side,
            quantity=record.quantity,
            price=record.price,
            closed_size=record.closed_size,
            fee=record.fee,
            fee_currency=record.fee_currency,
            exec_type=record.exec_type,
            execution_time=record.execution_time,
            raw_data=record.raw or None,
        )
