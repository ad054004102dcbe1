"""
Trade Journal ORM Models.

============================================================
PURPOSE
============================================================
Models for the journal's durable state: exchange connections,
raw fills, reconstructed trades and market-structure snapshots.

============================================================
DATA LIFECYCLE ROLE
============================================================
- UserExchange:    mutable (sync cursors, active flag)
- Execution:       IMMUTABLE, append-only, deduped by (exchange, execution_id)
- Trade:           mutable while open, closed exactly once
- MarketStructure: append-only time series, pruned by age

============================================================
MODELS
============================================================
- UserExchange: One user's connection to one exchange
- Execution: Raw fill as reported by the exchange
- Trade: Round-trip trade reconstructed from fills / PnL / positions
- MarketStructure: Detector output for (symbol, timeframe, timestamp)

============================================================
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import (
    Base,
    JSONColumn,
    PrimaryKey,
    TimestampMixin,
    UTCDateTime,
    utcnow,
)


MONEY = Numeric(28, 10)


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class TradeSource(str, Enum):
    """Which reconciliation path created the trade."""

    FILLS = "fills"
    CLOSED_PNL = "closed_pnl"
    POSITION = "position"
    STREAM_SNAPSHOT = "stream_snapshot"
    STREAM_INFERRED = "stream_inferred"


class TradeStateError(ValueError):
    """Raised when a mutation is attempted on a closed trade."""


# ============================================================
# USER EXCHANGE
# ============================================================

class UserExchange(Base, TimestampMixin):
    """
    A user's connection to one exchange.

    Holds the sync cursors and the per-connection settings
    document. Credentials are NOT stored here.
    """

    __tablename__ = "user_exchanges"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, comment="Owning user")

    exchange: Mapped[str] = mapped_column(String(20), nullable=False, comment="Exchange name")

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False after an auth/permission failure"
    )

    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Completion time of the last successful full sync"
    )

    last_quick_sync_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Completion time of the last trailing-window quick sync"
    )

    last_execution_time: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="Newest execution time seen; next full sync starts here"
    )

    deactivation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    sync_settings: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSONColumn,
        nullable=True,
        comment="auto_sync, sync_interval_hours, symbols_filter, categories"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "exchange", name="uq_user_exchanges_user_exchange"),
    )

    def deactivate(self, reason: str) -> None:
        self.is_active = False
        self.deactivation_reason = reason[:255] if reason else None

    def __repr__(self) -> str:
        return f"<UserExchange user={self.user_id} exchange={self.exchange} active={self.is_active}>"


# ============================================================
# EXECUTION (RAW FILL)
# ============================================================

class Execution(Base):
    """
    Raw fill as reported by the exchange.

    Never updated after insert. The unique key makes replays
    of the same fill a no-op.
    """

    __tablename__ = "executions"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange: Mapped[str] = mapped_column(String(20), nullable=False)

    execution_id: Mapped[str] = mapped_column(String(100), nullable=False, comment="Exchange execution id")
    order_id: Mapped[str] = mapped_column(String(100), nullable=False)

    symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False, comment="buy, sell")

    quantity: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    closed_size: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    fee_currency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    exec_type: Mapped[str] = mapped_column(String(20), nullable=False, default="Trade")

    execution_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    raw_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONColumn, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("exchange", "execution_id", name="uq_executions_exchange_execution"),
        Index("ix_executions_user_symbol_time", "user_id", "exchange", "symbol", "execution_time"),
    )

    def __repr__(self) -> str:
        return f"<Execution {self.exchange}:{self.execution_id} {self.side} {self.quantity}@{self.price}>"


# ============================================================
# TRADE
# ============================================================

class Trade(Base, TimestampMixin):
    """
    Round-trip trade.

    ============================================================
    INVARIANTS
    ============================================================
    - size / entry_price change only through apply_fill while open
    - open -> closed is one-way; a closed trade is never reopened
    - external_id is unique per (user, exchange)

    ============================================================
    """

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    exchange: Mapped[str] = mapped_column(String(20), nullable=False)
    symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    side: Mapped[str] = mapped_column(String(10), nullable=False, comment="buy (long), sell (short)")

    size: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, comment="Volume-weighted entry")
    exit_price: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)

    entry_time: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    exit_time: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    external_id: Mapped[str] = mapped_column(String(120), nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="Opening order")
    close_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, comment="Closing order")

    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    unrealized_pnl: Mapped[Optional[Decimal]] = mapped_column(MONEY, nullable=True)
    fee: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))

    status: Mapped[str] = mapped_column(String(10), nullable=False, default=TradeStatus.OPEN.value)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=TradeSource.FILLS.value)

    raw_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONColumn, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "exchange", "external_id", name="uq_trades_user_exchange_external"),
        Index("ix_trades_open_symbol", "user_id", "exchange", "symbol", "status"),
        Index("ix_trades_entry_time", "entry_time"),
    )

    # --------------------------------------------------------
    # STATE
    # --------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN.value

    def _require_open(self, operation: str) -> None:
        if not self.is_open:
            raise TradeStateError(f"Cannot {operation} closed trade {self.external_id}")

    def apply_fill(self, quantity: Decimal, price: Decimal, fee: Decimal = Decimal("0")) -> None:
        """
        Fold one more fill into the open position.

        new_entry = (old_entry*old_size + price*qty) / (old_size + qty)
        """
        self._require_open("apply fill to")
        if quantity <= 0:
            raise ValueError(f"Fill quantity must be positive, got {quantity}")

        old_size = self.size or Decimal("0")
        old_entry = self.entry_price or Decimal("0")
        new_size = old_size + quantity

        self.entry_price = (old_entry * old_size + price * quantity) / new_size
        self.size = new_size
        self.fee = (self.fee or Decimal("0")) + fee

    def update_from_position(
        self,
        size: Decimal,
        entry_price: Decimal,
        unrealized_pnl: Decimal,
    ) -> None:
        """Overwrite live size/entry from an authoritative position snapshot."""
        self._require_open("update position of")
        self.size = size
        self.entry_price = entry_price
        self.unrealized_pnl = unrealized_pnl

    def close(
        self,
        exit_price: Decimal,
        exit_time: datetime,
        realized_pnl: Decimal,
        fee: Optional[Decimal] = None,
        close_order_id: Optional[str] = None,
    ) -> None:
        """
        Close the trade.

        Args:
            fee: Replaces the accumulated fee when given
        """
        self._require_open("close")
        self.exit_price = exit_price
        self.exit_time = exit_time
        self.realized_pnl = realized_pnl
        self.unrealized_pnl = None
        if fee is not None:
            self.fee = fee
        if close_order_id is not None:
            self.close_order_id = close_order_id
        self.status = TradeStatus.CLOSED.value

    def add_fee(self, fee: Decimal) -> None:
        self.fee = (self.fee or Decimal("0")) + fee

    def __repr__(self) -> str:
        return (
            f"<Trade {self.external_id} {self.symbol} {self.side} "
            f"size={self.size} entry={self.entry_price} status={self.status}>"
        )


# ============================================================
# MARKET STRUCTURE
# ============================================================

class MarketStructure(Base):
    """
    Market-structure snapshot for one (symbol, timeframe, timestamp).

    Rows are superseded by newer timestamps, never overwritten.
    """

    __tablename__ = "market_structures"

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True, autoincrement=True)

    symbol: Mapped[str] = mapped_column(String(30), nullable=False)
    timeframe: Mapped[str] = mapped_column(String(10), nullable=False, comment="5m, 15m, 1h, 4h, 1D")
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, comment="Computation time")

    order_blocks: Mapped[List[Dict[str, Any]]] = mapped_column(JSONColumn, nullable=False, default=list)
    liquidity_levels: Mapped[List[Dict[str, Any]]] = mapped_column(JSONColumn, nullable=False, default=list)
    fvg_zones: Mapped[List[Dict[str, Any]]] = mapped_column(JSONColumn, nullable=False, default=list)
    market_bias: Mapped[Dict[str, Any]] = mapped_column(JSONColumn, nullable=False, default=dict)

    high: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    low: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("symbol", "timeframe", "timestamp", name="uq_market_structures_key"),
        Index("ix_market_structures_timeframe_timestamp", "timeframe", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<MarketStructure {self.symbol} {self.timeframe} @ {self.timestamp}>"
