"""
Exchange Client - Base Adapter Interface.

============================================================
PURPOSE
============================================================
Abstract interface every exchange adapter implements, plus
the exchange-neutral record types it returns.

Reconciliation, streaming and market-structure code depend
only on this module, never on a concrete adapter.

============================================================
OPERATIONS
============================================================
- fetch_executions     (signed, cursor-paged)
- fetch_positions      (signed)
- fetch_closed_pnl     (signed, cursor-paged)
- fetch_kline          (public)
- fetch_wallet_balance (signed)
- sign_request

============================================================
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar


logger = logging.getLogger(__name__)


T = TypeVar("T")


# ============================================================
# HELPERS
# ============================================================

def ms_to_datetime(value: Any) -> datetime:
    """Convert an epoch-milliseconds value (int or str) to an aware UTC datetime."""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    """Parse a provider numeric string; empty values map to `default`."""
    if value is None or value == "":
        return Decimal(default)
    return Decimal(str(value))


# ============================================================
# RECORD TYPES
# ============================================================

@dataclass
class ExecutionRecord:
    """One fill reported by the exchange."""

    execution_id: str
    """Exchange execution identifier."""

    order_id: str
    """Parent order identifier."""

    symbol: str
    """Trading symbol."""

    side: str
    """Fill side: buy or sell."""

    quantity: Decimal
    """Filled quantity."""

    price: Decimal
    """Fill price."""

    execution_time: datetime
    """Fill timestamp (UTC)."""

    closed_size: Decimal = Decimal("0")
    """Portion of the fill that reduced an existing position."""

    fee: Decimal = Decimal("0")
    """Fee charged for the fill."""

    fee_currency: Optional[str] = None

    exec_type: str = "Trade"
    """Trade, Funding, BustTrade, Settle, ..."""

    exec_pnl: Optional[Decimal] = None
    """Realized PnL attached to the fill (push stream only)."""

    category: Optional[str] = None

    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_trade(self) -> bool:
        return self.exec_type == "Trade"

    @property
    def is_closing(self) -> bool:
        return self.closed_size > 0


@dataclass
class PositionRecord:
    """Current open position for one symbol."""

    symbol: str
    side: str
    """buy (long) or sell (short); empty for a flat position."""

    size: Decimal
    entry_price: Decimal
    unrealized_pnl: Decimal = Decimal("0")
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    category: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_flat(self) -> bool:
        return self.size == 0


@dataclass
class ClosedPnLRecord:
    """Realized result of a closing order."""

    order_id: str
    symbol: str
    side: str
    """Side of the closing order."""

    closed_size: Decimal
    avg_entry_price: Decimal
    avg_exit_price: Decimal
    closed_pnl: Decimal
    open_fee: Decimal = Decimal("0")
    close_fee: Decimal = Decimal("0")
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_fee(self) -> Decimal:
        return self.open_fee + self.close_fee


@dataclass
class Candle:
    """One OHLCV bar."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open


@dataclass
class WalletBalance:
    """Account wallet summary."""

    account_type: str
    total_equity: Decimal
    total_available: Decimal = Decimal("0")
    coins: Dict[str, Decimal] = field(default_factory=dict)
    """Wallet balance per coin."""


@dataclass
class Page(Generic[T]):
    """One page of a cursor-paged listing."""

    items: List[T]
    next_cursor: Optional[str] = None

    def is_last(self, limit: int) -> bool:
        """A short page or a missing cursor ends the listing."""
        return len(self.items) < limit or not self.next_cursor


# ============================================================
# EXCHANGE ADAPTER INTERFACE
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract interface for exchange adapters.

    Implementations perform NO retry. Failures surface as
    `ExchangeException` and callers decide retry policy.
    """

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Exchange identifier (e.g. bybit)."""
        pass

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Open underlying resources."""
        return None

    async def close(self) -> None:
        """Release underlying resources."""
        return None

    async def __aenter__(self) -> "ExchangeAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    @abstractmethod
    def sign_request(self, timestamp: str, payload: str) -> str:
        """
        Sign a request payload.

        Args:
            timestamp: Millisecond timestamp string
            payload: Query string or JSON body

        Returns:
            Hex signature
        """
        pass

    # --------------------------------------------------------
    # ACCOUNT DATA
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_executions(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        symbol: Optional[str] = None,
    ) -> Page[ExecutionRecord]:
        """Fetch one page of executions."""
        pass

    @abstractmethod
    async def fetch_positions(
        self,
        category: str,
        symbol: Optional[str] = None,
    ) -> List[PositionRecord]:
        """Fetch current positions."""
        pass

    @abstractmethod
    async def fetch_closed_pnl(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Page[ClosedPnLRecord]:
        """Fetch one page of closed-PnL records."""
        pass

    @abstractmethod
    async def fetch_wallet_balance(
        self,
        account_type: str = "UNIFIED",
    ) -> WalletBalance:
        """Fetch wallet balance."""
        pass

    # --------------------------------------------------------
    # MARKET DATA
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_kline(
        self,
        symbol: str,
        interval: str,
        limit: int = 200,
        category: str = "linear",
    ) -> List[Candle]:
        """Fetch candles sorted ascending by timestamp."""
        pass
