"""
Exchange Client - Mock Adapter.

============================================================
PURPOSE
============================================================
In-memory adapter for tests and dry runs.

FEATURES:
- Scripted executions / positions / closed PnL / candles
- Cursor pagination identical in shape to the real adapter
- Error injection per operation and category
- Call recording

============================================================
"""

import hashlib
import hmac
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    ExchangeAdapter,
    ExecutionRecord,
    PositionRecord,
    ClosedPnLRecord,
    Candle,
    WalletBalance,
    Page,
)


logger = logging.getLogger(__name__)


@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    exchange_id: str = "mock"
    """Identifier reported by the adapter."""

    api_key: str = "mock-key"
    api_secret: str = "mock-secret"
    recv_window: int = 20000

    wallet_equity: Decimal = Decimal("1500")
    """Total equity returned by fetch_wallet_balance."""


@dataclass
class InjectedError:
    error: Exception
    category: Optional[str] = None
    remaining: int = 1


class MockExchangeAdapter(ExchangeAdapter):
    """
    Scripted exchange adapter.

    Example:
        adapter = MockExchangeAdapter()
        adapter.add_executions("linear", [fill1, fill2])
        adapter.inject_error("fetch_executions", ExchangeException(...), category="spot")
    """

    def __init__(self, config: MockConfig = None):
        self._config = config or MockConfig()

        self._executions: Dict[str, List[ExecutionRecord]] = defaultdict(list)
        self._closed_pnl: Dict[str, List[ClosedPnLRecord]] = defaultdict(list)
        self._positions: Dict[str, List[PositionRecord]] = defaultdict(list)
        self._klines: Dict[Tuple[str, str], List[Candle]] = {}

        self._errors: Dict[str, List[InjectedError]] = defaultdict(list)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.connected = False

    # --------------------------------------------------------
    # SCRIPTING
    # --------------------------------------------------------

    def add_executions(self, category: str, executions: List[ExecutionRecord]) -> None:
        self._executions[category].extend(executions)
        self._executions[category].sort(key=lambda e: e.execution_time)

    def add_closed_pnl(self, category: str, records: List[ClosedPnLRecord]) -> None:
        self._closed_pnl[category].extend(records)

    def set_positions(self, category: str, positions: List[PositionRecord]) -> None:
        self._positions[category] = list(positions)

    def set_klines(self, symbol: str, interval: str, candles: List[Candle]) -> None:
        self._klines[(symbol, interval)] = list(candles)

    def inject_error(
        self,
        operation: str,
        error: Exception,
        category: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Raise `error` from `operation` the next `times` calls (optionally per category)."""
        self._errors[operation].append(InjectedError(error, category, times))

    def call_count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        for injected in self._errors.get(operation, []):
            if injected.remaining <= 0:
                continue
            if injected.category is not None and injected.category != kwargs.get("category"):
                continue
            injected.remaining -= 1
            raise injected.error

    # --------------------------------------------------------
    # ADAPTER INTERFACE
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return self._config.exchange_id

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    def sign_request(self, timestamp: str, payload: str) -> str:
        message = f"{timestamp}{self._config.api_key}{self._config.recv_window}{payload}"
        return hmac.new(
            self._config.api_secret.encode(), message.encode(), hashlib.sha256
        ).hexdigest()

    @staticmethod
    def _paginate(items: List[Any], cursor: Optional[str], limit: int) -> Page:
        offset = int(cursor) if cursor else 0
        chunk = items[offset:offset + limit]
        next_offset = offset + limit
        next_cursor = str(next_offset) if next_offset < len(items) else None
        return Page(items=chunk, next_cursor=next_cursor)

    @staticmethod
    def _in_window(value: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
        if value is None:
            return True
        if start is not None and value < start:
            return False
        if end is not None and value > end:
            return False
        return True

    async def fetch_executions(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
        symbol: Optional[str] = None,
    ) -> Page[ExecutionRecord]:
        self._record(
            "fetch_executions",
            category=category,
            start_time=start_time,
            end_time=end_time,
            cursor=cursor,
            symbol=symbol,
        )
        items = [
            e for e in self._executions.get(category, [])
            if self._in_window(e.execution_time, start_time, end_time)
            and (symbol is None or e.symbol == symbol)
        ]
        return self._paginate(items, cursor, limit)

    async def fetch_positions(
        self,
        category: str,
        symbol: Optional[str] = None,
    ) -> List[PositionRecord]:
        self._record("fetch_positions", category=category, symbol=symbol)
        return [
            p for p in self._positions.get(category, [])
            if symbol is None or p.symbol == symbol
        ]

    async def fetch_closed_pnl(
        self,
        category: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Page[ClosedPnLRecord]:
        self._record(
            "fetch_closed_pnl",
            category=category,
            start_time=start_time,
            end_time=end_time,
            cursor=cursor,
        )
        items = [
            r for r in self._closed_pnl.get(category, [])
            if self._in_window(r.updated_time, start_time, end_time)
        ]
        return self._paginate(items, cursor, limit)

    async def fetch_wallet_balance(self, account_type: str = "UNIFIED") -> WalletBalance:
        self._record("fetch_wallet_balance", account_type=account_type)
        return WalletBalance(
            account_type=account_type,
            total_equity=self._config.wallet_equity,
            total_available=self._config.wallet_equity,
            coins={"USDT": self._config.wallet_equity},
        )

    async def fetch_kline(
        self,
        symbol: str,
        interval: str,
        limit: int = 200,
        category: str = "linear",
    ) -> List[Candle]:
        self._record("fetch_kline", symbol=symbol, interval=interval, category=category)
        candles = sorted(self._klines.get((symbol, interval), []), key=lambda c: c.timestamp)
        return candles[-limit:]
