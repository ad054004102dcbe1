"""
Shared fixtures: in-memory journal database, connections,
fill and candle builders.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest

from exchange.base import Candle, ClosedPnLRecord, ExecutionRecord, PositionRecord
from storage.database import DatabaseConfig, create_database_engine, create_session_factory, init_db
from storage.repositories.connections import ConnectionRepository


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def engine():
    engine = create_database_engine(DatabaseConfig(url="sqlite:///:memory:"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_connection(session_factory):
    def _make(
        user_id: int = 1,
        exchange: str = "mock",
        sync_settings: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
        last_sync_at: Optional[datetime] = None,
        last_execution_time: Optional[datetime] = None,
    ):
        with session_factory() as session:
            connection = ConnectionRepository(session).create_connection(
                user_id, exchange, sync_settings=sync_settings, is_active=is_active
            )
            connection.last_sync_at = last_sync_at
            connection.last_execution_time = last_execution_time
            session.commit()
            return connection
    return _make


def make_fill(
    execution_id: str,
    order_id: str,
    side: str,
    quantity,
    price,
    at: datetime,
    symbol: str = "BTCUSDT",
    closed_size="0",
    fee="0",
    exec_type: str = "Trade",
    exec_pnl=None,
) -> ExecutionRecord:
    return ExecutionRecord(
        execution_id=execution_id,
        order_id=order_id,
        symbol=symbol,
        side=side,
        quantity=Decimal(str(quantity)),
        price=Decimal(str(price)),
        execution_time=at,
        closed_size=Decimal(str(closed_size)),
        fee=Decimal(str(fee)),
        exec_type=exec_type,
        exec_pnl=Decimal(str(exec_pnl)) if exec_pnl is not None else None,
    )


def make_closed_pnl(
    order_id: str,
    side: str,
    size,
    entry,
    exit_price,
    pnl,
    at: datetime,
    symbol: str = "BTCUSDT",
    open_fee="0",
    close_fee="0",
) -> ClosedPnLRecord:
    return ClosedPnLRecord(
        order_id=order_id,
        symbol=symbol,
        side=side,
        closed_size=Decimal(str(size)),
        avg_entry_price=Decimal(str(entry)),
        avg_exit_price=Decimal(str(exit_price)),
        closed_pnl=Decimal(str(pnl)),
        open_fee=Decimal(str(open_fee)),
        close_fee=Decimal(str(close_fee)),
        created_time=at,
        updated_time=at,
    )


def make_position(symbol: str, side: str, size, entry, at: Optional[datetime] = None, upnl="0") -> PositionRecord:
    return PositionRecord(
        symbol=symbol,
        side=side,
        size=Decimal(str(size)),
        entry_price=Decimal(str(entry)),
        unrealized_pnl=Decimal(str(upnl)),
        created_time=at,
        updated_time=at,
    )


def make_candle(index: int, open_, high, low, close, volume=100.0, start: datetime = NOW) -> Candle:
    return Candle(
        timestamp=start + timedelta(hours=index),
        open=float(open_),
        high=float(high),
        low=float(low),
        close=float(close),
        volume=float(volume),
    )


def flat_candles(count: int, price: float = 100.0, start: datetime = NOW) -> list:
    """Doji candles with a small range around `price`."""
    return [
        make_candle(i, price, price + 0.5, price - 0.5, price, start=start)
        for i in range(count)
    ]
