"""
Reconciliation Engine Tests.

============================================================
PURPOSE
============================================================
Full and quick sync against the scripted adapter and an
in-memory journal.

TEST CATEGORIES:
- Fill aggregation: VWAP, FIFO closure, non-trade fills
- Idempotency: replayed pages and closed-PnL records
- Windows: 7-day chunking, cursor handling
- Failures: auth deactivation, per-category isolation
- Quick sync: closed-PnL closure, position upserts

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from exchange import ExchangeException, MockExchangeAdapter, create_network_error, map_bybit_error
from reconciliation import (
    ConnectionInactiveError,
    ConnectionSettings,
    CredentialError,
    InvalidSettingsError,
    ReconciliationEngine,
    SyncAuthError,
    SyncConfig,
    split_window,
)
from storage.database import transaction_scope
from storage.models.journal import Trade, TradeSource, TradeStatus
from storage.repositories import ConnectionRepository, ExecutionRepository, TradeRepository

from conftest import make_closed_pnl, make_fill, make_position


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def adapter():
    return MockExchangeAdapter()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def engine_for(session_factory, adapter, sleep):
    def _build(config=None, provider=None):
        return ReconciliationEngine(
            session_factory,
            provider or (lambda connection: adapter),
            config=config,
            sleep=sleep,
        )
    return _build


def trades(session_factory, user_id=1):
    with transaction_scope(session_factory) as session:
        return TradeRepository(session).list_for_user(user_id)


def connection_row(session_factory, user_id=1, exchange="mock"):
    with transaction_scope(session_factory) as session:
        return ConnectionRepository(session).get_for_user(user_id, exchange)


def seed_open_trade(session_factory, now, symbol="BTCUSDT", side="buy", size="2", entry="105", external_id="X"):
    with transaction_scope(session_factory) as session:
        TradeRepository(session).create_trade(Trade(
            user_id=1,
            exchange="mock",
            symbol=symbol,
            side=side,
            size=Decimal(size),
            entry_price=Decimal(entry),
            entry_time=now,
            external_id=external_id,
            order_id=external_id,
            status=TradeStatus.OPEN.value,
            source=TradeSource.FILLS.value,
        ))


# ============================================================
# WINDOWS
# ============================================================

class TestSplitWindow:
    """Tests for execution window chunking."""

    def test_chunks_never_exceed_span(self, now):
        chunks = list(split_window(now - timedelta(days=20), now, timedelta(days=7)))

        assert len(chunks) == 3
        assert chunks[0][0] == now - timedelta(days=20)
        assert chunks[-1][1] == now
        assert all(end - start <= timedelta(days=7) for start, end in chunks)
        assert all(a[1] == b[0] for a, b in zip(chunks, chunks[1:]))

    def test_empty_window(self, now):
        assert list(split_window(now, now, timedelta(days=7))) == []


# ============================================================
# FULL SYNC
# ============================================================

class TestFullSync:
    """Tests for full sync."""

    @pytest.mark.asyncio
    async def test_opening_fills_build_vwap_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=2)),
            make_fill("e2", "O1", "buy", 1, 110, now - timedelta(hours=1)),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.status == TradeStatus.OPEN.value
        assert trade.size == Decimal("2")
        assert trade.entry_price == Decimal("105")
        assert trade.external_id == "O1"
        assert result.fills.trades_opened == 1
        assert result.fills.trades_updated == 1
        assert connection_row(session_factory).last_execution_time == now - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_funding_execution_never_becomes_fill(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("f1", "F1", "buy", 1, 100, now - timedelta(hours=1), exec_type="Funding"),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        assert trades(session_factory) == []
        assert result.fills.skipped_non_trade == 1
        with transaction_scope(session_factory) as session:
            assert ExecutionRepository(session).count() == 0

    @pytest.mark.asyncio
    async def test_replayed_sync_is_idempotent(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=2)),
            make_fill("e2", "O1", "buy", 1, 110, now - timedelta(hours=1)),
        ])
        engine = engine_for()

        await engine.full_sync(1, "mock", now=now)
        second = await engine.full_sync(1, "mock", now=now + timedelta(minutes=5))

        [trade] = trades(session_factory)
        assert trade.size == Decimal("2")
        assert second.fills.executions_recorded == 0
        assert second.fills.duplicates >= 1

    @pytest.mark.asyncio
    async def test_closing_fill_closes_oldest_opposite_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=3), fee="0.1"),
            make_fill("e2", "O2", "buy", 1, 105, now - timedelta(hours=2), fee="0.1"),
            make_fill("e3", "C1", "sell", 1, 120, now - timedelta(hours=1), closed_size=1, fee="0.2"),
            make_fill("e4", "C1", "sell", 1, 120, now - timedelta(minutes=30), closed_size=1, fee="0.05"),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        first, second = trades(session_factory)
        assert first.status == TradeStatus.CLOSED.value
        assert first.exit_price == Decimal("120")
        assert first.realized_pnl == Decimal("20")
        assert first.close_order_id == "C1"
        assert first.fee == Decimal("0.35")
        assert second.status == TradeStatus.OPEN.value
        assert result.fills.trades_closed == 1

    @pytest.mark.asyncio
    async def test_non_positive_fill_is_skipped(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("E1", "O1", "buy", 1, 100, now - timedelta(hours=3)),
            make_fill("E2", "O1", "buy", 0, 101, now - timedelta(hours=2)),
            make_fill("E3", "O3", "sell", 2, 3000, now - timedelta(hours=1), symbol="ETHUSDT"),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        btc, eth = sorted(trades(session_factory), key=lambda t: t.symbol)
        assert btc.size == Decimal("1")
        assert btc.entry_price == Decimal("100")
        assert eth.side == "sell"
        assert eth.size == Decimal("2")
        assert result.fills.malformed == 1
        assert result.fills.executions_recorded == 2
        with transaction_scope(session_factory) as session:
            assert not ExecutionRepository(session).exists("mock", "E2")
        assert connection_row(session_factory).last_execution_time == now - timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_unmatched_close_is_counted(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("e1", "C1", "sell", 1, 120, now - timedelta(hours=1), closed_size=1),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        assert trades(session_factory) == []
        assert result.fills.unmatched_closes == 1

    @pytest.mark.asyncio
    async def test_symbols_filter(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection(sync_settings={"symbols_filter": ["btcusdt"]})
        adapter.add_executions("linear", [
            make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=1)),
            make_fill("e2", "O2", "buy", 1, 3000, now - timedelta(hours=1), symbol="ETHUSDT"),
        ])

        result = await engine_for().full_sync(1, "mock", now=now)

        assert [t.symbol for t in trades(session_factory)] == ["BTCUSDT"]
        assert result.fills.filtered == 1

    @pytest.mark.asyncio
    async def test_long_gap_is_fetched_in_seven_day_chunks(self, make_connection, adapter, engine_for, now):
        make_connection(last_execution_time=now - timedelta(days=20))

        await engine_for().full_sync(1, "mock", now=now)

        windows = [(c["start_time"], c["end_time"]) for name, c in adapter.calls if name == "fetch_executions"]
        assert len(windows) == 3
        assert all(end - start <= timedelta(days=7) for start, end in windows)
        assert windows[0][0] == now - timedelta(days=20)
        assert windows[-1][1] == now

    @pytest.mark.asyncio
    async def test_initial_lookback_without_cursor(self, make_connection, adapter, engine_for, now):
        make_connection()

        await engine_for().full_sync(1, "mock", now=now)

        [(name, call)] = adapter.calls
        assert call["start_time"] == now - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_pages_are_paced(self, session_factory, make_connection, adapter, engine_for, sleep, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill(f"e{i}", f"O{i}", "buy", 1, 100, now - timedelta(minutes=60 - i)) for i in range(5)
        ])

        await engine_for(SyncConfig(page_limit=2, page_delay_seconds=0.2)).full_sync(1, "mock", now=now)

        assert adapter.call_count("fetch_executions") == 3
        assert sleep.delays == [0.2, 0.2]
        assert len(trades(session_factory)) == 5

    @pytest.mark.asyncio
    async def test_page_cap_leaves_cursor(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill(f"e{i}", f"O{i}", "buy", 1, 100, now - timedelta(minutes=60 - i)) for i in range(5)
        ])

        await engine_for(SyncConfig(page_limit=2, max_pages_per_window=1)).full_sync(1, "mock", now=now)

        connection = connection_row(session_factory)
        assert connection.last_sync_at == now
        assert connection.last_execution_time is None


# ============================================================
# FAILURES
# ============================================================

class TestSyncFailures:
    """Tests for failure handling."""

    @pytest.mark.asyncio
    async def test_auth_error_deactivates_connection(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.inject_error("fetch_executions", ExchangeException(map_bybit_error(10003, "API key is invalid.")))

        with pytest.raises(SyncAuthError) as info:
            await engine_for().full_sync(1, "mock", now=now)

        assert not info.value.retryable
        connection = connection_row(session_factory)
        assert connection.is_active is False
        assert "API key is invalid" in connection.deactivation_reason

    @pytest.mark.asyncio
    async def test_category_error_is_isolated(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection(sync_settings={"categories": ["spot", "linear"]})
        adapter.inject_error(
            "fetch_executions",
            ExchangeException(create_network_error("mock", "connection reset")),
            category="spot",
        )
        adapter.add_executions("linear", [make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=1))])

        result = await engine_for().full_sync(1, "mock", now=now)

        assert len(trades(session_factory)) == 1
        [error] = result.errors
        assert error.category == "spot"
        assert error.operation == "fetch_executions"
        assert result.has_errors
        connection = connection_row(session_factory)
        assert connection.is_active
        assert connection.last_sync_at == now
        assert connection.last_execution_time is None

    @pytest.mark.asyncio
    async def test_inactive_connection(self, make_connection, engine_for, now):
        make_connection(is_active=False)

        with pytest.raises(ConnectionInactiveError):
            await engine_for().full_sync(1, "mock", now=now)

    @pytest.mark.asyncio
    async def test_missing_connection(self, engine_for, now):
        with pytest.raises(ConnectionInactiveError):
            await engine_for().quick_sync(99, "mock", now=now)

    @pytest.mark.asyncio
    async def test_invalid_settings(self, make_connection, engine_for, now):
        make_connection(sync_settings={"categories": ["futures"]})

        with pytest.raises(InvalidSettingsError):
            await engine_for().full_sync(1, "mock", now=now)

    @pytest.mark.asyncio
    async def test_missing_credentials_abort_before_requests(self, make_connection, adapter, engine_for, now):
        make_connection()

        def provider(connection):
            raise CredentialError("no keys", user_id=connection.user_id, exchange=connection.exchange)

        with pytest.raises(CredentialError):
            await engine_for(provider=provider).full_sync(1, "mock", now=now)
        assert adapter.calls == []


# ============================================================
# QUICK SYNC
# ============================================================

class TestQuickSync:
    """Tests for quick sync."""

    @pytest.mark.asyncio
    async def test_closed_pnl_closes_open_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        seed_open_trade(session_factory, now - timedelta(hours=5))
        adapter.add_closed_pnl("linear", [
            make_closed_pnl("C9", "sell", 2, 105, 120, 30, now - timedelta(hours=1), open_fee="0.1", close_fee="0.2"),
        ])

        result = await engine_for().quick_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.status == TradeStatus.CLOSED.value
        assert trade.exit_price == Decimal("120")
        assert trade.realized_pnl == Decimal("30")
        assert trade.fee == Decimal("0.3")
        assert trade.close_order_id == "C9"
        assert result.closed_pnl_applied == 1

    @pytest.mark.asyncio
    async def test_closed_pnl_replay_is_noop(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        seed_open_trade(session_factory, now - timedelta(hours=5))
        adapter.add_closed_pnl("linear", [make_closed_pnl("C9", "sell", 2, 105, 120, 30, now - timedelta(hours=1))])
        engine = engine_for()

        await engine.quick_sync(1, "mock", now=now)
        second = await engine.quick_sync(1, "mock", now=now + timedelta(minutes=1))

        assert len(trades(session_factory)) == 1
        assert second.closed_pnl_duplicates == 1

    @pytest.mark.asyncio
    async def test_fill_closed_trade_not_closed_again(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_executions("linear", [
            make_fill("e1", "O1", "buy", 1, 100, now - timedelta(hours=3)),
            make_fill("e2", "C1", "sell", 1, 120, now - timedelta(hours=2), closed_size=1),
        ])
        adapter.add_closed_pnl("linear", [make_closed_pnl("C1", "sell", 1, 100, 120, 19.9, now - timedelta(hours=2))])

        result = await engine_for().quick_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.realized_pnl == Decimal("20")
        assert result.closed_pnl_duplicates == 1

    @pytest.mark.asyncio
    async def test_closed_pnl_without_open_trade_creates_closed_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.add_closed_pnl("linear", [make_closed_pnl("C7", "buy", 3, 50, 45, 15, now - timedelta(hours=1))])

        result = await engine_for().quick_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.external_id == "pnl_C7"
        assert trade.side == "sell"
        assert trade.status == TradeStatus.CLOSED.value
        assert trade.source == TradeSource.CLOSED_PNL.value
        assert result.closed_pnl_created == 1

    @pytest.mark.asyncio
    async def test_position_creates_open_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        adapter.set_positions("linear", [
            make_position("ETHUSDT", "sell", "0.5", 3000, at=now - timedelta(days=1), upnl="-4"),
            make_position("SOLUSDT", "", 0, 0),
        ])

        result = await engine_for().quick_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.symbol == "ETHUSDT"
        assert trade.side == "sell"
        assert trade.source == TradeSource.POSITION.value
        assert trade.external_id.startswith("pos_ETHUSDT_")
        assert trade.unrealized_pnl == Decimal("-4")
        assert result.positions_upserted == 1
        assert result.positions_skipped == 1

    @pytest.mark.asyncio
    async def test_position_updates_existing_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        seed_open_trade(session_factory, now - timedelta(hours=5))
        adapter.set_positions("linear", [make_position("BTCUSDT", "buy", 3, 106, upnl="12")])

        await engine_for().quick_sync(1, "mock", now=now)

        [trade] = trades(session_factory)
        assert trade.size == Decimal("3")
        assert trade.entry_price == Decimal("106")
        assert trade.unrealized_pnl == Decimal("12")

    @pytest.mark.asyncio
    async def test_position_on_other_side_opens_own_trade(self, session_factory, make_connection, adapter, engine_for, now):
        make_connection()
        seed_open_trade(session_factory, now - timedelta(hours=5), side="buy", size="2", entry="105")
        adapter.set_positions("linear", [
            make_position("BTCUSDT", "sell", 1, 110, at=now - timedelta(hours=1), upnl="3"),
        ])

        await engine_for().quick_sync(1, "mock", now=now)

        by_side = {t.side: t for t in trades(session_factory)}
        assert by_side["buy"].size == Decimal("2")
        assert by_side["buy"].entry_price == Decimal("105")
        assert by_side["buy"].unrealized_pnl is None
        assert by_side["sell"].size == Decimal("1")
        assert by_side["sell"].entry_price == Decimal("110")
        assert by_side["sell"].external_id.startswith("pos_BTCUSDT_")

    @pytest.mark.asyncio
    async def test_quick_sync_leaves_full_sync_cursors(self, session_factory, make_connection, adapter, engine_for, now):
        cursor = now - timedelta(days=5)
        make_connection(last_sync_at=now - timedelta(days=5), last_execution_time=cursor)
        adapter.add_executions("linear", [
            make_fill("e-old", "O-old", "buy", 1, 100, now - timedelta(days=3)),
            make_fill("e-new", "O-new", "buy", 1, 110, now - timedelta(hours=1)),
        ])
        engine = engine_for()

        await engine.quick_sync(1, "mock", now=now)

        connection = connection_row(session_factory)
        assert connection.last_execution_time == cursor
        assert connection.last_sync_at == now - timedelta(days=5)
        assert connection.last_quick_sync_at == now
        assert [t.external_id for t in trades(session_factory)] == ["O-new"]

        await engine.full_sync(1, "mock", now=now + timedelta(minutes=5))

        assert sorted(t.external_id for t in trades(session_factory)) == ["O-new", "O-old"]
        connection = connection_row(session_factory)
        assert connection.last_execution_time == now - timedelta(hours=1)
        assert connection.last_sync_at == now + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_quick_sync_window_is_24h(self, make_connection, adapter, engine_for, now):
        make_connection(last_execution_time=now - timedelta(days=20))

        await engine_for().quick_sync(1, "mock", now=now)

        starts = [c["start_time"] for name, c in adapter.calls if name in ("fetch_executions", "fetch_closed_pnl")]
        assert starts and all(s == now - timedelta(hours=24) for s in starts)


# ============================================================
# SETTINGS
# ============================================================

class TestConnectionSettings:
    """Tests for the settings document."""

    def test_defaults(self):
        settings = ConnectionSettings.from_stored(None)
        assert settings.auto_sync
        assert settings.sync_interval_hours == 1
        assert settings.categories == ["linear"]
        assert settings.allows_symbol("anything")

    def test_interval_bounds(self):
        with pytest.raises(ValueError):
            ConnectionSettings.from_stored({"sync_interval_hours": 25})
        with pytest.raises(ValueError):
            ConnectionSettings.from_stored({"sync_interval_hours": 0})

    def test_empty_filter_means_all(self):
        assert ConnectionSettings.from_stored({"symbols_filter": []}).symbols_filter is None

    def test_categories_normalized(self):
        settings = ConnectionSettings.from_stored({"categories": ["Spot", "spot", "linear"], "extra": 1})
        assert settings.categories == ["spot", "linear"]
