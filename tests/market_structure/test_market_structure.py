"""
Market Structure Tests.

============================================================
PURPOSE
============================================================
Detector heuristics on hand-built candle windows, and the
staleness-gated collection service against the mock adapter.

============================================================
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from exchange import ExchangeException, MockExchangeAdapter, create_network_error
from market_structure import (
    BiasDirection,
    BlockType,
    CollectorConfig,
    LevelType,
    MarketStructureDetector,
    MarketStructureService,
    RefreshOutcome,
    interval_for,
    refresh_interval,
)
from storage.database import transaction_scope
from storage.models.journal import Execution, Trade, TradeStatus
from storage.repositories import ExecutionRepository, MarketStructureRepository, TradeRepository

from conftest import flat_candles, make_candle, make_position


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def gap_candles(last_low):
    return [
        make_candle(0, 96, 100, 95, 99),
        make_candle(1, 101, 106, 99, 105),
        make_candle(2, 106, 110, 105, 109),
        make_candle(3, 107, 108, last_low, 106),
    ]


def zigzag_candles(count=40):
    cycle = [100, 102, 104, 102]
    return [
        make_candle(i, p, p + 0.5, p - 0.5, p)
        for i, p in enumerate(cycle[i % 4] for i in range(count))
    ]


# =============================================================
# DETECTOR
# =============================================================

class TestFairValueGaps:
    """Three-candle imbalances."""

    def test_bullish_gap_filled_by_later_low(self):
        detector = MarketStructureDetector()
        [gap] = detector.detect_fair_value_gaps(gap_candles(last_low=102))

        assert gap.type == BlockType.BULLISH
        assert (gap.gap_low, gap.gap_high) == (100, 105)
        assert gap.size == 5
        assert gap.is_filled is True

    def test_gap_open_when_price_stays_above(self):
        [gap] = MarketStructureDetector().detect_fair_value_gaps(gap_candles(last_low=106))

        assert gap.is_filled is False

    def test_bearish_gap(self):
        candles = [
            make_candle(0, 110, 111, 105, 106),
            make_candle(1, 104, 104, 98, 99),
            make_candle(2, 99, 101, 97, 98),
        ]
        [gap] = MarketStructureDetector().detect_fair_value_gaps(candles)

        assert gap.type == BlockType.BEARISH
        assert (gap.gap_low, gap.gap_high) == (101, 105)


class TestLiquidityLevels:

    def test_levels_are_repeatedly_tested_swings(self):
        levels = MarketStructureDetector().detect_liquidity_levels(zigzag_candles())

        assert levels
        assert len(levels) <= 8
        assert {lvl.type for lvl in levels} == {LevelType.RESISTANCE, LevelType.SUPPORT}
        for lvl in levels:
            assert lvl.touches >= 2
            assert lvl.strength == min(10, lvl.touches * 2)
        strengths = [lvl.strength for lvl in levels]
        assert strengths == sorted(strengths, reverse=True)

    def test_flat_series_has_no_strict_extremes(self):
        assert MarketStructureDetector().detect_liquidity_levels(flat_candles(20)) == []


class TestOrderBlocks:

    def test_impulse_after_consolidation(self):
        candles = flat_candles(15, 100)
        candles.append(make_candle(15, 100, 105.5, 99.5, 105, volume=300))
        candles.extend(make_candle(i, 105, 105.5, 104.5, 105) for i in range(16, 25))

        [block] = MarketStructureDetector().detect_order_blocks(candles)

        assert block.type == BlockType.BULLISH
        assert (block.low, block.high) == (99.5, 100.5)
        assert block.timestamp == candles[15].timestamp
        assert block.strength == 10.0

    def test_impulse_in_tail_is_ignored(self):
        candles = flat_candles(18, 100)
        candles.append(make_candle(18, 100, 105.5, 99.5, 105, volume=300))
        candles.extend(make_candle(i, 105, 105.5, 104.5, 105) for i in range(19, 21))

        assert MarketStructureDetector().detect_order_blocks(candles) == []


class TestBias:

    def test_zero_range_is_neutral(self):
        candles = [make_candle(i, 100, 100, 100, 100) for i in range(10)]
        bias = MarketStructureDetector().determine_bias(candles)

        assert bias.direction == BiasDirection.NEUTRAL
        assert bias.strength == 0.0

    def test_close_near_high_is_bullish(self):
        candles = [make_candle(i, 100 + i, 101 + i, 99 + i, 100.8 + i) for i in range(30)]
        bias = MarketStructureDetector().determine_bias(candles)

        assert bias.direction == BiasDirection.BULLISH
        assert 0 < bias.strength <= 1

    def test_empty_window(self):
        snapshot = MarketStructureDetector().analyze([])

        assert snapshot.candle_count == 0
        assert snapshot.bias.direction == BiasDirection.NEUTRAL


class TestTimeframes:

    def test_interval_mapping(self):
        assert interval_for("4h") == "240"
        assert interval_for("1D") == "D"
        assert refresh_interval("1h") == timedelta(minutes=60)
        with pytest.raises(ValueError):
            interval_for("3h")


# =============================================================
# SERVICE
# =============================================================

@pytest.fixture
def adapter():
    return MockExchangeAdapter()


def hourly_only(**overrides):
    return CollectorConfig(timeframes={"60": "1h"}, **overrides)


class TestRefresh:
    """Staleness gate."""

    @pytest.mark.asyncio
    async def test_fresh_snapshot_is_reused(self, session_factory, adapter, now):
        adapter.set_klines("BTCUSDT", "60", zigzag_candles())
        service = MarketStructureService(session_factory, adapter, config=hourly_only())

        first = await service.refresh("BTCUSDT", "1h", now - timedelta(minutes=30))
        cached = await service.refresh("BTCUSDT", "1h", now)

        assert first.outcome == RefreshOutcome.COMPUTED
        assert cached.outcome == RefreshOutcome.CACHE_HIT
        assert cached.snapshot_id == first.snapshot_id
        assert adapter.call_count("fetch_kline") == 1

    @pytest.mark.asyncio
    async def test_stale_snapshot_is_recomputed(self, session_factory, adapter, now):
        adapter.set_klines("BTCUSDT", "60", zigzag_candles())
        service = MarketStructureService(session_factory, adapter, config=hourly_only())

        await service.refresh("BTCUSDT", "1h", now - timedelta(minutes=90))
        result = await service.refresh("BTCUSDT", "1h", now)

        assert result.outcome == RefreshOutcome.COMPUTED
        assert adapter.call_count("fetch_kline") == 2
        with transaction_scope(session_factory) as session:
            latest = MarketStructureRepository(session).latest("BTCUSDT", "1h")
            assert latest.timestamp == now
            assert latest.market_bias["direction"] in {d.value for d in BiasDirection}

    @pytest.mark.asyncio
    async def test_no_candles(self, session_factory, adapter, now):
        service = MarketStructureService(session_factory, adapter, config=hourly_only())

        result = await service.refresh("BTCUSDT", "1h", now)

        assert result.outcome == RefreshOutcome.NO_DATA
        with transaction_scope(session_factory) as session:
            assert MarketStructureRepository(session).count() == 0

    @pytest.mark.asyncio
    async def test_compute_prunes_expired_rows(self, session_factory, adapter, now):
        adapter.set_klines("BTCUSDT", "60", zigzag_candles())
        service = MarketStructureService(session_factory, adapter, config=hourly_only())

        await service.refresh("BTCUSDT", "1h", now - timedelta(days=45))
        result = await service.refresh("BTCUSDT", "1h", now)

        assert result.pruned == 1
        with transaction_scope(session_factory) as session:
            assert MarketStructureRepository(session).count() == 1


class TestCollection:

    @pytest.mark.asyncio
    async def test_symbol_universe(self, session_factory, now):
        with transaction_scope(session_factory) as session:
            executions = ExecutionRepository(session)
            for i in range(3):
                executions.record_execution(Execution(
                    user_id=1, exchange="mock", execution_id=f"btc-{i}", order_id="o",
                    symbol="BTCUSDT", side="buy", quantity=Decimal("1"), price=Decimal("1"),
                    execution_time=now - timedelta(days=2),
                ))
            TradeRepository(session).create_trade(Trade(
                user_id=1, exchange="mock", symbol="ETHUSDT", side="buy", size=Decimal("1"),
                entry_price=Decimal("1"), entry_time=now, external_id="eth",
                status=TradeStatus.OPEN.value,
            ))

        account = MockExchangeAdapter()
        account.set_positions("linear", [
            make_position("SOLUSDT", "buy", 5, 150),
            make_position("XRPUSDT", "", 0, 0),
        ])
        broken = MockExchangeAdapter()
        broken.inject_error("fetch_positions", ExchangeException(create_network_error("mock", "reset")))

        service = MarketStructureService(
            session_factory, MockExchangeAdapter(), position_adapters=[account, broken]
        )

        assert await service.active_symbols(now) == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]

    @pytest.mark.asyncio
    async def test_failing_pair_does_not_stop_collection(self, session_factory, adapter, now):
        adapter.set_klines("BTCUSDT", "60", zigzag_candles())
        adapter.set_klines("BTCUSDT", "240", zigzag_candles())
        adapter.inject_error("fetch_kline", ExchangeException(create_network_error("mock", "reset")))
        sleep = RecordingSleep()
        service = MarketStructureService(
            session_factory,
            adapter,
            config=CollectorConfig(timeframes={"60": "1h", "240": "4h"}),
            sleep=sleep,
        )

        report = await service.collect(now, symbols=["BTCUSDT"])

        assert report.count(RefreshOutcome.COMPUTED) == 1
        assert [(s, tf) for s, tf, _ in report.failures] == [("BTCUSDT", "1h")]
        assert report.to_dict()["failures"][0]["timeframe"] == "1h"
        assert sleep.delays == [0.15]

    @pytest.mark.asyncio
    async def test_no_active_symbols(self, session_factory, adapter, now):
        report = await MarketStructureService(session_factory, adapter).collect(now)

        assert report.symbols == []
        assert adapter.calls == []
