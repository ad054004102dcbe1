"""
Market Structure Service - Staleness-gated snapshot collection.

Workflow per (symbol, timeframe):
1. Latest stored snapshot younger than the refresh interval -> reuse it
2. Otherwise fetch candles, analyze, insert a new snapshot
3. Prune that pair's snapshots beyond the retention horizon

The symbol universe is dynamic: recently traded symbols plus
symbols with open trades or live positions.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from exchange.base import ExchangeAdapter
from exchange.errors import ExchangeException
from storage.database import transaction_scope
from storage.models.base import utcnow
from storage.models.journal import MarketStructure
from storage.repositories.executions import ExecutionRepository
from storage.repositories.market_structures import MarketStructureRepository
from storage.repositories.trades import TradeRepository

from .config import CollectorConfig, interval_for, refresh_interval, retention_horizon
from .detector import MarketStructureDetector


logger = logging.getLogger(__name__)


class RefreshOutcome(str, Enum):
    CACHE_HIT = "cache_hit"
    COMPUTED = "computed"
    NO_DATA = "no_data"


@dataclass
class RefreshResult:
    symbol: str
    timeframe: str
    outcome: RefreshOutcome
    snapshot_id: Optional[int] = None
    pruned: int = 0
    summary: dict = field(default_factory=dict)


@dataclass
class CollectionReport:
    symbols: list[str] = field(default_factory=list)
    results: list[RefreshResult] = field(default_factory=list)
    failures: list[tuple[str, str, str]] = field(default_factory=list)

    def count(self, outcome: RefreshOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> dict:
        return {
            "symbols": list(self.symbols),
            "computed": self.count(RefreshOutcome.COMPUTED),
            "cache_hits": self.count(RefreshOutcome.CACHE_HIT),
            "no_data": self.count(RefreshOutcome.NO_DATA),
            "failures": [
                {"symbol": s, "timeframe": tf, "error": err} for s, tf, err in self.failures
            ],
        }


class MarketStructureService:
    """
    Collects market-structure snapshots.

    `adapter` serves candles (unsigned kline calls).
    `position_adapters` are per-account adapters whose live
    positions join the symbol universe.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        adapter: ExchangeAdapter,
        detector: Optional[MarketStructureDetector] = None,
        config: Optional[CollectorConfig] = None,
        position_adapters: Sequence[ExchangeAdapter] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.adapter = adapter
        self.detector = detector or MarketStructureDetector()
        self.config = config or CollectorConfig()
        self.position_adapters = list(position_adapters)
        self._sleep = sleep

    # =========================================================
    # REFRESH
    # =========================================================

    @staticmethod
    def is_stale(latest: Optional[MarketStructure], timeframe: str, now: datetime) -> bool:
        if latest is None:
            return True
        return now - latest.timestamp >= refresh_interval(timeframe)

    async def refresh(self, symbol: str, timeframe: str, now: Optional[datetime] = None) -> RefreshResult:
        """
        Recompute the (symbol, timeframe) snapshot if it is stale.

        A cache hit performs no fetch and no computation.
        """
        now = now or utcnow()

        with transaction_scope(self.session_factory) as session:
            latest = MarketStructureRepository(session).latest(symbol, timeframe)
            if not self.is_stale(latest, timeframe, now):
                return RefreshResult(symbol, timeframe, RefreshOutcome.CACHE_HIT, snapshot_id=latest.id)

        candles = await self.adapter.fetch_kline(
            symbol,
            interval_for(timeframe),
            limit=self.config.candle_limit,
            category=self.config.category,
        )
        if not candles:
            logger.info(f"No candles for {symbol} {timeframe}")
            return RefreshResult(symbol, timeframe, RefreshOutcome.NO_DATA)

        snapshot = self.detector.analyze(candles)
        data = snapshot.to_dict()

        with transaction_scope(self.session_factory) as session:
            repo = MarketStructureRepository(session)
            row = repo.save_snapshot(MarketStructure(
                symbol=symbol,
                timeframe=timeframe,
                timestamp=now,
                order_blocks=data["order_blocks"],
                liquidity_levels=data["liquidity_levels"],
                fvg_zones=data["fvg_zones"],
                market_bias=data["market_bias"],
                high=snapshot.high,
                low=snapshot.low,
            ))
            pruned = repo.prune_pair(symbol, timeframe, now - retention_horizon(timeframe))
            snapshot_id = row.id if row is not None else None

        logger.debug(f"Computed {symbol} {timeframe}: {snapshot.summary()} (pruned {pruned})")
        return RefreshResult(
            symbol,
            timeframe,
            RefreshOutcome.COMPUTED,
            snapshot_id=snapshot_id,
            pruned=pruned,
            summary=snapshot.summary(),
        )

    # =========================================================
    # SYMBOL UNIVERSE
    # =========================================================

    async def active_symbols(self, now: Optional[datetime] = None) -> list[str]:
        now = now or utcnow()
        since = now - self.config.activity_window

        with transaction_scope(self.session_factory) as session:
            symbols = set(ExecutionRepository(session).active_symbols(since, self.config.min_executions))
            symbols.update(TradeRepository(session).open_symbols())

        for adapter in self.position_adapters:
            try:
                positions = await adapter.fetch_positions(self.config.category)
            except ExchangeException as e:
                logger.warning(f"Could not read positions from {adapter.exchange_id}: {e}")
                continue
            symbols.update(p.symbol for p in positions if not p.is_flat)

        return sorted(symbols)

    # =========================================================
    # COLLECTION
    # =========================================================

    async def collect(
        self,
        now: Optional[datetime] = None,
        symbols: Optional[list[str]] = None,
    ) -> CollectionReport:
        """Refresh every symbol x timeframe; one failing pair never stops the rest."""
        now = now or utcnow()
        report = CollectionReport(symbols=symbols if symbols is not None else await self.active_symbols(now))

        if not report.symbols:
            logger.info("No active symbols for market structure collection")
            return report

        logger.info(f"Collecting market structure for {len(report.symbols)} symbols")

        for s_index, symbol in enumerate(report.symbols):
            if s_index:
                await self._sleep(self.config.symbol_delay_seconds)

            for t_index, timeframe in enumerate(self.config.timeframes.values()):
                if t_index:
                    await self._sleep(self.config.timeframe_delay_seconds)
                try:
                    report.results.append(await self.refresh(symbol, timeframe, now))
                except Exception as e:
                    logger.warning(f"Market structure failed for {symbol} {timeframe}: {e}")
                    report.failures.append((symbol, timeframe, str(e)))

        logger.info(
            f"Market structure collection done: {report.count(RefreshOutcome.COMPUTED)} computed, "
            f"{report.count(RefreshOutcome.CACHE_HIT)} cached, {len(report.failures)} failed"
        )
        return report
