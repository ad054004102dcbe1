"""
Market Structure Module.

Heuristic order blocks, liquidity levels, fair value gaps and
bias from OHLCV windows, stored as staleness-gated snapshots.

Usage:
    from market_structure import MarketStructureDetector, MarketStructureService

    snapshot = MarketStructureDetector().analyze(candles)
    print(snapshot.bias.direction.value)

    service = MarketStructureService(session_factory, adapter)
    report = await service.collect()
"""

from .config import (
    REFRESH_INTERVAL_MINUTES,
    RETENTION_DAYS,
    TIMEFRAMES,
    CollectorConfig,
    DetectorConfig,
    interval_for,
    refresh_interval,
    retention_horizon,
)
from .detector import MarketStructureDetector
from .models import (
    BiasDirection,
    BlockType,
    FairValueGap,
    LevelType,
    LiquidityLevel,
    MarketBias,
    OrderBlock,
    StructureSnapshot,
)
from .service import CollectionReport, MarketStructureService, RefreshOutcome, RefreshResult


__all__ = [
    # Config
    "REFRESH_INTERVAL_MINUTES",
    "RETENTION_DAYS",
    "TIMEFRAMES",
    "CollectorConfig",
    "DetectorConfig",
    "interval_for",
    "refresh_interval",
    "retention_horizon",

    # Detector & service
    "MarketStructureDetector",
    "MarketStructureService",
    "CollectionReport",
    "RefreshOutcome",
    "RefreshResult",

    # Models
    "BiasDirection",
    "BlockType",
    "FairValueGap",
    "LevelType",
    "LiquidityLevel",
    "MarketBias",
    "OrderBlock",
    "StructureSnapshot",
]
