"""
Market Structure Configuration - Detector thresholds, timeframes and pacing.

All thresholds are configurable for tuning.
"""

from dataclasses import dataclass, field
from datetime import timedelta


# Exchange kline interval -> stored timeframe name
TIMEFRAMES: dict[str, str] = {
    "5": "5m",
    "15": "15m",
    "60": "1h",
    "240": "4h",
    "D": "1D",
}

# Minimum age of the latest snapshot before it is recomputed
REFRESH_INTERVAL_MINUTES: dict[str, int] = {
    "5m": 15,
    "15m": 30,
    "1h": 60,
    "4h": 240,
    "1D": 1440,
}

# Snapshots older than this are pruned
RETENTION_DAYS: dict[str, int] = {
    "5m": 7,
    "15m": 14,
    "1h": 30,
    "4h": 60,
    "1D": 180,
}

DEFAULT_REFRESH_MINUTES = 60
DEFAULT_RETENTION_DAYS = 30


def refresh_interval(timeframe: str) -> timedelta:
    return timedelta(minutes=REFRESH_INTERVAL_MINUTES.get(timeframe, DEFAULT_REFRESH_MINUTES))


def retention_horizon(timeframe: str) -> timedelta:
    return timedelta(days=RETENTION_DAYS.get(timeframe, DEFAULT_RETENTION_DAYS))


def interval_for(timeframe: str) -> str:
    """Stored timeframe name -> exchange kline interval."""
    for interval, name in TIMEFRAMES.items():
        if name == timeframe:
            return interval
    raise ValueError(f"Unknown timeframe {timeframe!r}")


@dataclass
class DetectorConfig:
    """Thresholds for pattern detection."""

    # Order blocks
    order_block_lookback: int = 15
    impulse_body_multiplier: float = 1.5  # body vs trailing average
    impulse_volume_multiplier: float = 1.2  # volume vs trailing average
    consolidation_body_ratio: float = 0.6  # body/range below this is indecisive
    min_consolidation_candles: int = 2
    order_block_tail: int = 5  # newest candles never scanned for impulses
    max_order_blocks: int = 10

    # Liquidity levels
    swing_window: int = 2  # +/- candles a local extreme must dominate
    liquidity_edge: int = 3
    touch_tolerance: float = 0.002  # 0.2% of level
    min_touches: int = 2
    max_liquidity_levels: int = 8

    # Fair value gaps
    max_fvgs: int = 6

    # Bias
    bias_window: int = 30
    bullish_threshold: float = 0.7
    bearish_threshold: float = 0.3


@dataclass
class CollectorConfig:
    """Symbol universe and pacing for periodic collection."""

    timeframes: dict[str, str] = field(default_factory=lambda: dict(TIMEFRAMES))
    category: str = "linear"
    candle_limit: int = 200

    # Symbol universe
    activity_window: timedelta = timedelta(days=30)
    min_executions: int = 3

    # Pacing
    symbol_delay_seconds: float = 0.25
    timeframe_delay_seconds: float = 0.15
