"""
Retention Policies.

============================================================
PURPOSE
============================================================
Age- and activity-based pruning rules for market-structure
snapshots and journal trades.

============================================================
RULES
============================================================
1. Market structure older than its timeframe horizon
2. Market structure of symbols with no trade entered in the
   inactivity window, never newer than the safety floor
3. Trades older than the trade horizon, only when the table
   has grown past the large-dataset threshold

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict

from market_structure.config import RETENTION_DAYS


@dataclass
class RetentionPolicy:
    """Retention thresholds. Defaults mirror the collector's horizons."""

    timeframe_horizons: Dict[str, timedelta] = field(
        default_factory=lambda: {tf: timedelta(days=d) for tf, d in RETENTION_DAYS.items()}
    )
    """Per-timeframe age beyond which snapshots are deleted."""

    inactivity_window: timedelta = timedelta(days=60)
    """A symbol with no trade entered within this window is inactive."""

    inactive_floor: timedelta = timedelta(days=30)
    """Inactive-symbol pruning never touches rows newer than this."""

    trade_horizon: timedelta = timedelta(days=730)
    """Trades entered before now - trade_horizon are deletable..."""

    trade_count_threshold: int = 100_000
    """...but only once the trades table holds more rows than this."""

    delete_batch_size: int = 1000

    compact_after_delete: bool = True

    def timeframe_cutoff(self, timeframe: str, now: datetime) -> datetime:
        return now - self.timeframe_horizons[timeframe]

    def inactivity_cutoff(self, now: datetime) -> datetime:
        return now - self.inactivity_window

    def floor_cutoff(self, now: datetime) -> datetime:
        return now - self.inactive_floor

    def trade_cutoff(self, now: datetime) -> datetime:
        return now - self.trade_horizon

    def trades_prunable(self, total_trades: int) -> bool:
        return total_trades > self.trade_count_threshold
