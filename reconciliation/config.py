"""
Reconciliation - Configuration.

============================================================
PURPOSE
============================================================
Pacing, windowing and retry configuration for the batch
(full) and quick sync runs.

CRITICAL CONSTRAINTS:
- Pagination is sequential with fixed pauses, never fan-out
- Retry happens at job level only, with a hard attempt cap
- Every run has a timeout

============================================================
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Tuple


# ============================================================
# SYNC CONFIGURATION
# ============================================================

@dataclass
class SyncConfig:
    """Pagination and window settings shared by full and quick sync."""

    page_limit: int = 50
    """Records requested per page."""

    page_delay_seconds: float = 0.2
    """Pause between consecutive page requests."""

    category_delay_seconds: float = 0.5
    """Pause between categories."""

    max_pages_per_window: int = 200
    """Hard stop for a misbehaving cursor."""

    execution_window: timedelta = timedelta(days=7)
    """Widest startTime..endTime span the execution endpoint accepts."""

    initial_lookback: timedelta = timedelta(days=7)
    """History pulled on a connection's first full sync."""

    quick_window: timedelta = timedelta(hours=24)
    """Trailing window for quick sync."""


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryPolicy:
    """
    Job-level retry contract.

    `backoff_seconds[n-1]` is waited after failed attempt n; the
    last value repeats if attempts outnumber it.
    """

    max_attempts: int = 3
    """Total attempts including the first."""

    backoff_seconds: Tuple[float, ...] = (30.0, 60.0, 120.0)

    timeout_seconds: float = 300.0
    """A run exceeding this is cancelled and counted as a retryable failure."""

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        if not self.backoff_seconds:
            return 0.0
        index = min(max(attempt, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


def full_sync_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_seconds=(30.0, 60.0, 120.0), timeout_seconds=300.0)


def quick_sync_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, backoff_seconds=(5.0, 15.0), timeout_seconds=60.0)


@dataclass
class SchedulerConfig:
    """Recurring trigger settings."""

    min_resync_interval: timedelta = timedelta(minutes=30)
    """Connections synced more recently are skipped unless forced."""

    full_sync: RetryPolicy = field(default_factory=full_sync_policy)
    quick_sync: RetryPolicy = field(default_factory=quick_sync_policy)

    @staticmethod
    def full_sync_interval(sync_interval_hours: int) -> timedelta:
        return timedelta(hours=sync_interval_hours)
