"""
Reconciliation Package.

Turns paged exchange history (executions, closed PnL, live
positions) into durable Trade aggregates.

Modules:
- aggregator: fill-by-fill trade reconstruction
- engine: full and quick sync runs
- config: pacing, windows, retry policies
- types: settings and run results
- errors: run-level failures
"""

from reconciliation.aggregator import FillAggregator, gross_pnl, opposite_side
from reconciliation.config import (
    RetryPolicy,
    SchedulerConfig,
    SyncConfig,
    full_sync_policy,
    quick_sync_policy,
)
from reconciliation.engine import ReconciliationEngine, split_window
from reconciliation.errors import (
    ConnectionInactiveError,
    CredentialError,
    InvalidSettingsError,
    SyncAuthError,
    SyncError,
)
from reconciliation.types import (
    AggregationStats,
    ConnectionSettings,
    SyncKind,
    SyncResult,
    SyncUnitError,
)


__all__ = [
    "FillAggregator",
    "gross_pnl",
    "opposite_side",
    "RetryPolicy",
    "SchedulerConfig",
    "SyncConfig",
    "full_sync_policy",
    "quick_sync_policy",
    "ReconciliationEngine",
    "split_window",
    "ConnectionInactiveError",
    "CredentialError",
    "InvalidSettingsError",
    "SyncAuthError",
    "SyncError",
    "AggregationStats",
    "ConnectionSettings",
    "SyncKind",
    "SyncResult",
    "SyncUnitError",
]
