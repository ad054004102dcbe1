"""
Data Retention Package.

Age- and activity-based pruning of market-structure snapshots
and journal trades, with dry-run reporting and post-delete
storage compaction.
"""

from .manager import CleanupReport, RetentionManager
from .policies import RetentionPolicy


__all__ = [
    "CleanupReport",
    "RetentionManager",
    "RetentionPolicy",
]
