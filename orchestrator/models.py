"""
Orchestrator - Models.

============================================================
RESPONSIBILITY
============================================================
Runtime modes and job outcome types shared by the CLI,
the job runner and the scheduler.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# ============================================================
# RUNTIME MODES
# ============================================================

class RuntimeMode(Enum):
    """
    Runtime execution modes.

    Each mode runs one unit of work and exits, except STREAM
    which runs until stopped or failed.
    """

    INIT_DB = "init-db"
    """Create journal tables."""

    FULL_SYNC = "full-sync"
    """Full execution sync for one connection."""

    QUICK_SYNC = "quick-sync"
    """Trailing-24h sync with closed-PnL and position reconciliation."""

    SYNC_DUE = "sync-due"
    """Full sync of every auto-sync connection whose interval has elapsed."""

    STREAM = "stream"
    """Private-stream correlator for one connection."""

    MARKET_DATA = "market-data"
    """Market-structure collection for the active symbol universe."""

    CLEANUP = "cleanup"
    """Retention cleanup (honors --dry-run)."""

    @property
    def needs_connection(self) -> bool:
        return self in (RuntimeMode.FULL_SYNC, RuntimeMode.QUICK_SYNC, RuntimeMode.STREAM)


# ============================================================
# JOB OUTCOMES
# ============================================================

class JobStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobOutcome:
    """Result of one JobRunner.run call."""

    job_name: str
    status: JobStatus
    attempts: int = 0
    error: Optional[str] = None
    result: Any = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        result = self.result.to_dict() if hasattr(self.result, "to_dict") else None
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "result": result,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RunSummary:
    """What the CLI prints after a mode finishes."""

    mode: RuntimeMode
    success: bool
    details: Dict[str, Any] = field(default_factory=dict)
