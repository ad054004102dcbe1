"""
Retention Manager.

============================================================
PURPOSE
============================================================
Runs one cleanup cycle over the journal database and reports
what was (or, in dry-run mode, would be) deleted.

Steps:
1. Market-structure rows beyond their timeframe horizon
2. Market-structure rows of inactive symbols (past the floor)
3. Very old trades, only for large datasets
4. Storage compaction after real deletions

CRITICAL: Compaction failure is reported, never raised.

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from storage.database import compact_database, get_engine, transaction_scope
from storage.models.base import utcnow
from storage.repositories.market_structures import MarketStructureRepository
from storage.repositories.trades import TradeRepository

from .policies import RetentionPolicy


logger = logging.getLogger(__name__)


# ============================================================
# REPORT
# ============================================================

@dataclass
class CleanupReport:
    """Outcome of one cleanup cycle."""

    dry_run: bool
    started_at: datetime

    timeframe_counts: Dict[str, int] = field(default_factory=dict)
    inactive_symbols: List[str] = field(default_factory=list)
    inactive_count: int = 0
    total_trades: int = 0
    old_trade_count: int = 0
    compacted: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def market_structure_count(self) -> int:
        return sum(self.timeframe_counts.values()) + self.inactive_count

    @property
    def total_count(self) -> int:
        return self.market_structure_count + self.old_trade_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "timeframe_counts": dict(self.timeframe_counts),
            "inactive_symbols": list(self.inactive_symbols),
            "inactive_count": self.inactive_count,
            "total_trades": self.total_trades,
            "old_trade_count": self.old_trade_count,
            "total_count": self.total_count,
            "compacted": self.compacted,
            "errors": list(self.errors),
        }


# ============================================================
# RETENTION MANAGER
# ============================================================

class RetentionManager:
    """
    Applies a RetentionPolicy to the journal database.

    Each step runs in its own transaction so a failure in a
    later step keeps the earlier deletions.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        policy: Optional[RetentionPolicy] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        self._session_factory = session_factory
        self._policy = policy or RetentionPolicy()
        self._engine = engine

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    def run(self, dry_run: bool = False, now: Optional[datetime] = None) -> CleanupReport:
        """
        Run one cleanup cycle.

        Args:
            dry_run: Count only; nothing is deleted or compacted
            now: Reference time (defaults to current UTC time)
        """
        now = now or utcnow()
        report = CleanupReport(dry_run=dry_run, started_at=now)

        if dry_run:
            logger.warning("DRY RUN - no data will be deleted")

        self._prune_timeframes(report, now)
        self._prune_inactive_symbols(report, now)
        self._prune_old_trades(report, now)

        if not dry_run and report.total_count > 0 and self._policy.compact_after_delete:
            self._compact(report)

        logger.info(
            f"Cleanup {'(dry run) ' if dry_run else ''}completed: "
            f"{report.market_structure_count} market structure rows, "
            f"{report.old_trade_count} trades"
        )
        return report

    # --------------------------------------------------------
    # STEPS
    # --------------------------------------------------------

    def _prune_timeframes(self, report: CleanupReport, now: datetime) -> None:
        with transaction_scope(self._session_factory) as session:
            repo = MarketStructureRepository(session)
            for timeframe, horizon in self._policy.timeframe_horizons.items():
                cutoff = self._policy.timeframe_cutoff(timeframe, now)
                count = repo.count_timeframe_before(timeframe, cutoff)
                if count and not report.dry_run:
                    count = repo.delete_timeframe_before(timeframe, cutoff)
                report.timeframe_counts[timeframe] = count
                if count:
                    logger.info(f"{timeframe}: {count} snapshots older than {horizon.days} days")

    def _prune_inactive_symbols(self, report: CleanupReport, now: datetime) -> None:
        with transaction_scope(self._session_factory) as session:
            active = TradeRepository(session).symbols_traded_since(self._policy.inactivity_cutoff(now))
            if not active:
                logger.info("No active symbols found, skipping inactive-symbol cleanup")
                return

            repo = MarketStructureRepository(session)
            floor = self._policy.floor_cutoff(now)
            report.inactive_symbols = repo.inactive_symbols(active, floor)
            report.inactive_count = repo.count_inactive_before(active, floor)

            if report.inactive_count:
                logger.info(
                    f"Inactive symbols: {', '.join(report.inactive_symbols[:10])}"
                    f"{' ...' if len(report.inactive_symbols) > 10 else ''} "
                    f"({report.inactive_count} rows)"
                )
                if not report.dry_run:
                    report.inactive_count = repo.delete_inactive_before(active, floor)

    def _prune_old_trades(self, report: CleanupReport, now: datetime) -> None:
        with transaction_scope(self._session_factory) as session:
            trades = TradeRepository(session)
            report.total_trades = trades.count()
            if not self._policy.trades_prunable(report.total_trades):
                logger.info(f"Trade count {report.total_trades} below threshold, skipping old trades")
                return

            cutoff = self._policy.trade_cutoff(now)
            report.old_trade_count = trades.count_entered_before(cutoff)
            if report.old_trade_count and not report.dry_run:
                report.old_trade_count = trades.delete_entered_before(
                    cutoff, batch_size=self._policy.delete_batch_size
                )
            logger.info(f"Very old trades: {report.old_trade_count}")

    def _compact(self, report: CleanupReport) -> None:
        try:
            report.compacted = compact_database(self._engine or get_engine())
        except SQLAlchemyError as e:
            logger.warning(f"Database compaction failed: {e}")
            report.errors.append(f"compaction: {e}")
