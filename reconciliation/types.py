"""
Reconciliation - Types.

============================================================
PURPOSE
============================================================
- ConnectionSettings: validated per-connection settings document
- AggregationStats: counters from applying one batch of fills
- SyncResult: outcome of one full/quick sync run

============================================================
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


SUPPORTED_CATEGORIES = ("spot", "linear", "inverse", "option")


# ============================================================
# CONNECTION SETTINGS
# ============================================================

class ConnectionSettings(BaseModel):
    """
    Settings stored on UserExchange.sync_settings.

    Unknown keys are ignored; invalid values raise a pydantic
    ValidationError (a ValueError).
    """

    model_config = ConfigDict(extra="ignore")

    auto_sync: bool = True
    sync_interval_hours: int = Field(default=1, ge=1, le=24)
    symbols_filter: Optional[List[str]] = None
    categories: List[str] = Field(default_factory=lambda: ["linear"])

    @field_validator("categories")
    @classmethod
    def _check_categories(cls, value: List[str]) -> List[str]:
        normalized = []
        for category in value:
            category = category.strip().lower()
            if category not in SUPPORTED_CATEGORIES:
                raise ValueError(f"unsupported category {category!r}")
            if category not in normalized:
                normalized.append(category)
        if not normalized:
            raise ValueError("at least one category is required")
        return normalized

    @field_validator("symbols_filter")
    @classmethod
    def _normalize_symbols(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        symbols = [s.strip().upper() for s in value if s and s.strip()]
        return symbols or None

    @classmethod
    def from_stored(cls, data: Optional[Dict[str, Any]]) -> "ConnectionSettings":
        return cls.model_validate(data or {})

    def allows_symbol(self, symbol: str) -> bool:
        return self.symbols_filter is None or symbol.upper() in self.symbols_filter


# ============================================================
# RUN RESULTS
# ============================================================

class SyncKind(Enum):
    FULL = "full_sync"
    QUICK = "quick_sync"


@dataclass
class AggregationStats:
    """Counters produced by FillAggregator.apply."""

    executions_seen: int = 0
    executions_recorded: int = 0
    duplicates: int = 0
    skipped_non_trade: int = 0
    filtered: int = 0
    trades_opened: int = 0
    trades_updated: int = 0
    trades_closed: int = 0
    unmatched_closes: int = 0
    malformed: int = 0

    def merge(self, other: "AggregationStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


@dataclass
class SyncUnitError:
    """A failed category/page that was skipped."""

    operation: str
    category: str
    message: str
    error_category: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of one sync run for one (user, exchange)."""

    user_id: int
    exchange: str
    kind: SyncKind
    started_at: datetime
    completed_at: Optional[datetime] = None

    fills: AggregationStats = field(default_factory=AggregationStats)

    closed_pnl_applied: int = 0
    """Open trades closed from closed-PnL records."""

    closed_pnl_created: int = 0
    """Closed trades created from closed-PnL records with no open trade."""

    closed_pnl_duplicates: int = 0

    positions_upserted: int = 0
    positions_skipped: int = 0

    last_execution_time: Optional[datetime] = None
    errors: List[SyncUnitError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def observe_execution_time(self, value: datetime) -> None:
        if self.last_execution_time is None or value > self.last_execution_time:
            self.last_execution_time = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "exchange": self.exchange,
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "fills": {f.name: getattr(self.fills, f.name) for f in fields(self.fills)},
            "closed_pnl_applied": self.closed_pnl_applied,
            "closed_pnl_created": self.closed_pnl_created,
            "closed_pnl_duplicates": self.closed_pnl_duplicates,
            "positions_upserted": self.positions_upserted,
            "positions_skipped": self.positions_skipped,
            "errors": [e.__dict__ for e in self.errors],
        }
