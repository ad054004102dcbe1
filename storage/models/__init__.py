"""
Storage Models Package.

ORM models for the trade journal database.

============================================================
MODEL ORGANIZATION
============================================================
base.py
- Base, TimestampMixin, UTCDateTime

journal.py
- UserExchange
- Execution
- Trade
- MarketStructure

============================================================
"""

from storage.models.base import Base, TimestampMixin, UTCDateTime, ensure_utc, utcnow
from storage.models.journal import (
    Execution,
    MarketStructure,
    Trade,
    TradeSource,
    TradeStateError,
    TradeStatus,
    UserExchange,
)


__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "ensure_utc",
    "utcnow",
    "Execution",
    "MarketStructure",
    "Trade",
    "TradeSource",
    "TradeStateError",
    "TradeStatus",
    "UserExchange",
]
