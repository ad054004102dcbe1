"""
Streaming - Closed Trade Resolution.

============================================================
PURPOSE
============================================================
Decide side and entry price for a closing execution seen on
the private stream.

============================================================
PATHS
============================================================
SNAPSHOT       side/entry taken from the cached position
               snapshot of the symbol (high confidence)
PNL_INFERENCE  no usable snapshot: side is the opposite of the
               execution side, entry is back-computed from the
               execution PnL (low confidence, can be disabled)

============================================================
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from exchange.base import ExecutionRecord, PositionRecord
from reconciliation.aggregator import gross_pnl, opposite_side
from storage.models.journal import TradeSource


class ResolutionSource(str, Enum):
    SNAPSHOT = "snapshot"
    PNL_INFERENCE = "pnl_inference"


@dataclass(frozen=True)
class ClosedTradeResolution:
    """Resolved shape of a trade closed by one execution."""

    source: ResolutionSource
    side: str
    entry_price: Decimal
    exit_price: Decimal
    size: Decimal
    realized_pnl: Decimal

    @property
    def is_inferred(self) -> bool:
        return self.source is ResolutionSource.PNL_INFERENCE

    @property
    def trade_source(self) -> TradeSource:
        if self.is_inferred:
            return TradeSource.STREAM_INFERRED
        return TradeSource.STREAM_SNAPSHOT


def has_usable_snapshot(snapshot: Optional[PositionRecord]) -> bool:
    return snapshot is not None and bool(snapshot.side) and snapshot.entry_price > 0


def resolve_from_snapshot(
    execution: ExecutionRecord,
    snapshot: PositionRecord,
) -> ClosedTradeResolution:
    size = execution.closed_size
    if execution.exec_pnl is not None:
        pnl = execution.exec_pnl
    else:
        pnl = gross_pnl(snapshot.side, snapshot.entry_price, execution.price, size)
    return ClosedTradeResolution(
        source=ResolutionSource.SNAPSHOT,
        side=snapshot.side,
        entry_price=snapshot.entry_price,
        exit_price=execution.price,
        size=size,
        realized_pnl=pnl,
    )


def infer_from_pnl(execution: ExecutionRecord) -> ClosedTradeResolution:
    """
    Infer the closed position from the execution alone.

    A closing sell ends a long: entry = exit - |pnl| / size.
    A closing buy ends a short: entry = exit + |pnl| / size.
    """
    side = opposite_side(execution.side)
    size = execution.closed_size
    pnl = execution.exec_pnl if execution.exec_pnl is not None else Decimal("0")
    per_unit = abs(pnl) / size if size else Decimal("0")

    if side == "buy":
        entry = execution.price - per_unit
    else:
        entry = execution.price + per_unit

    return ClosedTradeResolution(
        source=ResolutionSource.PNL_INFERENCE,
        side=side,
        entry_price=entry,
        exit_price=execution.price,
        size=size,
        realized_pnl=pnl,
    )


def resolve_closed_execution(
    execution: ExecutionRecord,
    snapshot: Optional[PositionRecord],
    allow_inference: bool = True,
) -> Optional[ClosedTradeResolution]:
    """
    Resolve a closing execution.

    Returns:
        The resolution, or None when no snapshot is usable and
        inference is disabled
    """
    if has_usable_snapshot(snapshot):
        return resolve_from_snapshot(execution, snapshot)
    if not allow_inference:
        return None
    return infer_from_pnl(execution)
