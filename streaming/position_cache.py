"""
Streaming - Position Cache.

Last-write-wins cache of position snapshots for ONE stream
connection. Never persisted and never shared between
connections; entries may be arbitrarily stale.
"""

from typing import Dict, List, Optional

from exchange.base import PositionRecord


class PositionCache:
    """Latest position message per symbol."""

    def __init__(self) -> None:
        self._positions: Dict[str, PositionRecord] = {}

    def update(self, position: PositionRecord) -> None:
        self._positions[position.symbol] = position

    def get(self, symbol: str) -> Optional[PositionRecord]:
        return self._positions.get(symbol)

    def open_symbols(self) -> List[str]:
        """Symbols whose latest snapshot is a non-flat position."""
        return sorted(s for s, p in self._positions.items() if not p.is_flat and p.side)

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._positions
