"""
Market Structure Models - Detector output types.

All prices are floats; candle analysis is heuristic and never
touches money columns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class BlockType(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class LevelType(str, Enum):
    SUPPORT = "support"
    RESISTANCE = "resistance"


class BiasDirection(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass
class OrderBlock:
    """Consolidation zone preceding an impulsive candle."""
    type: BlockType
    high: float
    low: float
    timestamp: datetime  # impulse candle
    strength: float
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "high": self.high,
            "low": self.low,
            "timestamp": self.timestamp.isoformat(),
            "strength": self.strength,
            "is_active": self.is_active,
        }


@dataclass
class LiquidityLevel:
    """Swing high/low tested at least twice."""
    type: LevelType
    level: float
    touches: int
    strength: float
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "level": self.level,
            "touches": self.touches,
            "strength": self.strength,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


@dataclass
class FairValueGap:
    """Three-candle imbalance between the outer candles."""
    type: BlockType
    gap_high: float
    gap_low: float
    size: float
    timestamp: datetime  # middle candle
    is_filled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "gap_high": self.gap_high,
            "gap_low": self.gap_low,
            "size": self.size,
            "timestamp": self.timestamp.isoformat(),
            "is_filled": self.is_filled,
        }


@dataclass
class MarketBias:
    direction: BiasDirection
    strength: float
    current_price: Optional[float] = None
    recent_high: Optional[float] = None
    recent_low: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction.value,
            "strength": self.strength,
            "current_price": self.current_price,
            "recent_high": self.recent_high,
            "recent_low": self.recent_low,
        }


@dataclass
class StructureSnapshot:
    """Full detector output for one candle window."""
    order_blocks: list[OrderBlock] = field(default_factory=list)
    liquidity_levels: list[LiquidityLevel] = field(default_factory=list)
    fvg_zones: list[FairValueGap] = field(default_factory=list)
    bias: MarketBias = field(default_factory=lambda: MarketBias(BiasDirection.NEUTRAL, 0.0))
    high: Optional[float] = None
    low: Optional[float] = None
    candle_count: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "order_blocks_count": len(self.order_blocks),
            "liquidity_levels_count": len(self.liquidity_levels),
            "fvg_count": len(self.fvg_zones),
            "market_bias": self.bias.direction.value,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_blocks": [b.to_dict() for b in self.order_blocks],
            "liquidity_levels": [lvl.to_dict() for lvl in self.liquidity_levels],
            "fvg_zones": [g.to_dict() for g in self.fvg_zones],
            "market_bias": self.bias.to_dict(),
            "high": self.high,
            "low": self.low,
        }
