"""
Market Structure Detector - Heuristic "smart money" patterns from OHLCV.

Detects:
- Order blocks (consolidation before an impulsive candle)
- Liquidity levels (swing highs/lows tested repeatedly)
- Fair value gaps (three-candle imbalances)
- Bias (close position inside the recent range)

Input candles must be sorted oldest first.
"""

import logging
from typing import Optional

from exchange.base import Candle

from .config import DetectorConfig
from .models import (
    BiasDirection,
    BlockType,
    FairValueGap,
    LevelType,
    LiquidityLevel,
    MarketBias,
    OrderBlock,
    StructureSnapshot,
)


logger = logging.getLogger(__name__)


class MarketStructureDetector:
    """
    Pure candle-window analysis. No I/O, no state between calls.
    """

    def __init__(self, config: Optional[DetectorConfig] = None) -> None:
        self.config = config or DetectorConfig()

    def analyze(self, candles: list[Candle]) -> StructureSnapshot:
        """Run every detector over one window."""
        if not candles:
            return StructureSnapshot()

        return StructureSnapshot(
            order_blocks=self.detect_order_blocks(candles),
            liquidity_levels=self.detect_liquidity_levels(candles),
            fvg_zones=self.detect_fair_value_gaps(candles),
            bias=self.determine_bias(candles),
            high=max(c.high for c in candles),
            low=min(c.low for c in candles),
            candle_count=len(candles),
        )

    # =========================================================
    # ORDER BLOCKS
    # =========================================================

    def detect_order_blocks(self, candles: list[Candle]) -> list[OrderBlock]:
        cfg = self.config
        lookback = cfg.order_block_lookback
        blocks: list[OrderBlock] = []

        for i in range(lookback, len(candles) - cfg.order_block_tail):
            current = candles[i]
            avg_body = self._average(c.body for c in candles[i - lookback:i])
            avg_volume = self._average(c.volume for c in candles[i - lookback:i])

            if current.body <= avg_body * cfg.impulse_body_multiplier:
                continue
            if current.volume <= avg_volume * cfg.impulse_volume_multiplier:
                continue

            indecisive = [
                c for c in candles[i - lookback:i]
                if c.range > 0 and c.body / c.range < cfg.consolidation_body_ratio
            ]
            if len(indecisive) < cfg.min_consolidation_candles:
                continue

            blocks.append(OrderBlock(
                type=BlockType.BULLISH if current.is_bullish else BlockType.BEARISH,
                high=max(c.high for c in indecisive),
                low=min(c.low for c in indecisive),
                timestamp=current.timestamp,
                strength=min(10.0, current.body / avg_body * 2),
            ))

        return blocks[-cfg.max_order_blocks:]

    @staticmethod
    def _average(values) -> float:
        """Mean of `values`; a zero (or empty) sum falls back to 1."""
        values = list(values)
        total = sum(values)
        return total / len(values) if total > 0 else 1.0

    # =========================================================
    # LIQUIDITY LEVELS
    # =========================================================

    def detect_liquidity_levels(self, candles: list[Candle]) -> list[LiquidityLevel]:
        cfg = self.config
        levels: list[LiquidityLevel] = []

        for i in range(cfg.liquidity_edge, len(candles) - cfg.liquidity_edge):
            if self._is_local_high(candles, i):
                level = self._level(candles, i, candles[i].high, LevelType.RESISTANCE)
                if level is not None:
                    levels.append(level)
            if self._is_local_low(candles, i):
                level = self._level(candles, i, candles[i].low, LevelType.SUPPORT)
                if level is not None:
                    levels.append(level)

        # sorted() is stable: equal strengths keep chronological order
        levels = sorted(levels, key=lambda lvl: lvl.strength, reverse=True)
        return levels[:cfg.max_liquidity_levels]

    def _level(self, candles: list[Candle], index: int, price: float, level_type: LevelType) -> Optional[LiquidityLevel]:
        touches = self._count_touches(candles, price, index)
        if touches < self.config.min_touches:
            return None
        return LiquidityLevel(
            type=level_type,
            level=price,
            touches=touches,
            strength=float(min(10, touches * 2)),
            timestamp=candles[index].timestamp,
        )

    def _window(self, candles: list[Candle], index: int) -> range:
        w = self.config.swing_window
        return range(max(0, index - w), min(len(candles) - 1, index + w) + 1)

    def _is_local_high(self, candles: list[Candle], index: int) -> bool:
        current = candles[index].high
        return all(candles[j].high < current for j in self._window(candles, index) if j != index)

    def _is_local_low(self, candles: list[Candle], index: int) -> bool:
        current = candles[index].low
        return all(candles[j].low > current for j in self._window(candles, index) if j != index)

    def _count_touches(self, candles: list[Candle], level: float, start: int) -> int:
        """Candles from `start` on whose high or low lies within tolerance of `level`."""
        band = level * self.config.touch_tolerance
        return sum(
            1 for c in candles[start:]
            if abs(c.high - level) <= band or abs(c.low - level) <= band
        )

    # =========================================================
    # FAIR VALUE GAPS
    # =========================================================

    def detect_fair_value_gaps(self, candles: list[Candle]) -> list[FairValueGap]:
        gaps: list[FairValueGap] = []

        for i in range(1, len(candles) - 1):
            prev, middle, nxt = candles[i - 1], candles[i], candles[i + 1]
            later = candles[i + 2:]

            if prev.high < nxt.low:
                gaps.append(FairValueGap(
                    type=BlockType.BULLISH,
                    gap_high=nxt.low,
                    gap_low=prev.high,
                    size=nxt.low - prev.high,
                    timestamp=middle.timestamp,
                    is_filled=any(c.low <= nxt.low for c in later),
                ))

            if prev.low > nxt.high:
                gaps.append(FairValueGap(
                    type=BlockType.BEARISH,
                    gap_high=prev.low,
                    gap_low=nxt.high,
                    size=prev.low - nxt.high,
                    timestamp=middle.timestamp,
                    is_filled=any(c.high >= nxt.high for c in later),
                ))

        return gaps[-self.config.max_fvgs:]

    # =========================================================
    # BIAS
    # =========================================================

    def determine_bias(self, candles: list[Candle]) -> MarketBias:
        cfg = self.config
        recent = candles[-cfg.bias_window:]
        current_price = candles[-1].close
        recent_high = max(c.high for c in recent)
        recent_low = min(c.low for c in recent)

        price_range = recent_high - recent_low
        if price_range <= 0:
            return MarketBias(
                direction=BiasDirection.NEUTRAL,
                strength=0.0,
                current_price=current_price,
                recent_high=recent_high,
                recent_low=recent_low,
            )

        position = (current_price - recent_low) / price_range
        if position > cfg.bullish_threshold:
            direction = BiasDirection.BULLISH
        elif position < cfg.bearish_threshold:
            direction = BiasDirection.BEARISH
        else:
            direction = BiasDirection.NEUTRAL

        return MarketBias(
            direction=direction,
            strength=abs(position - 0.5) * 2,
            current_price=current_price,
            recent_high=recent_high,
            recent_low=recent_low,
        )
