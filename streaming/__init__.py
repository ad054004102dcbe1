"""
Streaming Package.

Real-time correlation of private-stream executions into
closed trades.

Modules:
- correlator: connection state machine and message handling
- position_cache: connection-scoped position snapshots
- resolution: snapshot vs PnL-inference resolution of closing fills
- config: stream settings and reconnect delays
"""

from streaming.config import (
    BYBIT_PRIVATE_STREAM_URL,
    BYBIT_TESTNET_PRIVATE_STREAM_URL,
    StreamConfig,
    reconnect_delay,
)
from streaming.correlator import (
    StreamAuthError,
    StreamClosed,
    StreamingCorrelator,
    StreamState,
    StreamStats,
    build_auth_message,
)
from streaming.position_cache import PositionCache
from streaming.resolution import (
    ClosedTradeResolution,
    ResolutionSource,
    infer_from_pnl,
    resolve_closed_execution,
    resolve_from_snapshot,
)


__all__ = [
    "BYBIT_PRIVATE_STREAM_URL",
    "BYBIT_TESTNET_PRIVATE_STREAM_URL",
    "StreamConfig",
    "reconnect_delay",
    "StreamAuthError",
    "StreamClosed",
    "StreamingCorrelator",
    "StreamState",
    "StreamStats",
    "build_auth_message",
    "PositionCache",
    "ClosedTradeResolution",
    "ResolutionSource",
    "infer_from_pnl",
    "resolve_closed_execution",
    "resolve_from_snapshot",
]
