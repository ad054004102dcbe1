"""
Streaming - Configuration.
"""

from dataclasses import dataclass
from typing import Tuple


BYBIT_PRIVATE_STREAM_URL = "wss://stream.bybit.com/v5/private"
BYBIT_TESTNET_PRIVATE_STREAM_URL = "wss://stream-testnet.bybit.com/v5/private"


@dataclass
class StreamConfig:
    """Private stream connection settings."""

    # Connection
    url: str = BYBIT_PRIVATE_STREAM_URL
    max_reconnect_attempts: int = 5
    connect_timeout_seconds: float = 10.0

    # Auth handshake
    auth_expiry_ms: int = 10000
    auth_timeout_seconds: float = 10.0

    # Heartbeat
    ping_interval_seconds: float = 20.0

    # Subscriptions
    topics: Tuple[str, ...] = ("execution", "position")

    # Resolution
    allow_pnl_inference: bool = True
    """Persist closed trades whose side/entry had to be inferred from PnL."""

    @classmethod
    def for_bybit(cls, testnet: bool = False, **overrides) -> "StreamConfig":
        url = BYBIT_TESTNET_PRIVATE_STREAM_URL if testnet else BYBIT_PRIVATE_STREAM_URL
        return cls(url=url, **overrides)


def reconnect_delay(attempt: int) -> float:
    """
    Delay before connection attempt number `attempt` (1-based).

    1 -> 0s, 2 -> 1s, 3 -> 2s, 4 -> 4s, 5 -> 8s
    """
    if attempt <= 1:
        return 0.0
    return float(2 ** (attempt - 2))
