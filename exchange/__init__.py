"""
Exchange Client Package.

Read-only Bybit V5 access for the journal: executions, closed
PnL, positions, wallet balance and klines. Signed with
HMAC-SHA256, paginated by cursor, failures raised as
ExchangeException with a category and retry flag.

- BybitAdapter: live REST client
- MockExchangeAdapter: scripted adapter for tests
- create_adapter: builds either by exchange name
"""

from .base import (
    Candle,
    ClosedPnLRecord,
    ExchangeAdapter,
    ExecutionRecord,
    Page,
    PositionRecord,
    WalletBalance,
    datetime_to_ms,
    ms_to_datetime,
)
from .bybit import BYBIT_CATEGORIES, BybitAdapter, parse_execution, parse_position
from .errors import (
    ErrorCategory,
    ExchangeError,
    ExchangeException,
    classify_error_message,
    create_malformed_payload_error,
    create_network_error,
    create_rate_limit_error,
    create_timeout_error,
    is_auth_failure,
    map_bybit_error,
)
from .factory import AdapterFactory, create_adapter
from .logging_utils import AdapterLogger, mask_headers, mask_params, mask_value
from .metrics import AdapterMetrics, MetricType
from .mock import MockConfig, MockExchangeAdapter


__all__ = [
    "Candle",
    "ClosedPnLRecord",
    "ExchangeAdapter",
    "ExecutionRecord",
    "Page",
    "PositionRecord",
    "WalletBalance",
    "datetime_to_ms",
    "ms_to_datetime",
    "BYBIT_CATEGORIES",
    "BybitAdapter",
    "parse_execution",
    "parse_position",
    "MockConfig",
    "MockExchangeAdapter",
    "AdapterFactory",
    "create_adapter",
    "ErrorCategory",
    "ExchangeError",
    "ExchangeException",
    "classify_error_message",
    "create_malformed_payload_error",
    "create_network_error",
    "create_rate_limit_error",
    "create_timeout_error",
    "is_auth_failure",
    "map_bybit_error",
    "AdapterMetrics",
    "MetricType",
    "AdapterLogger",
    "mask_headers",
    "mask_params",
    "mask_value",
]
