"""
Exchange Client - Error Taxonomy.

============================================================
PURPOSE
============================================================
Every failure of the exchange client leaves as an
ExchangeException carrying an ExchangeError:

- category      what went wrong (auth, rate limit, ...)
- retryable     whether a later attempt can succeed
- exchange_message  the provider's retMsg, verbatim

Bybit retCodes are mapped first, then the HTTP status, then
message patterns for anything the code table does not know.

No retries happen here; the sync jobs own that policy.

============================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class ErrorCategory(Enum):
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    PERMISSION = "PERMISSION"
    INVALID_REQUEST = "INVALID_REQUEST"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    UNKNOWN = "UNKNOWN"


_AUTH = (ErrorCategory.AUTHENTICATION, ErrorCategory.PERMISSION)


@dataclass
class ExchangeError:
    category: ErrorCategory
    code: str
    message: str
    retryable: bool
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None
    operation: Optional[str] = None

    def is_retryable(self) -> bool:
        return self.retryable

    @property
    def is_auth_error(self) -> bool:
        return self.category in _AUTH

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


class ExchangeException(Exception):
    """Raised by every ExchangeAdapter call that fails."""

    def __init__(self, error: ExchangeError):
        self.error = error
        super().__init__(str(error))

    @property
    def category(self) -> ErrorCategory:
        return self.error.category

    @property
    def is_auth_error(self) -> bool:
        return self.error.is_auth_error

    def is_retryable(self) -> bool:
        return self.error.retryable


# ============================================================
# MESSAGE PATTERNS
# ============================================================

_MESSAGE_PATTERNS: Tuple[Tuple[ErrorCategory, Tuple[str, ...]], ...] = (
    (ErrorCategory.AUTHENTICATION, (
        "invalid api key",
        "api key is invalid",
        "api key expired",
        "api key has expired",
        "signature verification failed",
        "error sign",
        "authentication failed",
    )),
    (ErrorCategory.PERMISSION, (
        "insufficient permissions",
        "permission denied",
        "ip not in whitelist",
        "unmatched ip",
    )),
)


def classify_error_message(message: Optional[str]) -> Optional[ErrorCategory]:
    """AUTHENTICATION, PERMISSION or None for an unstructured provider message."""
    if not message:
        return None
    lowered = message.lower()
    for category, patterns in _MESSAGE_PATTERNS:
        if any(p in lowered for p in patterns):
            return category
    return None


def is_auth_failure(error: BaseException) -> bool:
    """
    True when a sync failure should deactivate the connection.

    A typed category other than UNKNOWN is authoritative; only
    untyped failures fall back to the message patterns.
    """
    if isinstance(error, ExchangeException):
        if error.is_auth_error:
            return True
        if error.category != ErrorCategory.UNKNOWN:
            return False
        return classify_error_message(error.error.exchange_message) is not None
    return classify_error_message(str(error)) is not None


# ============================================================
# BYBIT V5 retCode TABLE
# ============================================================

BYBIT_ERROR_MAP: Dict[int, Tuple[ErrorCategory, bool]] = {
    10000: (ErrorCategory.EXCHANGE_ERROR, True),
    10001: (ErrorCategory.INVALID_REQUEST, False),
    10002: (ErrorCategory.INVALID_REQUEST, True),  # recv_window / clock skew
    10003: (ErrorCategory.AUTHENTICATION, False),
    10004: (ErrorCategory.AUTHENTICATION, False),
    10005: (ErrorCategory.PERMISSION, False),
    10006: (ErrorCategory.RATE_LIMIT, True),
    10007: (ErrorCategory.AUTHENTICATION, False),
    10010: (ErrorCategory.PERMISSION, False),
    10016: (ErrorCategory.EXCHANGE_ERROR, True),
    10018: (ErrorCategory.RATE_LIMIT, True),
    10027: (ErrorCategory.TIMEOUT, True),
    33004: (ErrorCategory.AUTHENTICATION, False),
}


def map_bybit_error(code: int, message: str, http_status: Optional[int] = None) -> ExchangeError:
    if code in BYBIT_ERROR_MAP:
        category, retryable = BYBIT_ERROR_MAP[code]
    elif http_status == 429:
        category, retryable = ErrorCategory.RATE_LIMIT, True
    elif http_status in (401, 403):
        category, retryable = ErrorCategory.AUTHENTICATION, False
    elif http_status and http_status >= 500:
        category, retryable = ErrorCategory.EXCHANGE_ERROR, True
    else:
        category = classify_error_message(message) or ErrorCategory.UNKNOWN
        retryable = category not in _AUTH

    return ExchangeError(
        category=category,
        code=f"BYBIT_{code}",
        message=message,
        retryable=retryable,
        exchange_message=message,
        http_status=http_status,
    )


# ============================================================
# TRANSPORT FAILURES
# ============================================================

def create_network_error(exchange_id: str, message: str, operation: Optional[str] = None) -> ExchangeError:
    return ExchangeError(
        ErrorCategory.NETWORK, f"{exchange_id.upper()}_NETWORK_ERROR", message, True, operation=operation
    )


def create_timeout_error(exchange_id: str, timeout_ms: int, operation: Optional[str] = None) -> ExchangeError:
    return ExchangeError(
        ErrorCategory.TIMEOUT,
        f"{exchange_id.upper()}_TIMEOUT",
        f"no response within {timeout_ms}ms",
        True,
        operation=operation,
    )


def create_rate_limit_error(exchange_id: str, operation: Optional[str] = None) -> ExchangeError:
    return ExchangeError(
        ErrorCategory.RATE_LIMIT,
        f"{exchange_id.upper()}_RATE_LIMIT",
        "rate limit exceeded",
        True,
        http_status=429,
        operation=operation,
    )


def create_malformed_payload_error(
    exchange_id: str,
    message: str,
    http_status: Optional[int] = None,
    operation: Optional[str] = None,
) -> ExchangeError:
    """The body could not be decoded, or decoded to something other than an envelope."""
    return ExchangeError(
        ErrorCategory.MALFORMED_PAYLOAD,
        f"{exchange_id.upper()}_MALFORMED_PAYLOAD",
        message,
        True,
        http_status=http_status,
        operation=operation,
    )
